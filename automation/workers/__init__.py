"""Process entry points that run outside the HTTP service."""

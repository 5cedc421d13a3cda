"""Cross-cutting utilities for the automation orchestrator.

Utilities are pure functions or thin wrappers without pipeline business logic.

Modules:
    logging: structlog configuration and logger factory.
    templates: ``{{placeholder}}`` substitution for prompt templates.
    alerts: Discord webhook alerts for failed runs.
"""

from automation.utils.logging import configure_logging, get_logger
from automation.utils.templates import replace_placeholders

__all__ = [
    "configure_logging",
    "get_logger",
    "replace_placeholders",
]

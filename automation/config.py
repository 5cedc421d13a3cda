"""Configuration management for the automation orchestrator.

All runtime configuration comes from environment variables and is read through
the small getter functions below. Immutable values are cached with lru_cache;
tunables are re-read on every call so tests can monkeypatch them.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    CRON_SECRET: Bearer token required by the cron trigger endpoints
    MAX_CONCURRENT_DISPATCH: Parallel step dispatches/polls per invocation (default: 8)
    PROVIDER_TIMEOUT_SECONDS: Timeout for provider control calls (default: 15)
    AUTO_RUN_MIN_INTERVAL_MINUTES: Minimum gap after a finished run (default: 10)
    POLL_INTERVAL_SECONDS: Sleep between ticks in cron_worker --loop mode (default: 60)
    HIGGSFIELD_API_BASE / HIGGSFIELD_COOKIE / HIGGSFIELD_CLERK_CONTEXT: image + video provider
    VOICE_API_BASE / VOICE_API_KEY: text-to-speech provider
    RENDI_API_BASE / RENDI_API_KEY: remote FFmpeg provider
    GEMINI_API_URL / GEMINI_API_KEY: text-generation provider

Usage:
    from automation.config import get_database_url, get_max_concurrent_dispatch

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    limit = get_max_concurrent_dispatch()
"""

import os
from functools import lru_cache

import structlog

from automation.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENT_DISPATCH = 8
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 15.0
DEFAULT_AUTO_RUN_MIN_INTERVAL_MINUTES = 10
DEFAULT_POLL_INTERVAL_SECONDS = 60

DEFAULT_HIGGSFIELD_API_BASE = "https://api.beautyapp.work"
DEFAULT_VOICE_API_BASE = "https://api.voice.example"
DEFAULT_RENDI_API_BASE = "https://api.rendi.dev/v1"


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_cron_secret() -> str | None:
    """Get the shared secret for cron-triggered endpoints.

    Returns:
        Secret string, or None when unset (cron endpoints then reject everything).
    """
    return os.getenv("CRON_SECRET") or None


def _get_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer environment variable clamped to [minimum, maximum]."""
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_int_setting", setting=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def get_max_concurrent_dispatch() -> int:
    """Get the maximum number of provider calls made in parallel per invocation.

    Bounds the fan-out of the Run Coordinator and the Status Poller. Each
    parallel dispatch opens its own database session.

    Returns:
        Concurrency limit between 1 and 64 (default: 8).
    """
    return _get_int("MAX_CONCURRENT_DISPATCH", DEFAULT_MAX_CONCURRENT_DISPATCH, 1, 64)


def get_provider_timeout() -> float:
    """Get timeout in seconds for provider submit/status calls.

    Returns:
        Timeout in seconds (default: 15.0).
    """
    raw = os.getenv("PROVIDER_TIMEOUT_SECONDS", str(DEFAULT_PROVIDER_TIMEOUT_SECONDS))
    try:
        return max(1.0, float(raw))
    except ValueError:
        log.warning(
            "invalid_provider_timeout",
            value=raw,
            using_default=DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        )
        return DEFAULT_PROVIDER_TIMEOUT_SECONDS


def get_auto_run_min_interval_minutes() -> int:
    """Get the minimum number of minutes between a finished run and an auto run.

    Returns:
        Interval in minutes (default: 10).
    """
    return _get_int(
        "AUTO_RUN_MIN_INTERVAL_MINUTES", DEFAULT_AUTO_RUN_MIN_INTERVAL_MINUTES, 0, 1440
    )


def get_poll_interval() -> int:
    """Get sleep time between ticks when cron_worker runs with --loop.

    Returns:
        Interval in seconds, clamped to 10-600 (default: 60).
    """
    return _get_int("POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, 10, 600)


def get_higgsfield_settings() -> tuple[str, str | None, str | None]:
    """Get Higgsfield API base URL and session credentials.

    Returns:
        Tuple of (api_base, cookie, clerk_active_context). Credentials may be None.
    """
    return (
        os.getenv("HIGGSFIELD_API_BASE", DEFAULT_HIGGSFIELD_API_BASE),
        os.getenv("HIGGSFIELD_COOKIE"),
        os.getenv("HIGGSFIELD_CLERK_CONTEXT"),
    )


def get_voice_settings() -> tuple[str, str | None]:
    """Get text-to-speech API base URL and key."""
    return os.getenv("VOICE_API_BASE", DEFAULT_VOICE_API_BASE), os.getenv("VOICE_API_KEY")


def get_rendi_settings() -> tuple[str, str | None]:
    """Get Rendi (remote FFmpeg) API base URL and key."""
    return os.getenv("RENDI_API_BASE", DEFAULT_RENDI_API_BASE), os.getenv("RENDI_API_KEY")


def get_gemini_settings() -> tuple[str | None, str | None]:
    """Get text-generation endpoint URL and token."""
    return os.getenv("GEMINI_API_URL"), os.getenv("GEMINI_API_KEY")


def require(value: str | None, name: str) -> str:
    """Return value or raise ConfigurationError naming the missing variable.

    Example:
        >>> api_key = require(os.getenv("RENDI_API_KEY"), "RENDI_API_KEY")
    """
    if not value:
        raise ConfigurationError(f"{name} environment variable is required")
    return value

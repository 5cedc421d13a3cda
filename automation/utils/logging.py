"""Structured Logging Configuration.

This module configures structlog to emit one JSON object per line for log
aggregation, with the event name plus keyword context:

    log = get_logger(__name__)
    log.info("step_dispatched", run_id=str(run.id), step_id=str(step.id))

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (run_id, step_id, channel_id, ...)
- Log level from LOG_LEVEL (default: INFO)
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and the stdlib root logger once per process.

    Args:
        level: Log level name. Defaults to LOG_LEVEL env var or INFO.
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str, **initial_context: Any) -> Any:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)
        **initial_context: Key/values bound to every entry of this logger

    Returns:
        structlog bound logger
    """
    return structlog.get_logger(name, **initial_context)

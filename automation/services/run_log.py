"""Run log sink.

Run-scoped diagnostics are stored in automation_run_logs so the run history
view can show them, and mirrored to structlog for log aggregation. Entries
are added to the caller's session and committed with the caller's
transaction.
"""

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from automation.models import AutomationRunLog, LogLevel
from automation.utils.logging import get_logger

log = get_logger(__name__)

_STRUCTLOG_METHODS = {
    LogLevel.INFO: "info",
    LogLevel.SUCCESS: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
}


def append_log(
    session: AsyncSession,
    run_id: uuid.UUID,
    message: str,
    level: LogLevel = LogLevel.INFO,
    step_id: uuid.UUID | None = None,
    metadata: dict[str, Any] | None = None,
) -> AutomationRunLog:
    """Record a log entry for a run (optionally a step).

    Args:
        session: Session of the current transaction
        run_id: Run the entry belongs to
        message: Human-readable message
        level: INFO, SUCCESS, WARN or ERROR
        step_id: Step the entry is about, if any
        metadata: Raw request/response excerpts

    Returns:
        The pending AutomationRunLog row.
    """
    entry = AutomationRunLog(
        run_id=run_id,
        step_id=step_id,
        message=message,
        level=level,
        log_metadata=metadata,
    )
    session.add(entry)

    emit = getattr(log, _STRUCTLOG_METHODS[level])
    emit(
        "run_log",
        run_id=str(run_id),
        step_id=str(step_id) if step_id else None,
        level=level.value,
        message=message,
    )
    return entry

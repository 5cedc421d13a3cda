"""Quota and interval gate for automatic runs.

Decides whether the auto-trigger scheduler may start a run for a channel.
The decision itself is a pure function of a RunHistory snapshot so it can be
tested without a database; load_run_history() builds the snapshot.

Rules, checked in order:
    1. No run of the channel is starting or running.
    2. Fewer than auto_run_count auto runs started since 00:00 UTC today.
    3. The most recently finished run finished at least min_interval ago.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from automation.models import ACTIVE_RUN_STATUSES, AutomationRun, TriggerType

DEFAULT_MIN_INTERVAL = timedelta(minutes=10)


@dataclass(frozen=True)
class RunHistory:
    """What the gate needs to know about a channel's past runs."""

    has_active_run: bool
    auto_runs_today: int
    last_finished_at: datetime | None


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str | None = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(now: datetime) -> datetime:
    """Midnight UTC of the day containing now."""
    return _as_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)


def evaluate_auto_run_gate(
    history: RunHistory,
    auto_run_count: int,
    now: datetime,
    min_interval: timedelta = DEFAULT_MIN_INTERVAL,
) -> GateDecision:
    """Apply the auto-run rules to a history snapshot.

    Args:
        history: Snapshot of the channel's runs
        auto_run_count: Daily auto-run limit from the channel config
        now: Current time (timezone-aware)
        min_interval: Required gap after the last finished run

    Returns:
        GateDecision; reason names the first rule that rejected.

    Example:
        >>> history = RunHistory(has_active_run=False, auto_runs_today=3, last_finished_at=None)
        >>> evaluate_auto_run_gate(history, auto_run_count=3, now=now).reason
        'daily limit reached (3/3)'
    """
    if history.has_active_run:
        return GateDecision(False, "run already active")

    if history.auto_runs_today >= auto_run_count:
        return GateDecision(
            False, f"daily limit reached ({history.auto_runs_today}/{auto_run_count})"
        )

    if history.last_finished_at is not None:
        elapsed = _as_utc(now) - _as_utc(history.last_finished_at)
        if elapsed < min_interval:
            minutes = int(min_interval.total_seconds() // 60)
            return GateDecision(False, f"last run finished less than {minutes} minutes ago")

    return GateDecision(True)


async def load_run_history(
    session: AsyncSession, channel_id: uuid.UUID, now: datetime
) -> RunHistory:
    """Query the RunHistory snapshot for one channel."""
    active_count = await session.scalar(
        select(func.count(AutomationRun.id)).where(
            AutomationRun.channel_id == channel_id,
            AutomationRun.status.in_(ACTIVE_RUN_STATUSES),
        )
    )
    auto_runs_today = await session.scalar(
        select(func.count(AutomationRun.id)).where(
            AutomationRun.channel_id == channel_id,
            AutomationRun.trigger_type == TriggerType.AUTO,
            AutomationRun.started_at >= start_of_utc_day(now),
        )
    )
    last_finished_at = await session.scalar(
        select(func.max(AutomationRun.finished_at)).where(
            AutomationRun.channel_id == channel_id,
            AutomationRun.finished_at.is_not(None),
        )
    )
    return RunHistory(
        has_active_run=bool(active_count),
        auto_runs_today=auto_runs_today or 0,
        last_finished_at=_as_utc(last_finished_at) if last_finished_at else None,
    )

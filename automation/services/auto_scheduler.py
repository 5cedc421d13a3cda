"""Auto-Trigger Scheduler: start automatic runs for eligible channels.

Invoked periodically (cron endpoint or cron_worker). For every channel whose
config enables auto runs with a positive daily count, the quota/interval gate
decides whether a run may start now; allowed channels get a run with
trigger_type=auto on behalf of the config owner.

Channels are processed one after another; a failure for one channel is
logged and reported in the result, never raised.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.config import get_auto_run_min_interval_minutes
from automation.database import get_session_factory
from automation.exceptions import AutomationError
from automation.models import AutomationConfig, TriggerType, utcnow
from automation.services.auto_run_gate import evaluate_auto_run_gate, load_run_history
from automation.services.run_coordinator import RunCoordinator
from automation.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ChannelTriggerResult:
    """Outcome for one channel: started (with run_id), skipped or error."""

    channel_id: uuid.UUID
    outcome: str
    reason: str | None = None
    run_id: uuid.UUID | None = None


class AutoScheduler:
    def __init__(
        self,
        coordinator: RunCoordinator,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.session_factory = session_factory or get_session_factory()

    async def tick(self, now: datetime | None = None) -> list[ChannelTriggerResult]:
        """Evaluate every auto-enabled channel once.

        Args:
            now: Evaluation time (defaults to current UTC time)

        Returns:
            One ChannelTriggerResult per auto-enabled channel.
        """
        now = now or utcnow()
        min_interval = timedelta(minutes=get_auto_run_min_interval_minutes())

        async with self.session_factory() as session:
            result = await session.execute(
                select(AutomationConfig).where(
                    AutomationConfig.auto_run_enabled.is_(True),
                    AutomationConfig.auto_run_count > 0,
                )
            )
            configs = list(result.scalars().all())

        results = []
        for config in configs:
            results.append(await self._trigger_channel(config, now, min_interval))

        log.info(
            "auto_run_tick_completed",
            channels=len(results),
            started=sum(1 for r in results if r.outcome == "started"),
            errors=sum(1 for r in results if r.outcome == "error"),
        )
        return results

    async def _trigger_channel(
        self, config: AutomationConfig, now: datetime, min_interval: timedelta
    ) -> ChannelTriggerResult:
        channel_id = config.channel_id
        try:
            async with self.session_factory() as session:
                history = await load_run_history(session, channel_id, now)

            decision = evaluate_auto_run_gate(history, config.auto_run_count, now, min_interval)
            if not decision.allowed:
                log.info("auto_run_skipped", channel_id=str(channel_id), reason=decision.reason)
                return ChannelTriggerResult(channel_id, "skipped", reason=decision.reason)

            run = await self.coordinator.start_run(
                channel_id, user_id=config.user_id, trigger_type=TriggerType.AUTO
            )
        except Exception as e:
            log.error(
                "auto_run_failed",
                channel_id=str(channel_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=not isinstance(e, AutomationError),
            )
            return ChannelTriggerResult(channel_id, "error", reason=str(e))

        log.info("auto_run_started", channel_id=str(channel_id), run_id=str(run.id))
        return ChannelTriggerResult(channel_id, "started", run_id=run.id)

"""Retry Controller: put a single failed step back into the pipeline.

Only failed steps can be retried. The step is reset to pending with its
error, external task id and output cleared; a failed run is revived to
running. The caller dispatches the step afterwards (the HTTP route schedules
it as a background task, the poller's recovery sweep picks it up otherwise).
"""

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.database import get_session_factory
from automation.exceptions import NotFailed, RunAlreadyActive, StepNotFound
from automation.models import (
    ACTIVE_RUN_STATUSES,
    AutomationRun,
    AutomationRunStep,
    LogLevel,
    RunStatus,
    StepStatus,
)
from automation.services.run_log import append_log
from automation.services.run_status import lock_run
from automation.utils.logging import get_logger

log = get_logger(__name__)


class RetryController:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def retry_step(self, step_id: uuid.UUID) -> AutomationRunStep:
        """Reset a failed step to pending.

        Raises:
            StepNotFound: Unknown step id.
            NotFailed: The step is not failed (nothing is changed).
            RunAlreadyActive: The run failed and the channel has started
                another run since; reviving this one would break the single
                active run rule.
        """
        async with self.session_factory() as session, session.begin():
            step = await session.get(AutomationRunStep, step_id)
            if step is None:
                raise StepNotFound(step_id)
            if step.status != StepStatus.FAILED:
                raise NotFailed(step_id, step.status.value)

            run = await lock_run(session, step.run_id)
            if run.status == RunStatus.FAILED:
                other_active = await session.scalar(
                    select(func.count(AutomationRun.id)).where(
                        AutomationRun.channel_id == run.channel_id,
                        AutomationRun.id != run.id,
                        AutomationRun.status.in_(ACTIVE_RUN_STATUSES),
                    )
                )
                if other_active:
                    raise RunAlreadyActive(run.channel_id)
                run.status = RunStatus.RUNNING
                run.finished_at = None

            previous_error = step.error_message
            step.reset_for_retry()
            append_log(
                session,
                run.id,
                f"Retrying {step.step_type.value} (previous error: {previous_error})",
                LogLevel.INFO,
                step_id=step.id,
            )

        log.info(
            "step_retry_requested",
            step_id=str(step_id),
            run_id=str(run.id),
            run_status=run.status.value,
        )
        return step

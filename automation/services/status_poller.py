"""Status Poller: resolve running steps and advance the pipeline.

Each tick:
    1. Select running steps that have an external task id and whose run is
       not stopped/cancelled
    2. Ask each provider for its job status (no transaction open), bounded
       by MAX_CONCURRENT_DISPATCH; one failing check never affects another
    3. Record terminal outcomes in a short transaction holding the run lock,
       run completion handlers, settle the run
    4. Dispatch the follow-up steps the handlers created
    5. Recovery sweep: dispatch pending steps of running runs that have sat
       idle for a while (retried steps, steps left behind by a restart)

Completion handlers:
    generate_image completed → create and dispatch its generate_video step
    generate_video/voice completed → when the sub-product's clips (and voice)
        are all completed and merging is enabled, create and dispatch the
        merge_videos step
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.clients.base import ProviderState, ProviderStatus
from automation.clients.registry import ProviderRegistry
from automation.config import get_max_concurrent_dispatch
from automation.database import get_session_factory
from automation.models import (
    HALTED_RUN_STATUSES,
    AutomationRun,
    AutomationRunStep,
    LogLevel,
    RunStatus,
    StepStatus,
    StepType,
    utcnow,
)
from automation.services.merge_command import Clip
from automation.services.run_log import append_log
from automation.services.run_status import (
    alert_if_failed,
    load_config,
    load_sub_product_steps,
    lock_run,
    merge_readiness,
    settle_run,
)
from automation.services.step_dispatcher import StepDispatcher
from automation.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Generation failed without an error message from the provider"
DEFAULT_PENDING_GRACE = timedelta(minutes=2)


@dataclass
class PollSummary:
    """Counters for one poll tick."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_running: int = 0
    errors: int = 0
    dispatched: int = 0
    recovered: int = 0


@dataclass(frozen=True)
class _RunningStep:
    id: uuid.UUID
    run_id: uuid.UUID
    step_type: StepType
    external_task_id: str


class StatusPoller:
    """Resolves running steps against their providers.

    Args:
        providers: Provider registry
        session_factory: Session factory; defaults to the process-wide one
        dispatcher: Dispatcher for follow-up steps; built when omitted
        pending_grace: Minimum idle time before the recovery sweep
            re-dispatches a pending step
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dispatcher: StepDispatcher | None = None,
        pending_grace: timedelta = DEFAULT_PENDING_GRACE,
    ) -> None:
        self.providers = providers
        self.session_factory = session_factory or get_session_factory()
        self.dispatcher = dispatcher or StepDispatcher(providers, self.session_factory)
        self.pending_grace = pending_grace

    async def poll(self) -> PollSummary:
        """Run one poll tick."""
        summary = PollSummary()
        running_steps = await self._load_running_steps()
        semaphore = asyncio.Semaphore(get_max_concurrent_dispatch())

        async def _check(step: _RunningStep) -> None:
            async with semaphore:
                try:
                    await self._check_step(step, summary)
                except Exception as e:
                    summary.errors += 1
                    log.error(
                        "step_status_check_failed",
                        step_id=str(step.id),
                        external_task_id=step.external_task_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

        await asyncio.gather(*[_check(step) for step in running_steps])

        recovery = await self.dispatcher.dispatch_many(await self._load_stale_pending_steps())
        summary.recovered = recovery.dispatched

        log.info(
            "poll_completed",
            checked=summary.checked,
            completed=summary.completed,
            failed=summary.failed,
            still_running=summary.still_running,
            errors=summary.errors,
            dispatched=summary.dispatched,
            recovered=summary.recovered,
        )
        return summary

    async def _load_running_steps(self) -> list[_RunningStep]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    AutomationRunStep.id,
                    AutomationRunStep.run_id,
                    AutomationRunStep.step_type,
                    AutomationRunStep.external_task_id,
                )
                .join(AutomationRun, AutomationRun.id == AutomationRunStep.run_id)
                .where(
                    AutomationRunStep.status == StepStatus.RUNNING,
                    AutomationRunStep.external_task_id.is_not(None),
                    AutomationRun.status.not_in(HALTED_RUN_STATUSES),
                )
                .order_by(AutomationRunStep.created_at)
            )
            return [_RunningStep(*row) for row in result.all()]

    async def _load_stale_pending_steps(self) -> list[uuid.UUID]:
        idle_since = utcnow() - self.pending_grace
        async with self.session_factory() as session:
            result = await session.execute(
                select(AutomationRunStep.id)
                .join(AutomationRun, AutomationRun.id == AutomationRunStep.run_id)
                .where(
                    AutomationRunStep.status == StepStatus.PENDING,
                    AutomationRunStep.external_task_id.is_(None),
                    AutomationRunStep.updated_at <= idle_since,
                    AutomationRun.status == RunStatus.RUNNING,
                )
                .order_by(AutomationRunStep.created_at)
            )
            return list(result.scalars().all())

    async def _check_step(self, running: _RunningStep, summary: PollSummary) -> None:
        provider = self.providers.for_step(running.step_type)
        status = await provider.get_status(running.external_task_id)
        summary.checked += 1

        if not status.is_terminal:
            summary.still_running += 1
            return

        follow_up_ids: list[uuid.UUID] = []
        settled = False

        async with self.session_factory() as session, session.begin():
            run = await lock_run(session, running.run_id)
            step = await session.get(AutomationRunStep, running.id)
            if (
                run.status in HALTED_RUN_STATUSES
                or step.status != StepStatus.RUNNING
                or step.external_task_id != running.external_task_id
            ):
                log.info("step_resolution_skipped", step_id=str(step.id), status=step.status.value)
                return

            if status.state == ProviderState.COMPLETED and status.result_url:
                step.mark_completed(status.result_url)
                append_log(
                    session,
                    run.id,
                    f"{step.step_type.value} completed",
                    LogLevel.SUCCESS,
                    step_id=step.id,
                    metadata={"url": status.result_url},
                )
                summary.completed += 1
                follow_up_ids = await self._on_step_completed(session, run, step)
            else:
                error = self._failure_message(status)
                step.mark_failed(error)
                append_log(
                    session,
                    run.id,
                    f"{step.step_type.value} failed: {error}",
                    LogLevel.ERROR,
                    step_id=step.id,
                )
                summary.failed += 1

            settled = await settle_run(session, run)

        if settled:
            await alert_if_failed(run)

        if follow_up_ids:
            dispatched = await self.dispatcher.dispatch_many(follow_up_ids)
            summary.dispatched += dispatched.dispatched

    def _failure_message(self, status: ProviderStatus) -> str:
        if status.state == ProviderState.COMPLETED:
            return "Provider reported success without a result URL"
        return status.error or DEFAULT_FAILURE_MESSAGE

    async def _on_step_completed(
        self, session: AsyncSession, run: AutomationRun, step: AutomationRunStep
    ) -> list[uuid.UUID]:
        """Create the next pipeline step(s); returns ids to dispatch."""
        if step.step_type == StepType.GENERATE_IMAGE:
            video_step = AutomationRunStep(
                run_id=run.id,
                sub_product_id=step.sub_product_id,
                step_type=StepType.GENERATE_VIDEO,
                status=StepStatus.PENDING,
                input_data={
                    "source_image_step_id": str(step.id),
                    "image_url": step.result_url,
                    "image_prompt": step.input_data.get("prompt"),
                    "sequence_number": step.sequence_number,
                },
            )
            session.add(video_step)
            await session.flush()
            append_log(
                session,
                run.id,
                f"Queued video for image {step.sequence_number}",
                step_id=video_step.id,
            )
            return [video_step.id]

        if step.step_type in (StepType.GENERATE_VIDEO, StepType.GENERATE_VOICE):
            merge_step = await self._create_merge_step(session, run, step)
            return [merge_step.id] if merge_step else []

        return []

    async def _create_merge_step(
        self, session: AsyncSession, run: AutomationRun, step: AutomationRunStep
    ) -> AutomationRunStep | None:
        config = await load_config(session, run.channel_id)
        if config is None or not config.merge_videos_enabled:
            return None

        siblings = await load_sub_product_steps(session, run.id, step.sub_product_id)
        if any(
            s.step_type == StepType.MERGE_VIDEOS and s.status != StepStatus.CANCELLED
            for s in siblings
        ):
            return None

        readiness = merge_readiness(siblings)
        if not readiness.ready:
            log.debug(
                "merge_not_ready",
                run_id=str(run.id),
                sub_product_id=str(step.sub_product_id),
                detail=readiness.detail,
            )
            return None

        video_urls = [video.result_url for video in readiness.video_steps]
        clips = [
            Clip(
                url=video.result_url,
                duration=float(video.input_data.get("duration") or config.video_duration_seconds),
            )
            for video in readiness.video_steps
        ]
        merge_step = AutomationRunStep(
            run_id=run.id,
            sub_product_id=step.sub_product_id,
            step_type=StepType.MERGE_VIDEOS,
            status=StepStatus.PENDING,
            input_data={
                "video_urls": video_urls,
                "clips": [clip.to_dict() for clip in clips],
                "audio_url": readiness.voice_step.result_url if readiness.voice_step else None,
                "transition": config.transition,
                "transition_duration": config.transition_duration_seconds,
            },
        )
        session.add(merge_step)
        await session.flush()
        append_log(
            session,
            run.id,
            f"All {len(video_urls)} clip(s) ready, queued merge",
            step_id=merge_step.id,
        )
        return merge_step

"""Run state queries shared by the dispatcher, the poller and the coordinator.

settle_run():
    A running run is finished once none of its steps is pending or running:
    failed when any step failed, completed otherwise.

merge_readiness():
    A sub-product is ready to merge when every image step completed, each
    image has a completed video, and the voice step (when there is one)
    completed.

Callers hold the run row lock (lock_run) while calling these so concurrent
step resolutions of one run are serialized.
"""

import uuid
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from automation.exceptions import RunNotFound
from automation.models import (
    AutomationConfig,
    AutomationRun,
    AutomationRunStep,
    LogLevel,
    RunStatus,
    StepStatus,
    StepType,
)
from automation.services.run_log import append_log
from automation.utils.alerts import notify_run_failed
from automation.utils.logging import get_logger

log = get_logger(__name__)


async def lock_run(session: AsyncSession, run_id: uuid.UUID) -> AutomationRun:
    """Load a run with a row lock (SELECT ... FOR UPDATE on PostgreSQL).

    Raises:
        RunNotFound: If the run does not exist.
    """
    run = await session.scalar(
        select(AutomationRun).where(AutomationRun.id == run_id).with_for_update()
    )
    if run is None:
        raise RunNotFound(run_id)
    return run


async def load_config(session: AsyncSession, channel_id: uuid.UUID) -> AutomationConfig | None:
    return await session.scalar(
        select(AutomationConfig).where(AutomationConfig.channel_id == channel_id)
    )


async def settle_run(session: AsyncSession, run: AutomationRun) -> bool:
    """Finish a running run whose steps are all resolved.

    Only runs in RUNNING are settled; starting runs are settled by the
    coordinator once its initial dispatch is over.

    Returns:
        True if the run reached a terminal status.
    """
    if run.status != RunStatus.RUNNING:
        return False

    rows = await session.execute(
        select(AutomationRunStep.status, func.count(AutomationRunStep.id))
        .where(AutomationRunStep.run_id == run.id)
        .group_by(AutomationRunStep.status)
    )
    counts = {status: count for status, count in rows.all()}

    if counts.get(StepStatus.PENDING, 0) or counts.get(StepStatus.RUNNING, 0):
        return False

    failed = counts.get(StepStatus.FAILED, 0)
    if failed:
        run.finish(RunStatus.FAILED)
        append_log(
            session,
            run.id,
            f"Automation run failed: {failed} step(s) failed",
            LogLevel.ERROR,
        )
    else:
        run.finish(RunStatus.COMPLETED)
        append_log(
            session,
            run.id,
            f"Automation run completed ({counts.get(StepStatus.COMPLETED, 0)} steps)",
            LogLevel.SUCCESS,
        )

    log.info("run_settled", run_id=str(run.id), status=run.status.value, failed_steps=failed)
    return True


async def alert_if_failed(run: AutomationRun, reason: str | None = None) -> None:
    """Send a webhook alert for a run that just failed."""
    if run.status != RunStatus.FAILED:
        return
    await notify_run_failed(run.id, run.channel_id, run.trigger_type.value, reason=reason)


async def load_sub_product_steps(
    session: AsyncSession, run_id: uuid.UUID, sub_product_id: uuid.UUID
) -> list[AutomationRunStep]:
    result = await session.execute(
        select(AutomationRunStep)
        .where(
            AutomationRunStep.run_id == run_id,
            AutomationRunStep.sub_product_id == sub_product_id,
        )
        .order_by(AutomationRunStep.created_at)
    )
    return list(result.scalars().all())


@dataclass
class MergeReadiness:
    """Outcome of merge_readiness().

    Attributes:
        ready: All prerequisites completed.
        detail: Why not, when not ready.
        video_steps: Completed video steps in sequence order (when ready).
        voice_step: Completed voice step, if the sub-product has one.
    """

    ready: bool
    detail: str | None = None
    video_steps: list[AutomationRunStep] = field(default_factory=list)
    voice_step: AutomationRunStep | None = None


def merge_readiness(steps: list[AutomationRunStep]) -> MergeReadiness:
    """Check whether one sub-product's clips (and voice) are all done.

    Args:
        steps: Every step of the run for one sub-product.
    """
    images = [
        s
        for s in steps
        if s.step_type == StepType.GENERATE_IMAGE and s.status != StepStatus.CANCELLED
    ]
    if not images:
        return MergeReadiness(False, "no image steps")

    videos_by_source = {
        str(s.input_data.get("source_image_step_id")): s
        for s in steps
        if s.step_type == StepType.GENERATE_VIDEO
    }

    video_steps = []
    for image in images:
        if image.status != StepStatus.COMPLETED:
            return MergeReadiness(False, f"image {image.sequence_number} is {image.status.value}")
        video = videos_by_source.get(str(image.id))
        if video is None:
            return MergeReadiness(False, f"image {image.sequence_number} has no video yet")
        if video.status != StepStatus.COMPLETED or not video.result_url:
            return MergeReadiness(False, f"video {video.sequence_number} is {video.status.value}")
        video_steps.append(video)

    voice_steps = [s for s in steps if s.step_type == StepType.GENERATE_VOICE]
    voice_step = voice_steps[-1] if voice_steps else None
    if voice_step is not None and voice_step.status != StepStatus.COMPLETED:
        return MergeReadiness(False, f"voice is {voice_step.status.value}")

    video_steps.sort(key=lambda s: s.sequence_number)
    return MergeReadiness(True, video_steps=video_steps, voice_step=voice_step)

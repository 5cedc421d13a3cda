"""Step Dispatcher: submit one pending step to its generation provider.

Architecture Pattern (short transactions):
    1. Load step, run, config and sub-product, check prerequisites (txn 1)
    2. Build the job and call providers with NO transaction open
    3. Record the external task id or the failure (txn 2)

A step that is submitted successfully becomes running with its external task
id. Any failure while building or submitting the job fails the step and
settles the run. A step whose prerequisites are not completed stays pending
and DependencyNotReady is raised to the caller.

Usage:
    dispatcher = StepDispatcher(providers)
    step = await dispatcher.dispatch(step_id)
    await dispatcher.dispatch_many(step_ids)
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.clients.base import JobSpec
from automation.clients.registry import ProviderRegistry
from automation.config import get_max_concurrent_dispatch
from automation.database import get_session_factory
from automation.exceptions import (
    AutomationError,
    ConfigurationMissing,
    DependencyNotReady,
    ProviderError,
    StepNotFound,
)
from automation.models import (
    ACTIVE_RUN_STATUSES,
    AutomationConfig,
    AutomationRun,
    AutomationRunStep,
    LogLevel,
    StepStatus,
    StepType,
    SubProduct,
)
from automation.services.merge_command import Clip, build_merge_command
from automation.services.run_log import append_log
from automation.services.run_status import (
    alert_if_failed,
    load_config,
    load_sub_product_steps,
    lock_run,
    merge_readiness,
    settle_run,
)
from automation.utils.logging import get_logger
from automation.utils.templates import replace_placeholders

log = get_logger(__name__)


@dataclass
class DispatchContext:
    """Everything loaded in the first transaction (detached afterwards)."""

    step: AutomationRunStep
    run: AutomationRun
    config: AutomationConfig | None
    sub_product: SubProduct | None


@dataclass
class DispatchSummary:
    """Outcome counters for dispatch_many.

    dispatched counts steps that were submitted and are now running; failed
    counts steps whose submission was recorded as a failure; skipped counts
    steps that were not pending (or whose run was no longer active).
    """

    dispatched: int = 0
    failed: int = 0
    skipped: int = 0
    not_ready: int = 0
    errors: int = 0


class StepDispatcher:
    """Submits pending steps to their providers.

    Args:
        providers: Provider registry (StepType → provider, text generator)
        session_factory: Session factory; defaults to the process-wide one
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.providers = providers
        self.session_factory = session_factory or get_session_factory()

    async def dispatch(self, step_id: uuid.UUID) -> AutomationRunStep | None:
        """Submit one step.

        Returns:
            The step after recording the outcome, or None when the step was
            skipped (not pending, or its run is no longer active).

        Raises:
            StepNotFound: Unknown step id.
            DependencyNotReady: Prerequisite steps are not completed; the step
                stays pending and a WARN entry is logged.
        """
        not_ready: DependencyNotReady | None = None

        # Transaction 1: load and check prerequisites
        async with self.session_factory() as session, session.begin():
            context = await self._load_context(session, step_id)
            if context is None:
                return None
            try:
                await self._check_dependencies(session, context)
            except DependencyNotReady as e:
                append_log(session, context.run.id, str(e), LogLevel.WARN, step_id=step_id)
                not_ready = e

        if not_ready is not None:
            raise not_ready

        # No transaction open: provider calls may take seconds
        input_updates: dict[str, Any] = {}

        try:
            job = await self._build_job(context, input_updates)
            provider = self.providers.for_step(context.step.step_type)
            external_id = await provider.submit(job)
        except Exception as e:
            log.error(
                "step_dispatch_failed",
                step_id=str(step_id),
                step_type=context.step.step_type.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=not isinstance(e, AutomationError),
            )
            return await self._record_failure(context, e, input_updates)

        return await self._record_submission(context, external_id, input_updates, provider.name)

    async def dispatch_many(self, step_ids: list[uuid.UUID]) -> DispatchSummary:
        """Dispatch steps concurrently, bounded by MAX_CONCURRENT_DISPATCH.

        One step's failure never affects another; DependencyNotReady is
        counted, not raised.
        """
        summary = DispatchSummary()
        semaphore = asyncio.Semaphore(get_max_concurrent_dispatch())

        async def _dispatch_one(step_id: uuid.UUID) -> None:
            async with semaphore:
                try:
                    step = await self.dispatch(step_id)
                    if step is not None and step.status == StepStatus.RUNNING:
                        summary.dispatched += 1
                    elif step is not None and step.status == StepStatus.FAILED:
                        summary.failed += 1
                    else:
                        summary.skipped += 1
                except DependencyNotReady:
                    summary.not_ready += 1
                except Exception as e:
                    summary.errors += 1
                    log.error(
                        "step_dispatch_error",
                        step_id=str(step_id),
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )

        await asyncio.gather(*[_dispatch_one(step_id) for step_id in step_ids])
        return summary

    async def _load_context(
        self, session: AsyncSession, step_id: uuid.UUID
    ) -> DispatchContext | None:
        step = await session.get(AutomationRunStep, step_id)
        if step is None:
            raise StepNotFound(step_id)

        run = await session.get(AutomationRun, step.run_id)
        if step.status != StepStatus.PENDING:
            log.info("step_dispatch_skipped", step_id=str(step_id), status=step.status.value)
            return None
        if run is None or run.status not in ACTIVE_RUN_STATUSES:
            log.info(
                "step_dispatch_skipped_inactive_run",
                step_id=str(step_id),
                run_status=run.status.value if run else None,
            )
            return None

        return DispatchContext(
            step=step,
            run=run,
            config=await load_config(session, run.channel_id),
            sub_product=await session.get(SubProduct, step.sub_product_id),
        )

    async def _check_dependencies(self, session: AsyncSession, context: DispatchContext) -> None:
        step = context.step

        if step.step_type == StepType.GENERATE_VIDEO:
            source_id = step.input_data.get("source_image_step_id")
            source = (
                await session.get(AutomationRunStep, uuid.UUID(str(source_id)))
                if source_id
                else None
            )
            if source is None:
                raise DependencyNotReady(step.id, "source image step is missing")
            if source.status != StepStatus.COMPLETED or not source.result_url:
                raise DependencyNotReady(
                    step.id, f"source image step is {source.status.value}"
                )

        elif step.step_type == StepType.MERGE_VIDEOS:
            siblings = await load_sub_product_steps(session, step.run_id, step.sub_product_id)
            readiness = merge_readiness(siblings)
            if not readiness.ready:
                raise DependencyNotReady(step.id, readiness.detail or "clips are not ready")

    async def _build_job(self, context: DispatchContext, input_updates: dict[str, Any]) -> JobSpec:
        """Turn a step into a provider job; generated text goes into input_updates."""
        step = context.step
        config = context.config
        if config is None:
            raise ConfigurationMissing(context.run.channel_id)
        data = step.input_data or {}

        if step.step_type == StepType.GENERATE_IMAGE:
            return JobSpec(
                step_type=step.step_type,
                prompt=data.get("prompt"),
                image_urls=list(data.get("image_urls") or []),
                aspect_ratio=data.get("aspect_ratio") or config.aspect_ratio,
            )

        if step.step_type == StepType.GENERATE_VIDEO:
            prompt = data.get("prompt")
            if not prompt:
                prompt = await self._generate_video_prompt(context)
                input_updates["prompt"] = prompt
            duration = data.get("duration") or config.video_duration_seconds
            input_updates.setdefault("duration", duration)
            return JobSpec(
                step_type=step.step_type,
                prompt=prompt,
                image_urls=[url for url in [data.get("image_url")] if url],
                duration=duration,
            )

        if step.step_type == StepType.GENERATE_VOICE:
            script = data.get("script")
            if not script:
                script = await self.providers.text_generator.generate(
                    replace_placeholders(config.voice_script_template, self._product_values(context))
                )
                input_updates["script"] = script
            return JobSpec(
                step_type=step.step_type,
                text=script,
                voice_id=data.get("voice_id") or config.voice_id,
            )

        if step.step_type == StepType.MERGE_VIDEOS:
            clips = [Clip.from_dict(clip) for clip in data.get("clips") or []]
            if not clips:
                clips = [
                    Clip(url=url, duration=config.video_duration_seconds)
                    for url in data.get("video_urls") or []
                ]
            command = build_merge_command(
                clips,
                transition=data.get("transition") or config.transition,
                transition_duration=float(
                    data.get("transition_duration") or config.transition_duration_seconds
                ),
                audio_url=data.get("audio_url"),
            )
            input_updates["ffmpeg_command"] = command.ffmpeg_command
            return JobSpec(
                step_type=step.step_type,
                input_files=command.input_files,
                output_files=command.output_files,
                ffmpeg_command=command.ffmpeg_command,
            )

        raise ValueError(f"Unknown step type: {step.step_type}")

    def _product_values(self, context: DispatchContext) -> dict[str, Any]:
        sub_product = context.sub_product
        return {
            "product_name": sub_product.name if sub_product else None,
            "product_description": sub_product.description if sub_product else None,
        }

    async def _generate_video_prompt(self, context: DispatchContext) -> str:
        """Beautify the image prompt into a motion prompt.

        Without a video template the image prompt is used as is.
        """
        image_prompt = context.step.input_data.get("image_prompt") or ""
        template = context.config.video_prompt_template if context.config else None
        if not template:
            return image_prompt
        values = {**self._product_values(context), "image_prompt": image_prompt}
        return await self.providers.text_generator.generate(
            replace_placeholders(template, values)
        )

    async def _record_submission(
        self,
        context: DispatchContext,
        external_id: str,
        input_updates: dict[str, Any],
        provider_name: str,
    ) -> AutomationRunStep:
        async with self.session_factory() as session, session.begin():
            await lock_run(session, context.run.id)
            step = await session.get(AutomationRunStep, context.step.id)
            if step.status != StepStatus.PENDING:
                # Stopped (or otherwise resolved) while the provider call was in flight
                append_log(
                    session,
                    step.run_id,
                    f"Job {external_id} was submitted but the step is now {step.status.value}",
                    LogLevel.WARN,
                    step_id=step.id,
                )
                return step

            if input_updates:
                step.input_data = {**step.input_data, **input_updates}
            step.mark_running(external_id)
            append_log(
                session,
                step.run_id,
                f"Submitted {step.step_type.value} to {provider_name} (task {external_id})",
                LogLevel.SUCCESS,
                step_id=step.id,
                metadata={"external_task_id": external_id},
            )

        log.info(
            "step_dispatched",
            step_id=str(step.id),
            step_type=step.step_type.value,
            external_task_id=external_id,
        )
        return step

    async def _record_failure(
        self, context: DispatchContext, error: Exception, input_updates: dict[str, Any]
    ) -> AutomationRunStep:
        message = str(error) or type(error).__name__
        metadata = None
        if isinstance(error, ProviderError) and error.response_body:
            metadata = {"response": error.response_body}

        async with self.session_factory() as session, session.begin():
            run = await lock_run(session, context.run.id)
            step = await session.get(AutomationRunStep, context.step.id)
            if step.status != StepStatus.PENDING:
                return step

            if input_updates:
                step.input_data = {**step.input_data, **input_updates}
            step.mark_failed(message)
            append_log(
                session,
                run.id,
                f"{step.step_type.value} failed: {message}",
                LogLevel.ERROR,
                step_id=step.id,
                metadata=metadata,
            )
            settled = await settle_run(session, run)

        if settled:
            await alert_if_failed(run)
        return step

"""Run Coordinator: create a run, plan its steps and dispatch them.

Workflow:
    1. Validate the channel (config, linked product, sub-products) and insert
       the run in "starting" (txn 1)
    2. Create the initial steps per sub-product (txn 2)
    3. Dispatch every initial step concurrently, each in its own short
       transaction (no waiting for job completion)
    4. Move the run to "running" and settle it (txn 3)

Single Active Run:
    A channel with a run in starting/running cannot start another one. The
    pre-check gives a clean error; the partial unique index on
    automation_runs(channel_id) catches the race between two callers.

Any error after the run row exists (planning, fan-out or the move to
running) marks the run failed (finished_at set, ERROR log entry) and is
re-raised.
"""

import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.clients.registry import ProviderRegistry
from automation.database import get_session_factory
from automation.exceptions import (
    ConfigurationMissing,
    InvalidStateTransitionError,
    NoTargets,
    RunAlreadyActive,
    RunNotFound,
)
from automation.models import (
    ACTIVE_RUN_STATUSES,
    ACTIVE_STEP_STATUSES,
    AutomationConfig,
    AutomationRun,
    AutomationRunStep,
    Channel,
    LogLevel,
    RunStatus,
    StepStatus,
    StepType,
    SubProduct,
    TriggerType,
)
from automation.services.run_log import append_log
from automation.services.run_status import alert_if_failed, load_config, lock_run, settle_run
from automation.services.step_dispatcher import StepDispatcher
from automation.utils.logging import get_logger
from automation.utils.templates import replace_placeholders

log = get_logger(__name__)


class RunCoordinator:
    """Starts and stops automation runs.

    Args:
        providers: Provider registry handed to the dispatcher
        session_factory: Session factory; defaults to the process-wide one
        dispatcher: Step dispatcher; built from providers when omitted
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dispatcher: StepDispatcher | None = None,
    ) -> None:
        self.session_factory = session_factory or get_session_factory()
        self.dispatcher = dispatcher or StepDispatcher(providers, self.session_factory)

    async def start_run(
        self,
        channel_id: uuid.UUID,
        user_id: str | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> AutomationRun:
        """Create a run for a channel and dispatch its initial steps.

        Args:
            channel_id: Channel to automate
            user_id: Acting user (config owner for auto runs)
            trigger_type: MANUAL or AUTO

        Returns:
            The run after initial dispatch (running, or already finished when
            every initial dispatch failed).

        Raises:
            RunAlreadyActive: The channel already has a starting/running run.
            ConfigurationMissing: The channel has no AutomationConfig.
            NoTargets: No linked product, or the product has no sub-products.
        """
        # Transaction 1: validate and insert the run
        async with self.session_factory() as session, session.begin():
            await self._ensure_no_active_run(session, channel_id)
            config = await load_config(session, channel_id)
            if config is None:
                raise ConfigurationMissing(channel_id)
            channel = await session.get(Channel, channel_id)
            if channel is None or channel.product_id is None:
                raise NoTargets(channel_id, "channel is not linked to a product")
            sub_products = await self._load_sub_products(session, channel.product_id)
            if not sub_products:
                raise NoTargets(channel_id)

            run = AutomationRun(
                channel_id=channel_id,
                user_id=user_id,
                status=RunStatus.STARTING,
                trigger_type=trigger_type,
            )
            session.add(run)
            try:
                await session.flush()
            except IntegrityError as e:
                raise RunAlreadyActive(channel_id) from e
            append_log(
                session,
                run.id,
                f"Automation run created ({trigger_type.value}) for {len(sub_products)} "
                "sub-product(s)",
            )

        log.info(
            "run_created",
            run_id=str(run.id),
            channel_id=str(channel_id),
            trigger_type=trigger_type.value,
            sub_products=len(sub_products),
        )

        # Transaction 2: plan the initial steps
        try:
            async with self.session_factory() as session, session.begin():
                steps = self._plan_steps(session, run, channel, config, sub_products)
                await session.flush()
                step_ids = [step.id for step in steps]
        except Exception as e:
            await self._fail_run(run.id, e)
            raise

        try:
            # Fan out; each dispatch records its own outcome
            summary = await self.dispatcher.dispatch_many(step_ids)

            # Transaction 3: starting → running, then settle
            async with self.session_factory() as session, session.begin():
                run = await lock_run(session, run.id)
                settled = False
                if run.status == RunStatus.STARTING:
                    run.status = RunStatus.RUNNING
                    append_log(
                        session,
                        run.id,
                        f"Dispatched {summary.dispatched} of {len(step_ids)} initial step(s)",
                    )
                    settled = await settle_run(session, run)
        except Exception as e:
            # Never leave the run in starting
            await self._fail_run(run.id, e)
            raise

        if settled:
            await alert_if_failed(run)

        log.info(
            "run_started",
            run_id=str(run.id),
            status=run.status.value,
            dispatched=summary.dispatched,
            errors=summary.errors,
        )
        return run

    async def stop_run(self, run_id: uuid.UUID) -> AutomationRun:
        """Stop a run: run → stopped, pending/running steps → cancelled.

        In-flight provider jobs are not cancelled at the provider; the poller
        ignores steps of stopped runs.

        Raises:
            RunNotFound: Unknown run id.
            InvalidStateTransitionError: The run already finished.
        """
        async with self.session_factory() as session, session.begin():
            run = await lock_run(session, run_id)
            if not run.is_active:
                raise InvalidStateTransitionError(
                    f"Run {run_id} already finished ({run.status.value})",
                    from_status=run.status,
                    to_status=RunStatus.STOPPED,
                )
            run.finish(RunStatus.STOPPED)

            result = await session.execute(
                select(AutomationRunStep).where(
                    AutomationRunStep.run_id == run_id,
                    AutomationRunStep.status.in_(ACTIVE_STEP_STATUSES),
                )
            )
            cancelled = 0
            for step in result.scalars().all():
                step.status = StepStatus.CANCELLED
                cancelled += 1

            append_log(
                session,
                run_id,
                f"Automation run stopped by request ({cancelled} step(s) cancelled)",
                LogLevel.WARN,
            )

        log.info("run_stopped", run_id=str(run_id), cancelled_steps=cancelled)
        return run

    async def get_run(self, run_id: uuid.UUID) -> AutomationRun:
        async with self.session_factory() as session:
            run = await session.get(AutomationRun, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def _ensure_no_active_run(self, session: AsyncSession, channel_id: uuid.UUID) -> None:
        active = await session.scalar(
            select(func.count(AutomationRun.id)).where(
                AutomationRun.channel_id == channel_id,
                AutomationRun.status.in_(ACTIVE_RUN_STATUSES),
            )
        )
        if active:
            raise RunAlreadyActive(channel_id)

    async def _load_sub_products(
        self, session: AsyncSession, product_id: uuid.UUID
    ) -> list[SubProduct]:
        result = await session.execute(
            select(SubProduct)
            .where(SubProduct.product_id == product_id)
            .order_by(SubProduct.created_at, SubProduct.name)
        )
        return list(result.scalars().all())

    def _plan_steps(
        self,
        session: AsyncSession,
        run: AutomationRun,
        channel: Channel,
        config: AutomationConfig,
        sub_products: list[SubProduct],
    ) -> list[AutomationRunStep]:
        """Create image (and voice) steps for every sub-product.

        Image prompts substitute {{product_name}}, {{product_description}},
        {{image_count}} and {{sequence_number}}.
        """
        image_count = max(1, config.image_count)
        steps = []

        for sub_product in sub_products:
            image_urls = [
                url for url in (channel.character_image_url, sub_product.image_url) if url
            ]
            for sequence_number in range(1, image_count + 1):
                prompt = replace_placeholders(
                    config.image_prompt_template,
                    {
                        "product_name": sub_product.name,
                        "product_description": sub_product.description,
                        "image_count": image_count,
                        "sequence_number": sequence_number,
                    },
                )
                steps.append(
                    AutomationRunStep(
                        run_id=run.id,
                        sub_product_id=sub_product.id,
                        step_type=StepType.GENERATE_IMAGE,
                        status=StepStatus.PENDING,
                        input_data={
                            "prompt": prompt,
                            "image_urls": image_urls,
                            "aspect_ratio": config.aspect_ratio,
                            "sequence_number": sequence_number,
                        },
                    )
                )

            if config.voice_enabled:
                steps.append(
                    AutomationRunStep(
                        run_id=run.id,
                        sub_product_id=sub_product.id,
                        step_type=StepType.GENERATE_VOICE,
                        status=StepStatus.PENDING,
                        input_data={"voice_id": config.voice_id},
                    )
                )

            append_log(
                session,
                run.id,
                f'Queued {image_count} image step(s) for "{sub_product.name}"'
                + (" plus voice" if config.voice_enabled else ""),
            )

        session.add_all(steps)
        return steps

    async def _fail_run(self, run_id: uuid.UUID, error: Exception) -> None:
        async with self.session_factory() as session, session.begin():
            run = await lock_run(session, run_id)
            if run.is_active:
                run.finish(RunStatus.FAILED)
            append_log(session, run_id, f"Automation run failed: {error}", LogLevel.ERROR)

        log.error(
            "run_start_failed",
            run_id=str(run_id),
            error=str(error),
            error_type=type(error).__name__,
        )
        await alert_if_failed(run, reason=str(error))

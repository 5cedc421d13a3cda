"""Automation trigger routes.

Endpoints:
- POST /api/v1/automation/channels/{channel_id}/runs - Start a manual run
- POST /api/v1/automation/runs/{run_id}/stop - Stop a run
- POST /api/v1/automation/steps/{step_id}/retry - Retry one failed step
- GET  /api/v1/automation/runs/{run_id} - Run with steps and log entries
- POST /api/v1/cron/auto-run - Auto-trigger tick (Bearer CRON_SECRET)
- POST /api/v1/cron/poll - Status poll tick (Bearer CRON_SECRET)

Error Mapping:
    RunNotFound / StepNotFound → 404
    RunAlreadyActive / NotFailed / InvalidStateTransitionError → 409
    ConfigurationMissing / NoTargets → 422
    Missing or wrong cron secret → 401
"""

import hmac
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.clients.registry import ProviderRegistry
from automation.config import get_cron_secret
from automation.database import get_session_factory
from automation.exceptions import (
    AutomationError,
    ConfigurationMissing,
    DependencyNotReady,
    InvalidStateTransitionError,
    NoTargets,
    NotFailed,
    RunAlreadyActive,
    RunNotFound,
    StepNotFound,
)
from automation.models import AutomationRun, AutomationRunLog, AutomationRunStep
from automation.schemas.run import (
    AutoRunResponse,
    ChannelTriggerResponse,
    LogEntryResponse,
    PollResponse,
    RunDetailResponse,
    RunResponse,
    StepResponse,
)
from automation.services.auto_scheduler import AutoScheduler
from automation.services.retry_controller import RetryController
from automation.services.run_coordinator import RunCoordinator
from automation.services.status_poller import StatusPoller
from automation.services.step_dispatcher import StepDispatcher
from automation.utils.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/api/v1/automation", tags=["automation"])
cron_router = APIRouter(prefix="/api/v1/cron", tags=["cron"])

_STATUS_CODES: list[tuple[type[AutomationError], int]] = [
    (RunNotFound, status.HTTP_404_NOT_FOUND),
    (StepNotFound, status.HTTP_404_NOT_FOUND),
    (RunAlreadyActive, status.HTTP_409_CONFLICT),
    (NotFailed, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ConfigurationMissing, 422),
    (NoTargets, 422),
]


def _http_error(error: AutomationError) -> HTTPException:
    for error_cls, status_code in _STATUS_CODES:
        if isinstance(error, error_cls):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


def get_providers(request: Request) -> ProviderRegistry:
    """Provider registry created by the application lifespan."""
    return request.app.state.providers


def provide_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_coordinator(
    providers: ProviderRegistry = Depends(get_providers),
    session_factory: async_sessionmaker[AsyncSession] = Depends(provide_session_factory),
) -> RunCoordinator:
    return RunCoordinator(providers, session_factory)


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Require `Authorization: Bearer $CRON_SECRET` (always rejects when unset)."""
    secret = get_cron_secret()
    expected = f"Bearer {secret}" if secret else None
    if not expected or not authorization or not hmac.compare_digest(authorization, expected):
        log.warning("cron_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def _dispatch_in_background(dispatcher: StepDispatcher, step_id: uuid.UUID) -> None:
    try:
        await dispatcher.dispatch(step_id)
    except DependencyNotReady as e:
        log.info("retried_step_waiting_for_dependency", step_id=str(step_id), detail=str(e))


@router.post(
    "/channels/{channel_id}/runs",
    response_model=RunResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_run(
    channel_id: uuid.UUID,
    x_user_id: str | None = Header(default=None),
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> RunResponse:
    """Start a manual run for a channel.

    Returns:
        201 Created: Run started (initial steps dispatched)
        404/409/422: See module docstring
    """
    try:
        run = await coordinator.start_run(channel_id, user_id=x_user_id)
    except AutomationError as e:
        log.warning("manual_run_rejected", channel_id=str(channel_id), error=str(e))
        raise _http_error(e) from e
    return RunResponse.model_validate(run)


@router.post("/runs/{run_id}/stop", response_model=RunResponse)
async def stop_run(
    run_id: uuid.UUID, coordinator: RunCoordinator = Depends(get_coordinator)
) -> RunResponse:
    try:
        run = await coordinator.stop_run(run_id)
    except AutomationError as e:
        raise _http_error(e) from e
    return RunResponse.model_validate(run)


@router.post(
    "/steps/{step_id}/retry",
    response_model=StepResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_step(
    step_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    coordinator: RunCoordinator = Depends(get_coordinator),
    session_factory: async_sessionmaker[AsyncSession] = Depends(provide_session_factory),
) -> StepResponse:
    """Reset a failed step and dispatch it after the response is sent."""
    try:
        step = await RetryController(session_factory).retry_step(step_id)
    except AutomationError as e:
        raise _http_error(e) from e

    background_tasks.add_task(_dispatch_in_background, coordinator.dispatcher, step.id)
    return StepResponse.model_validate(step)


@router.get("/runs/{run_id}", response_model=RunDetailResponse)
async def get_run(
    run_id: uuid.UUID,
    session_factory: async_sessionmaker[AsyncSession] = Depends(provide_session_factory),
) -> RunDetailResponse:
    async with session_factory() as session:
        run = await session.get(AutomationRun, run_id)
        if run is None:
            raise _http_error(RunNotFound(run_id))
        steps = await session.scalars(
            select(AutomationRunStep)
            .where(AutomationRunStep.run_id == run_id)
            .order_by(AutomationRunStep.created_at)
        )
        logs = await session.scalars(
            select(AutomationRunLog)
            .where(AutomationRunLog.run_id == run_id)
            .order_by(AutomationRunLog.created_at)
        )
        return RunDetailResponse(
            **RunResponse.model_validate(run).model_dump(),
            steps=[StepResponse.model_validate(step) for step in steps.all()],
            logs=[LogEntryResponse.model_validate(entry) for entry in logs.all()],
        )


@cron_router.post(
    "/auto-run", response_model=AutoRunResponse, dependencies=[Depends(verify_cron_secret)]
)
async def cron_auto_run(
    coordinator: RunCoordinator = Depends(get_coordinator),
    session_factory: async_sessionmaker[AsyncSession] = Depends(provide_session_factory),
) -> AutoRunResponse:
    results = await AutoScheduler(coordinator, session_factory).tick()
    return AutoRunResponse(
        results=[
            ChannelTriggerResponse(
                channel_id=r.channel_id, outcome=r.outcome, reason=r.reason, run_id=r.run_id
            )
            for r in results
        ]
    )


@cron_router.post(
    "/poll", response_model=PollResponse, dependencies=[Depends(verify_cron_secret)]
)
async def cron_poll(
    providers: ProviderRegistry = Depends(get_providers),
    coordinator: RunCoordinator = Depends(get_coordinator),
    session_factory: async_sessionmaker[AsyncSession] = Depends(provide_session_factory),
) -> PollResponse:
    poller = StatusPoller(providers, session_factory, dispatcher=coordinator.dispatcher)
    summary = await poller.poll()
    return PollResponse(
        checked=summary.checked,
        completed=summary.completed,
        failed=summary.failed,
        still_running=summary.still_running,
        errors=summary.errors,
        dispatched=summary.dispatched,
        recovered=summary.recovered,
    )

"""Pydantic schemas for automation runs, steps and log entries.

Response schemas are built from ORM objects (from_attributes=True).

Schema Naming Convention:
    - RunResponse / StepResponse / LogEntryResponse: single objects
    - RunDetailResponse: run with its steps and log entries
    - PollResponse / AutoRunResponse: cron endpoint summaries
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from automation.models import LogLevel, RunStatus, StepStatus, StepType, TriggerType


class RunResponse(BaseModel):
    """Schema for an automation run."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    channel_id: UUID
    user_id: str | None = None
    status: RunStatus
    trigger_type: TriggerType
    started_at: datetime
    finished_at: datetime | None = None


class StepResponse(BaseModel):
    """Schema for one step of a run."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_id: UUID
    sub_product_id: UUID
    step_type: StepType
    status: StepStatus
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    external_task_id: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime


class LogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_id: UUID | None = None
    message: str
    level: LogLevel
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("log_metadata", "metadata"),
        description="Raw request/response excerpts attached to the entry",
    )
    created_at: datetime


class RunDetailResponse(RunResponse):
    """Run with its steps (creation order) and log entries (oldest first)."""

    steps: list[StepResponse] = Field(default_factory=list)
    logs: list[LogEntryResponse] = Field(default_factory=list)


class PollResponse(BaseModel):
    checked: int
    completed: int
    failed: int
    still_running: int
    errors: int
    dispatched: int
    recovered: int


class ChannelTriggerResponse(BaseModel):
    channel_id: UUID
    outcome: str = Field(..., description="started, skipped or error")
    reason: str | None = None
    run_id: UUID | None = None


class AutoRunResponse(BaseModel):
    results: list[ChannelTriggerResponse]

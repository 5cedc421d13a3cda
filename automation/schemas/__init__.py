"""Pydantic schemas for validation and serialization."""

from automation.schemas.run import (
    AutoRunResponse,
    ChannelTriggerResponse,
    LogEntryResponse,
    PollResponse,
    RunDetailResponse,
    RunResponse,
    StepResponse,
)

__all__ = [
    "AutoRunResponse",
    "ChannelTriggerResponse",
    "LogEntryResponse",
    "PollResponse",
    "RunDetailResponse",
    "RunResponse",
    "StepResponse",
]

"""Pipeline services for the automation orchestrator."""

from automation.services.auto_run_gate import GateDecision, RunHistory, evaluate_auto_run_gate
from automation.services.auto_scheduler import AutoScheduler, ChannelTriggerResult
from automation.services.merge_command import Clip, MergeCommand, build_merge_command
from automation.services.retry_controller import RetryController
from automation.services.run_coordinator import RunCoordinator
from automation.services.status_poller import PollSummary, StatusPoller
from automation.services.step_dispatcher import StepDispatcher

__all__ = [
    "AutoScheduler",
    "ChannelTriggerResult",
    "Clip",
    "GateDecision",
    "MergeCommand",
    "PollSummary",
    "RetryController",
    "RunCoordinator",
    "RunHistory",
    "StatusPoller",
    "StepDispatcher",
    "build_merge_command",
    "evaluate_auto_run_gate",
]

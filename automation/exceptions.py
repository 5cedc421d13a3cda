"""Shared exceptions for the automation orchestrator.

Every error the orchestrator raises on purpose derives from AutomationError so
the HTTP layer and the cron entry points can tell expected pipeline failures
apart from programming errors.

Errors raised while a Run is being created are surfaced to the caller.
Errors raised while dispatching or polling a Step are recorded on the Step
(error_message) and in the run log instead.
"""

from typing import Any


class AutomationError(Exception):
    """Base class for orchestrator errors."""

    pass


class ConfigurationError(AutomationError):
    """Raised when required environment configuration is missing.

    Example: RENDI_API_KEY is not set but a merge step has to be submitted.
    """

    pass


class ConfigurationMissing(AutomationError):
    """Raised when a channel has no AutomationConfig row."""

    def __init__(self, channel_id: Any):
        self.channel_id = channel_id
        super().__init__(f"Channel {channel_id} has no automation configuration")


class NoTargets(AutomationError):
    """Raised when a channel has no sub-products to generate content for."""

    def __init__(self, channel_id: Any, reason: str = "no sub-products found"):
        self.channel_id = channel_id
        super().__init__(f"Channel {channel_id} has nothing to automate: {reason}")


class RunAlreadyActive(AutomationError):
    """Raised when a channel already has a Run in starting or running."""

    def __init__(self, channel_id: Any):
        self.channel_id = channel_id
        super().__init__(f"Channel {channel_id} already has an active automation run")


class RunNotFound(AutomationError):
    """Raised when a Run id does not exist."""

    def __init__(self, run_id: Any):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class StepNotFound(AutomationError):
    """Raised when a Step id does not exist."""

    def __init__(self, step_id: Any):
        self.step_id = step_id
        super().__init__(f"Step {step_id} not found")


class ProviderError(AutomationError):
    """Base class for generation provider failures.

    Attributes:
        provider: Short provider name ("higgsfield", "rendi", ...).
        response_body: Raw response text when one was received (truncated).
    """

    def __init__(self, provider: str, message: str, response_body: str | None = None):
        self.provider = provider
        self.response_body = response_body
        super().__init__(f"{provider}: {message}")


class ProviderRejected(ProviderError):
    """Raised when a provider refuses a job (bad input, auth, malformed reply)."""

    pass


class ProviderUnavailable(ProviderError):
    """Raised on transport failures, timeouts and persistent 5xx/429 replies."""

    pass


class GenerationFailed(AutomationError):
    """Raised when the text-generation provider cannot produce text."""

    pass


class ClipTooShortForTransition(AutomationError):
    """Raised when a clip is not longer than the crossfade between clips.

    Detected while building the merge command, before anything is submitted
    to the media-processing provider.
    """

    def __init__(self, clip_index: int, clip_duration: float, transition_duration: float):
        self.clip_index = clip_index
        self.clip_duration = clip_duration
        self.transition_duration = transition_duration
        super().__init__(
            f"Clip {clip_index} lasts {clip_duration}s which does not exceed "
            f"the {transition_duration}s transition"
        )


class NotFailed(AutomationError):
    """Raised when retry is requested for a Step that is not failed."""

    def __init__(self, step_id: Any, status: str):
        self.step_id = step_id
        self.status = status
        super().__init__(f"Only failed steps can be retried (step {step_id} is {status})")


class DependencyNotReady(AutomationError):
    """Raised when a Step is dispatched before its prerequisite Steps completed."""

    def __init__(self, step_id: Any, detail: str):
        self.step_id = step_id
        super().__init__(f"Step {step_id} is not ready: {detail}")


class InvalidStateTransitionError(AutomationError):
    """Raised when a Run or Step status change is not allowed.

    The allowed transitions live on the models (AutomationRun.VALID_TRANSITIONS
    and AutomationRunStep.VALID_TRANSITIONS) and are enforced by @validates.

    Attributes:
        from_status: Status before the attempted change.
        to_status: Status that was rejected.
    """

    def __init__(self, message: str, from_status: Any, to_status: Any):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"

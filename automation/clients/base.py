"""Generation provider contract and shared HTTP plumbing.

Every external generation API is reached through the same small contract:

    external_id = await provider.submit(job)         # start a job
    status = await provider.get_status(external_id)  # poll it later
    await provider.close()

Providers never wait for a job to finish. The Status Poller calls
get_status() on a schedule and resolves the step once the state is terminal.

HttpProvider implements the transport side once:
- Per-provider rate limit via AsyncLimiter
- Automatic retry with exponential backoff for transient errors (429, 5xx, timeouts)
- Error classification into ProviderRejected (fail the step now) and
  ProviderUnavailable (transient problem that outlived the retries)
"""

import abc
import enum
from dataclasses import dataclass, field
from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from automation.config import get_provider_timeout
from automation.exceptions import ProviderRejected, ProviderUnavailable
from automation.models import StepType
from automation.utils.logging import get_logger

log = get_logger(__name__)

RETRIABLE_STATUS_CODES = [429, 500, 502, 503, 504]


class ProviderState(enum.Enum):
    """Normalized job state reported by a provider."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderStatus:
    """Result of one status check.

    Attributes:
        state: Normalized job state.
        result_url: Output location, set when state is COMPLETED.
        error: Provider error text, set when state is FAILED (may be None).
    """

    state: ProviderState
    result_url: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProviderState.COMPLETED, ProviderState.FAILED)


@dataclass(frozen=True)
class JobSpec:
    """Provider-agnostic description of one generation job.

    Only the fields relevant to step_type are read by a provider:
        generate_image: prompt, image_urls, aspect_ratio
        generate_video: prompt, image_urls[0], duration
        generate_voice: text, voice_id
        merge_videos: input_files, output_files, ffmpeg_command
    """

    step_type: StepType
    prompt: str | None = None
    image_urls: list[str] = field(default_factory=list)
    aspect_ratio: str | None = None
    duration: float | None = None
    text: str | None = None
    voice_id: str | None = None
    input_files: dict[str, str] = field(default_factory=dict)
    output_files: dict[str, str] = field(default_factory=dict)
    ffmpeg_command: str | None = None


class GenerationProvider(abc.ABC):
    """Submit-and-poll contract implemented by every generation API client."""

    name: str = "provider"

    @abc.abstractmethod
    async def submit(self, job: JobSpec) -> str:
        """Start a job and return its external task id.

        Raises:
            ProviderRejected: The provider refused the job or replied malformed.
            ProviderUnavailable: Transport failure or persistent 5xx/429.
            ConfigurationError: Credentials for the provider are not configured.
        """

    @abc.abstractmethod
    async def get_status(self, external_id: str) -> ProviderStatus:
        """Report the current state of a previously submitted job."""

    async def close(self) -> None:
        """Release network resources."""
        return None


class TextGenerator(abc.ABC):
    """Prompt-in, text-out contract used for prompt and script generation."""

    @abc.abstractmethod
    async def generate(self, prompt: str) -> str:
        """Generate text for prompt.

        Raises:
            GenerationFailed: The provider produced no usable text.
        """

    async def close(self) -> None:
        return None


def _is_retriable_error(exception: BaseException) -> bool:
    """Determine if an error should trigger retry logic.

    Returns:
        True for 429/5xx responses, timeouts and connection failures.
    """
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRIABLE_STATUS_CODES
    return isinstance(exception, httpx.TransportError)


class HttpProvider:
    """httpx-based transport shared by the concrete provider clients.

    Attributes:
        name: Provider name used in logs and error messages.
        base_url: API root without trailing slash.
        client: Async HTTP client (timeout from PROVIDER_TIMEOUT_SECONDS).
        rate_limiter: Requests per second allowed for this provider.
    """

    name = "http"

    def __init__(self, base_url: str, max_rate: float = 5, time_period: float = 1) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=get_provider_timeout())
        self.rate_limiter = AsyncLimiter(max_rate=max_rate, time_period=time_period)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute URL
            **kwargs: Passed to httpx.AsyncClient.request (json, data, headers)

        Raises:
            ProviderRejected: Non-retriable 4xx, or a body that is not JSON
            ProviderUnavailable: Retriable failure still failing after 3 attempts
        """
        url = self._url(path)
        try:
            response = await self._request_with_retry(method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            body = e.response.text[:500]
            log.warning(
                "provider_http_error",
                provider=self.name,
                method=method,
                url=url,
                status_code=status_code,
                response=body,
            )
            error_cls = (
                ProviderUnavailable if status_code in RETRIABLE_STATUS_CODES else ProviderRejected
            )
            raise error_cls(self.name, f"{method} {url} returned {status_code}", body) from e
        except httpx.HTTPError as e:
            log.warning(
                "provider_transport_error",
                provider=self.name,
                method=method,
                url=url,
                error_type=type(e).__name__,
            )
            raise ProviderUnavailable(self.name, f"{method} {url} failed: {e!r}") from e

        try:
            return response.json()
        except ValueError as e:
            raise ProviderRejected(
                self.name, f"{method} {url} returned a non-JSON body", response.text[:500]
            ) from e

    @retry(
        retry=retry_if_exception(_is_retriable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self.rate_limiter:
            response = await self.client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()

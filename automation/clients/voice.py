"""Text-to-speech client.

Voice jobs are asynchronous tasks on the TTS API:

    POST v1m/task/text-to-speech  {text, model, voice_setting} → {task_id}
    GET  v1/task/{task_id}        → {status, metadata: {audio_url}, error_message}

Status "done" is success, "error" is failure; everything else is in progress.
Authentication uses the xi-api-key header.
"""

from automation.clients.base import (
    GenerationProvider,
    HttpProvider,
    JobSpec,
    ProviderState,
    ProviderStatus,
)
from automation.config import get_voice_settings, require
from automation.exceptions import ProviderRejected
from automation.models import StepType
from automation.utils.logging import get_logger

log = get_logger(__name__)

TTS_MODEL = "speech-2.5-hd-preview"


class VoiceClient(HttpProvider, GenerationProvider):
    """generate_voice provider (fixed volume 1, pitch 0, speed 1)."""

    name = "voice"

    def __init__(self, base_url: str | None = None, api_key: str | None = None) -> None:
        default_base, default_key = get_voice_settings()
        super().__init__(base_url or default_base, max_rate=5, time_period=1)
        self.api_key = api_key or default_key

    def _get_headers(self) -> dict[str, str]:
        return {
            "xi-api-key": require(self.api_key, "VOICE_API_KEY"),
            "Content-Type": "application/json",
        }

    async def submit(self, job: JobSpec) -> str:
        if job.step_type != StepType.GENERATE_VOICE:
            raise ProviderRejected(self.name, f"unsupported step type {job.step_type.value}")
        if not job.text or not job.voice_id:
            raise ProviderRejected(self.name, "voice job requires text and voice_id")

        payload = {
            "text": job.text,
            "model": TTS_MODEL,
            "voice_setting": {"voice_id": job.voice_id, "vol": 1, "pitch": 0, "speed": 1},
        }
        data = await self._request(
            "POST", "v1m/task/text-to-speech", json=payload, headers=self._get_headers()
        )
        task_id = data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            raise ProviderRejected(self.name, "response contains no task_id", str(data)[:500])

        log.info("voice_task_submitted", task_id=task_id, text_length=len(job.text))
        return str(task_id)

    async def get_status(self, external_id: str) -> ProviderStatus:
        data = await self._request("GET", f"v1/task/{external_id}", headers=self._get_headers())
        if not isinstance(data, dict):
            raise ProviderRejected(self.name, f"malformed status for {external_id}", str(data)[:500])

        status = data.get("status")
        if status == "done":
            audio_url = (data.get("metadata") or {}).get("audio_url")
            return ProviderStatus(ProviderState.COMPLETED, result_url=audio_url)
        if status == "error":
            return ProviderStatus(ProviderState.FAILED, error=data.get("error_message"))
        return ProviderStatus(ProviderState.RUNNING)

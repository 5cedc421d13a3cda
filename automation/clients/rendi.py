"""Rendi remote FFmpeg client (merge_videos provider).

    POST run-ffmpeg-command  {input_files, output_files, ffmpeg_command} → {command_id}
    GET  commands/{id}       → {status, output_files: {alias: {storage_url}}, error_message}

Status "SUCCESS" and "FAILED" are terminal. Authentication uses X-API-KEY.
Error replies carry a "detail" field which is surfaced in the step error.
"""

from automation.clients.base import (
    GenerationProvider,
    HttpProvider,
    JobSpec,
    ProviderState,
    ProviderStatus,
)
from automation.config import get_rendi_settings, require
from automation.exceptions import ProviderRejected
from automation.models import StepType
from automation.utils.logging import get_logger

log = get_logger(__name__)

FINAL_OUTPUT_ALIAS = "out_final"


class RendiClient(HttpProvider, GenerationProvider):
    """Submits pre-built FFmpeg commands and reports the rendered file URL."""

    name = "rendi"

    def __init__(self, base_url: str | None = None, api_key: str | None = None) -> None:
        default_base, default_key = get_rendi_settings()
        super().__init__(base_url or default_base, max_rate=2, time_period=1)
        self.api_key = api_key or default_key

    def _get_headers(self) -> dict[str, str]:
        return {
            "X-API-KEY": require(self.api_key, "RENDI_API_KEY"),
            "Content-Type": "application/json",
        }

    async def submit(self, job: JobSpec) -> str:
        if job.step_type != StepType.MERGE_VIDEOS:
            raise ProviderRejected(self.name, f"unsupported step type {job.step_type.value}")
        if not job.ffmpeg_command or not job.input_files:
            raise ProviderRejected(self.name, "merge job requires input_files and ffmpeg_command")

        payload = {
            "input_files": job.input_files,
            "output_files": job.output_files,
            "ffmpeg_command": job.ffmpeg_command,
        }
        data = await self._request(
            "POST", "run-ffmpeg-command", json=payload, headers=self._get_headers()
        )
        command_id = data.get("command_id") if isinstance(data, dict) else None
        if not command_id:
            detail = data.get("detail") if isinstance(data, dict) else None
            raise ProviderRejected(
                self.name, detail or "response contains no command_id", str(data)[:500]
            )

        log.info("rendi_command_submitted", command_id=command_id, inputs=len(job.input_files))
        return str(command_id)

    async def get_status(self, external_id: str) -> ProviderStatus:
        data = await self._request("GET", f"commands/{external_id}", headers=self._get_headers())
        if not isinstance(data, dict):
            raise ProviderRejected(self.name, f"malformed status for {external_id}", str(data)[:500])

        status = data.get("status")
        if status == "SUCCESS":
            output_files = data.get("output_files") or {}
            output = output_files.get(FINAL_OUTPUT_ALIAS) or next(iter(output_files.values()), {})
            return ProviderStatus(ProviderState.COMPLETED, result_url=output.get("storage_url"))
        if status == "FAILED":
            return ProviderStatus(
                ProviderState.FAILED, error=data.get("error_message") or data.get("detail")
            )
        if status == "QUEUED":
            return ProviderStatus(ProviderState.PENDING)
        return ProviderStatus(ProviderState.RUNNING)

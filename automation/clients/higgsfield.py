"""Higgsfield image and video generation client.

Higgsfield is reached through a session-cookie gateway: every call first
exchanges the configured cookie for a short-lived JWT, reference images are
registered as media before they can be used, and jobs are created as
"job sets" whose first job carries the status and the result.

Endpoints (relative to HIGGSFIELD_API_BASE):
    POST gettoken            {cookie, clerk_active_context} → {jwt}
    POST img/uploadmediav2   {token, url: [...], cookie, clerk_active_context}
                             → {status: true, data: ...}
    POST img/banana          image job → {job_sets: [{id}]}
    POST video/kling2.1      video job → {job_sets: [{id}]}
    POST status              {token, taskid} → {jobs: [{status, results, error}]}

Job status values "completed", "failed" and "nsfw" are terminal; "nsfw"
counts as a failure.
"""

from typing import Any

from automation.clients.base import (
    GenerationProvider,
    HttpProvider,
    JobSpec,
    ProviderState,
    ProviderStatus,
)
from automation.config import get_higgsfield_settings, require
from automation.exceptions import ProviderRejected
from automation.models import StepType
from automation.utils.logging import get_logger

log = get_logger(__name__)

IMAGE_WIDTH = 1024
IMAGE_HEIGHT = 1024
VIDEO_WIDTH = 1024
VIDEO_HEIGHT = 576
VIDEO_MODEL = "kling-v2-5-turbo"
VIDEO_MOTION_ID = "7077cde8-7947-46d6-aea2-dbf2ff9d441c"
VIDEO_RESOLUTION = "1080p"

_FAILED_STATUSES = {"failed", "nsfw"}


class HiggsfieldClient(HttpProvider, GenerationProvider):
    """Image (generate_image) and image-to-video (generate_video) provider.

    Example:
        >>> client = HiggsfieldClient()
        >>> job_id = await client.submit(JobSpec(StepType.GENERATE_IMAGE, prompt="...", ...))
        >>> status = await client.get_status(job_id)
        >>> await client.close()
    """

    name = "higgsfield"

    def __init__(
        self,
        base_url: str | None = None,
        cookie: str | None = None,
        clerk_active_context: str | None = None,
    ) -> None:
        default_base, default_cookie, default_clerk = get_higgsfield_settings()
        super().__init__(base_url or default_base, max_rate=2, time_period=1)
        self.cookie = cookie or default_cookie
        self.clerk_active_context = clerk_active_context or default_clerk

    def _credentials(self) -> dict[str, str]:
        return {
            "cookie": require(self.cookie, "HIGGSFIELD_COOKIE"),
            "clerk_active_context": require(
                self.clerk_active_context, "HIGGSFIELD_CLERK_CONTEXT"
            ),
        }

    async def get_token(self) -> str:
        """Exchange the session cookie for a JWT."""
        data = await self._request("POST", "gettoken", json=self._credentials())
        token = data.get("jwt") if isinstance(data, dict) else None
        if not token:
            raise ProviderRejected(self.name, "token exchange returned no jwt", str(data)[:500])
        return token

    async def register_media(self, token: str, urls: list[str]) -> Any:
        """Register public image URLs so they can be referenced by a job.

        Returns:
            The provider's media descriptor(s), passed through unchanged.
        """
        payload = {"token": token, "url": urls, **self._credentials()}
        data = await self._request("POST", "img/uploadmediav2", json=payload)
        if not (isinstance(data, dict) and data.get("status") is True and data.get("data")):
            raise ProviderRejected(self.name, "media registration failed", str(data)[:500])
        log.info("higgsfield_media_registered", url_count=len(urls))
        return data["data"]

    async def submit(self, job: JobSpec) -> str:
        token = await self.get_token()

        if job.step_type == StepType.GENERATE_IMAGE:
            images_data = await self.register_media(token, job.image_urls) if job.image_urls else []
            path = "img/banana"
            payload = {
                "token": token,
                "prompt": job.prompt,
                "images_data": images_data,
                "width": IMAGE_WIDTH,
                "height": IMAGE_HEIGHT,
                "aspect_ratio": job.aspect_ratio,
                "batch_size": 1,
            }
        elif job.step_type == StepType.GENERATE_VIDEO:
            if not job.image_urls:
                raise ProviderRejected(self.name, "video job requires a source image URL")
            input_image = await self.register_media(token, job.image_urls[:1])
            path = "video/kling2.1"
            payload = {
                "token": token,
                "prompt": job.prompt,
                "input_image": input_image,
                "model": VIDEO_MODEL,
                "motion_id": VIDEO_MOTION_ID,
                "duration": job.duration,
                "width": VIDEO_WIDTH,
                "height": VIDEO_HEIGHT,
                "resolution": VIDEO_RESOLUTION,
            }
        else:
            raise ProviderRejected(self.name, f"unsupported step type {job.step_type.value}")

        data = await self._request("POST", path, json=payload)
        job_sets = data.get("job_sets") if isinstance(data, dict) else None
        if not job_sets or not job_sets[0].get("id"):
            raise ProviderRejected(self.name, "response contains no job_sets", str(data)[:500])

        job_id = str(job_sets[0]["id"])
        log.info("higgsfield_job_submitted", step_type=job.step_type.value, job_id=job_id)
        return job_id

    async def get_status(self, external_id: str) -> ProviderStatus:
        token = await self.get_token()
        data = await self._request("POST", "status", json={"token": token, "taskid": external_id})
        jobs = data.get("jobs") if isinstance(data, dict) else None
        if not jobs:
            raise ProviderRejected(self.name, f"status for {external_id} has no jobs", str(data)[:500])

        job = jobs[0]
        status = job.get("status")
        if status == "completed":
            url = ((job.get("results") or {}).get("raw") or {}).get("url")
            return ProviderStatus(ProviderState.COMPLETED, result_url=url)
        if status in _FAILED_STATUSES:
            error = job.get("error") or ("Content flagged as NSFW" if status == "nsfw" else None)
            return ProviderStatus(ProviderState.FAILED, error=error)
        if status in ("queued", "pending"):
            return ProviderStatus(ProviderState.PENDING)
        return ProviderStatus(ProviderState.RUNNING)

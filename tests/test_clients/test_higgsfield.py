"""Tests for HiggsfieldClient (image and video provider).

The transport (_request) is mocked; these tests pin the request sequence and
payloads and the mapping of job statuses.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from automation.clients.base import JobSpec, ProviderState
from automation.clients.higgsfield import VIDEO_MODEL, HiggsfieldClient
from automation.exceptions import ConfigurationError, ProviderRejected
from automation.models import StepType

CREDENTIALS = {"cookie": "session=abc", "clerk_active_context": "ctx-1"}


@pytest_asyncio.fixture
async def client():
    instance = HiggsfieldClient(
        base_url="https://hf.example.com",
        cookie=CREDENTIALS["cookie"],
        clerk_active_context=CREDENTIALS["clerk_active_context"],
    )
    yield instance
    await instance.close()


class TestSubmit:
    @pytest.mark.asyncio
    async def test_image_job(self, client):
        """[P0] Image jobs: token, media registration, then img/banana.

        GIVEN: An image job with one reference image
        WHEN: Submitting it
        THEN: The first job set id is returned and the payload carries the
              registered media and fixed 1024x1024 size
        """
        # GIVEN
        job = JobSpec(
            StepType.GENERATE_IMAGE,
            prompt="Studio photo of Mug",
            image_urls=["https://cdn.example.com/mug.png"],
            aspect_ratio="1:1",
        )
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                {"jwt": "token-1"},
                {"status": True, "data": [{"id": "media-1"}]},
                {"job_sets": [{"id": "job-set-9"}]},
            ]

            # WHEN
            job_id = await client.submit(job)

        # THEN
        assert job_id == "job-set-9"
        token_call, media_call, job_call = mock_request.await_args_list
        assert token_call.args == ("POST", "gettoken")
        assert token_call.kwargs["json"] == CREDENTIALS
        assert media_call.args == ("POST", "img/uploadmediav2")
        assert media_call.kwargs["json"]["url"] == ["https://cdn.example.com/mug.png"]
        assert job_call.args == ("POST", "img/banana")
        payload = job_call.kwargs["json"]
        assert payload["token"] == "token-1"
        assert payload["images_data"] == [{"id": "media-1"}]
        assert (payload["width"], payload["height"], payload["batch_size"]) == (1024, 1024, 1)

    @pytest.mark.asyncio
    async def test_image_job_without_references_skips_registration(self, client):
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [{"jwt": "token-1"}, {"job_sets": [{"id": "js-1"}]}]

            await client.submit(JobSpec(StepType.GENERATE_IMAGE, prompt="A mug"))

        assert mock_request.await_args_list[1].kwargs["json"]["images_data"] == []

    @pytest.mark.asyncio
    async def test_video_job(self, client):
        """[P0] Video jobs register the source image and call the kling endpoint."""
        job = JobSpec(
            StepType.GENERATE_VIDEO,
            prompt="Slow zoom",
            image_urls=["https://cdn.example.com/image-1.png"],
            duration=5.0,
        )
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                {"jwt": "token-1"},
                {"status": True, "data": {"id": "media-2"}},
                {"job_sets": [{"id": "video-set-1"}]},
            ]

            job_id = await client.submit(job)

        assert job_id == "video-set-1"
        job_call = mock_request.await_args_list[2]
        assert job_call.args == ("POST", "video/kling2.1")
        payload = job_call.kwargs["json"]
        assert payload["input_image"] == {"id": "media-2"}
        assert payload["model"] == VIDEO_MODEL
        assert payload["duration"] == 5.0
        assert payload["resolution"] == "1080p"

    @pytest.mark.asyncio
    async def test_video_job_requires_image(self, client):
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"jwt": "token-1"}

            with pytest.raises(ProviderRejected, match="requires a source image"):
                await client.submit(JobSpec(StepType.GENERATE_VIDEO, prompt="Zoom"))

    @pytest.mark.asyncio
    async def test_failed_media_registration(self, client):
        """[P1] A registration reply without status true is rejected."""
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [{"jwt": "token-1"}, {"status": False, "error": "nope"}]

            with pytest.raises(ProviderRejected, match="media registration failed"):
                await client.submit(
                    JobSpec(StepType.GENERATE_IMAGE, prompt="A", image_urls=["https://x/a.png"])
                )

    @pytest.mark.asyncio
    async def test_missing_job_sets(self, client):
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [{"jwt": "token-1"}, {"job_sets": []}]

            with pytest.raises(ProviderRejected, match="no job_sets"):
                await client.submit(JobSpec(StepType.GENERATE_IMAGE, prompt="A"))

    @pytest.mark.asyncio
    async def test_missing_jwt(self, client):
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"error": "expired cookie"}

            with pytest.raises(ProviderRejected, match="no jwt"):
                await client.submit(JobSpec(StepType.GENERATE_IMAGE, prompt="A"))

    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] Missing cookie surfaces as a configuration error."""
        monkeypatch.delenv("HIGGSFIELD_COOKIE", raising=False)
        client = HiggsfieldClient(base_url="https://hf.example.com", clerk_active_context="c")

        try:
            with pytest.raises(ConfigurationError, match="HIGGSFIELD_COOKIE"):
                await client.submit(JobSpec(StepType.GENERATE_IMAGE, prompt="A"))
        finally:
            await client.close()


class TestGetStatus:
    @pytest.mark.parametrize(
        ("job", "state", "url", "error"),
        [
            (
                {"status": "completed", "results": {"raw": {"url": "https://cdn/out.png"}}},
                ProviderState.COMPLETED,
                "https://cdn/out.png",
                None,
            ),
            ({"status": "failed", "error": "bad input"}, ProviderState.FAILED, None, "bad input"),
            ({"status": "nsfw"}, ProviderState.FAILED, None, "Content flagged as NSFW"),
            ({"status": "queued"}, ProviderState.PENDING, None, None),
            ({"status": "in_progress"}, ProviderState.RUNNING, None, None),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(self, client, job, state, url, error):
        """[P0] Job statuses map onto provider states."""
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [{"jwt": "token-1"}, {"jobs": [job]}]

            status = await client.get_status("job-set-9")

        assert status.state == state
        assert status.result_url == url
        assert status.error == error
        assert mock_request.await_args_list[1].kwargs["json"] == {
            "token": "token-1",
            "taskid": "job-set-9",
        }

    @pytest.mark.asyncio
    async def test_status_without_jobs(self, client):
        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [{"jwt": "token-1"}, {"jobs": []}]

            with pytest.raises(ProviderRejected):
                await client.get_status("job-set-9")

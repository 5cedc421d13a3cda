"""Tests for StepDispatcher.

Covers:
- Successful submission (pending → running with external id)
- Submission failures (pending → failed, run settled)
- Prerequisite checks for video and merge steps
- Prompt generation and merge command construction at dispatch time
"""

import uuid

import pytest
import pytest_asyncio

from automation.exceptions import (
    DependencyNotReady,
    GenerationFailed,
    ProviderRejected,
    ProviderUnavailable,
    StepNotFound,
)
from automation.models import LogLevel, RunStatus, StepStatus, StepType
from automation.services.step_dispatcher import StepDispatcher
from tests.support.factories import create_completed_clip, create_run, create_step, seed_channel
from tests.support.queries import fetch_logs, fetch_run, fetch_step


@pytest_asyncio.fixture
async def running_run(session_factory):
    """A seeded channel with one running run (no steps yet)."""
    seeded = await seed_channel(session_factory, video_prompt_template=None)
    run = await create_run(session_factory, seeded.channel_id, status=RunStatus.RUNNING)
    return seeded, run


class TestDispatch:
    @pytest.mark.asyncio
    async def test_submits_pending_step(self, session_factory, fake_providers, running_run):
        """[P0] A pending image step becomes running with the provider's task id.

        GIVEN: A pending image step of a running run
        WHEN: Dispatching it
        THEN: The job is submitted once, the id is recorded, a SUCCESS entry is logged
        """
        # GIVEN
        seeded, run = running_run
        step = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            input_data={
                "prompt": "Studio photo of Mug",
                "image_urls": ["https://cdn.example.com/mug.png"],
                "aspect_ratio": "9:16",
                "sequence_number": 1,
            },
        )

        # WHEN
        result = await StepDispatcher(fake_providers, session_factory).dispatch(step.id)

        # THEN
        assert result.status == StepStatus.RUNNING
        assert result.external_task_id == "image-1"

        [job] = fake_providers.providers[StepType.GENERATE_IMAGE].submitted
        assert job.prompt == "Studio photo of Mug"
        assert job.image_urls == ["https://cdn.example.com/mug.png"]
        assert job.aspect_ratio == "9:16"

        logs = await fetch_logs(session_factory, run.id)
        assert logs[-1].level == LogLevel.SUCCESS
        assert logs[-1].log_metadata == {"external_task_id": "image-1"}

    @pytest.mark.asyncio
    async def test_skips_non_pending_step(self, session_factory, fake_providers, running_run):
        """[P1] Steps that are not pending are never submitted twice."""
        seeded, run = running_run
        step = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            status=StepStatus.RUNNING,
            external_task_id="image-9",
        )

        result = await StepDispatcher(fake_providers, session_factory).dispatch(step.id)

        assert result is None
        assert fake_providers.providers[StepType.GENERATE_IMAGE].submitted == []

    @pytest.mark.asyncio
    async def test_skips_steps_of_stopped_run(self, session_factory, fake_providers):
        """[P1] Pending steps of a stopped run stay untouched."""
        seeded = await seed_channel(session_factory)
        run = await create_run(session_factory, seeded.channel_id, status=RunStatus.STOPPED)
        step = await create_step(session_factory, run.id, seeded.sub_product_ids[0])

        result = await StepDispatcher(fake_providers, session_factory).dispatch(step.id)

        assert result is None
        assert (await fetch_step(session_factory, step.id)).status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_step(self, session_factory, fake_providers):
        with pytest.raises(StepNotFound):
            await StepDispatcher(fake_providers, session_factory).dispatch(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_provider_failure_fails_step_and_settles_run(
        self, session_factory, fake_providers, running_run
    ):
        """[P0] A failed submission fails the step; the last open step settles the run."""
        # GIVEN: The only step of a running run, provider down
        seeded, run = running_run
        step = await create_step(session_factory, run.id, seeded.sub_product_ids[0])
        fake_providers.providers[StepType.GENERATE_IMAGE].submit_error = ProviderUnavailable(
            "image", "POST https://img/banana returned 503", "Service Unavailable"
        )

        # WHEN
        result = await StepDispatcher(fake_providers, session_factory).dispatch(step.id)

        # THEN
        assert result.status == StepStatus.FAILED
        assert result.external_task_id is None
        assert "returned 503" in result.error_message

        stored_run = await fetch_run(session_factory, run.id)
        assert stored_run.status == RunStatus.FAILED
        assert stored_run.finished_at is not None

    @pytest.mark.asyncio
    async def test_missing_config_fails_step(self, session_factory, fake_providers):
        """[P1] Configuration removed mid-run fails the step instead of crashing."""
        seeded = await seed_channel(session_factory, with_config=False)
        run = await create_run(session_factory, seeded.channel_id, status=RunStatus.RUNNING)
        step = await create_step(session_factory, run.id, seeded.sub_product_ids[0])

        result = await StepDispatcher(fake_providers, session_factory).dispatch(step.id)

        assert result.status == StepStatus.FAILED
        assert "has no automation configuration" in result.error_message


class TestVideoDispatch:
    @pytest.mark.asyncio
    async def test_waits_for_source_image(self, session_factory, fake_providers, running_run):
        """[P0] A video step whose image is still running stays pending."""
        # GIVEN: Running image, pending video pointing at it
        seeded, run = running_run
        image = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            status=StepStatus.RUNNING,
            external_task_id="image-1",
        )
        video = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            step_type=StepType.GENERATE_VIDEO,
            input_data={"source_image_step_id": str(image.id), "sequence_number": 1},
        )

        # WHEN/THEN
        with pytest.raises(DependencyNotReady, match="source image step is running"):
            await StepDispatcher(fake_providers, session_factory).dispatch(video.id)

        assert (await fetch_step(session_factory, video.id)).status == StepStatus.PENDING
        assert fake_providers.providers[StepType.GENERATE_VIDEO].submitted == []
        logs = await fetch_logs(session_factory, run.id)
        assert logs[-1].level == LogLevel.WARN

    @pytest.mark.asyncio
    async def test_generates_motion_prompt(self, session_factory, fake_providers):
        """[P1] The video prompt is generated from the template and stored on the step."""
        # GIVEN: A video template and a completed source image
        seeded = await seed_channel(
            session_factory, video_prompt_template="Animate {{image_prompt}} for {{product_name}}"
        )
        run = await create_run(session_factory, seeded.channel_id)
        image = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            status=StepStatus.COMPLETED,
            result_url="https://cdn.example.com/image-1.png",
            external_task_id="image-1",
        )
        video = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            step_type=StepType.GENERATE_VIDEO,
            input_data={
                "source_image_step_id": str(image.id),
                "image_url": "https://cdn.example.com/image-1.png",
                "image_prompt": "a red mug",
                "sequence_number": 1,
            },
        )

        # WHEN
        result = await StepDispatcher(fake_providers, session_factory).dispatch(video.id)

        # THEN
        assert result.status == StepStatus.RUNNING
        assert result.input_data["prompt"] == "generated: Animate a red mug for Mug"
        assert result.input_data["duration"] == 5.0

        [job] = fake_providers.providers[StepType.GENERATE_VIDEO].submitted
        assert job.prompt == "generated: Animate a red mug for Mug"
        assert job.image_urls == ["https://cdn.example.com/image-1.png"]
        assert job.duration == 5.0

    @pytest.mark.asyncio
    async def test_without_template_uses_image_prompt(
        self, session_factory, fake_providers, running_run
    ):
        """[P2] No video template → the image prompt is used unchanged."""
        seeded, run = running_run
        image = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            status=StepStatus.COMPLETED,
            result_url="https://cdn.example.com/image-1.png",
        )
        video = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            step_type=StepType.GENERATE_VIDEO,
            input_data={
                "source_image_step_id": str(image.id),
                "image_url": "https://cdn.example.com/image-1.png",
                "image_prompt": "a red mug",
            },
        )

        result = await StepDispatcher(fake_providers, session_factory).dispatch(video.id)

        assert result.input_data["prompt"] == "a red mug"
        assert fake_providers.text_generator.prompts == []

    @pytest.mark.asyncio
    async def test_text_generation_failure_fails_step(self, session_factory, fake_providers):
        """[P1] A failed prompt generation fails the step with the generator's message."""
        seeded = await seed_channel(
            session_factory, video_prompt_template="Animate {{image_prompt}}"
        )
        run = await create_run(session_factory, seeded.channel_id)
        image = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            status=StepStatus.COMPLETED,
            result_url="https://cdn.example.com/image-1.png",
        )
        video = await create_step(
            session_factory,
            run.id,
            seeded.sub_product_ids[0],
            step_type=StepType.GENERATE_VIDEO,
            input_data={"source_image_step_id": str(image.id), "image_prompt": "a mug"},
        )
        fake_providers.text_generator.error = GenerationFailed("Text generation failed: quota")

        result = await StepDispatcher(fake_providers, session_factory).dispatch(video.id)

        assert result.status == StepStatus.FAILED
        assert result.error_message == "Text generation failed: quota"


class TestMergeDispatch:
    @pytest.mark.asyncio
    async def test_builds_crossfade_command(self, session_factory, fake_providers, running_run):
        """[P0] The merge step submits the xfade command built from its clips."""
        # GIVEN: Two completed clips and a pending merge step
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        _, first = await create_completed_clip(session_factory, run.id, sub_product_id, 1)
        _, second = await create_completed_clip(session_factory, run.id, sub_product_id, 2)
        merge = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            step_type=StepType.MERGE_VIDEOS,
            input_data={
                "clips": [
                    {"url": first.result_url, "duration": 5.0, "kind": "video"},
                    {"url": second.result_url, "duration": 5.0, "kind": "video"},
                ],
                "transition": "fade",
                "transition_duration": 1.0,
                "audio_url": None,
            },
        )

        # WHEN
        result = await StepDispatcher(fake_providers, session_factory).dispatch(merge.id)

        # THEN
        assert result.status == StepStatus.RUNNING
        [job] = fake_providers.providers[StepType.MERGE_VIDEOS].submitted
        assert job.input_files == {"in_0": first.result_url, "in_1": second.result_url}
        assert job.output_files == {"out_final": "final_output.mp4"}
        assert "xfade=transition=fade:duration=1:offset=4[vout]" in job.ffmpeg_command
        assert result.input_data["ffmpeg_command"] == job.ffmpeg_command

    @pytest.mark.asyncio
    async def test_falls_back_to_video_urls(self, session_factory, fake_providers, running_run):
        """[P2] Merge steps without clips use video_urls with the configured duration."""
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        _, video = await create_completed_clip(session_factory, run.id, sub_product_id, 1)
        merge = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            step_type=StepType.MERGE_VIDEOS,
            input_data={"video_urls": [video.result_url]},
        )

        await StepDispatcher(fake_providers, session_factory).dispatch(merge.id)

        [job] = fake_providers.providers[StepType.MERGE_VIDEOS].submitted
        assert job.ffmpeg_command == "-i {{in_0}} -c copy {{out_final}}"

    @pytest.mark.asyncio
    async def test_clip_too_short_fails_before_submission(
        self, session_factory, fake_providers, running_run
    ):
        """[P1] Clips not longer than the transition fail the step locally."""
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        _, first = await create_completed_clip(session_factory, run.id, sub_product_id, 1)
        _, second = await create_completed_clip(session_factory, run.id, sub_product_id, 2)
        merge = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            step_type=StepType.MERGE_VIDEOS,
            input_data={
                "clips": [
                    {"url": first.result_url, "duration": 1.0},
                    {"url": second.result_url, "duration": 5.0},
                ],
                "transition_duration": 1.0,
            },
        )

        result = await StepDispatcher(fake_providers, session_factory).dispatch(merge.id)

        assert result.status == StepStatus.FAILED
        assert "Clip 0 lasts 1.0s" in result.error_message
        assert fake_providers.providers[StepType.MERGE_VIDEOS].submitted == []

    @pytest.mark.asyncio
    async def test_merge_waits_for_videos(self, session_factory, fake_providers, running_run):
        """[P1] A merge step dispatched early stays pending."""
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        await create_step(
            session_factory,
            run.id,
            sub_product_id,
            status=StepStatus.RUNNING,
            external_task_id="image-1",
            input_data={"sequence_number": 1},
        )
        merge = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            step_type=StepType.MERGE_VIDEOS,
            input_data={"video_urls": []},
        )

        with pytest.raises(DependencyNotReady, match="image 1 is running"):
            await StepDispatcher(fake_providers, session_factory).dispatch(merge.id)


class TestDispatchMany:
    @pytest.mark.asyncio
    async def test_counts_outcomes(self, session_factory, fake_providers, running_run):
        """[P1] Not-ready and missing steps are counted, not raised."""
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        image = await create_step(session_factory, run.id, sub_product_id)
        video = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            step_type=StepType.GENERATE_VIDEO,
            input_data={"source_image_step_id": str(image.id)},
        )

        summary = await StepDispatcher(fake_providers, session_factory).dispatch_many(
            [image.id, video.id, uuid.uuid4()]
        )

        assert summary.dispatched == 1
        assert summary.not_ready == 1
        assert summary.errors == 1

    @pytest.mark.asyncio
    async def test_failed_and_skipped_are_not_dispatched(
        self, session_factory, fake_providers, running_run
    ):
        """[P1] Only steps that end up running count as dispatched.

        GIVEN: An already completed step and a pending image step the provider rejects
        WHEN: Dispatching both
        THEN: One is counted as skipped, one as failed, none as dispatched
        """
        # GIVEN
        seeded, run = running_run
        sub_product_id = seeded.sub_product_ids[0]
        done = await create_step(
            session_factory,
            run.id,
            sub_product_id,
            status=StepStatus.COMPLETED,
            result_url="https://cdn.example.com/done.png",
        )
        rejected = await create_step(session_factory, run.id, sub_product_id)
        fake_providers.providers[StepType.GENERATE_IMAGE].submit_error = ProviderRejected(
            "image", "prompt refused"
        )

        # WHEN
        summary = await StepDispatcher(fake_providers, session_factory).dispatch_many(
            [done.id, rejected.id]
        )

        # THEN
        assert summary.dispatched == 0
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.errors == 0
        assert (await fetch_step(session_factory, rejected.id)).status == StepStatus.FAILED

"""Tests for FFmpeg xfade command synthesis.

Covers:
- Crossfade offsets (offset_i = sum(d[0..i]) - (i+1)*D)
- Single-clip passthrough with and without audio
- Still-image clips, audio track mapping
- Validation (empty input, non-positive durations, clips too short)
"""

import pytest

from automation.exceptions import ClipTooShortForTransition
from automation.services.merge_command import (
    NORMALIZE_FILTER,
    Clip,
    build_merge_command,
    format_number,
    transition_offsets,
)


def _clips(*durations: float) -> list[Clip]:
    return [
        Clip(url=f"https://cdn.example.com/clip-{index}.mp4", duration=duration)
        for index, duration in enumerate(durations)
    ]


class TestTransitionOffsets:
    def test_equal_clips(self):
        """[P0] Three 5s clips with a 1s fade start crossfades at 4s and 8s."""
        assert transition_offsets([5, 5, 5], 1) == [4, 8]

    def test_uneven_clips(self):
        """[P1] Offsets account for every earlier overlap."""
        assert transition_offsets([3, 4.5, 6], 0.5) == [2.5, 6.5]

    def test_single_clip_has_no_offsets(self):
        assert transition_offsets([5], 1) == []


class TestFormatNumber:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(4.0, "4"), (3.5, "3.5"), (2.25, "2.25"), (1 / 3, "0.333"), (10, "10")],
    )
    def test_format_number(self, value, expected):
        """[P2] Integers drop decimals, others keep up to three."""
        assert format_number(value) == expected


class TestBuildMergeCommand:
    def test_three_clip_crossfade_command(self):
        """[P0] Full command text for three equal clips.

        GIVEN: Clips of 5s, 5s, 5s and a 1s fade
        WHEN: Building the merge command
        THEN: Inputs, normalization, chained xfades and encoder flags are exact
        """
        # GIVEN
        clips = _clips(5, 5, 5)

        # WHEN
        command = build_merge_command(clips, transition="fade", transition_duration=1.0)

        # THEN
        expected_filter = ";".join(
            [
                f"[0:v]{NORMALIZE_FILTER}[v0]",
                f"[1:v]{NORMALIZE_FILTER}[v1]",
                f"[2:v]{NORMALIZE_FILTER}[v2]",
                "[v0][v1]xfade=transition=fade:duration=1:offset=4[vt1]",
                "[vt1][v2]xfade=transition=fade:duration=1:offset=8[vout]",
            ]
        )
        assert command.ffmpeg_command == (
            "-i {{in_0}} -i {{in_1}} -i {{in_2}} "
            f'-filter_complex "{expected_filter}" '
            '-map "[vout]" -c:v libx264 -pix_fmt yuv420p {{out_final}}'
        )
        assert command.input_files == {
            "in_0": "https://cdn.example.com/clip-0.mp4",
            "in_1": "https://cdn.example.com/clip-1.mp4",
            "in_2": "https://cdn.example.com/clip-2.mp4",
        }
        assert command.output_files == {"out_final": "final_output.mp4"}

    def test_output_is_deterministic(self):
        """[P1] Same input, same command text."""
        clips = _clips(4, 6.5)

        first = build_merge_command(clips, transition="wipeleft", transition_duration=0.5)
        second = build_merge_command(clips, transition="wipeleft", transition_duration=0.5)

        assert first == second
        assert "xfade=transition=wipeleft:duration=0.5:offset=3.5[vout]" in first.ffmpeg_command

    def test_single_video_is_copied(self):
        """[P0] One clip without audio is stream-copied, no filter graph."""
        command = build_merge_command(_clips(5))

        assert command.ffmpeg_command == "-i {{in_0}} -c copy {{out_final}}"
        assert command.input_files == {"in_0": "https://cdn.example.com/clip-0.mp4"}

    def test_single_video_with_audio(self):
        """[P1] One clip with audio maps video from the clip, audio from the track."""
        command = build_merge_command(_clips(5), audio_url="https://cdn.example.com/voice.mp3")

        assert command.ffmpeg_command == (
            "-i {{in_0}} -i {{in_audio}} -map 0:v -map 1:a -c copy -shortest {{out_final}}"
        )
        assert command.input_files["in_audio"] == "https://cdn.example.com/voice.mp3"

    def test_single_clip_ignores_transition_length(self):
        """[P2] A clip shorter than the transition is fine when nothing crossfades."""
        command = build_merge_command(_clips(0.5), transition_duration=1.0)

        assert command.ffmpeg_command == "-i {{in_0}} -c copy {{out_final}}"

    def test_audio_track_is_mapped_after_clips(self):
        """[P1] Audio is the last input and is re-encoded with -shortest."""
        command = build_merge_command(
            _clips(5, 5, 5), audio_url="https://cdn.example.com/voice.mp3"
        )

        text = command.ffmpeg_command
        assert text.startswith("-i {{in_0}} -i {{in_1}} -i {{in_2}} -i {{in_audio}} ")
        assert '-map "[vout]" -map 3:a' in text
        assert text.endswith("-c:v libx264 -pix_fmt yuv420p -c:a aac -shortest {{out_final}}")

    def test_image_clips_are_looped(self):
        """[P1] Still images loop for their duration at 30 fps."""
        clips = [
            Clip(url="https://cdn.example.com/still.png", duration=3, is_image=True),
            Clip(url="https://cdn.example.com/clip.mp4", duration=5),
        ]

        command = build_merge_command(clips, transition_duration=1)

        text = command.ffmpeg_command
        assert text.startswith("-loop 1 -t 3 -i {{in_0}} -i {{in_1}} ")
        assert f"[0:v]{NORMALIZE_FILTER},fps=30[v0]" in text
        assert f"[1:v]{NORMALIZE_FILTER}[v1]" in text
        assert "[v0][v1]xfade=transition=fade:duration=1:offset=2[vout]" in text

    def test_single_image_clip_is_encoded(self):
        """[P2] A lone still image still needs the filter graph."""
        clips = [Clip(url="https://cdn.example.com/still.png", duration=4, is_image=True)]

        command = build_merge_command(clips)

        assert '-map "[v0]"' in command.ffmpeg_command
        assert "xfade" not in command.ffmpeg_command

    def test_clip_too_short_for_transition(self):
        """[P0] A clip not longer than the crossfade is rejected."""
        with pytest.raises(ClipTooShortForTransition) as exc_info:
            build_merge_command(_clips(5, 1, 5), transition_duration=1.0)

        assert exc_info.value.clip_index == 1
        assert exc_info.value.transition_duration == 1.0

    def test_empty_clip_list(self):
        """[P1] Nothing to merge is a caller error."""
        with pytest.raises(ValueError, match="At least one clip"):
            build_merge_command([])

    def test_non_positive_clip_duration(self):
        with pytest.raises(ValueError, match="Clip duration must be positive"):
            build_merge_command(_clips(5, 0))

    def test_non_positive_transition_duration(self):
        with pytest.raises(ValueError, match="Transition duration must be positive"):
            build_merge_command(_clips(5, 5), transition_duration=0)


class TestClip:
    def test_from_dict_reads_kind(self):
        """[P2] Stored clips carry their kind; unknown kinds are videos."""
        image = Clip.from_dict({"url": "https://x/a.png", "duration": "3", "kind": "image"})
        video = Clip.from_dict({"url": "https://x/b.mp4", "duration": 5})

        assert image == Clip(url="https://x/a.png", duration=3.0, is_image=True)
        assert video.is_image is False
        assert video.to_dict() == {"url": "https://x/b.mp4", "duration": 5.0, "kind": "video"}

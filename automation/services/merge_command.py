"""FFmpeg command synthesis for the merge_videos step.

The remote FFmpeg service receives three things: a map of input aliases to
URLs, a map of output aliases to file names, and a command line that refers
to both through ``{{alias}}`` placeholders. This module builds all three from
an ordered list of clips.

Graph layout for N >= 2 clips (D = transition duration):

    [0:v]scale=...,pad=...,setsar=1[v0];
    [1:v]scale=...,pad=...,setsar=1[v1];
    ...
    [v0][v1]xfade=transition=fade:duration=D:offset=O1[vt1];
    [vt1][v2]xfade=transition=fade:duration=D:offset=O2[vout]

Each crossfade overlaps D seconds, so the blended stream after clip i lasts
sum(duration[0..i]) - i*D and the next crossfade starts D seconds before its
end: offset_i = sum(duration[0..i]) - (i+1)*D. Clips [5, 5, 5] with D=1 give
offsets 4 and 8 and a 13 second result.

Output is deterministic: the same input always yields the same command text.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from automation.exceptions import ClipTooShortForTransition

OUTPUT_ALIAS = "out_final"
OUTPUT_FILENAME = "final_output.mp4"
AUDIO_ALIAS = "in_audio"

FRAME_WIDTH = 1920
FRAME_HEIGHT = 1080
IMAGE_FPS = 30

NORMALIZE_FILTER = (
    f"scale={FRAME_WIDTH}:{FRAME_HEIGHT}:force_original_aspect_ratio=decrease,"
    f"pad={FRAME_WIDTH}:{FRAME_HEIGHT}:-1:-1:color=black,setsar=1"
)


@dataclass(frozen=True)
class Clip:
    """One input of the merge.

    Attributes:
        url: Public URL of the video (or still image).
        duration: Length in seconds the clip occupies in the output.
        is_image: Still image; looped for `duration` seconds at 30 fps.
    """

    url: str
    duration: float
    is_image: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Clip":
        """Build a Clip from its stored form ({"url", "duration", "kind"})."""
        return cls(
            url=str(data["url"]),
            duration=float(data["duration"]),
            is_image=data.get("kind") == "image",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "duration": self.duration,
            "kind": "image" if self.is_image else "video",
        }


@dataclass(frozen=True)
class MergeCommand:
    """Request body for the remote FFmpeg service."""

    input_files: dict[str, str]
    output_files: dict[str, str]
    ffmpeg_command: str


def format_number(value: float) -> str:
    """Render seconds for the command line.

    Integers lose their decimals, everything else keeps up to 3 decimals.

    Example:
        >>> format_number(4.0), format_number(3.5), format_number(1 / 3)
        ('4', '3.5', '0.333')
    """
    rounded = round(float(value), 3)
    if rounded.is_integer():
        return str(int(rounded))
    return f"{rounded:.3f}".rstrip("0").rstrip(".")


def transition_offsets(durations: Sequence[float], transition_duration: float) -> list[float]:
    """Start time of every crossfade, one per clip boundary."""
    offsets = []
    elapsed = 0.0
    for index, duration in enumerate(durations[:-1]):
        elapsed += duration
        offsets.append(elapsed - (index + 1) * transition_duration)
    return offsets


def build_merge_command(
    clips: Sequence[Clip],
    transition: str = "fade",
    transition_duration: float = 1.0,
    audio_url: str | None = None,
) -> MergeCommand:
    """Build the FFmpeg request that joins clips with crossfades.

    Args:
        clips: Clips in playback order
        transition: xfade transition name ("fade", "wipeleft", ...)
        transition_duration: Crossfade length in seconds
        audio_url: Optional audio track laid over the whole result

    Returns:
        MergeCommand with input aliases in_0..in_{n-1} (+ in_audio) and
        the single output alias out_final.

    Raises:
        ValueError: No clips, or a non-positive clip/transition duration
        ClipTooShortForTransition: A clip is not longer than the crossfade
            (only checked when there is more than one clip)
    """
    if not clips:
        raise ValueError("At least one clip is required to build a merge command")
    for clip in clips:
        if clip.duration <= 0:
            raise ValueError(f"Clip duration must be positive: {clip.url}")

    input_files = {f"in_{index}": clip.url for index, clip in enumerate(clips)}
    if audio_url:
        input_files[AUDIO_ALIAS] = audio_url
    output_files = {OUTPUT_ALIAS: OUTPUT_FILENAME}

    output = "{{" + OUTPUT_ALIAS + "}}"
    audio_input = "{{" + AUDIO_ALIAS + "}}"

    if len(clips) == 1 and not clips[0].is_image:
        if audio_url:
            command = (
                f"-i {{{{in_0}}}} -i {audio_input} -map 0:v -map 1:a -c copy -shortest {output}"
            )
        else:
            command = f"-i {{{{in_0}}}} -c copy {output}"
        return MergeCommand(input_files, output_files, command)

    if len(clips) > 1:
        if transition_duration <= 0:
            raise ValueError("Transition duration must be positive")
        for index, clip in enumerate(clips):
            if clip.duration <= transition_duration:
                raise ClipTooShortForTransition(index, clip.duration, transition_duration)

    inputs = []
    filters = []
    for index, clip in enumerate(clips):
        if clip.is_image:
            inputs.append(f"-loop 1 -t {format_number(clip.duration)} -i {{{{in_{index}}}}}")
            filters.append(f"[{index}:v]{NORMALIZE_FILTER},fps={IMAGE_FPS}[v{index}]")
        else:
            inputs.append(f"-i {{{{in_{index}}}}}")
            filters.append(f"[{index}:v]{NORMALIZE_FILTER}[v{index}]")

    if len(clips) == 1:
        final_label = "v0"
    else:
        final_label = "vout"
        offsets = transition_offsets([clip.duration for clip in clips], transition_duration)
        previous = "v0"
        for index, offset in enumerate(offsets, start=1):
            label = final_label if index == len(clips) - 1 else f"vt{index}"
            filters.append(
                f"[{previous}][v{index}]xfade=transition={transition}"
                f":duration={format_number(transition_duration)}"
                f":offset={format_number(offset)}[{label}]"
            )
            previous = label

    parts = [" ".join(inputs)]
    if audio_url:
        parts.append(f"-i {audio_input}")
    parts.append(f'-filter_complex "{";".join(filters)}"')
    parts.append(f'-map "[{final_label}]"')
    if audio_url:
        parts.append(f"-map {len(clips)}:a")
    parts.append("-c:v libx264 -pix_fmt yuv420p")
    if audio_url:
        parts.append("-c:a aac -shortest")
    parts.append(output)

    return MergeCommand(input_files, output_files, " ".join(parts))

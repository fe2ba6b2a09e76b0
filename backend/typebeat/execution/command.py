"""
Transcode command construction.

One job = one still image letterboxed into a fixed canvas + one audio
track, encoded for a static picture:
- image scaled to fit the canvas, centered
- canvas filled with a solid colour or a cover-cropped background image
- optional logo in the top-right corner
- fast x264 preset, still-image tuning, low frame rate
- output duration fixed to the audio duration
"""

import time
from dataclasses import dataclass
from typing import List, Optional

from ..config import RenderConfig, DEFAULT_RENDER_CONFIG
from ..jobs.models import BackgroundMode
from .outputs import sanitize_filename

SOLID_COLOURS = {
    BackgroundMode.BLACK: "black",
    BackgroundMode.WHITE: "white",
}


def _extension(suffix: str, default: str) -> str:
    cleaned = sanitize_filename(suffix.lower(), 10)
    if not cleaned.startswith(".") or len(cleaned) < 2:
        return default
    return cleaned


@dataclass(frozen=True)
class TempNames:
    """
    Engine filenames for one job.

    Every name carries the job-unique suffix so two jobs can never collide
    and a job's leftovers can be found by suffix.
    """

    suffix: str
    audio: str
    image: str
    output: str
    background: Optional[str] = None
    logo: Optional[str] = None

    @classmethod
    def for_job(
        cls,
        short_id: str,
        audio_suffix: str,
        image_suffix: str,
        background_suffix: Optional[str] = None,
        logo_suffix: Optional[str] = None,
        stamp: Optional[int] = None,
    ) -> "TempNames":
        stamp = stamp if stamp is not None else int(time.time() * 1000)
        sfx = f"{short_id}_{stamp}"
        return cls(
            suffix=sfx,
            audio=f"audio_{sfx}{_extension(audio_suffix, '.mp3')}",
            image=f"image_{sfx}{_extension(image_suffix, '.jpg')}",
            output=f"output_{sfx}.mp4",
            background=(
                f"bg_{sfx}{_extension(background_suffix, '.jpg')}"
                if background_suffix is not None else None
            ),
            logo=(
                f"logo_{sfx}{_extension(logo_suffix, '.png')}"
                if logo_suffix is not None else None
            ),
        )

    def all(self) -> List[str]:
        names = [self.audio, self.image, self.output, self.background, self.logo]
        return [n for n in names if n]

    def owns(self, name: str) -> bool:
        """True if `name` is one of this job's temp files."""
        return self.suffix in name


def build_filter_graph(
    config: RenderConfig,
    background_colour: Optional[str],
    background_input: Optional[int],
    logo_input: Optional[int],
) -> str:
    """
    Build the filter_complex string. Input 0 is always the image.

    Exactly one of background_colour / background_input is set.
    """
    w, h = config.canvas_width, config.canvas_height
    fit = f"scale={w}:{h}:force_original_aspect_ratio=decrease"
    base_label = "[base]" if logo_input is not None else "[v]"

    if background_input is not None:
        parts = [
            f"[{background_input}:v]scale={w}:{h}:force_original_aspect_ratio=increase,"
            f"crop={w}:{h},setsar=1[bg]",
            f"[0:v]{fit},setsar=1[fg]",
            f"[bg][fg]overlay=(W-w)/2:(H-h)/2,format=yuv420p{base_label}",
        ]
    else:
        parts = [
            f"[0:v]{fit},pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color={background_colour},"
            f"setsar=1,format=yuv420p{base_label}",
        ]

    if logo_input is not None:
        parts.append(f"[{logo_input}:v]scale={config.logo_width}:-1[logo]")
        parts.append(
            f"[base][logo]overlay=W-w-{config.logo_margin}:{config.logo_margin},"
            f"format=yuv420p[v]"
        )

    return ";".join(parts)


def build_transcode_command(
    names: TempNames,
    background: BackgroundMode,
    duration: Optional[float],
    config: RenderConfig = DEFAULT_RENDER_CONFIG,
) -> List[str]:
    """
    Build FFmpeg arguments (without the binary) for one job.

    A CUSTOM background without a background file falls back to black.
    Without a duration the output relies on -shortest alone.
    """
    fps = str(config.output_fps)
    args: List[str] = ["-loop", "1", "-framerate", fps, "-i", names.image]

    next_input = 1
    background_input: Optional[int] = None
    background_colour: Optional[str] = None
    if background == BackgroundMode.CUSTOM and names.background:
        args.extend(["-loop", "1", "-framerate", fps, "-i", names.background])
        background_input = next_input
        next_input += 1
    else:
        background_colour = SOLID_COLOURS.get(background, "black")

    logo_input: Optional[int] = None
    if names.logo:
        args.extend(["-loop", "1", "-framerate", fps, "-i", names.logo])
        logo_input = next_input
        next_input += 1

    audio_input = next_input
    args.extend(["-i", names.audio])

    args.extend([
        "-filter_complex",
        build_filter_graph(config, background_colour, background_input, logo_input),
        "-map", "[v]",
        "-map", f"{audio_input}:a:0",
        "-c:v", "libx264",
        "-preset", config.video_preset,
        "-tune", "stillimage",
        "-r", fps,
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", config.audio_bitrate,
        "-shortest",
    ])
    if duration is not None and duration > 0:
        args.extend(["-t", f"{duration:.3f}"])
    args.extend(["-movflags", "+faststart", "-y", names.output])
    return args

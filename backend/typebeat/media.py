"""
Media probing via ffprobe.

Used to find an audio track's duration when no prepared value is
available, and image dimensions for the preparation cache.
"""

import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MediaProbeError(Exception):
    """Raised when ffprobe cannot read a file."""
    pass


async def _ffprobe_json(path: str, entries: str, stream: Optional[str], ffprobe_path: str) -> Dict[str, Any]:
    cmd = [ffprobe_path, "-v", "error"]
    if stream:
        cmd.extend(["-select_streams", stream])
    cmd.extend(["-show_entries", entries, "-of", "json", path])

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise MediaProbeError(f"{ffprobe_path} not found")

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise MediaProbeError(
            f"ffprobe exited with code {process.returncode}: "
            f"{stderr.decode(errors='replace').strip()}"
        )

    try:
        return json.loads(stdout.decode(errors="replace") or "{}")
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Unparseable ffprobe output: {e}")


async def _with_temp_file(data: bytes, suffix: str, probe):
    fd, path = tempfile.mkstemp(prefix="typebeat-probe-", suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return await probe(path)
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass


async def probe_audio_duration(data: bytes, suffix: str = "", ffprobe_path: str = "ffprobe") -> float:
    """
    Duration of an audio payload in seconds.

    Raises:
        MediaProbeError: If ffprobe fails or reports no usable duration
    """
    async def _probe(path: str) -> float:
        info = await _ffprobe_json(path, "format=duration", None, ffprobe_path)
        raw = info.get("format", {}).get("duration")
        try:
            duration = float(raw)
        except (TypeError, ValueError):
            raise MediaProbeError(f"No duration reported (got {raw!r})")
        if duration <= 0:
            raise MediaProbeError(f"Non-positive duration {duration}")
        return duration

    return await _with_temp_file(data, suffix, _probe)


async def probe_image_size(data: bytes, suffix: str = "", ffprobe_path: str = "ffprobe") -> Tuple[int, int]:
    """
    (width, height) of an image payload.

    Raises:
        MediaProbeError: If ffprobe fails or finds no video stream
    """
    async def _probe(path: str) -> Tuple[int, int]:
        info = await _ffprobe_json(path, "stream=width,height", "v:0", ffprobe_path)
        streams = info.get("streams") or []
        if not streams:
            raise MediaProbeError("No image stream found")
        try:
            return int(streams[0]["width"]), int(streams[0]["height"])
        except (KeyError, TypeError, ValueError):
            raise MediaProbeError(f"Unusable stream info: {streams[0]!r}")

    return await _with_temp_file(data, suffix, _probe)

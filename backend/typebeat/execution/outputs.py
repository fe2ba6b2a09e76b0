"""
Rendered output store.

Holds rendered video bytes behind revocable playback URLs, the way a
browser holds Blob objects behind object URLs. A URL stays valid until
revoked; forgetting to revoke keeps the bytes alive for the session.
"""

import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from ..jobs.models import OutputHandle

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """Replace anything outside [a-zA-Z0-9._-] with "_" and cap the length."""
    cleaned = _UNSAFE_CHARS.sub("_", name)
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    return cleaned[:max_length]


def output_filename(audio_name: str, image_name: str) -> str:
    """Download name for a rendered pair: video_<audio>_<image>.mp4"""
    audio_stem = sanitize_filename(Path(audio_name).stem, 60)
    image_stem = sanitize_filename(Path(image_name).stem, 60)
    return f"video_{audio_stem}_{image_stem}.mp4"


class OutputStore:
    """In-memory store of rendered videos keyed by playback URL."""

    def __init__(self, url_prefix: str = "blob:typebeat/"):
        self.url_prefix = url_prefix
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes, filename: str) -> OutputHandle:
        """Store bytes and mint a fresh URL for them."""
        url = f"{self.url_prefix}{uuid.uuid4()}"
        self._blobs[url] = data
        logger.debug(f"[Outputs] Stored {filename} ({len(data)} bytes) at {url}")
        return OutputHandle(
            url=url,
            filename=filename,
            size=len(data),
            created_at=datetime.now(),
        )

    def get(self, url: str) -> Optional[bytes]:
        return self._blobs.get(url)

    def video_id(self, url: str) -> str:
        """The trailing id of a URL, as used by the HTTP adapter."""
        return url[len(self.url_prefix):] if url.startswith(self.url_prefix) else url

    def url_for(self, video_id: str) -> str:
        return f"{self.url_prefix}{video_id}"

    def revoke(self, url: str) -> bool:
        """
        Release the bytes behind `url`.

        Returns:
            True if the URL was live
        """
        existed = self._blobs.pop(url, None) is not None
        if existed:
            logger.debug(f"[Outputs] Revoked {url}")
        return existed

    def revoke_all(self) -> int:
        count = len(self._blobs)
        self._blobs.clear()
        return count

    @property
    def total_bytes(self) -> int:
        return sum(len(b) for b in self._blobs.values())

    def __len__(self) -> int:
        return len(self._blobs)

    def __contains__(self, url: str) -> bool:
        return url in self._blobs

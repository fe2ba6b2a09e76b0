"""
Pair preparation cache.

Reads a pair's bytes and probes its metadata ahead of rendering, so the
executor can skip file reads and the duration probe when its turn comes.
Prepared assets are only ever used when the pair's file signature still
matches; a stale entry is ignored, never trusted.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .config import RenderConfig, DEFAULT_RENDER_CONFIG
from .jobs.models import BackgroundMode, MediaRef, PairInput, VideoSettings
from .media import MediaProbeError, probe_audio_duration, probe_image_size

logger = logging.getLogger(__name__)

DurationProbe = Callable[[bytes, str], Awaitable[float]]
ImageProbe = Callable[[bytes, str], Awaitable[Tuple[int, int]]]


def file_signature(audio: MediaRef, image: MediaRef) -> str:
    """Identity of a pair's inputs: <audio name>_<audio size>_<image name>_<image size>"""
    return f"{audio.name}_{audio.size}_{image.name}_{image.size}"


class PreparedAssets(BaseModel):
    """Bytes and metadata read ahead of rendering for one pair."""

    model_config = ConfigDict(extra="forbid")

    pair_id: str
    file_signature: str
    audio_buffer: bytes
    image_buffer: bytes
    background_buffer: Optional[bytes] = None
    audio_duration: Optional[float] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    prepared_at: datetime = Field(default_factory=datetime.now)

    @property
    def size_bytes(self) -> int:
        return (
            len(self.audio_buffer)
            + len(self.image_buffer)
            + len(self.background_buffer or b"")
        )

    def matches(self, audio: MediaRef, image: MediaRef) -> bool:
        return self.file_signature == file_signature(audio, image)


class PreparationResult(BaseModel):
    """Outcome of preparing one pair."""

    model_config = ConfigDict(extra="forbid")

    pair_id: str
    success: bool
    cached: bool = False
    error: Optional[str] = None


class PreparationCache:
    """
    Bounded in-memory cache of prepared pairs.

    Usage:
        cache = PreparationCache(config)
        await cache.prepare_pairs(pairs, settings)
        assets = cache.get(pair)  # None unless the signature still matches
    """

    def __init__(
        self,
        config: RenderConfig = DEFAULT_RENDER_CONFIG,
        duration_probe: Optional[DurationProbe] = None,
        image_probe: Optional[ImageProbe] = None,
    ):
        self._config = config
        self._duration_probe = duration_probe or self._default_duration_probe
        self._image_probe = image_probe or self._default_image_probe
        self._entries: Dict[str, PreparedAssets] = {}

    async def _default_duration_probe(self, data: bytes, suffix: str) -> float:
        return await probe_audio_duration(data, suffix, self._config.ffprobe_path)

    async def _default_image_probe(self, data: bytes, suffix: str) -> Tuple[int, int]:
        return await probe_image_size(data, suffix, self._config.ffprobe_path)

    @property
    def memory_usage(self) -> int:
        return sum(entry.size_bytes for entry in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, pair: PairInput) -> Optional[PreparedAssets]:
        """Prepared assets for `pair`, or None if missing or stale."""
        entry = self._entries.get(pair.id)
        if entry is None or pair.audio is None or pair.image is None:
            return None
        if not entry.matches(pair.audio, pair.image):
            logger.info(f"[Preparation] Pair {pair.id} changed since preparation, ignoring cache")
            return None
        return entry

    def evict(self, pair_id: str) -> bool:
        return self._entries.pop(pair_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def prepare_pair(self, pair: PairInput, settings: Optional[VideoSettings] = None) -> PreparedAssets:
        """
        Read and probe one pair.

        A failed duration or image probe leaves the field empty; the
        executor probes again (or renders without a fixed duration).

        Raises:
            ValueError: If the pair is missing audio or image
        """
        if pair.audio is None or pair.image is None:
            raise ValueError(f"Pair {pair.id} is missing audio or image")

        audio_buffer = await pair.audio.read()
        image_buffer = await pair.image.read()

        duration: Optional[float] = None
        try:
            duration = await self._duration_probe(audio_buffer, pair.audio.suffix)
        except MediaProbeError as e:
            logger.warning(f"[Preparation] Could not probe duration of {pair.audio.name}: {e}")

        width: Optional[int] = None
        height: Optional[int] = None
        try:
            width, height = await self._image_probe(image_buffer, pair.image.suffix)
        except MediaProbeError as e:
            logger.warning(f"[Preparation] Could not probe size of {pair.image.name}: {e}")

        background_buffer: Optional[bytes] = None
        if (
            settings is not None
            and settings.background == BackgroundMode.CUSTOM
            and settings.custom_background is not None
        ):
            try:
                background_buffer = await settings.custom_background.read()
            except OSError as e:
                logger.warning(f"[Preparation] Could not read custom background, will use fallback: {e}")

        return PreparedAssets(
            pair_id=pair.id,
            file_signature=file_signature(pair.audio, pair.image),
            audio_buffer=audio_buffer,
            image_buffer=image_buffer,
            background_buffer=background_buffer,
            audio_duration=duration,
            image_width=width,
            image_height=height,
        )

    async def prepare_pairs(
        self,
        pairs: List[PairInput],
        settings: Optional[VideoSettings] = None,
    ) -> List[PreparationResult]:
        """
        Prepare pairs, at most preparation_concurrency at a time.

        One pair failing does not affect the others. Assets that would
        push the cache past the memory limit are not cached.
        """
        semaphore = asyncio.Semaphore(max(1, self._config.preparation_concurrency))
        logger.info(f"[Preparation] Preparing {len(pairs)} pair(s)")

        async def _one(pair: PairInput) -> PreparationResult:
            async with semaphore:
                try:
                    assets = await self.prepare_pair(pair, settings)
                except (ValueError, OSError) as e:
                    logger.error(f"[Preparation] Pair {pair.id} failed: {e}")
                    return PreparationResult(pair_id=pair.id, success=False, error=str(e))

                current = self.memory_usage - (
                    self._entries[pair.id].size_bytes if pair.id in self._entries else 0
                )
                if current + assets.size_bytes > self._config.preparation_memory_limit:
                    logger.warning(
                        f"[Preparation] Memory limit reached, pair {pair.id} will be read at render time"
                    )
                    return PreparationResult(pair_id=pair.id, success=True, cached=False)

                self._entries[pair.id] = assets
                return PreparationResult(pair_id=pair.id, success=True, cached=True)

        results = await asyncio.gather(*(_one(pair) for pair in pairs))
        cached = sum(1 for r in results if r.cached)
        logger.info(f"[Preparation] Prepared {cached}/{len(pairs)} pair(s) into cache")
        return list(results)

"""
Render job data models.

A RenderJob turns one (audio, image) pair into one MP4 video.
Jobs in a batch are independent: one job failing must never block
the others.

All models use Pydantic for validation.
State transitions are validated externally (see state.py).
"""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """
    Render job status.

    queued -> processing -> completed | failed | cancelled
    """

    QUEUED = "queued"  # Admitted to the batch, not yet holding the engine
    PROCESSING = "processing"  # Holds the engine handoff
    COMPLETED = "completed"  # Output read back and verified
    FAILED = "failed"  # Job-scoped error, see job.error
    CANCELLED = "cancelled"  # Stopped by operator, not an error


class MediaRef:
    """
    Reference to an input file.

    Exposes a display name, a size in bytes and an async byte reader.
    Subclasses decide where the bytes live.
    """

    name: str
    size: int

    async def read(self) -> bytes:
        raise NotImplementedError

    @property
    def suffix(self) -> str:
        """File extension including the dot, lowercased ("" if none)."""
        return Path(self.name).suffix.lower()

    @property
    def stem(self) -> str:
        return Path(self.name).stem

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, size={self.size})"


class BytesMediaRef(MediaRef):
    """In-memory media reference (uploads, tests, prepared buffers)."""

    def __init__(self, name: str, data: bytes):
        self.name = name
        self._data = bytes(data)
        self.size = len(self._data)

    async def read(self) -> bytes:
        return self._data


class FileMediaRef(MediaRef):
    """Media reference backed by a file on local disk."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size if self.path.is_file() else 0

    async def read(self) -> bytes:
        return self.path.read_bytes()


class PairInput(BaseModel):
    """
    One (audio, image) pair as handed over by the pairing layer.

    audio/image may be None at this boundary so that batch validation
    can reject incomplete pairs explicitly.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    audio: Optional[MediaRef] = None
    image: Optional[MediaRef] = None


class BackgroundMode(str, Enum):
    """Canvas fill behind the letterboxed image."""

    BLACK = "black"
    WHITE = "white"
    CUSTOM = "custom"


class VideoSettings(BaseModel):
    """
    Read-only render settings consumed when building the transcode command.

    custom_background is only used with BackgroundMode.CUSTOM; without it
    the render falls back to a black canvas.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    background: BackgroundMode = BackgroundMode.BLACK
    custom_background: Optional[MediaRef] = None

    # Logo overlay (top-right corner)
    use_logo: bool = False
    logo: Optional[MediaRef] = None

    @property
    def wants_logo(self) -> bool:
        return self.use_logo and self.logo is not None


class OutputHandle(BaseModel):
    """
    Owned reference to a rendered video.

    The bytes live in the OutputStore under `url`. The handle must be
    revoked when the job is discarded or the bytes leak for the session.
    """

    model_config = ConfigDict(extra="forbid")

    url: str
    filename: str
    size: int
    created_at: datetime = Field(default_factory=datetime.now)


class RenderedVideo(BaseModel):
    """Completion notice handed to the UI layer."""

    model_config = ConfigDict(extra="forbid")

    id: str
    url: str
    filename: str
    created_at: datetime


class RenderJob(BaseModel):
    """
    A single pair-to-video render job.

    Invariants (enforced by the executor and state.py):
    - status only moves forward, terminal states never change
    - progress never decreases while processing, 100 only on completed
    - output is present if and only if status is COMPLETED
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    # Identity
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pair_id: str
    batch_id: Optional[str] = None
    retry_of: Optional[str] = None  # Job id this one re-renders

    # Inputs, exclusively owned by this job while queued/processing
    audio: MediaRef = Field(exclude=True)
    image: MediaRef = Field(exclude=True)

    # State
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0

    # Outcome
    output: Optional[OutputHandle] = None
    error: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def short_id(self) -> str:
        return self.id.replace("-", "")[:8]

    @property
    def audio_name(self) -> str:
        return self.audio.name

    @property
    def image_name(self) -> str:
        return self.image.name

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def to_summary(self) -> Dict[str, Any]:
        """JSON-friendly snapshot for the UI layer."""
        data = self.model_dump(mode="json")
        data["audio_name"] = self.audio_name
        data["image_name"] = self.image_name
        return data

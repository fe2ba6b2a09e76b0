"""
Render job model: data, state transitions and in-memory tracking.

Not included here:
- Engine access and execution (see typebeat.execution)
- Batch admission (see typebeat.execution.scheduler)
"""

from .errors import (
    JobError,
    JobNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
    BatchInProgressError,
)
from .models import (
    JobStatus,
    MediaRef,
    BytesMediaRef,
    FileMediaRef,
    PairInput,
    BackgroundMode,
    VideoSettings,
    OutputHandle,
    RenderedVideo,
    RenderJob,
)
from .state import (
    TERMINAL_JOB_STATES,
    is_job_terminal,
    can_transition_job,
    validate_job_transition,
    transition_job,
)
from .registry import JobRegistry

__all__ = [
    # Errors
    "JobError",
    "JobNotFoundError",
    "InvalidStateTransitionError",
    "ValidationError",
    "BatchInProgressError",
    # Models
    "JobStatus",
    "MediaRef",
    "BytesMediaRef",
    "FileMediaRef",
    "PairInput",
    "BackgroundMode",
    "VideoSettings",
    "OutputHandle",
    "RenderedVideo",
    "RenderJob",
    # State validation
    "TERMINAL_JOB_STATES",
    "is_job_terminal",
    "can_transition_job",
    "validate_job_transition",
    "transition_job",
    # Registry
    "JobRegistry",
]

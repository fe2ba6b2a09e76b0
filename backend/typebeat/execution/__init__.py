"""
Render execution: engine ownership, handoff, progress, cancellation,
the per-job executor and the batch scheduler.

Everything here shares one EngineHandle. Build the pieces together
with RenderService (typebeat.service) unless a test needs them apart.
"""

from .base import ProgressEvent, ProgressListener, TranscodeEngine
from .cancellation import CancellationController, CancelScope
from .command import TempNames, build_filter_graph, build_transcode_command
from .engine_handle import EngineHandle, RESERVED_PREFIXES, is_reserved_name, with_retries
from .errors import (
    ExecutionError,
    EngineInitError,
    EngineExecutionError,
    OutputNotReadyError,
    OutputReadError,
    RenderCancelled,
    HandoffTimeout,
)
from .executor import SequentialRenderExecutor
from .ffmpeg import FFmpegEngine
from .handoff import HandoffGate, HandoffTicket
from .outputs import OutputStore, output_filename, sanitize_filename
from .progress import ProgressParser, ProgressRelay
from .scheduler import BatchScheduler, concurrency_budget, create_jobs, validate_pairs

__all__ = [
    # Engine
    "ProgressEvent",
    "ProgressListener",
    "TranscodeEngine",
    "FFmpegEngine",
    "EngineHandle",
    "RESERVED_PREFIXES",
    "is_reserved_name",
    "with_retries",
    # Errors
    "ExecutionError",
    "EngineInitError",
    "EngineExecutionError",
    "OutputNotReadyError",
    "OutputReadError",
    "RenderCancelled",
    "HandoffTimeout",
    # Coordination
    "HandoffGate",
    "HandoffTicket",
    "ProgressParser",
    "ProgressRelay",
    "CancellationController",
    "CancelScope",
    # Rendering
    "TempNames",
    "build_filter_graph",
    "build_transcode_command",
    "SequentialRenderExecutor",
    "BatchScheduler",
    "concurrency_budget",
    "create_jobs",
    "validate_pairs",
    # Outputs
    "OutputStore",
    "output_filename",
    "sanitize_filename",
]

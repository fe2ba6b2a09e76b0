"""
Execution-specific errors.

Job-scoped errors (EngineExecutionError, OutputReadError, HandoffTimeout)
fail a single job; the batch keeps going.
EngineInitError is batch-scoped: no job can render without an engine.
RenderCancelled is not a failure, it ends a job in the cancelled state.
"""

from typing import Optional


class ExecutionError(Exception):
    """
    Base exception for execution failures.

    All execution errors inherit from this.
    """

    pass


class EngineInitError(ExecutionError):
    """
    The transcoding engine could not be loaded from any source.

    Fatal to the whole batch. The engine handle is left unloaded so the
    caller may retry the batch.
    """

    def __init__(self, sources, reason: str = ""):
        self.sources = tuple(sources)
        self.reason = reason
        message = f"Engine failed to load from {len(self.sources)} source(s)"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class EngineExecutionError(ExecutionError):
    """
    The transcode command failed for a reason unrelated to cancellation.

    Raised for:
    - Non-zero exit code
    - Timeout exceeded
    - Engine file I/O exhausted its retries
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        exit_code: Optional[int] = None,
        log_tail: Optional[str] = None,
    ):
        self.job_id = job_id
        self.exit_code = exit_code
        self.log_tail = log_tail
        super().__init__(message)


class OutputNotReadyError(ExecutionError):
    """
    Output file missing or implausibly small.

    Transient: the engine may report completion before the file is fully
    flushed. Retried by the executor before being promoted to OutputReadError.
    """

    def __init__(self, name: str, size: Optional[int] = None):
        self.name = name
        self.size = size
        if size is None:
            super().__init__(f"Output {name} not found")
        else:
            super().__init__(f"Output {name} too small ({size} bytes)")


class OutputReadError(ExecutionError):
    """Output still missing or undersized after all read attempts."""

    def __init__(self, name: str, attempts: int, last_error: Optional[str] = None):
        self.name = name
        self.attempts = attempts
        message = f"Output {name} unreadable after {attempts} attempt(s)"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class RenderCancelled(ExecutionError):
    """
    Cancellation observed at a checkpoint.

    Produces the cancelled terminal state, never surfaced as a failure.
    """

    def __init__(self, job_id: Optional[str] = None, checkpoint: str = ""):
        self.job_id = job_id
        self.checkpoint = checkpoint
        message = "Render cancelled"
        if checkpoint:
            message += f" at {checkpoint}"
        super().__init__(message)


class HandoffTimeout(ExecutionError):
    """
    A job waited too long for the engine handoff.

    Indicates a leaked release in the executor, not a normal failure.
    """

    def __init__(self, job_id: str, waited: float, holder: Optional[str] = None):
        self.job_id = job_id
        self.waited = waited
        self.holder = holder
        message = f"Job {job_id} waited {waited:.0f}s for the engine handoff"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)

"""
Cancellation controller.

One process-wide "stop everything" flag plus per-job cancel flags.
Cancellation is cooperative: the executor checks its scope at fixed
checkpoints. Cancelling the batch also terminates the engine, which
resets the handoff gate and wakes every job waiting for the engine, so
cancelling can never deadlock the pipeline. Cancelling the single job that
holds the engine terminates it too but leaves the queue in place.
"""

import logging
from typing import Optional, Set

from .engine_handle import EngineHandle
from .errors import RenderCancelled

logger = logging.getLogger(__name__)


class CancelScope:
    """Cancellation view for a single job."""

    def __init__(self, controller: "CancellationController", job_id: str):
        self._controller = controller
        self.job_id = job_id

    @property
    def cancelled(self) -> bool:
        return self._controller.is_cancelled or self._controller.is_job_cancelled(self.job_id)

    def is_set(self) -> bool:
        return self.cancelled

    def check(self, checkpoint: str = "") -> None:
        """
        Raises:
            RenderCancelled: If the batch or this job was cancelled
        """
        if self.cancelled:
            logger.info(f"[Cancel] Job {self.job_id} observed cancellation at {checkpoint or 'checkpoint'}")
            raise RenderCancelled(self.job_id, checkpoint)


class CancellationController:
    """
    Process-wide cancellation flag.

    reset() must be called before a new batch starts.
    """

    def __init__(self, engine_handle: EngineHandle):
        self._engine_handle = engine_handle
        self._cancelled = False
        self._reason: Optional[str] = None
        self._cancelled_jobs: Set[str] = set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_job_cancelled(self, job_id: str) -> bool:
        return job_id in self._cancelled_jobs

    def scope(self, job_id: str) -> CancelScope:
        return CancelScope(self, job_id)

    async def request_cancel(self, reason: str = "Cancelled by user") -> None:
        """
        Set the flag and terminate the engine.

        Idempotent: a second request while already cancelled does nothing.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.info(f"[Cancel] Cancellation requested: {reason}")
        await self._engine_handle.terminate()

    def halt(self, reason: str) -> None:
        """
        Set the flag without touching the engine.

        Used when the engine is already gone (failed to load): waiters
        are released one by one through the gate and each short-circuits.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.warning(f"[Cancel] Batch halted: {reason}")

    async def cancel_job(self, job_id: str) -> None:
        """
        Cancel a single job.

        A queued job is skipped when its turn comes; the job holding the
        engine is stopped by terminating the engine. The gate is kept, so
        other waiters stay queued behind the holder until it releases.
        """
        self._cancelled_jobs.add(job_id)
        if self._engine_handle.gate.holder == job_id:
            logger.info(f"[Cancel] Job {job_id} holds the engine, terminating engine")
            await self._engine_handle.terminate(reset_gate=False)
        else:
            logger.info(f"[Cancel] Job {job_id} marked for cancellation")

    def reset(self) -> None:
        """Clear all cancellation state."""
        self._cancelled = False
        self._reason = None
        self._cancelled_jobs.clear()

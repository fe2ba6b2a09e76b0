"""
In-memory job registry.

The registry provides:
- Job storage and retrieval by ID
- Listing jobs in creation order
- Removal with output revocation
- Optional expiry of terminal jobs after a retention delay
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from .errors import JobNotFoundError
from .models import JobStatus, RenderJob

if TYPE_CHECKING:
    from ..execution.outputs import OutputStore

logger = logging.getLogger(__name__)


class JobRegistry:
    """
    In-memory registry for render job tracking.

    Removing a job revokes its output handle so the rendered bytes do
    not outlive the job.
    """

    def __init__(self, output_store: Optional["OutputStore"] = None):
        """
        Initialize registry.

        Args:
            output_store: Store holding rendered bytes, revoked on removal
        """
        # job_id -> RenderJob
        self._jobs: Dict[str, RenderJob] = {}
        self._output_store = output_store
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}

    def add_job(self, job: RenderJob) -> None:
        """
        Add a job to the registry.

        Raises:
            ValueError: If a job with the same ID already exists
        """
        if job.id in self._jobs:
            raise ValueError(f"Job with ID '{job.id}' already exists")

        self._jobs[job.id] = job

    def get_job(self, job_id: str) -> Optional[RenderJob]:
        """Retrieve a job by ID, or None."""
        return self._jobs.get(job_id)

    def get_job_or_raise(self, job_id: str) -> RenderJob:
        """
        Retrieve a job by ID, raising an exception if not found.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[RenderJob]:
        """
        List jobs ordered by creation time (oldest first).

        Args:
            status: Only return jobs in this status
        """
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def remove_job(self, job_id: str) -> RenderJob:
        """
        Remove a job and revoke its output.

        Returns:
            The removed job

        Raises:
            JobNotFoundError: If the job does not exist
        """
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)

        handle = self._expiry_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

        job = self._jobs.pop(job_id)
        if job.output is not None and self._output_store is not None:
            self._output_store.revoke(job.output.url)
        logger.debug(f"[Registry] Removed job {job_id} ({job.status.value})")
        return job

    def schedule_expiry(self, job_id: str, delay: Optional[float]) -> None:
        """
        Remove a terminal job after `delay` seconds.

        Must be called from within the running event loop.
        A None delay keeps the job until it is discarded explicitly.
        """
        if delay is None or job_id not in self._jobs:
            return

        previous = self._expiry_handles.pop(job_id, None)
        if previous is not None:
            previous.cancel()

        loop = asyncio.get_running_loop()
        self._expiry_handles[job_id] = loop.call_later(delay, self._expire, job_id)

    def _expire(self, job_id: str) -> None:
        self._expiry_handles.pop(job_id, None)
        if job_id in self._jobs:
            logger.info(f"[Registry] Retention elapsed, discarding job {job_id}")
            self.remove_job(job_id)

    def clear(self) -> None:
        """Remove every job, revoking all outputs."""
        for job_id in list(self._jobs):
            self.remove_job(job_id)

    def count(self) -> int:
        """Get the total number of jobs in the registry."""
        return len(self._jobs)

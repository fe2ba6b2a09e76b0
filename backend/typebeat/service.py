"""
Render service.

The single entry point the UI layer (HTTP routes, CLI) talks to. Owns
exactly one engine handle and wires the pipeline around it:

    OutputStore, JobRegistry, ProgressRelay, EngineHandle,
    CancellationController, SequentialRenderExecutor, BatchScheduler,
    PreparationCache

One batch runs at a time. Jobs stay in the registry after they finish
(for downloads and retries) until discarded or their retention elapses.
"""

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .config import RenderConfig, DEFAULT_RENDER_CONFIG
from .execution.base import TranscodeEngine
from .execution.cancellation import CancellationController
from .execution.engine_handle import EngineHandle
from .execution.errors import EngineInitError
from .execution.executor import DurationProbe, SequentialRenderExecutor
from .execution.ffmpeg import FFmpegEngine
from .execution.outputs import OutputStore
from .execution.progress import ProgressRelay
from .execution.scheduler import BatchScheduler, create_jobs
from .jobs.errors import BatchInProgressError, InvalidStateTransitionError, ValidationError
from .jobs.models import JobStatus, OutputHandle, PairInput, RenderedVideo, RenderJob, VideoSettings
from .jobs.registry import JobRegistry
from .preparation import PreparationCache, PreparationResult, PreparedAssets

logger = logging.getLogger(__name__)

OverallProgressCallback = Callable[[int], None]
JobUpdateCallback = Callable[[str, JobStatus, int], None]
VideoCallback = Callable[[RenderedVideo], None]


class BatchResult(BaseModel):
    """Final tally of a batch."""

    model_config = ConfigDict(extra="forbid")

    batch_id: str
    job_ids: List[str] = Field(default_factory=list)
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def all_completed(self) -> bool:
        return self.total > 0 and self.completed == self.total


class BatchHandle:
    """
    Live view of a submitted batch.

    progress is the aggregate floor(100 * settled / total).
    """

    def __init__(self, batch_id: str, job_ids: List[str]):
        self.batch_id = batch_id
        self.job_ids = list(job_ids)
        self.progress = 0
        self._task: Optional["asyncio.Task[BatchResult]"] = None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def error(self) -> Optional[BaseException]:
        """Batch-level error once done (EngineInitError), else None."""
        if not self.done or self._task.cancelled():
            return None
        return self._task.exception()

    async def wait(self) -> BatchResult:
        """
        Wait for every job of the batch to be terminal.

        Raises:
            EngineInitError: If the engine could not be loaded
        """
        if self._task is None:
            raise RuntimeError(f"Batch {self.batch_id} was never started")
        return await asyncio.shield(self._task)

    def to_summary(self) -> Dict[str, object]:
        error = self.error
        return {
            "batch_id": self.batch_id,
            "job_ids": list(self.job_ids),
            "progress": self.progress,
            "done": self.done,
            "error": str(error) if error is not None else None,
        }


class RenderService:
    """
    Batch rendering facade.

    Usage:
        service = RenderService(RenderConfig.from_env())
        handle = await service.submit_batch(pairs, VideoSettings())
        result = await handle.wait()
    """

    def __init__(
        self,
        config: Optional[RenderConfig] = None,
        engine_factory: Optional[Callable[[], TranscodeEngine]] = None,
        duration_probe: Optional[DurationProbe] = None,
    ):
        """
        Args:
            config: Pipeline configuration (defaults to DEFAULT_RENDER_CONFIG)
            engine_factory: Builds unloaded engines (defaults to FFmpegEngine)
            duration_probe: Replaces the ffprobe duration lookup
        """
        self.config = config or DEFAULT_RENDER_CONFIG
        self.output_store = OutputStore(self.config.url_prefix)
        self.registry = JobRegistry(self.output_store)
        self.relay = ProgressRelay(min_interval=self.config.progress_min_interval)
        self.engine_handle = EngineHandle(
            engine_factory or FFmpegEngine,
            self.config,
            relay=self.relay,
        )
        self.cancellation = CancellationController(self.engine_handle)
        self.executor = SequentialRenderExecutor(
            self.engine_handle,
            self.relay,
            self.cancellation,
            self.output_store,
            self.config,
            duration_probe=duration_probe,
        )
        self.scheduler = BatchScheduler(self.executor, self.cancellation, self.config)
        self.preparation = PreparationCache(self.config, duration_probe=duration_probe)
        self._current: Optional[BatchHandle] = None

    @property
    def current_batch(self) -> Optional[BatchHandle]:
        return self._current

    @property
    def is_busy(self) -> bool:
        return self._current is not None and not self._current.done

    # =========================================================================
    # Batches
    # =========================================================================

    async def submit_batch(
        self,
        pairs: Sequence[PairInput],
        settings: Optional[VideoSettings] = None,
        on_progress: Optional[OverallProgressCallback] = None,
        on_job_update: Optional[JobUpdateCallback] = None,
        on_video: Optional[VideoCallback] = None,
        prepared: Optional[Mapping[str, PreparedAssets]] = None,
    ) -> BatchHandle:
        """
        Validate and start a batch. Returns as soon as the batch is running.

        Args:
            pairs: Pairs in render order
            settings: Background/logo settings shared by every job
            on_progress: Aggregate progress (0-100) after every settled job
            on_job_update: (job_id, status, progress) on every job change
            on_video: Completion notice per completed job
            prepared: Prepared assets by pair id; defaults to the
                preparation cache

        Raises:
            ValidationError: The batch is rejected, nothing was started
            BatchInProgressError: Another batch is still running
        """
        if self.is_busy:
            raise BatchInProgressError(self._current.batch_id)

        self.scheduler.validate(pairs)
        if prepared is None:
            prepared = {
                pair.id: assets
                for pair in pairs
                for assets in [self.preparation.get(pair)]
                if assets is not None
            }

        batch_id = str(uuid.uuid4())
        jobs = create_jobs(pairs, batch_id=batch_id)
        return self._start(batch_id, jobs, settings or VideoSettings(), prepared,
                           on_progress, on_job_update, on_video)

    def _start(
        self,
        batch_id: str,
        jobs: List[RenderJob],
        settings: VideoSettings,
        prepared: Mapping[str, PreparedAssets],
        on_progress: Optional[OverallProgressCallback],
        on_job_update: Optional[JobUpdateCallback],
        on_video: Optional[VideoCallback],
    ) -> BatchHandle:
        for job in jobs:
            self.registry.add_job(job)

        self.cancellation.reset()
        handle = BatchHandle(batch_id, [job.id for job in jobs])

        def _progress(percent: int) -> None:
            handle.progress = percent
            if on_progress is not None:
                on_progress(percent)

        def _job_update(job: RenderJob) -> None:
            if job.is_terminal:
                self.registry.schedule_expiry(job.id, self.config.retention_seconds)
            if on_job_update is not None:
                on_job_update(job.id, job.status, job.progress)

        handle._task = asyncio.ensure_future(self._run_batch(
            batch_id, jobs, settings, prepared, _progress, _job_update, on_video,
        ))
        handle._task.add_done_callback(self._log_batch_outcome)
        self._current = handle
        logger.info(f"[Service] Batch {batch_id} submitted with {len(jobs)} job(s)")
        return handle

    async def _run_batch(
        self,
        batch_id: str,
        jobs: List[RenderJob],
        settings: VideoSettings,
        prepared: Mapping[str, PreparedAssets],
        on_progress: OverallProgressCallback,
        on_job_update: Callable[[RenderJob], None],
        on_video: Optional[VideoCallback],
    ) -> BatchResult:
        await self.scheduler.run(
            jobs,
            settings,
            prepared=prepared,
            on_job_update=on_job_update,
            on_video=on_video,
            on_progress=on_progress,
        )
        counts = {status: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status] += 1
        return BatchResult(
            batch_id=batch_id,
            job_ids=[job.id for job in jobs],
            total=len(jobs),
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
        )

    @staticmethod
    def _log_batch_outcome(task: "asyncio.Task[BatchResult]") -> None:
        if task.cancelled():
            logger.warning("[Service] Batch task was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Service] Batch aborted: {error}")
            return
        result = task.result()
        logger.info(
            f"[Service] Batch {result.batch_id} finished: {result.completed} completed, "
            f"{result.failed} failed, {result.cancelled} cancelled"
        )

    async def cancel_batch(self, reason: str = "Cancelled by user") -> bool:
        """
        Stop the running batch.

        Returns:
            False if no batch was running
        """
        if not self.is_busy:
            return False
        await self.cancellation.request_cancel(reason)
        return True

    # =========================================================================
    # Jobs
    # =========================================================================

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel one job of the running batch.

        Returns:
            False if the job is already terminal

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.registry.get_job_or_raise(job_id)
        if job.is_terminal:
            return False
        await self.cancellation.cancel_job(job_id)
        return True

    def get_job(self, job_id: str) -> RenderJob:
        """
        Read-only snapshot of a job.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        return self.registry.get_job_or_raise(job_id).model_copy(deep=True)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[RenderJob]:
        return [job.model_copy(deep=True) for job in self.registry.list_jobs(status)]

    def discard_job(self, job_id: str) -> RenderJob:
        """
        Forget a finished job and revoke its output URL.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateTransitionError: If the job is still queued or processing
        """
        job = self.registry.get_job_or_raise(job_id)
        if not job.is_terminal:
            raise InvalidStateTransitionError(job.status.value, "discarded", job_id=job_id)
        self.preparation.evict(job.pair_id)
        return self.registry.remove_job(job_id)

    async def retry_job(
        self,
        job_id: str,
        settings: Optional[VideoSettings] = None,
        on_progress: Optional[OverallProgressCallback] = None,
        on_job_update: Optional[JobUpdateCallback] = None,
        on_video: Optional[VideoCallback] = None,
    ) -> BatchHandle:
        """
        Render a failed or cancelled job again as a new single-job batch.

        The original job is left untouched; the new one has retry_of set.

        Raises:
            JobNotFoundError: If the job does not exist
            ValidationError: If the job completed or is still active
            BatchInProgressError: Another batch is still running
        """
        original = self.registry.get_job_or_raise(job_id)
        if original.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise ValidationError(
                f"Only failed or cancelled jobs can be retried (job is {original.status.value})",
                pair_ids=[original.pair_id],
            )
        if self.is_busy:
            raise BatchInProgressError(self._current.batch_id)

        batch_id = str(uuid.uuid4())
        retry = RenderJob(
            pair_id=original.pair_id,
            batch_id=batch_id,
            retry_of=original.id,
            audio=original.audio,
            image=original.image,
        )
        prepared: Dict[str, PreparedAssets] = {}
        assets = self.preparation.get(PairInput(id=original.pair_id, audio=original.audio, image=original.image))
        if assets is not None:
            prepared[original.pair_id] = assets

        logger.info(f"[Service] Retrying job {original.short_id} as {retry.short_id}")
        return self._start(batch_id, [retry], settings or VideoSettings(), prepared,
                           on_progress, on_job_update, on_video)

    async def prepare_pairs(
        self,
        pairs: Sequence[PairInput],
        settings: Optional[VideoSettings] = None,
    ) -> List[PreparationResult]:
        """Read and probe pairs ahead of submit_batch (see PreparationCache)."""
        return await self.preparation.prepare_pairs(list(pairs), settings)

    def get_video(self, video_id: str) -> Optional[Tuple[bytes, OutputHandle]]:
        """Rendered bytes and handle for a playback URL id, or None."""
        url = self.output_store.url_for(video_id)
        data = self.output_store.get(url)
        if data is None:
            return None
        for job in self.registry.list_jobs(JobStatus.COMPLETED):
            if job.output is not None and job.output.url == url:
                return data, job.output
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def shutdown(self) -> None:
        """Cancel any running batch, drain it, release the engine and all outputs."""
        handle = self._current
        if handle is not None and not handle.done:
            await self.cancellation.request_cancel("Service shutting down")
            try:
                await handle.wait()
            except EngineInitError as e:
                logger.warning(f"[Service] Batch ended with engine failure during shutdown: {e}")

        await self.engine_handle.terminate()
        self.registry.clear()
        self.preparation.clear()
        self._current = None
        logger.info("[Service] Shut down")

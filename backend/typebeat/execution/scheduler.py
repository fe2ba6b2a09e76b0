"""
Batch scheduler.

Turns a batch of pairs into bounded-concurrency dispatch of render jobs.

Design rules:
- Whole batch validated before any engine activity
- FIFO admission, at most ConcurrencyBudget(N) jobs in flight
- In flight is an admission concept only: the executor's handoff gate
  still runs jobs one at a time, so completion order is admission order
- Job-scoped failures settle the job and the batch moves on
- Engine load failure halts dispatch and is raised to the batch caller
"""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..config import RenderConfig, DEFAULT_RENDER_CONFIG
from ..jobs.errors import ValidationError
from ..jobs.models import JobStatus, PairInput, RenderJob, VideoSettings
from ..jobs.state import transition_job
from ..preparation import PreparedAssets
from .cancellation import CancellationController
from .errors import EngineInitError
from .executor import JobListener, SequentialRenderExecutor, VideoListener

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def concurrency_budget(
    batch_size: int,
    table: Sequence[Tuple[int, int]] = DEFAULT_RENDER_CONFIG.concurrency_table,
    maximum: int = DEFAULT_RENDER_CONFIG.concurrency_max,
) -> int:
    """
    How many jobs may be in flight for a batch of `batch_size` pairs.

    The first row whose threshold is >= batch_size wins; larger batches
    get `maximum`.
    """
    for threshold, budget in table:
        if batch_size <= threshold:
            return budget
    return maximum


def validate_pairs(pairs: Sequence[PairInput], max_batch_size: Optional[int] = None) -> None:
    """
    Reject a batch that cannot be rendered as a whole.

    Raises:
        ValidationError: Empty batch, oversized batch, duplicate pair ids
            or a pair missing its audio or image
    """
    if not pairs:
        raise ValidationError("Batch contains no pairs")

    if max_batch_size is not None and len(pairs) > max_batch_size:
        raise ValidationError(f"Batch of {len(pairs)} pairs exceeds the limit of {max_batch_size}")

    seen: Set[str] = set()
    duplicates = []
    for pair in pairs:
        if pair.id in seen:
            duplicates.append(pair.id)
        seen.add(pair.id)
    if duplicates:
        raise ValidationError("Duplicate pair ids in batch", pair_ids=duplicates)

    incomplete = [pair.id for pair in pairs if pair.audio is None or pair.image is None]
    if incomplete:
        raise ValidationError(
            f"{len(incomplete)} pair(s) missing audio or image",
            pair_ids=incomplete,
        )


def create_jobs(pairs: Sequence[PairInput], batch_id: Optional[str] = None) -> List[RenderJob]:
    """One queued job per pair, in batch order. Pairs must be validated."""
    return [
        RenderJob(pair_id=pair.id, batch_id=batch_id, audio=pair.audio, image=pair.image)
        for pair in pairs
    ]


class BatchScheduler:
    """
    FIFO scheduler with a size-dependent in-flight budget.

    Usage:
        scheduler = BatchScheduler(executor, cancellation, config)
        scheduler.validate(pairs)
        jobs = create_jobs(pairs)
        await scheduler.run(jobs, settings, on_progress=print)
    """

    def __init__(
        self,
        executor: SequentialRenderExecutor,
        cancellation: CancellationController,
        config: RenderConfig = DEFAULT_RENDER_CONFIG,
    ):
        self._executor = executor
        self._cancellation = cancellation
        self._config = config

        # Observability for tests and the status endpoint
        self.peak_in_flight = 0
        self.admission_order: List[str] = []

    def budget_for(self, batch_size: int) -> int:
        return concurrency_budget(
            batch_size,
            self._config.concurrency_table,
            self._config.concurrency_max,
        )

    def validate(self, pairs: Sequence[PairInput]) -> None:
        validate_pairs(pairs, self._config.max_batch_size)

    async def run(
        self,
        jobs: List[RenderJob],
        settings: VideoSettings,
        prepared: Optional[Mapping[str, PreparedAssets]] = None,
        on_job_update: Optional[JobListener] = None,
        on_video: Optional[VideoListener] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[RenderJob]:
        """
        Dispatch `jobs` and wait until every one of them is terminal.

        Returns:
            The same jobs, all in a terminal state

        Raises:
            EngineInitError: The engine could not be loaded; jobs that never
                reached the engine are cancelled before this is raised
        """
        total = len(jobs)
        budget = self.budget_for(total)
        prepared = prepared or {}
        notify = on_job_update or (lambda _job: None)

        queue: Deque[RenderJob] = deque(jobs)
        in_flight: Dict["asyncio.Task[RenderJob]", RenderJob] = {}
        settled = 0
        fatal: Optional[EngineInitError] = None

        self.peak_in_flight = 0
        self.admission_order = []
        logger.info(f"[Scheduler] Batch of {total} job(s), in-flight budget {budget}")

        def _emit_progress() -> None:
            if on_progress is not None and total:
                on_progress(100 * settled // total)

        while queue or in_flight:
            if self._cancellation.is_cancelled and queue:
                settled += self._cancel_queued(queue, notify)
                _emit_progress()

            while queue and len(in_flight) < budget and not self._cancellation.is_cancelled:
                job = queue.popleft()
                task = asyncio.ensure_future(self._executor.run(
                    job,
                    settings,
                    prepared=prepared.get(job.pair_id),
                    on_update=notify,
                    on_video=on_video,
                ))
                in_flight[task] = job
                self.admission_order.append(job.id)
                self.peak_in_flight = max(self.peak_in_flight, len(in_flight))
                logger.debug(f"[Scheduler] Admitted job {job.short_id} ({len(in_flight)}/{budget} in flight)")

            if not in_flight:
                continue

            done, _pending = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                job = in_flight.pop(task)
                settled += 1
                try:
                    task.result()
                except EngineInitError as e:
                    if fatal is None:
                        fatal = e
                        logger.error(f"[Scheduler] Engine unavailable, halting batch: {e}")
                logger.info(
                    f"[Scheduler] Job {job.short_id} settled as {job.status.value} "
                    f"({settled}/{total})"
                )
                _emit_progress()

        if fatal is not None:
            raise fatal
        return jobs

    def _cancel_queued(self, queue: Deque[RenderJob], notify: JobListener) -> int:
        """Cancel every not-yet-started job without running it."""
        count = 0
        while queue:
            job = queue.popleft()
            transition_job(job, JobStatus.CANCELLED)
            notify(job)
            count += 1
        logger.info(f"[Scheduler] Cancelled {count} queued job(s) that never started")
        return count

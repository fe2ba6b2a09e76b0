"""
Sequential render executor.

Runs one RenderJob against the shared engine. Many jobs may be inside
run() at once; the handoff gate lets exactly one of them touch the engine
at a time, in admission order.

Per-job protocol:
1. Wait for the previous job's cleanup (handoff), check cancellation
2. Mark processing, mint a progress token
3. Make sure the engine is alive, sweep leftovers from earlier jobs
4. Write inputs under job-unique names, each confirmed by read-back
5. Run the transcode (bounded by exec_timeout)
6. Read the output back, retrying while it is missing or undersized
7. Delete temp files, retire the token, re-verify, release the handoff
8. Only then record the terminal state and publish the output

Step 8 runs after the release so the next job is never held up by the
UI callbacks of the previous one.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from ..config import RenderConfig, DEFAULT_RENDER_CONFIG
from ..jobs.models import BackgroundMode, JobStatus, RenderedVideo, RenderJob, VideoSettings
from ..jobs.state import transition_job
from ..media import MediaProbeError, probe_audio_duration
from ..preparation import PreparedAssets
from .cancellation import CancellationController
from .command import TempNames, build_transcode_command
from .engine_handle import EngineHandle, with_retries
from .errors import (
    EngineExecutionError,
    EngineInitError,
    OutputNotReadyError,
    OutputReadError,
    RenderCancelled,
)
from .handoff import HandoffTicket
from .outputs import OutputStore, output_filename
from .progress import ProgressRelay

logger = logging.getLogger(__name__)

JobListener = Callable[[RenderJob], None]
VideoListener = Callable[[RenderedVideo], None]
DurationProbe = Callable[[bytes, str], Awaitable[float]]

# Shown once the transcode exited cleanly, before the output is verified
FINALIZING_PROGRESS = 99


class SequentialRenderExecutor:
    """
    Executes render jobs one at a time on the shared engine.

    Usage:
        executor = SequentialRenderExecutor(handle, relay, cancellation, store, config)
        job = await executor.run(job, settings, on_update=notify)
    """

    def __init__(
        self,
        engine_handle: EngineHandle,
        relay: ProgressRelay,
        cancellation: CancellationController,
        output_store: OutputStore,
        config: RenderConfig = DEFAULT_RENDER_CONFIG,
        duration_probe: Optional[DurationProbe] = None,
    ):
        self._handle = engine_handle
        self._relay = relay
        self._cancellation = cancellation
        self._outputs = output_store
        self._config = config
        self._duration_probe = duration_probe or self._default_duration_probe

    async def _default_duration_probe(self, data: bytes, suffix: str) -> float:
        return await probe_audio_duration(data, suffix, self._config.ffprobe_path)

    async def run(
        self,
        job: RenderJob,
        settings: VideoSettings,
        prepared: Optional[PreparedAssets] = None,
        on_update: Optional[JobListener] = None,
        on_video: Optional[VideoListener] = None,
    ) -> RenderJob:
        """
        Render one job to a terminal state.

        Job-scoped failures end the job as FAILED and are not raised.

        Raises:
            EngineInitError: The engine could not be loaded; the job is
                marked FAILED and the caller should halt the batch
        """
        notify = on_update or (lambda _job: None)
        scope = self._cancellation.scope(job.id)

        ticket: Optional[HandoffTicket] = None
        token: Optional[str] = None
        listener = None
        names: Optional[TempNames] = None

        outcome = JobStatus.FAILED
        error: Optional[str] = None
        data: Optional[bytes] = None
        fatal: Optional[EngineInitError] = None

        try:
            scope.check("admission")
            ticket = await self._handle.gate.acquire(
                job.id,
                timeout=self._config.handoff_timeout,
                is_cancelled=scope.is_set,
            )
            scope.check("handoff")

            transition_job(job, JobStatus.PROCESSING)
            notify(job)
            logger.info(f"[Executor] Job {job.short_id} started: {job.audio_name} + {job.image_name}")

            token = self._relay.activate(job.id, lambda value: self._on_progress(job, value, notify))
            listener = self._relay.listener_for(token)

            await self._handle.ensure_loaded(ticket)
            self._handle.add_progress_listener(listener)
            await self._handle.verify_clean()
            scope.check("engine ready")

            if prepared is not None and not prepared.matches(job.audio, job.image):
                logger.info(f"[Executor] Prepared assets for job {job.short_id} are stale, reading inputs")
                prepared = None

            names, inputs = await self._collect_inputs(job, settings, prepared)
            for name, payload in inputs:
                await self._handle.write_input(name, payload, ticket)
                scope.check(f"write {name}")

            duration = await self._resolve_duration(job, inputs[0][1], prepared)
            scope.check("duration")

            args = build_transcode_command(names, settings.background, duration, self._config)
            await self._transcode(job, args, ticket)
            scope.check("transcode")

            self._on_progress(job, FINALIZING_PROGRESS, notify)
            data = await self._read_output(names.output, ticket)
            outcome = JobStatus.COMPLETED

        except RenderCancelled:
            outcome = JobStatus.CANCELLED
        except EngineInitError as e:
            outcome, error, fatal = JobStatus.FAILED, str(e), e
            self._cancellation.halt("Engine failed to load")
        except Exception as e:
            # A terminated engine makes the in-flight command fail; that is
            # the cancellation surfacing, not a render error.
            if scope.cancelled:
                outcome = JobStatus.CANCELLED
            else:
                outcome, error = JobStatus.FAILED, str(e)
                logger.error(f"[Executor] Job {job.short_id} failed: {e}")
        finally:
            await self._release(job, ticket, token, listener, names)

        self._finish(job, outcome, error, data, notify, on_video)
        if fatal is not None:
            raise fatal
        return job

    # =========================================================================
    # Steps
    # =========================================================================

    async def _collect_inputs(
        self,
        job: RenderJob,
        settings: VideoSettings,
        prepared: Optional[PreparedAssets],
    ) -> Tuple[TempNames, List[Tuple[str, bytes]]]:
        """Temp names plus (name, bytes) to write. Audio is always first."""
        audio = prepared.audio_buffer if prepared is not None else await job.audio.read()
        image = prepared.image_buffer if prepared is not None else await job.image.read()

        background: Optional[bytes] = None
        background_suffix: Optional[str] = None
        if settings.background == BackgroundMode.CUSTOM and settings.custom_background is not None:
            background_suffix = settings.custom_background.suffix
            if prepared is not None and prepared.background_buffer:
                background = prepared.background_buffer
            else:
                try:
                    background = await settings.custom_background.read()
                except OSError as e:
                    logger.warning(f"[Executor] Custom background unreadable, using black: {e}")
            if not background:
                background_suffix = None

        logo: Optional[bytes] = None
        logo_suffix: Optional[str] = None
        if settings.wants_logo:
            try:
                logo = await settings.logo.read()
                logo_suffix = settings.logo.suffix
            except OSError as e:
                logger.warning(f"[Executor] Logo unreadable, rendering without it: {e}")
            if not logo:
                logo, logo_suffix = None, None

        names = TempNames.for_job(
            job.short_id,
            job.audio.suffix,
            job.image.suffix,
            background_suffix=background_suffix,
            logo_suffix=logo_suffix,
        )

        inputs = [(names.audio, audio), (names.image, image)]
        if names.background:
            inputs.append((names.background, background))
        if names.logo:
            inputs.append((names.logo, logo))
        return names, inputs

    async def _resolve_duration(
        self,
        job: RenderJob,
        audio: bytes,
        prepared: Optional[PreparedAssets],
    ) -> Optional[float]:
        if prepared is not None and prepared.audio_duration:
            return prepared.audio_duration
        try:
            return await self._duration_probe(audio, job.audio.suffix)
        except MediaProbeError as e:
            logger.warning(
                f"[Executor] Duration of {job.audio_name} unknown, relying on -shortest: {e}"
            )
            return None

    async def _transcode(self, job: RenderJob, args: List[str], ticket: Optional[HandoffTicket]) -> None:
        logger.debug(f"[Executor] Job {job.short_id} command: {' '.join(args)}")
        try:
            exit_code = await asyncio.wait_for(
                self._handle.execute(args, ticket),
                timeout=self._config.exec_timeout,
            )
        except asyncio.TimeoutError:
            raise EngineExecutionError(
                f"Transcode timed out after {self._config.exec_timeout:.0f}s",
                job_id=job.id,
                log_tail=self._handle.last_log,
            )

        if exit_code != 0:
            tail = self._handle.last_log
            last_line = tail.strip().splitlines()[-1] if tail.strip() else "no output"
            raise EngineExecutionError(
                f"FFmpeg exited with code {exit_code}: {last_line}",
                job_id=job.id,
                exit_code=exit_code,
                log_tail=tail,
            )

    async def _read_output(self, name: str, ticket: Optional[HandoffTicket]) -> bytes:
        attempts = self._config.read_retry_attempts
        try:
            return await with_retries(
                lambda: self._handle.read_output(name, ticket),
                attempts=attempts,
                base_delay=self._config.read_retry_base_delay,
                retry_on=(OutputNotReadyError,),
                describe=f"read {name}",
            )
        except OutputNotReadyError as e:
            raise OutputReadError(name, attempts, str(e))

    async def _release(
        self,
        job: RenderJob,
        ticket: Optional[HandoffTicket],
        token: Optional[str],
        listener,
        names: Optional[TempNames],
    ) -> None:
        """
        Clean up and hand the engine to the next job.

        Engine I/O is skipped when the ticket went stale or the engine
        is gone: the terminated instance took its files with it.
        """
        gate = self._handle.gate
        try:
            if names is not None and gate.holds(ticket) and self._handle.is_loaded:
                for name in names.all():
                    if not await self._handle.delete_file(name):
                        logger.error(f"[Executor] Job {job.short_id} could not delete {name}")

            self._relay.invalidate(token)
            if listener is not None:
                self._handle.remove_progress_listener(listener)

            if names is not None and gate.holds(ticket) and self._handle.is_loaded:
                await self._verify_removed(job, names)
        finally:
            gate.release(ticket)

    async def _verify_removed(self, job: RenderJob, names: TempNames) -> None:
        try:
            remaining = [n for n in await self._handle.list_files() if names.owns(n)]
        except Exception as e:
            logger.warning(f"[Executor] Job {job.short_id} could not list engine files: {e}")
            return

        for name in remaining:
            logger.warning(f"[Executor] Job {job.short_id} left {name} behind, deleting")
            await self._handle.delete_file(name)

    # =========================================================================
    # State
    # =========================================================================

    @staticmethod
    def _on_progress(job: RenderJob, value: int, notify: JobListener) -> None:
        if job.status != JobStatus.PROCESSING or value <= job.progress:
            return
        job.progress = min(value, FINALIZING_PROGRESS)
        notify(job)

    def _finish(
        self,
        job: RenderJob,
        outcome: JobStatus,
        error: Optional[str],
        data: Optional[bytes],
        notify: JobListener,
        on_video: Optional[VideoListener],
    ) -> None:
        if job.is_terminal:
            logger.warning(f"[Executor] Job {job.short_id} already {job.status.value}, not applying {outcome.value}")
            return

        if outcome == JobStatus.COMPLETED and data is not None:
            handle = self._outputs.put(data, output_filename(job.audio_name, job.image_name))
            transition_job(job, JobStatus.COMPLETED)
            job.output = handle
            job.progress = 100
            logger.info(f"[Executor] Job {job.short_id} completed: {handle.filename} ({handle.size} bytes)")
            notify(job)
            if on_video is not None:
                on_video(RenderedVideo(
                    id=job.id,
                    url=handle.url,
                    filename=handle.filename,
                    created_at=handle.created_at,
                ))
            return

        if outcome == JobStatus.CANCELLED:
            transition_job(job, JobStatus.CANCELLED)
            logger.info(f"[Executor] Job {job.short_id} cancelled")
        else:
            transition_job(job, JobStatus.FAILED, error=error)
        notify(job)

"""
Engine handle: sole owner of the transcoding engine instance.

Responsibilities:
- Load the engine on demand, falling back across source locations
- Liveness check before reuse, reload if the instance died
- Ordered, retried file I/O into the engine filesystem
- Leftover temp-file sweeps
- Termination that always leaves the handle ready for a retry

The handle also owns the HandoffGate; terminating the engine resets it
unless the caller asks to keep the queue intact.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Type, TypeVar

from ..config import RenderConfig, DEFAULT_RENDER_CONFIG
from .base import ProgressListener, TranscodeEngine
from .errors import EngineExecutionError, EngineInitError, OutputNotReadyError
from .handoff import HandoffGate, HandoffTicket
from .progress import ProgressRelay

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Temp files written by jobs always start with one of these
RESERVED_PREFIXES: Tuple[str, ...] = ("audio_", "image_", "output_", "bg_", "logo_")


def is_reserved_name(name: str, prefixes: Iterable[str] = RESERVED_PREFIXES) -> bool:
    return any(name.startswith(prefix) for prefix in prefixes)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    describe: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to `attempts` times with exponential backoff.

    Delays: base_delay, 2 * base_delay, 4 * base_delay, ...
    The last error is re-raised once attempts are exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"[EngineHandle] {describe} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
    raise AssertionError("unreachable")


class EngineHandle:
    """
    Owns and guards the single transcoding engine instance.

    Constructed once per session and passed by reference to the executor.
    """

    def __init__(
        self,
        engine_factory: Callable[[], TranscodeEngine],
        config: RenderConfig = DEFAULT_RENDER_CONFIG,
        relay: Optional[ProgressRelay] = None,
    ):
        """
        Args:
            engine_factory: Builds a fresh, unloaded engine instance
            config: Sources, retry schedule and size thresholds
            relay: Progress relay reset together with the engine
        """
        self._engine_factory = engine_factory
        self._config = config
        self._relay = relay
        self._engine: Optional[TranscodeEngine] = None
        self._loaded_from: Optional[str] = None
        self._known_files: Set[str] = set()
        self._load_lock = asyncio.Lock()
        self.gate = HandoffGate()
        self.load_count = 0
        self.terminate_count = 0

    @property
    def is_loaded(self) -> bool:
        return self._engine is not None and self._engine.loaded

    @property
    def loaded_from(self) -> Optional[str]:
        return self._loaded_from

    @property
    def known_files(self) -> Set[str]:
        """Temp files written through this handle and not yet deleted."""
        return set(self._known_files)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ensure_loaded(self, ticket: Optional[HandoffTicket] = None) -> TranscodeEngine:
        """
        Return a live engine, loading or reloading it if needed.

        An instance whose load finishes after terminate() was called is
        discarded, never installed.

        Raises:
            EngineInitError: If every source location failed to load
            EngineExecutionError: If `ticket` no longer holds the engine, or
                the engine was terminated while loading
        """
        async with self._load_lock:
            self._check_ticket(ticket)
            generation = self.terminate_count
            engine = self._engine
            if engine is not None and engine.loaded:
                try:
                    await engine.list_files()
                except Exception as e:
                    logger.warning(f"[EngineHandle] Liveness check failed, reloading: {e}")
                    self._drop_instance(engine)
                else:
                    self._check_generation(generation)
                    return engine

            sources = list(self._config.ffmpeg_sources)
            failures: List[str] = []
            for source in sources:
                candidate = self._engine_factory()
                try:
                    await candidate.load(source)
                except Exception as e:
                    failures.append(f"{source}: {e}")
                    logger.warning(f"[EngineHandle] Load from {source} failed: {e}")
                    self._safe_terminate(candidate)
                    self._check_generation(generation)
                    continue

                if self.terminate_count != generation:
                    logger.info(f"[EngineHandle] Engine terminated during load from {source}, discarding it")
                    self._safe_terminate(candidate)
                    self._check_generation(generation)

                self._engine = candidate
                self._loaded_from = source
                self.load_count += 1
                logger.info(f"[EngineHandle] {candidate.name} engine loaded from {source}")
                return candidate

            reason = "; ".join(failures) if failures else "no sources configured"
            logger.error(f"[EngineHandle] Engine failed to load: {reason}")
            raise EngineInitError(sources, reason)

    def _drop_instance(self, engine: TranscodeEngine) -> None:
        self._safe_terminate(engine)
        if self._engine is engine:
            self._engine = None
            self._loaded_from = None
            self._known_files.clear()

    @staticmethod
    def _safe_terminate(engine: TranscodeEngine) -> None:
        try:
            engine.terminate()
        except Exception as e:
            logger.warning(f"[EngineHandle] Engine terminate raised: {e}")

    def _check_generation(self, generation: int) -> None:
        if self.terminate_count != generation:
            raise EngineExecutionError("Engine was terminated while loading")

    def _check_ticket(self, ticket: Optional[HandoffTicket]) -> None:
        # A stale ticket must never reach an engine a later job may own
        if ticket is not None and not self.gate.holds(ticket):
            raise EngineExecutionError(f"Job {ticket.job_id} no longer holds the engine")

    def _require_engine(self) -> TranscodeEngine:
        if self._engine is None or not self._engine.loaded:
            raise EngineExecutionError("Engine is not loaded")
        return self._engine

    async def terminate(self, reset_gate: bool = True) -> None:
        """
        Tear the engine down and reset the handle to "unloaded".

        Never raises. The handoff gate is reset last, after the instance
        is gone, so woken waiters can only ever see a fresh engine.

        Args:
            reset_gate: When False the gate is left alone and waiters keep
                queueing behind the current holder, which releases the
                engine once its own I/O fails
        """
        engine = self._engine
        known = sorted(self._known_files)
        self._engine = None
        self._loaded_from = None
        self._known_files.clear()

        if engine is not None:
            try:
                engine.clear_progress_listeners()
            except Exception as e:
                logger.warning(f"[EngineHandle] Clearing listeners failed: {e}")

            for name in known:
                try:
                    await engine.delete_file(name)
                except Exception as e:
                    logger.debug(f"[EngineHandle] Could not delete {name} during terminate: {e}")

            self._safe_terminate(engine)
            logger.info(f"[EngineHandle] Engine terminated ({len(known)} known temp file(s))")

        if self._relay is not None:
            self._relay.reset()
        self.terminate_count += 1
        if reset_gate:
            self.gate.reset()

    # =========================================================================
    # Progress subscription
    # =========================================================================

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._require_engine().add_progress_listener(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if self._engine is not None:
            self._engine.remove_progress_listener(listener)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, args: List[str], ticket: Optional[HandoffTicket] = None) -> int:
        """Run one engine command, returning its exit code."""
        self._check_ticket(ticket)
        return await self._require_engine().exec(args)

    @property
    def last_log(self) -> str:
        return self._engine.last_log if self._engine is not None else ""

    # =========================================================================
    # Filesystem
    # =========================================================================

    async def list_files(self) -> List[str]:
        return await self._require_engine().list_files()

    async def verify_clean(self, prefixes: Iterable[str] = RESERVED_PREFIXES) -> List[str]:
        """
        Delete leftover temp files matching `prefixes`.

        Leftovers mean an earlier job did not clean up; each one is logged.
        Never fails the caller.

        Returns:
            Names that were found (and deletion attempted)
        """
        prefixes = tuple(prefixes)
        try:
            names = await self.list_files()
        except Exception as e:
            logger.warning(f"[EngineHandle] Could not list engine files: {e}")
            return []

        leftovers = [name for name in names if is_reserved_name(name, prefixes)]
        for name in leftovers:
            logger.warning(f"[EngineHandle] Removing leftover engine file {name}")
            await self.delete_file(name)
        return leftovers

    async def write_input(self, name: str, data: bytes, ticket: Optional[HandoffTicket] = None) -> None:
        """
        Write an input file and confirm it reads back with the same length.

        Raises:
            EngineExecutionError: If the write could not be confirmed after
                retries, or `ticket` no longer holds the engine
        """
        if not data:
            raise EngineExecutionError(f"Refusing to write empty input {name}")

        async def _write_and_confirm() -> None:
            self._check_ticket(ticket)
            engine = self._require_engine()
            await engine.write_file(name, data)
            self._known_files.add(name)
            written = await engine.read_file(name)
            if len(written) != len(data):
                raise OSError(f"{name} reads back {len(written)} of {len(data)} bytes")

        try:
            await with_retries(
                _write_and_confirm,
                attempts=self._config.io_retry_attempts,
                base_delay=self._config.io_retry_base_delay,
                retry_on=(OSError,),
                describe=f"write {name}",
            )
        except OSError as e:
            raise EngineExecutionError(f"Failed to write {name}: {e}")
        logger.debug(f"[EngineHandle] Wrote {name} ({len(data)} bytes)")

    async def read_output(self, name: str, ticket: Optional[HandoffTicket] = None) -> bytes:
        """
        Read a rendered file once.

        Raises:
            OutputNotReadyError: File missing or below min_output_bytes (transient)
        """
        self._check_ticket(ticket)
        engine = self._require_engine()
        try:
            data = await engine.read_file(name)
        except FileNotFoundError:
            raise OutputNotReadyError(name)
        if len(data) < self._config.min_output_bytes:
            raise OutputNotReadyError(name, len(data))
        return data

    async def delete_file(self, name: str) -> bool:
        """
        Delete a file, retrying transient failures.

        Returns:
            True if the file is gone, False if deletion kept failing
        """
        async def _delete() -> None:
            try:
                await self._require_engine().delete_file(name)
            except FileNotFoundError:
                pass

        try:
            await with_retries(
                _delete,
                attempts=self._config.io_retry_attempts,
                base_delay=self._config.io_retry_base_delay,
                retry_on=(OSError,),
                describe=f"delete {name}",
            )
        except (OSError, EngineExecutionError) as e:
            logger.warning(f"[EngineHandle] Could not delete {name}: {e}")
            return False

        self._known_files.discard(name)
        return True

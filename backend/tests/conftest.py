"""
Shared fixtures for renderer tests.

FakeEngine stands in for FFmpeg: an in-memory filesystem, scripted
progress, scripted failures. All instances built by one EngineWorld share
its operation log so tests can assert on engine activity across reloads.

No test here spawns a process.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import pytest

from typebeat.config import RenderConfig
from typebeat.execution.base import ProgressEvent, ProgressListener, TranscodeEngine
from typebeat.execution.handoff import HandoffGate, HandoffTicket
from typebeat.jobs.models import BytesMediaRef, MediaRef, PairInput
from typebeat.preparation import PreparationCache
from typebeat.service import RenderService

OUTPUT_BYTES = 4096


class EngineWorld:
    """Script and record shared by every FakeEngine instance."""

    def __init__(self):
        self.instances: List["FakeEngine"] = []
        self.ops: List[Tuple[int, str, str]] = []  # (instance, op, name)
        self.load_attempts: List[str] = []

        # Script
        self.failing_sources: Set[str] = set()
        self.seed_files: Dict[str, bytes] = {}
        self.progress_script: List[float] = [0.25, 0.5, 0.75, 1.0]
        self.exit_code = 0
        self.output_size = OUTPUT_BYTES
        self.output_missing_reads = 0  # reads of the output that fail before it appears
        self.short_writes = 0  # writes that store a truncated payload
        self.hold_exec = False
        self.hold_load = False
        self.exec_hook: Optional[Callable[["FakeEngine", List[str]], Awaitable[None]]] = None

        # Observations
        self.exec_count = 0
        self.active_execs = 0
        self.max_active_execs = 0
        self.output_reads = 0
        self.exec_started: Optional[asyncio.Event] = None
        self.release_exec: Optional[asyncio.Event] = None
        self.load_started: Optional[asyncio.Event] = None
        self.release_load: Optional[asyncio.Event] = None

    def build(self) -> "FakeEngine":
        engine = FakeEngine(self, len(self.instances))
        self.instances.append(engine)
        return engine

    @property
    def live(self) -> Optional["FakeEngine"]:
        for engine in reversed(self.instances):
            if engine.loaded:
                return engine
        return None

    def live_files(self) -> List[str]:
        engine = self.live
        return sorted(engine.files) if engine is not None else []

    def ops_of(self, op: str) -> List[str]:
        return [name for _, o, name in self.ops if o == op]

    def events(self) -> Tuple[asyncio.Event, asyncio.Event]:
        """(exec started, release exec) events, created on the running loop."""
        if self.exec_started is None:
            self.exec_started = asyncio.Event()
            self.release_exec = asyncio.Event()
        return self.exec_started, self.release_exec

    def load_events(self) -> Tuple[asyncio.Event, asyncio.Event]:
        """(load started, release load) events, created on the running loop."""
        if self.load_started is None:
            self.load_started = asyncio.Event()
            self.release_load = asyncio.Event()
        return self.load_started, self.release_load


class FakeEngine(TranscodeEngine):
    """In-memory TranscodeEngine driven by an EngineWorld."""

    def __init__(self, world: EngineWorld, index: int):
        self.world = world
        self.index = index
        self.files: Dict[str, bytes] = {}
        self.listeners: List[ProgressListener] = []
        self.broken = False
        self.killed = False
        self._loaded = False
        self._killed_event: Optional[asyncio.Event] = None
        self._log = ""

    @property
    def name(self) -> str:
        return "fake"

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def last_log(self) -> str:
        return self._log

    def _record(self, op: str, name: str = "") -> None:
        self.world.ops.append((self.index, op, name))

    async def load(self, source: str) -> None:
        self.world.load_attempts.append(source)
        self._record("load", source)
        if source in self.world.failing_sources:
            raise RuntimeError(f"cannot fetch engine from {source}")
        if self.world.hold_load:
            started, release = self.world.load_events()
            started.set()
            await release.wait()
        self.files = dict(self.world.seed_files)
        self._loaded = True

    async def list_files(self) -> List[str]:
        self._record("list")
        if self.broken or not self._loaded:
            raise RuntimeError("engine is not responding")
        return sorted(self.files)

    async def write_file(self, name: str, data: bytes) -> None:
        self._record("write", name)
        if not self._loaded:
            raise RuntimeError("engine is not loaded")
        if self.world.short_writes > 0:
            self.world.short_writes -= 1
            data = data[: len(data) // 2]
        self.files[name] = bytes(data)

    async def read_file(self, name: str) -> bytes:
        self._record("read", name)
        if not self._loaded:
            raise RuntimeError("engine is not loaded")
        if name.startswith("output_"):
            self.world.output_reads += 1
            if self.world.output_missing_reads > 0:
                self.world.output_missing_reads -= 1
                raise FileNotFoundError(name)
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    async def delete_file(self, name: str) -> None:
        self._record("delete", name)
        if not self._loaded:
            raise RuntimeError("engine is not loaded")
        if name not in self.files:
            raise FileNotFoundError(name)
        del self.files[name]

    async def exec(self, args: List[str]) -> int:
        self._record("exec", args[-1])
        world = self.world
        world.exec_count += 1
        world.active_execs += 1
        world.max_active_execs = max(world.max_active_execs, world.active_execs)
        try:
            inputs = [args[i + 1] for i, arg in enumerate(args) if arg == "-i"]
            missing = [name for name in inputs if name not in self.files]
            if missing:
                self._log = f"{missing[0]}: No such file or directory"
                return 1

            for ratio in world.progress_script:
                for listener in list(self.listeners):
                    listener(ProgressEvent(ratio=ratio))
                await asyncio.sleep(0)
                if self.killed:
                    return 255

            if world.exec_hook is not None:
                await world.exec_hook(self, args)

            if world.hold_exec:
                started, release = world.events()
                started.set()
                killed = self._kill_event()
                waiters = [
                    asyncio.ensure_future(release.wait()),
                    asyncio.ensure_future(killed.wait()),
                ]
                try:
                    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()

            if self.killed:
                self._log = "Exiting normally, received signal 9."
                return 255
            if world.exit_code != 0:
                self._log = "Conversion failed!"
                return world.exit_code

            self.files[args[-1]] = b"\x00" * world.output_size
            self._log = "video:1kB audio:1kB muxing overhead: 0.1%"
            return 0
        finally:
            world.active_execs -= 1

    def _kill_event(self) -> asyncio.Event:
        if self._killed_event is None:
            self._killed_event = asyncio.Event()
            if self.killed:
                self._killed_event.set()
        return self._killed_event

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def clear_progress_listeners(self) -> None:
        self.listeners.clear()

    def terminate(self) -> None:
        self._record("terminate")
        self.killed = True
        self._loaded = False
        self.files.clear()
        self.listeners.clear()
        if self._killed_event is not None:
            self._killed_event.set()


class RecordingGate(HandoffGate):
    """HandoffGate that records how many jobs hold it at once."""

    def __init__(self):
        super().__init__()
        self.active: Set[str] = set()
        self.max_active = 0
        self.acquired_order: List[str] = []

    async def acquire(self, job_id, timeout=None, is_cancelled=None) -> HandoffTicket:
        ticket = await super().acquire(job_id, timeout=timeout, is_cancelled=is_cancelled)
        if self.holder == job_id:
            self.active.add(job_id)
            self.max_active = max(self.max_active, len(self.active))
            self.acquired_order.append(job_id)
        return ticket

    def release(self, ticket) -> None:
        if ticket is not None:
            self.active.discard(ticket.job_id)
        super().release(ticket)


class BlockingMediaRef(MediaRef):
    """MediaRef whose read() waits until the test lets it finish."""

    def __init__(self, name: str, data: bytes):
        self.name = name
        self.size = len(data)
        self._data = data
        self.reading = asyncio.Event()
        self.unblock = asyncio.Event()

    async def read(self) -> bytes:
        self.reading.set()
        await self.unblock.wait()
        return self._data


async def fixed_duration(data: bytes, suffix: str) -> float:
    return 3.0


async def fixed_size(data: bytes, suffix: str) -> Tuple[int, int]:
    return 1280, 720


def make_pair(index: int, audio_size: int = 100, image_size: int = 50) -> PairInput:
    return PairInput(
        id=f"pair-{index}",
        audio=BytesMediaRef(f"track {index}.mp3", b"a" * audio_size),
        image=BytesMediaRef(f"cover{index}.jpg", b"i" * image_size),
    )


def make_pairs(count: int) -> List[PairInput]:
    return [make_pair(i) for i in range(1, count + 1)]


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: tests that wait on real timers")


@pytest.fixture
def world() -> EngineWorld:
    return EngineWorld()


@pytest.fixture
def config() -> RenderConfig:
    """Fast config: no backoff, no throttling, no retention timers."""
    return RenderConfig(
        ffmpeg_sources=("primary", "fallback"),
        io_retry_base_delay=0.0,
        read_retry_base_delay=0.0,
        progress_min_interval=0.0,
        retention_seconds=None,
        handoff_timeout=5.0,
        exec_timeout=5.0,
    )


@pytest.fixture
def service(world, config) -> RenderService:
    svc = RenderService(config, engine_factory=world.build, duration_probe=fixed_duration)
    svc.engine_handle.gate = RecordingGate()
    svc.preparation = PreparationCache(config, duration_probe=fixed_duration, image_probe=fixed_size)
    return svc

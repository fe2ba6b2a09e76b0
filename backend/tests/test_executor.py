"""
Tests for SequentialRenderExecutor: the per-job engine protocol.

Each test runs single jobs through a RenderService's executor backed by
FakeEngine. Batch-level behaviour lives in test_scheduler.py.
"""

import pytest

from conftest import fixed_duration, make_pair
from typebeat.execution.scheduler import create_jobs
from typebeat.jobs.models import BackgroundMode, BytesMediaRef, JobStatus, PairInput, VideoSettings
from typebeat.media import MediaProbeError
from typebeat.preparation import PreparedAssets, file_signature
from typebeat.service import RenderService


def _job(pair=None):
    return create_jobs([pair or make_pair(1)])[0]


class Recorder:
    """Collects job updates and completion notices."""

    def __init__(self):
        self.updates = []
        self.videos = []

    def on_update(self, job):
        self.updates.append((job.status, job.progress))

    def on_video(self, video):
        self.videos.append(video)

    @property
    def progress_values(self):
        return [p for _, p in self.updates]


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_job_completes_with_verified_output(self, service, world):
        job = _job()
        rec = Recorder()

        await service.executor.run(job, VideoSettings(), on_update=rec.on_update, on_video=rec.on_video)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.output is not None
        assert job.output.filename == "video_track_1_cover1.mp4"
        assert service.output_store.get(job.output.url) == b"\x00" * world.output_size
        assert job.started_at is not None and job.completed_at is not None

        assert len(rec.videos) == 1
        assert rec.videos[0].id == job.id
        assert rec.videos[0].url == job.output.url

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_100_only_once_at_end(self, service):
        job = _job()
        rec = Recorder()

        await service.executor.run(job, VideoSettings(), on_update=rec.on_update)

        values = rec.progress_values
        assert values == sorted(values)
        assert values.count(100) == 1
        assert values[-1] == 100
        assert rec.updates[-1][0] == JobStatus.COMPLETED
        assert all(p <= 99 for s, p in rec.updates if s == JobStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_engine_is_clean_and_handoff_released(self, service, world):
        job = _job()

        await service.executor.run(job, VideoSettings())

        assert world.live_files() == []
        assert service.engine_handle.gate.holder is None
        assert service.engine_handle.known_files == set()
        assert service.relay.current_token is None

    @pytest.mark.asyncio
    async def test_inputs_written_under_job_unique_names(self, service, world):
        job = _job()

        await service.executor.run(job, VideoSettings())

        written = world.ops_of("write")
        assert len(written) == 2
        assert written[0].startswith(f"audio_{job.short_id}_") and written[0].endswith(".mp3")
        assert written[1].startswith(f"image_{job.short_id}_") and written[1].endswith(".jpg")
        # every write is read back before the transcode
        assert world.ops_of("read")[:2] == written


class TestFailures:

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_job(self, service, world):
        world.exit_code = 1
        job = _job()

        await service.executor.run(job, VideoSettings())

        assert job.status == JobStatus.FAILED
        assert "exited with code 1" in job.error
        assert "Conversion failed!" in job.error
        assert job.output is None
        assert world.live_files() == []
        assert service.engine_handle.gate.holder is None

    @pytest.mark.asyncio
    async def test_late_output_is_retried(self, service, world):
        world.output_missing_reads = 2
        job = _job()

        await service.executor.run(job, VideoSettings())

        assert job.status == JobStatus.COMPLETED
        assert world.output_reads == 3

    @pytest.mark.asyncio
    async def test_undersized_output_fails_after_retries(self, service, world, config):
        world.output_size = 10
        job = _job()

        await service.executor.run(job, VideoSettings())

        assert job.status == JobStatus.FAILED
        assert f"after {config.read_retry_attempts} attempt(s)" in job.error
        assert world.output_reads == config.read_retry_attempts
        assert world.live_files() == []

    @pytest.mark.asyncio
    async def test_transcode_timeout_fails_job(self, world, config):
        world.hold_exec = True
        svc = RenderService(
            config.with_overrides(exec_timeout=0.05),
            engine_factory=world.build,
            duration_probe=fixed_duration,
        )
        job = _job()

        await svc.executor.run(job, VideoSettings())

        assert job.status == JobStatus.FAILED
        assert "timed out" in job.error
        assert world.active_execs == 0
        assert world.live_files() == []

    @pytest.mark.asyncio
    async def test_empty_input_fails_job(self, service, world):
        pair = PairInput(
            id="empty",
            audio=BytesMediaRef("silence.mp3", b""),
            image=BytesMediaRef("cover.png", b"i" * 10),
        )
        job = _job(pair)

        await service.executor.run(job, VideoSettings())

        assert job.status == JobStatus.FAILED
        assert "empty input" in job.error
        assert world.exec_count == 0


class TestDuration:

    @pytest.mark.asyncio
    async def test_prepared_duration_skips_probe(self, world, config):
        probes = []

        async def probe(data, suffix):
            probes.append(suffix)
            return 1.0

        commands = []

        async def capture(engine, args):
            commands.append(args)

        world.exec_hook = capture
        svc = RenderService(config, engine_factory=world.build, duration_probe=probe)
        pair = make_pair(1)
        prepared = PreparedAssets(
            pair_id=pair.id,
            file_signature=file_signature(pair.audio, pair.image),
            audio_buffer=b"A" * 100,
            image_buffer=b"I" * 50,
            audio_duration=7.0,
        )
        job = _job(pair)

        await svc.executor.run(job, VideoSettings(), prepared=prepared)

        assert job.status == JobStatus.COMPLETED
        assert probes == []
        args = commands[0]
        assert args[args.index("-t") + 1] == "7.000"

    @pytest.mark.asyncio
    async def test_stale_prepared_assets_are_ignored(self, world, config):
        probes = []

        async def probe(data, suffix):
            probes.append(data)
            return 2.0

        svc = RenderService(config, engine_factory=world.build, duration_probe=probe)
        pair = make_pair(1)
        prepared = PreparedAssets(
            pair_id=pair.id,
            file_signature="something_else",
            audio_buffer=b"A" * 100,
            image_buffer=b"I" * 50,
            audio_duration=7.0,
        )
        job = _job(pair)

        await svc.executor.run(job, VideoSettings(), prepared=prepared)

        assert job.status == JobStatus.COMPLETED
        assert probes == [b"a" * 100]

    @pytest.mark.asyncio
    async def test_probe_failure_relies_on_shortest(self, world, config):
        async def probe(data, suffix):
            raise MediaProbeError("no duration")

        commands = []

        async def capture(engine, args):
            commands.append(args)

        world.exec_hook = capture
        svc = RenderService(config, engine_factory=world.build, duration_probe=probe)
        job = _job()

        await svc.executor.run(job, VideoSettings())

        assert job.status == JobStatus.COMPLETED
        assert "-t" not in commands[0]
        assert "-shortest" in commands[0]


class TestSettings:

    @pytest.mark.asyncio
    async def test_custom_background_and_logo_are_written_and_cleaned(self, service, world):
        settings = VideoSettings(
            background=BackgroundMode.CUSTOM,
            custom_background=BytesMediaRef("studio.jpg", b"b" * 30),
            use_logo=True,
            logo=BytesMediaRef("label.png", b"l" * 20),
        )
        job = _job()

        await service.executor.run(job, settings)

        assert job.status == JobStatus.COMPLETED
        prefixes = sorted(name.split("_")[0] for name in world.ops_of("write"))
        assert prefixes == ["audio", "bg", "image", "logo"]
        assert world.live_files() == []

    @pytest.mark.asyncio
    async def test_logo_flag_without_logo_is_ignored(self, service, world):
        job = _job()

        await service.executor.run(job, VideoSettings(use_logo=True))

        assert job.status == JobStatus.COMPLETED
        assert not any(name.startswith("logo_") for name in world.ops_of("write"))


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_before_admission_never_touches_engine(self, service, world):
        service.cancellation.halt("stop")
        job = _job()
        rec = Recorder()

        await service.executor.run(job, VideoSettings(), on_update=rec.on_update)

        assert job.status == JobStatus.CANCELLED
        assert job.started_at is None
        assert job.error is None
        assert world.ops == []
        assert rec.updates == [(JobStatus.CANCELLED, 0)]

    @pytest.mark.asyncio
    async def test_cancel_during_transcode(self, service, world):
        async def cancel_mid_run(engine, args):
            await service.cancellation.request_cancel("operator stop")

        world.exec_hook = cancel_mid_run
        job = _job()

        await service.executor.run(job, VideoSettings())

        assert job.status == JobStatus.CANCELLED
        assert job.output is None
        assert service.engine_handle.gate.holder is None
        assert not service.engine_handle.is_loaded
        assert world.live_files() == []

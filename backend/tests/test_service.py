"""
Tests for RenderService: the facade used by the routes and the CLI.
"""

import asyncio

import pytest

from conftest import BlockingMediaRef, make_pair, make_pairs
from typebeat.jobs.errors import (
    BatchInProgressError,
    InvalidStateTransitionError,
    JobNotFoundError,
    ValidationError,
)
from typebeat.jobs.models import JobStatus, PairInput


async def _hold_first_exec(service, world, count=2):
    """Submit a batch whose first transcode blocks until released."""
    world.hold_exec = True
    started, release = world.events()
    handle = await service.submit_batch(make_pairs(count))
    await asyncio.wait_for(started.wait(), 1.0)
    return handle, release


class TestSubmit:

    @pytest.mark.asyncio
    async def test_second_batch_rejected_while_running(self, service, world):
        handle, release = await _hold_first_exec(service, world)

        with pytest.raises(BatchInProgressError) as excinfo:
            await service.submit_batch(make_pairs(1))
        assert excinfo.value.batch_id == handle.batch_id

        world.hold_exec = False
        release.set()
        result = await asyncio.wait_for(handle.wait(), 1.0)
        assert result.completed == 2

    @pytest.mark.asyncio
    async def test_next_batch_accepted_after_completion(self, service):
        first = await service.submit_batch(make_pairs(1))
        await first.wait()

        second = await service.submit_batch(make_pairs(1))
        result = await second.wait()

        assert result.completed == 1
        assert service.current_batch is second
        assert len(service.list_jobs()) == 2

    @pytest.mark.asyncio
    async def test_batch_summary(self, service):
        handle = await service.submit_batch(make_pairs(2))
        await handle.wait()

        summary = handle.to_summary()
        assert summary["batch_id"] == handle.batch_id
        assert summary["progress"] == 100
        assert summary["done"] is True
        assert summary["error"] is None

    @pytest.mark.asyncio
    async def test_video_notice_per_completed_job(self, service):
        videos = []
        handle = await service.submit_batch(make_pairs(3), on_video=videos.append)
        await handle.wait()

        assert [v.id for v in videos] == handle.job_ids
        assert len({v.url for v in videos}) == 3


class TestJobs:

    @pytest.mark.asyncio
    async def test_get_job_returns_snapshot(self, service):
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()
        job_id = handle.job_ids[0]

        snapshot = service.get_job(job_id)
        snapshot.progress = 5
        snapshot.error = "tampered"

        fresh = service.get_job(job_id)
        assert fresh.progress == 100
        assert fresh.error is None

    def test_unknown_job_raises(self, service):
        with pytest.raises(JobNotFoundError):
            service.get_job("missing")

    @pytest.mark.asyncio
    async def test_list_jobs_by_status(self, service, world):
        calls = {"n": 0}

        async def fail_first(engine, args):
            calls["n"] += 1
            world.exit_code = 1 if calls["n"] == 1 else 0

        world.exec_hook = fail_first
        handle = await service.submit_batch(make_pairs(3))
        await handle.wait()

        failed = service.list_jobs(JobStatus.FAILED)
        assert [j.id for j in failed] == handle.job_ids[:1]
        assert len(service.list_jobs(JobStatus.COMPLETED)) == 2

    @pytest.mark.asyncio
    async def test_discard_revokes_output(self, service):
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()
        job_id = handle.job_ids[0]
        url = service.get_job(job_id).output.url

        removed = service.discard_job(job_id)

        assert removed.id == job_id
        assert service.output_store.get(url) is None
        with pytest.raises(JobNotFoundError):
            service.get_job(job_id)

    @pytest.mark.asyncio
    async def test_discard_active_job_refused(self, service, world):
        handle, release = await _hold_first_exec(service, world)

        with pytest.raises(InvalidStateTransitionError):
            service.discard_job(handle.job_ids[0])

        await service.cancel_batch()
        await asyncio.wait_for(handle.wait(), 1.0)

    @pytest.mark.asyncio
    async def test_cancel_finished_job_returns_false(self, service):
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()

        assert not await service.cancel_job(handle.job_ids[0])

    @pytest.mark.asyncio
    async def test_cancel_running_job_terminates_engine(self, service, world):
        handle, _release = await _hold_first_exec(service, world)
        world.hold_exec = False

        assert await service.cancel_job(handle.job_ids[0])
        await asyncio.wait_for(handle.wait(), 1.0)

        first, second = (service.get_job(j) for j in handle.job_ids)
        assert first.status == JobStatus.CANCELLED
        assert second.status == JobStatus.COMPLETED
        assert service.engine_handle.terminate_count == 1
        assert service.engine_handle.load_count == 2

    @pytest.mark.asyncio
    async def test_cancel_job_while_reading_inputs_keeps_queue(self, service, world):
        audio = BlockingMediaRef("slow.mp3", b"a" * 100)
        pairs = [PairInput(id="pair-1", audio=audio, image=make_pair(1).image), make_pair(2)]
        handle = await service.submit_batch(pairs)
        await asyncio.wait_for(audio.reading.wait(), 1.0)

        assert await service.cancel_job(handle.job_ids[0])
        await asyncio.sleep(0)
        assert service.engine_handle.gate.holder == handle.job_ids[0]

        audio.unblock.set()
        await asyncio.wait_for(handle.wait(), 1.0)

        statuses = [service.get_job(j).status for j in handle.job_ids]
        assert statuses == [JobStatus.CANCELLED, JobStatus.COMPLETED]
        assert service.engine_handle.gate.max_active == 1
        assert service.engine_handle.load_count == 2
        assert world.live_files() == []
        writes = [(index, name) for index, op, name in world.ops if op == "write"]
        assert [index for index, _ in writes] == [1, 1]

    @pytest.mark.asyncio
    async def test_cancel_batch_during_engine_load(self, service, world):
        world.hold_load = True
        started, release = world.load_events()
        handle = await service.submit_batch(make_pairs(2))
        await asyncio.wait_for(started.wait(), 1.0)

        assert await service.cancel_batch()
        release.set()
        result = await asyncio.wait_for(handle.wait(), 1.0)

        assert result.cancelled == 2
        assert not service.engine_handle.is_loaded
        assert world.live is None
        assert world.instances[0].killed
        assert world.ops_of("write") == []


class TestRetry:

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, service, world):
        world.exit_code = 1
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()
        original_id = handle.job_ids[0]

        world.exit_code = 0
        retry = await service.retry_job(original_id)
        result = await retry.wait()

        assert result.completed == 1
        new_job = service.get_job(retry.job_ids[0])
        assert new_job.id != original_id
        assert new_job.retry_of == original_id
        assert new_job.pair_id == "pair-1"
        assert service.get_job(original_id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_completed_job_refused(self, service):
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()

        with pytest.raises(ValidationError):
            await service.retry_job(handle.job_ids[0])


class TestVideos:

    @pytest.mark.asyncio
    async def test_get_video_by_url_id(self, service, world):
        handle = await service.submit_batch(make_pairs(1))
        await handle.wait()
        output = service.get_job(handle.job_ids[0]).output
        video_id = service.output_store.video_id(output.url)

        data, found = service.get_video(video_id)

        assert len(data) == world.output_size
        assert found.filename == "video_track_1_cover1.mp4"

    def test_unknown_video(self, service):
        assert service.get_video("nope") is None


class TestPreparation:

    @pytest.mark.asyncio
    async def test_prepared_pairs_used_by_next_batch(self, service, world):
        pairs = make_pairs(2)
        results = await service.prepare_pairs(pairs)
        assert all(r.success and r.cached for r in results)

        handle = await service.submit_batch(pairs)
        result = await handle.wait()

        assert result.completed == 2
        assert len(service.preparation) == 2

    @pytest.mark.asyncio
    async def test_discard_evicts_prepared_pair(self, service):
        pair = make_pair(1)
        await service.prepare_pairs([pair])
        handle = await service.submit_batch([pair])
        await handle.wait()

        service.discard_job(handle.job_ids[0])

        assert service.preparation.get(pair) is None


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_cancels_and_clears(self, service, world):
        handle, _release = await _hold_first_exec(service, world, count=3)

        await asyncio.wait_for(service.shutdown(), 1.0)

        assert handle.done
        assert service.current_batch is None
        assert service.list_jobs() == []
        assert len(service.output_store) == 0
        assert not service.engine_handle.is_loaded
        assert world.active_execs == 0

    @pytest.mark.asyncio
    async def test_shutdown_when_idle(self, service):
        await service.shutdown()
        assert service.current_batch is None

"""Tests for OrchestrationWorker.

Hey future me - the worker must:
1. Pick up every due, non-terminal job from the store (that IS crash recovery)
2. Never run two tasks for the same job
3. Survive any exception raised while advancing a job
"""

import asyncio

import pytest

from soulbeet.application.workers.orchestration_worker import OrchestrationWorker
from soulbeet.domain.entities import Job, JobState
from soulbeet.domain.exceptions import ConcurrentModificationError

SONG = "@@music\\Artist\\Album\\01 - One.flac"
OTHER = "@@music\\Artist\\Other\\01 - Two.flac"


class ExplodingProcessor:
    """Wraps the real processor; raises for selected job ids."""

    def __init__(self, inner, explode_for: set[str], error: Exception) -> None:
        self.inner = inner
        self.explode_for = explode_for
        self.error = error
        self.calls = 0

    async def advance(self, job: Job) -> bool:
        self.calls += 1
        if str(job.id) in self.explode_for:
            raise self.error
        return await self.inner.advance(job)


class BlockingProcessor:
    """advance() waits until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = 0

    async def advance(self, job: Job) -> bool:
        self.started += 1
        await self.release.wait()
        return False


@pytest.fixture
def make_worker(store, agent, clock):
    def _make(processor, **kwargs) -> OrchestrationWorker:
        return OrchestrationWorker(
            store=store,
            processor=processor,
            agent=agent,
            tick_interval=0.01,
            clock=clock,
            **kwargs,
        )

    return _make


async def _add(store, request) -> Job:
    job = Job.create(request)
    await store.add(job)
    return job


async def _run_ticks(
    worker: OrchestrationWorker, count: int = 10, clock=None, step: float = 5.0
) -> None:
    """Tick, wait for the spawned tasks, then move the fake clock (if given)."""
    for _ in range(count):
        await worker.tick()
        await worker.wait_idle()
        if clock is not None:
            clock.advance(step)


class TestTick:
    """Test a single scan of the store."""

    async def test_due_job_is_driven_to_completion(
        self, make_worker, processor, store, make_request, place_file, importer, clock
    ) -> None:
        place_file(SONG)
        job = await _add(store, make_request(SONG))
        worker = make_worker(processor)

        await _run_ticks(worker, clock=clock)

        stored = await store.get(job.id)
        assert stored.state == JobState.COMPLETED
        assert len(importer.calls) == 1

    async def test_task_ends_when_job_is_scheduled_later(
        self, make_worker, processor, store, make_request, agent
    ) -> None:
        job = await _add(store, make_request(SONG))
        worker = make_worker(processor)

        await _run_ticks(worker, count=3)

        # CREATED -> QUEUED, then the poll wait ends the task; the clock never moved
        stored = await store.get(job.id)
        assert stored.state == JobState.QUEUED
        assert len(agent.enqueued) == 1
        assert await worker.tick() == 0

    async def test_job_not_due_is_left_alone(
        self, make_worker, processor, store, make_request, clock
    ) -> None:
        job = await _add(store, make_request(SONG))
        stored = await store.get(job.id)
        stored.schedule_next(60, clock.now)
        await store.update(stored)
        worker = make_worker(processor)

        assert await worker.tick() == 0

    async def test_running_job_is_not_spawned_twice(
        self, make_worker, store, make_request
    ) -> None:
        await _add(store, make_request(SONG))
        blocking = BlockingProcessor()
        worker = make_worker(blocking)

        assert await worker.tick() == 1
        await asyncio.sleep(0)
        assert await worker.tick() == 0
        assert len(worker.in_flight) == 1

        blocking.release.set()
        await worker.wait_idle()
        assert blocking.started == 1

    async def test_max_workers_bounds_concurrency(
        self, make_worker, store, make_request
    ) -> None:
        for _ in range(3):
            await _add(store, make_request(SONG))
        blocking = BlockingProcessor()
        worker = make_worker(blocking, max_workers=2)

        assert await worker.tick() == 3
        await asyncio.sleep(0.01)

        assert blocking.started == 2
        blocking.release.set()
        await worker.wait_idle()
        assert blocking.started == 3


class TestFailureIsolation:
    """Test that one bad job never takes the loop down."""

    async def test_exception_in_one_job_does_not_stop_others(
        self, make_worker, processor, store, make_request, place_file, clock
    ) -> None:
        place_file(OTHER)
        bad = await _add(store, make_request(SONG))
        good = await _add(store, make_request(OTHER))
        exploding = ExplodingProcessor(processor, {str(bad.id)}, RuntimeError("boom"))
        worker = make_worker(exploding, error_backoff_base=3600.0)

        await _run_ticks(worker, clock=clock)

        assert (await store.get(good.id)).state == JobState.COMPLETED
        assert (await store.get(bad.id)).state == JobState.CREATED
        status = await worker.get_status()
        assert status["total_errors"] == 1
        assert status["jobs_in_backoff"] == 1

    async def test_failing_job_backs_off(
        self, make_worker, processor, store, make_request, clock
    ) -> None:
        bad = await _add(store, make_request(SONG))
        exploding = ExplodingProcessor(processor, {str(bad.id)}, RuntimeError("boom"))
        worker = make_worker(exploding, error_backoff_base=5.0)

        await _run_ticks(worker, count=3)
        assert exploding.calls == 1

        clock.advance(5)
        await _run_ticks(worker, count=1)
        assert exploding.calls == 2

        # Second failure doubles the delay
        clock.advance(5)
        await _run_ticks(worker, count=1)
        assert exploding.calls == 2

    async def test_conflict_is_retried_on_next_tick(
        self, make_worker, processor, store, make_request
    ) -> None:
        job = await _add(store, make_request(SONG))
        conflicting = ExplodingProcessor(
            processor, {str(job.id)}, ConcurrentModificationError(job.id, 0)
        )
        worker = make_worker(conflicting)

        await _run_ticks(worker, count=2)

        status = await worker.get_status()
        assert status["conflicts"] == 2
        assert status["total_errors"] == 0
        assert status["jobs_in_backoff"] == 0


class TestLifecycle:
    """Test start/stop and status reporting."""

    async def test_start_recovers_and_stop_waits(
        self, make_worker, processor, store, make_request, place_file, clock
    ) -> None:
        place_file(SONG)
        job = await _add(store, make_request(SONG))
        worker = make_worker(processor)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            stored = await store.get(job.id)
            if stored.is_terminal:
                break
            clock.advance(1)
            await asyncio.sleep(0.01)

        status = await worker.get_status()
        await worker.stop(timeout=1.0)
        await asyncio.wait_for(task, timeout=1.0)

        assert stored.state == JobState.COMPLETED
        assert status["running"] is True
        assert status["recovered_jobs"] == 1
        assert status["agent_available"] is True
        assert "db_lock_stats" in status
        assert (await worker.get_status())["status"] == "stopped"

    async def test_stop_cancels_stuck_steps(self, make_worker, store, make_request) -> None:
        await _add(store, make_request(SONG))
        blocking = BlockingProcessor()
        worker = make_worker(blocking)
        await worker.tick()
        await asyncio.sleep(0)

        await worker.stop(timeout=0.05)

        assert worker.in_flight == []

    async def test_stop_waits_for_running_import(
        self, make_worker, processor, store, make_request, place_file, importer, clock
    ) -> None:
        place_file(SONG)
        job = await _add(store, make_request(SONG))
        importer.delay = 0.3
        folder_locks = processor._folder_locks
        worker = make_worker(processor, folder_locks=folder_locks, import_grace=5.0)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if folder_locks.active_folders:
                break
            clock.advance(1)
            await asyncio.sleep(0.01)
        assert folder_locks.active_folders

        # Far shorter than the import; the grace period keeps beets alive
        await worker.stop(timeout=0.01)
        await asyncio.wait_for(task, timeout=1.0)

        assert "finished" in importer.calls[0]
        assert folder_locks.closed
        assert (await store.get(job.id)).state == JobState.COMPLETED

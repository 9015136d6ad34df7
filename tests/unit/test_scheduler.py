"""Tests for the asyncio job scheduler."""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from webtop.errors import RefreshLagExceeded
from webtop.scheduling import JobContext, JobScheduler
from webtop.storage import EventStore

TICK = timedelta(milliseconds=50)


class Recorder:
    """Job callable that records invocations and concurrency."""

    def __init__(self, duration: float = 0.0, error: Exception | None = None, result=None) -> None:
        self.duration = duration
        self.error = error
        self.result = result
        self.calls: list[JobContext] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, ctx: JobContext):
        self.calls.append(ctx)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.duration:
                await asyncio.sleep(self.duration)
            if self.error:
                raise self.error
            return self.result
        finally:
            self.active -= 1


class StoreWork:
    """Job callable whose body blocks a store worker thread."""

    def __init__(self, store: EventStore, seconds: float) -> None:
        self.store = store
        self.seconds = seconds
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def _work(self, cur) -> None:
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.seconds)
        finally:
            with self.lock:
                self.active -= 1

    async def __call__(self, ctx: JobContext) -> None:
        await self.store.run(self._work)


@pytest.fixture
async def scheduler():
    sched = JobScheduler(drain_timeout=1.0)
    yield sched
    await sched.stop()


class TestRegistration:
    """Test suite for job registration and introspection."""

    @pytest.mark.asyncio
    async def test_register_and_list(self, scheduler: JobScheduler) -> None:
        scheduler.register("b", Recorder(), TICK)
        status = scheduler.register("a", Recorder(), TICK, config={"level": "1m"})

        assert [s.name for s in scheduler.list_jobs()] == ["a", "b"]
        assert status.config == {"level": "1m"}
        assert status.effective_timeout == TICK

    @pytest.mark.parametrize(
        ("interval", "delay"),
        [(timedelta(0), timedelta(0)), (TICK, timedelta(seconds=-1))],
    )
    @pytest.mark.asyncio
    async def test_invalid_timing(self, scheduler: JobScheduler, interval, delay) -> None:
        with pytest.raises(ValueError):
            scheduler.register("job", Recorder(), interval, initial_delay=delay)

    @pytest.mark.asyncio
    async def test_duplicate_name(self, scheduler: JobScheduler) -> None:
        scheduler.register("job", Recorder(), TICK)

        with pytest.raises(ValueError, match="already registered"):
            scheduler.register("job", Recorder(), TICK)

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler: JobScheduler) -> None:
        with pytest.raises(KeyError):
            scheduler.get_job("missing")

    @pytest.mark.asyncio
    async def test_cancel(self, scheduler: JobScheduler) -> None:
        scheduler.register("job", Recorder(), TICK)

        assert await scheduler.cancel("job") is True
        assert await scheduler.cancel("job") is False
        assert scheduler.list_jobs() == []

    @pytest.mark.asyncio
    async def test_reschedule(self, scheduler: JobScheduler) -> None:
        scheduler.register("job", Recorder(), TICK)

        status = scheduler.reschedule("job", timedelta(seconds=2))

        assert status.interval == timedelta(seconds=2)
        with pytest.raises(ValueError):
            scheduler.reschedule("job", timedelta(0))


class TestExecution:
    """Test suite for periodic execution."""

    @pytest.mark.asyncio
    async def test_runs_periodically(self, scheduler: JobScheduler) -> None:
        job = Recorder(result={"ok": True})
        scheduler.register("job", job, TICK, config={"level": "1m"})

        await scheduler.start()
        await asyncio.sleep(0.28)
        await scheduler.stop()

        status = scheduler.get_job("job")
        assert len(job.calls) >= 3
        assert status.runs == len(job.calls)
        assert status.last_success is not None
        assert status.last_result == {"ok": True}
        assert job.calls[0].config == {"level": "1m"}

    @pytest.mark.asyncio
    async def test_initial_delay(self, scheduler: JobScheduler) -> None:
        job = Recorder()
        scheduler.register("job", job, TICK, initial_delay=timedelta(seconds=5))

        await scheduler.start()
        await asyncio.sleep(0.1)

        assert job.calls == []
        assert scheduler.get_job("job").next_run is not None

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_job(self, scheduler: JobScheduler) -> None:
        """Test that a failing run is recorded and the next tick still runs."""
        job = Recorder(error=RefreshLagExceeded("1h", "1m"))
        scheduler.register("job", job, TICK)

        await scheduler.start()
        await asyncio.sleep(0.18)

        status = scheduler.get_job("job")
        assert status.failures >= 2
        assert status.last_error is not None
        assert status.last_error.kind == "RefreshLagExceeded"
        assert status.last_success is None
        assert status.to_dict()["last_error"]["kind"] == "RefreshLagExceeded"

    @pytest.mark.asyncio
    async def test_unexpected_error_kind(self, scheduler: JobScheduler) -> None:
        scheduler.register("job", Recorder(error=ValueError("bad")), TICK)

        await scheduler.run_now("job")

        error = scheduler.get_job("job").last_error
        assert error is not None
        assert (error.kind, error.message) == ("ValueError", "bad")

    @pytest.mark.asyncio
    async def test_overlapping_ticks_are_skipped(self, scheduler: JobScheduler) -> None:
        job = Recorder(duration=0.12)
        scheduler.register("job", job, TICK, timeout=timedelta(seconds=5))

        await scheduler.start()
        await asyncio.sleep(0.3)

        assert job.max_active == 1
        assert scheduler.get_job("job").skipped_ticks >= 1

    @pytest.mark.asyncio
    async def test_timed_out_run_is_cancelled(self, scheduler: JobScheduler) -> None:
        """Test that a run outliving its timeout is cancelled at the next tick."""
        scheduler.register("job", Recorder(duration=10), TICK)

        await scheduler.start()
        await asyncio.sleep(0.2)

        status = scheduler.get_job("job")
        assert status.failures >= 1
        assert status.last_error is not None
        assert status.last_error.kind == "JobTimeout"

    @pytest.mark.asyncio
    async def test_timed_out_store_work_never_overlaps(
        self, scheduler: JobScheduler, store: EventStore
    ) -> None:
        """Test that a timed-out run blocks the next one until its thread returns."""
        work = StoreWork(store, seconds=0.25)
        scheduler.register("job", work, TICK)

        await scheduler.start()
        await asyncio.sleep(0.6)
        await scheduler.stop()

        status = scheduler.get_job("job")
        assert work.max_active == 1
        assert work.active == 0
        assert status.runs >= 2
        assert status.last_error is not None
        assert status.last_error.kind == "JobTimeout"


class TestManualRuns:
    """Test suite for run_now."""

    @pytest.mark.asyncio
    async def test_run_now(self, scheduler: JobScheduler) -> None:
        job = Recorder(result=7)
        scheduler.register("job", job, timedelta(hours=1))

        assert await scheduler.run_now("job") is True

        status = scheduler.get_job("job")
        assert status.runs == 1
        assert status.last_result == 7

    @pytest.mark.asyncio
    async def test_run_now_skips_when_in_flight(self, scheduler: JobScheduler) -> None:
        job = Recorder(duration=0.1)
        scheduler.register("job", job, timedelta(hours=1))

        first = asyncio.create_task(scheduler.run_now("job"))
        await asyncio.sleep(0.01)

        assert await scheduler.run_now("job") is False
        assert await first is True
        assert len(job.calls) == 1

    @pytest.mark.asyncio
    async def test_non_plain_result_stored_as_repr(self, scheduler: JobScheduler) -> None:
        scheduler.register("job", Recorder(result=timedelta(seconds=1)), timedelta(hours=1))

        await scheduler.run_now("job")

        assert scheduler.get_job("job").last_result == repr(timedelta(seconds=1))


class TestShutdownAndPersistence:
    """Test suite for stop() draining and status persistence."""

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_run(self) -> None:
        scheduler = JobScheduler(drain_timeout=1.0)
        scheduler.register("job", Recorder(duration=0.1), timedelta(hours=1))

        await scheduler.start()
        await asyncio.sleep(0.02)
        await scheduler.stop()

        status = scheduler.get_job("job")
        assert status.last_success is not None
        assert status.running is False

    @pytest.mark.asyncio
    async def test_stop_cancels_after_drain_timeout(self) -> None:
        scheduler = JobScheduler(drain_timeout=0.01)
        scheduler.register("job", Recorder(duration=10), timedelta(hours=1))

        await scheduler.start()
        await asyncio.sleep(0.02)
        await scheduler.stop()

        status = scheduler.get_job("job")
        assert status.last_error is not None
        assert status.last_error.kind == "Cancelled"

    @pytest.mark.asyncio
    async def test_status_persisted_to_store(self, store: EventStore) -> None:
        scheduler = JobScheduler(store=store)
        scheduler.register("job", Recorder(result={"windows": 3}), timedelta(hours=1))

        await scheduler.run_now("job")

        [document] = await store.job_statuses()
        assert document["name"] == "job"
        assert document["runs"] == 1
        assert document["last_result"] == {"windows": 3}
        assert document["interval_seconds"] == 3600.0

"""Fixed-rate asyncio job scheduler.

Each registered job gets its own driver task that ticks at a fixed rate after
an initial delay. A tick that finds the job's previous run still in flight is
skipped, and a run that has outlived its timeout (by default one interval)
is cancelled at that tick boundary. A cancelled run stays in flight until
its store work has returned, so two runs of one job never overlap. Errors
are caught at the job boundary, logged, counted and recorded in the job
status; the scheduler keeps running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from webtop.errors import WebtopError, error_kind
from webtop.monitoring import metrics
from webtop.timeutil import utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)

TIMEOUT_KIND = "JobTimeout"
CANCELLED_KIND = "Cancelled"


@dataclass
class JobError:
    """Last error recorded for a job."""

    kind: str
    message: str
    timestamp: datetime


@dataclass
class JobContext:
    """Passed to every job invocation."""

    name: str
    started_at: datetime
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobStatus:
    """Job-introspection record."""

    name: str
    interval: timedelta
    initial_delay: timedelta = timedelta(0)
    timeout: timedelta | None = None
    config: dict[str, Any] = field(default_factory=dict)
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_success: datetime | None = None
    last_error: JobError | None = None
    last_duration: float | None = None
    last_result: Any = None
    runs: int = 0
    failures: int = 0
    skipped_ticks: int = 0
    running: bool = False

    @property
    def effective_timeout(self) -> timedelta:
        return self.timeout or self.interval

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view for persistence and the CLI."""

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "name": self.name,
            "interval_seconds": self.interval.total_seconds(),
            "initial_delay_seconds": self.initial_delay.total_seconds(),
            "timeout_seconds": self.effective_timeout.total_seconds(),
            "next_run": iso(self.next_run),
            "last_run": iso(self.last_run),
            "last_success": iso(self.last_success),
            "last_error": (
                {
                    "kind": self.last_error.kind,
                    "message": self.last_error.message,
                    "timestamp": self.last_error.timestamp.isoformat(),
                }
                if self.last_error
                else None
            ),
            "last_duration_seconds": self.last_duration,
            "last_result": self.last_result,
            "runs": self.runs,
            "failures": self.failures,
            "skipped_ticks": self.skipped_ticks,
            "running": self.running,
        }


@dataclass
class _Job:
    func: Callable[[JobContext], Awaitable[Any]]
    status: JobStatus
    driver: asyncio.Task[None] | None = None
    run_task: asyncio.Task[None] | None = None
    deadline: float = 0.0  # loop time at which the in-flight run times out
    timed_out: bool = False


class JobScheduler:
    """Runs registered jobs as independent, non-overlapping periodic tasks."""

    def __init__(self, store: EventStore | None = None, drain_timeout: float = 30.0) -> None:
        """Initialize scheduler.

        Args:
            store: When given, every finished run persists its job status so
                out-of-process tools can read it
            drain_timeout: Seconds ``stop()`` waits for in-flight runs
        """
        self.store = store
        self.drain_timeout = drain_timeout
        self._jobs: dict[str, _Job] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        func: Callable[[JobContext], Awaitable[Any]],
        interval: timedelta,
        initial_delay: timedelta = timedelta(0),
        config: dict[str, Any] | None = None,
        timeout: timedelta | None = None,
    ) -> JobStatus:
        """Register a periodic job.

        Args:
            name: Unique job name
            func: Coroutine function called with a ``JobContext``
            interval: Time between ticks
            initial_delay: Delay before the first tick
            config: Free-form job configuration passed through the context
            timeout: Runs older than this are cancelled at the next tick
                (defaults to ``interval``)

        Returns:
            The job's status record

        Raises:
            ValueError: If the name is taken or the timing is invalid
        """
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        if interval <= timedelta(0):
            raise ValueError(f"Job {name}: interval must be positive")
        if initial_delay < timedelta(0):
            raise ValueError(f"Job {name}: initial_delay must not be negative")

        job = _Job(
            func=func,
            status=JobStatus(
                name=name,
                interval=interval,
                initial_delay=initial_delay,
                timeout=timeout,
                config=dict(config or {}),
            ),
        )
        self._jobs[name] = job
        logger.info(f"Registered job '{name}' every {interval} (initial delay {initial_delay})")

        if self._running:
            job.driver = asyncio.create_task(self._drive(job, initial_delay))
        return job.status

    def list_jobs(self) -> list[JobStatus]:
        """Registered jobs ordered by name."""
        return [self._jobs[name].status for name in sorted(self._jobs)]

    def get_job(self, name: str) -> JobStatus:
        return self._get(name).status

    async def cancel(self, name: str) -> bool:
        """Unregister a job, cancelling its driver and any in-flight run.

        Returns:
            True if the job existed
        """
        job = self._jobs.pop(name, None)
        if job is None:
            return False

        tasks = [t for t in (job.driver, job.run_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info(f"Cancelled job '{name}'")
        return True

    def reschedule(self, name: str, interval: timedelta) -> JobStatus:
        """Change a job's interval; the next tick is one new interval away.

        An in-flight run is left alone.
        """
        if interval <= timedelta(0):
            raise ValueError(f"Job {name}: interval must be positive")

        job = self._get(name)
        if job.status.interval == interval:
            return job.status

        old = job.status.interval
        job.status.interval = interval
        if self._running:
            if job.driver and not job.driver.done():
                job.driver.cancel()
            job.driver = asyncio.create_task(self._drive(job, interval))
        logger.info(f"Rescheduled job '{name}': {old} -> {interval}")
        return job.status

    async def run_now(self, name: str) -> bool:
        """Run a job immediately and wait for it.

        Returns:
            False if a run of this job was already in flight (nothing ran)
        """
        job = self._get(name)
        if job.run_task and not job.run_task.done():
            logger.info(f"Job '{name}' already running; manual run skipped")
            return False

        loop = asyncio.get_running_loop()
        job.deadline = loop.time() + job.status.effective_timeout.total_seconds()
        job.run_task = asyncio.create_task(self._execute(job))
        with contextlib.suppress(asyncio.CancelledError):
            await job.run_task
        return True

    def _get(self, name: str) -> _Job:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"Unknown job: {name}") from None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start driving all registered jobs."""
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            job.driver = asyncio.create_task(self._drive(job, job.status.initial_delay))
        logger.info(f"Scheduler started with {len(self._jobs)} job(s)")

    async def stop(self) -> None:
        """Stop ticking, drain in-flight runs, then cancel stragglers."""
        if not self._running:
            return
        self._running = False

        drivers = [j.driver for j in self._jobs.values() if j.driver and not j.driver.done()]
        for driver in drivers:
            driver.cancel()
        await asyncio.gather(*drivers, return_exceptions=True)

        in_flight = [j.run_task for j in self._jobs.values() if j.run_task and not j.run_task.done()]
        if in_flight:
            logger.info(f"Waiting up to {self.drain_timeout}s for {len(in_flight)} in-flight run(s)")
            _done, pending = await asyncio.wait(in_flight, timeout=self.drain_timeout)
            if pending:
                logger.warning(f"Drain period elapsed, cancelling {len(pending)} run(s)")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Driving and execution
    # ------------------------------------------------------------------

    async def _drive(self, job: _Job, first_delay: timedelta) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + first_delay.total_seconds()

        while self._running:
            delay = max(0.0, next_at - loop.time())
            job.status.next_run = utcnow() + timedelta(seconds=delay)
            await asyncio.sleep(delay)
            self._tick(job, next_at)

            interval = job.status.interval.total_seconds()
            next_at += interval
            behind = loop.time() - next_at
            if behind >= 0:
                # Missed ticks are dropped, never queued
                missed = int(behind // interval) + 1
                next_at += missed * interval
                job.status.skipped_ticks += missed
                metrics.job_skipped_ticks_total.labels(job=job.status.name).inc(missed)

    def _tick(self, job: _Job, tick_at: float) -> None:
        status = job.status
        if job.run_task and not job.run_task.done():
            # A cancelled run stays in flight until its store work has returned
            if job.timed_out:
                logger.info(f"Job '{status.name}' still winding down; tick skipped")
            elif tick_at >= job.deadline:
                logger.warning(
                    f"Job '{status.name}' exceeded {status.effective_timeout}; cancelling run"
                )
                job.timed_out = True
                job.run_task.cancel()
            else:
                logger.info(f"Job '{status.name}' still running; tick skipped")
            status.skipped_ticks += 1
            metrics.job_skipped_ticks_total.labels(job=status.name).inc()
            return

        job.deadline = tick_at + status.effective_timeout.total_seconds()
        job.run_task = asyncio.create_task(self._execute(job))

    async def _execute(self, job: _Job) -> None:
        status = job.status
        started_at = utcnow()
        start = time.perf_counter()
        status.last_run = started_at
        status.running = True
        status.runs += 1
        job.timed_out = False

        ctx = JobContext(name=status.name, started_at=started_at, config=status.config)
        try:
            result = await job.func(ctx)
        except asyncio.CancelledError:
            kind = TIMEOUT_KIND if job.timed_out else CANCELLED_KIND
            self._record_failure(job, kind, "run cancelled", time.perf_counter() - start)
            raise
        except Exception as e:
            duration = time.perf_counter() - start
            self._record_failure(job, error_kind(e), str(e), duration)
            logger.error(
                f"Job '{status.name}' failed at {started_at.isoformat()} "
                f"[{error_kind(e)}]: {e}",
                exc_info=not isinstance(e, WebtopError),
            )
        else:
            duration = time.perf_counter() - start
            status.last_success = started_at
            status.last_duration = duration
            status.last_result = result if _is_plain(result) else repr(result)
            metrics.record_job_run(status.name, "success", duration)
            logger.debug(f"Job '{status.name}' finished in {duration:.3f}s")
        finally:
            status.running = False

        await self._persist(job)

    def _record_failure(self, job: _Job, kind: str, message: str, duration: float) -> None:
        status = job.status
        status.failures += 1
        status.last_duration = duration
        status.last_error = JobError(kind=kind, message=message, timestamp=utcnow())
        metrics.record_job_run(status.name, "failure", duration, error_kind=kind)
        if kind in (TIMEOUT_KIND, CANCELLED_KIND):
            logger.warning(f"Job '{status.name}' run cancelled [{kind}]")

    async def _persist(self, job: _Job) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_job_status(job.status.name, job.status.to_dict())
        except WebtopError as e:
            logger.warning(f"Could not persist status of job '{job.status.name}': {e}")


def _is_plain(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str, dict, list))

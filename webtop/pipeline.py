"""Pipeline wiring: one store, the cascade, the jobs and their schedule."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from webtop.election import CandidateSelector, ElectionMerger
from webtop.errors import ConfigMissing
from webtop.ingestion import IngestionBoundary
from webtop.processing import TrafficAnalytics
from webtop.query import LeaderboardReport
from webtop.rollup import RollupCascade
from webtop.scheduling import JobContext, JobScheduler
from webtop.storage import EventStore, RetentionManager
from webtop.timeutil import ensure_utc, utcnow

if TYPE_CHECKING:
    from webtop.config import WebtopConfig

logger = logging.getLogger(__name__)

SELECT_JOB = "select_candidates"
ELECT_JOB = "elect"
RETENTION_JOB = "retention"


def rollup_job_name(level: str) -> str:
    return f"rollup_{level}"


class WebtopPipeline:
    """All pipeline components bound to one event store.

    Jobs load the settings record once at the start of every run and use that
    snapshot throughout, so a settings change takes effect on each job's next
    tick and never mid-run.
    """

    def __init__(self, config: WebtopConfig, store: EventStore | None = None) -> None:
        """Initialize pipeline.

        Args:
            config: Process configuration
            store: Event store to use (defaults to one at the configured path)
        """
        self.config = config
        self.store = store or EventStore(config.storage.path or ":memory:")
        self.cascade = RollupCascade(self.store, config.levels)
        self.ingestion = IngestionBoundary(
            self.store, max_clock_skew=config.max_clock_skew, base_level=config.levels[0].name
        )
        self.retention = RetentionManager(self.store, self.cascade)
        self.selector = CandidateSelector(self.store, self.cascade)
        self.merger = ElectionMerger(self.store, self.cascade, stats_level=config.stats_level)
        self.report = LeaderboardReport(self.store)
        self.analytics = TrafficAnalytics(self.store, self.cascade)
        self.scheduler = JobScheduler(
            store=self.store if config.jobs.persist_status else None,
            drain_timeout=config.jobs.drain_timeout_seconds,
        )

    async def initialize(self) -> None:
        """Open the store, creating the schema and seeding settings if configured."""
        seed = self.config.pipeline if self.config.storage.seed_settings else None
        await self.store.initialize(seed_settings=seed)

    async def close(self) -> None:
        await self.store.close()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def register_jobs(self) -> None:
        """Register the refresh job of every level plus selection, election and retention."""
        for level in self.cascade.levels:
            self.scheduler.register(
                rollup_job_name(level.name),
                self._refresh_job,
                interval=level.refresh_interval,
                initial_delay=level.initial_delay,
                config={"level": level.name},
            )

        jobs = self.config.jobs
        self.scheduler.register(
            SELECT_JOB,
            self._select_job,
            interval=jobs.selection_interval,
            initial_delay=jobs.selection_delay,
        )

        try:
            election_interval = (await self.store.load_settings()).election_interval
        except ConfigMissing:
            election_interval = self.config.pipeline.election_interval
            logger.warning(
                f"No settings record yet; scheduling elections every {election_interval} "
                "until one is written"
            )
        self.scheduler.register(
            ELECT_JOB,
            self._elect_job,
            interval=election_interval,
            initial_delay=jobs.election_delay,
        )

        self.scheduler.register(
            RETENTION_JOB,
            self._retention_job,
            interval=jobs.retention_interval,
            initial_delay=jobs.retention_delay,
        )

    async def _refresh_job(self, ctx: JobContext) -> dict[str, Any]:
        result = await self.cascade.refresh(ctx.config["level"])
        return {"windows": result.windows, "buckets_written": result.buckets_written}

    async def _select_job(self, ctx: JobContext) -> dict[str, Any]:
        settings = await self.store.load_settings()
        result = await self.selector.select(settings)
        return {
            "window_time": result.window_time.isoformat(),
            "candidates_written": result.candidates_written,
        }

    async def _elect_job(self, ctx: JobContext) -> dict[str, Any]:
        settings = await self.store.load_settings()
        result = await self.merger.elect(settings)

        if self.scheduler.get_job(ctx.name).interval != settings.election_interval:
            self.scheduler.reschedule(ctx.name, settings.election_interval)

        return {
            "window_time": result.window_time.isoformat() if result.window_time else None,
            "inserted": result.inserted,
            "updated": result.updated,
            "evicted": result.evicted_age + result.evicted_capacity,
            "leaderboard_size": result.leaderboard_size,
        }

    async def _retention_job(self, ctx: JobContext) -> dict[str, Any]:
        settings = await self.store.load_settings()
        stats = await self.retention.run(settings)
        return {"rows_deleted": stats.rows_deleted, "skipped": stats.skipped}

    # ------------------------------------------------------------------
    # One-shot cycle
    # ------------------------------------------------------------------

    async def run_cycle(
        self, now: datetime | None = None, purge: bool = False
    ) -> dict[str, Any]:
        """Refresh every level, select candidates and elect once.

        Args:
            now: Reference time (defaults to current time)
            purge: Also apply retention afterwards

        Returns:
            Summary of each step

        Raises:
            ConfigMissing: If no settings record exists
            RefreshLagExceeded: If the base level has never settled a window
        """
        now = ensure_utc(now) if now else utcnow()
        settings = await self.store.load_settings()

        refreshed = await self.cascade.refresh_all(now)
        selection = await self.selector.select(settings, now)
        election = await self.merger.elect(settings, now)
        summary: dict[str, Any] = {
            "refreshed": {r.level: r.windows for r in refreshed},
            "candidates": selection.candidates_written,
            "election": election,
        }
        if purge:
            summary["retention"] = await self.retention.run(settings, now)
        return summary

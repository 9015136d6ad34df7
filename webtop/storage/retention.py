"""Retention service: bounded storage for raw events and rollup levels."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from webtop.monitoring import metrics
from webtop.rollup.levels import RAW_LEVEL
from webtop.storage.store import advance_purged, get_watermark
from webtop.timeutil import ensure_utc, floor_time, to_db, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.models import PipelineSettings
    from webtop.rollup.cascade import RollupCascade
    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class RetentionStats:
    """Statistics for one retention run."""

    rows_deleted: dict[str, int] = field(default_factory=dict)
    cutoffs: dict[str, datetime] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def total_deleted(self) -> int:
        return sum(self.rows_deleted.values())


class RetentionManager:
    """Drops raw events and rollup buckets past their retention horizon.

    Deletion never races ahead of the cascade: raw events are only deleted
    below level 0's watermark and a level's buckets only below the watermark
    of the level computed from it. Data that has not been rolled up yet is
    therefore never lost, whatever the configured horizon.
    """

    def __init__(self, store: EventStore, cascade: RollupCascade) -> None:
        """Initialize retention manager.

        Args:
            store: Event store to prune
            cascade: Cascade whose levels and watermarks bound deletion
        """
        self.store = store
        self.cascade = cascade
        logger.info("Retention manager initialized")

    async def purge_raw(
        self, settings: PipelineSettings, now: datetime | None = None
    ) -> RetentionStats:
        """Delete raw events older than ``settings.raw_retention``.

        Args:
            settings: Settings snapshot for this run
            now: Reference time (defaults to current time)

        Returns:
            Retention statistics
        """
        now = ensure_utc(now) if now else utcnow()
        stats = RetentionStats(start_time=utcnow())
        await self.store.run(self._purge_raw, settings.raw_retention, now, stats)
        return self._finish(stats)

    async def purge_rollups(
        self, settings: PipelineSettings, now: datetime | None = None
    ) -> RetentionStats:
        """Delete rollup buckets older than each level's retention horizon."""
        now = ensure_utc(now) if now else utcnow()
        stats = RetentionStats(start_time=utcnow())
        await self.store.run(self._purge_rollups, settings, now, stats)
        return self._finish(stats)

    async def run(self, settings: PipelineSettings, now: datetime | None = None) -> RetentionStats:
        """Purge raw events and every rollup level."""
        now = ensure_utc(now) if now else utcnow()
        stats = RetentionStats(start_time=utcnow())
        await self.store.run(self._purge_raw, settings.raw_retention, now, stats)
        await self.store.run(self._purge_rollups, settings, now, stats)
        return self._finish(stats)

    def _purge_raw(
        self,
        cur: duckdb.DuckDBPyConnection,
        raw_retention: timedelta,
        now: datetime,
        stats: RetentionStats,
    ) -> None:
        base = self.cascade.base_level.name
        consumer = get_watermark(cur, base)
        if consumer.settled_until is None:
            logger.info(f"Level {base} has not settled any window, keeping raw events")
            stats.skipped.append(RAW_LEVEL)
            return

        cutoff = min(now - raw_retention, consumer.settled_until)
        row = cur.execute(
            "DELETE FROM raw_events WHERE event_time < ?", [to_db(cutoff)]
        ).fetchone()
        advance_purged(cur, RAW_LEVEL, cutoff)
        stats.rows_deleted[RAW_LEVEL] = int(row[0]) if row else 0
        stats.cutoffs[RAW_LEVEL] = cutoff

    def _purge_rollups(
        self,
        cur: duckdb.DuckDBPyConnection,
        settings: PipelineSettings,
        now: datetime,
        stats: RetentionStats,
    ) -> None:
        for level in self.cascade.levels:
            horizon = settings.retention_for(level.name, level.retention)
            cutoff = floor_time(now - horizon, level.width)

            consumer_name = self.cascade.consumer_of(level.name)
            if consumer_name is not None:
                consumer = get_watermark(cur, consumer_name)
                if consumer.settled_until is None:
                    logger.debug(
                        f"Level {consumer_name} has not settled, keeping level {level.name}"
                    )
                    stats.skipped.append(level.name)
                    continue
                cutoff = min(cutoff, consumer.settled_until)

            row = cur.execute(
                "DELETE FROM rollup_buckets WHERE level = ? AND window_start < ?",
                [level.name, to_db(cutoff)],
            ).fetchone()
            advance_purged(cur, level.name, cutoff)
            stats.rows_deleted[level.name] = int(row[0]) if row else 0
            stats.cutoffs[level.name] = cutoff

    def _finish(self, stats: RetentionStats) -> RetentionStats:
        stats.end_time = utcnow()
        for level, deleted in stats.rows_deleted.items():
            if deleted:
                metrics.rows_purged_total.labels(level=level).inc(deleted)

        duration = (stats.end_time - stats.start_time).total_seconds()
        if stats.total_deleted:
            details = ", ".join(f"{k}={v}" for k, v in stats.rows_deleted.items() if v)
            logger.info(
                f"Retention complete: {stats.total_deleted} rows deleted ({details}) "
                f"in {duration:.2f}s"
            )
        else:
            logger.debug("Retention complete: nothing to delete")
        return stats

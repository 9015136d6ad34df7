"""Rollup cascade: pull-based hierarchical aggregation with watermarks.

Level 0 is computed from raw events, every higher level exclusively from the
level directly below it. Each level owns a watermark (``settled_until``), the
exclusive end of the last materialized window. A refresh only ever consumes
source data below the source's watermark and only materializes windows that
have ended at least ``end_offset`` ago, so partial windows are never final.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from webtop.errors import RefreshLagExceeded
from webtop.monitoring import metrics
from webtop.rollup.levels import RAW_LEVEL, RollupLevel, validate_cascade
from webtop.storage.store import advance_settled, get_watermark
from webtop.timeutil import EPOCH_NAIVE, ceil_time, ensure_utc, floor_time, to_db, utcnow

if TYPE_CHECKING:
    from collections.abc import Sequence

    import duckdb

    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Outcome of one refresh or rebuild of a level."""

    level: str
    start: datetime | None = None
    end: datetime | None = None
    windows: int = 0
    buckets_written: int = 0

    @property
    def advanced(self) -> bool:
        return self.windows > 0


_LEVEL0_SQL = """
    INSERT INTO rollup_buckets (level, window_start, entity_key, total, samples, peak, sum_squares)
    SELECT
        ? AS level,
        time_bucket(?::INTERVAL, event_time, ?::TIMESTAMP) AS bucket,
        entity_key,
        COUNT(*) AS total,
        1 AS samples,
        COUNT(*) AS peak,
        CAST(COUNT(*) AS DOUBLE) * COUNT(*) AS sum_squares
    FROM raw_events
    WHERE event_time >= ? AND event_time < ?
    GROUP BY bucket, entity_key
    ON CONFLICT (level, window_start, entity_key) DO UPDATE SET
        total = EXCLUDED.total,
        samples = EXCLUDED.samples,
        peak = EXCLUDED.peak,
        sum_squares = EXCLUDED.sum_squares
"""

_LEVELN_SQL = """
    INSERT INTO rollup_buckets (level, window_start, entity_key, total, samples, peak, sum_squares)
    SELECT
        ? AS level,
        time_bucket(?::INTERVAL, window_start, ?::TIMESTAMP) AS bucket,
        entity_key,
        SUM(total) AS total,
        SUM(samples) AS samples,
        MAX(peak) AS peak,
        SUM(sum_squares) AS sum_squares
    FROM rollup_buckets
    WHERE level = ? AND window_start >= ? AND window_start < ?
    GROUP BY bucket, entity_key
    ON CONFLICT (level, window_start, entity_key) DO UPDATE SET
        total = EXCLUDED.total,
        samples = EXCLUDED.samples,
        peak = EXCLUDED.peak,
        sum_squares = EXCLUDED.sum_squares
"""


class RollupCascade:
    """Maintains the rollup levels of one event store."""

    def __init__(self, store: EventStore, levels: Sequence[RollupLevel]) -> None:
        """Initialize cascade.

        Args:
            store: Event store holding raw events and rollup buckets
            levels: Levels from finest to coarsest

        Raises:
            ValueError: If the levels do not form a valid cascade
        """
        self.store = store
        self.levels: list[RollupLevel] = validate_cascade(list(levels))
        self._index = {level.name: i for i, level in enumerate(self.levels)}
        logger.info(
            f"Rollup cascade initialized: {' -> '.join(level.name for level in self.levels)}"
        )

    @property
    def base_level(self) -> RollupLevel:
        """The most granular level."""
        return self.levels[0]

    def level(self, name: str) -> RollupLevel:
        try:
            return self.levels[self._index[name]]
        except KeyError:
            raise KeyError(f"Unknown rollup level: {name}") from None

    def source_of(self, name: str) -> str:
        """Name of the level (or ``raw``) a level is computed from."""
        index = self._index[name]
        return RAW_LEVEL if index == 0 else self.levels[index - 1].name

    def consumer_of(self, name: str) -> str | None:
        """Name of the level computed from ``name``, if any."""
        if name == RAW_LEVEL:
            return self.levels[0].name
        index = self._index[name]
        return self.levels[index + 1].name if index + 1 < len(self.levels) else None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, name: str, now: datetime | None = None) -> RefreshResult:
        """Materialize every newly settled window of a level.

        Args:
            name: Level name
            now: Reference time (defaults to current time)

        Returns:
            Refresh result; ``windows == 0`` when nothing new had settled

        Raises:
            RefreshLagExceeded: If the upstream level has not settled the data
                this level is due to consume
        """
        now = ensure_utc(now) if now else utcnow()
        level = self.level(name)
        result = await self.store.run(self._refresh, level, now)

        if result.advanced:
            metrics.rollup_buckets_written_total.labels(level=name).inc(result.buckets_written)
            metrics.rollup_watermark_lag_seconds.labels(level=name).set(
                (now - result.end).total_seconds()
            )
            logger.info(
                f"Refreshed level {name}: {result.windows} window(s) "
                f"[{result.start.isoformat()}, {result.end.isoformat()}), "
                f"{result.buckets_written} bucket(s)"
            )
        else:
            logger.debug(f"Level {name} up to date")
        return result

    async def refresh_all(self, now: datetime | None = None) -> list[RefreshResult]:
        """Refresh every level bottom-up.

        A level whose upstream lags is logged and skipped; the remaining
        levels are still refreshed.
        """
        now = ensure_utc(now) if now else utcnow()
        results: list[RefreshResult] = []
        for level in self.levels:
            try:
                results.append(await self.refresh(level.name, now))
            except RefreshLagExceeded as e:
                logger.warning(f"Skipping refresh: {e}")
                results.append(RefreshResult(level=level.name))
        return results

    def _refresh(
        self, cur: duckdb.DuckDBPyConnection, level: RollupLevel, now: datetime
    ) -> RefreshResult:
        index = self._index[level.name]
        source = self.source_of(level.name)
        own = get_watermark(cur, level.name)
        upstream = get_watermark(cur, source)

        target_end = floor_time(now - level.end_offset, level.width)
        start = own.settled_until or floor_time(now - level.start_offset, level.width)
        if upstream.purged_before is not None:
            start = max(start, ceil_time(upstream.purged_before, level.width))

        end = target_end
        if index > 0:
            if upstream.settled_until is None:
                if target_end > start:
                    raise RefreshLagExceeded(level.name, source)
                return RefreshResult(level=level.name)
            end = min(target_end, floor_time(upstream.settled_until, level.width))
            if end <= start < target_end:
                raise RefreshLagExceeded(
                    level.name,
                    source,
                    requested_until=target_end,
                    settled_until=upstream.settled_until,
                )

        if end <= start:
            return RefreshResult(level=level.name)

        written = self._materialize(cur, index, start, end)
        advance_settled(cur, level.name, end)
        return RefreshResult(
            level=level.name,
            start=start,
            end=end,
            windows=(end - start) // level.width,
            buckets_written=written,
        )

    def _materialize(
        self, cur: duckdb.DuckDBPyConnection, index: int, start: datetime, end: datetime
    ) -> int:
        level = self.levels[index]
        if index == 0:
            row = cur.execute(
                _LEVEL0_SQL,
                [level.name, level.width, EPOCH_NAIVE, to_db(start), to_db(end)],
            ).fetchone()
        else:
            row = cur.execute(
                _LEVELN_SQL,
                [
                    level.name,
                    level.width,
                    EPOCH_NAIVE,
                    self.levels[index - 1].name,
                    to_db(start),
                    to_db(end),
                ],
            ).fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    async def rebuild(self, name: str, start: datetime, end: datetime) -> RefreshResult:
        """Recompute already-settled windows of a level.

        The range is widened to whole windows, clamped to the level's
        watermark and to source data that has not been purged. Recomputing
        an unchanged range yields the same bucket values.

        Args:
            name: Level name
            start: Range start (inclusive)
            end: Range end (exclusive)

        Returns:
            Rebuild result (the watermark is left untouched)
        """
        level = self.level(name)
        result = await self.store.run(
            self._rebuild, level, ensure_utc(start), ensure_utc(end)
        )
        logger.info(
            f"Rebuilt level {name}: {result.windows} window(s), "
            f"{result.buckets_written} bucket(s)"
        )
        return result

    def _rebuild(
        self, cur: duckdb.DuckDBPyConnection, level: RollupLevel, start: datetime, end: datetime
    ) -> RefreshResult:
        own = get_watermark(cur, level.name)
        upstream = get_watermark(cur, self.source_of(level.name))
        if own.settled_until is None:
            return RefreshResult(level=level.name)

        start = floor_time(start, level.width)
        end = min(ceil_time(end, level.width), own.settled_until)
        if upstream.purged_before is not None:
            start = max(start, ceil_time(upstream.purged_before, level.width))
        if end <= start:
            return RefreshResult(level=level.name)

        written = self._materialize(cur, self._index[level.name], start, end)
        return RefreshResult(
            level=level.name,
            start=start,
            end=end,
            windows=(end - start) // level.width,
            buckets_written=written,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def lag(self, now: datetime | None = None) -> dict[str, float | None]:
        """Seconds between ``now`` and each level's settled watermark."""
        now = ensure_utc(now) if now else utcnow()
        lags: dict[str, float | None] = {}
        for level in self.levels:
            watermark = await self.store.get_watermark(level.name)
            if watermark.settled_until is None:
                lags[level.name] = None
                continue
            lags[level.name] = (now - watermark.settled_until).total_seconds()
            metrics.rollup_watermark_lag_seconds.labels(level=level.name).set(lags[level.name])
        return lags

"""Election merger: folds candidate snapshots into the bounded leaderboard.

One election is one DuckDB transaction: the conditional upsert of the latest
candidate snapshot, age and capacity eviction, candidate pruning and the
history record either all commit or all roll back. The leaderboard is never
observably over its bound and a crash cannot keep the inserts while losing
the eviction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from webtop.errors import MergeConflict
from webtop.monitoring import metrics
from webtop.timeutil import ensure_utc, from_db, to_db, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.models import PipelineSettings
    from webtop.rollup.cascade import RollupCascade
    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class ElectionResult:
    """Statistics for one election."""

    window_time: datetime | None = None
    candidates: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0  # snapshot already folded for these entities
    evicted_age: int = 0
    evicted_capacity: int = 0
    evicted_keys: list[str] = field(default_factory=list)
    candidates_pruned: int = 0
    leaderboard_size: int = 0


# Upsert the snapshot. The WHERE guard makes re-running an election on the
# same snapshot a no-op, so accumulation happens once per entity and window.
_UPSERT_SQL = """
    INSERT INTO leaderboard (
        entity_key, first_seen, last_seen, cumulative_hits, last_election_hits,
        times_elected, avg_hourly_hits, stddev_hourly_hits, p95_hourly_hits,
        volatility, updated_at
    )
    SELECT
        c.entity_key,
        c.window_time,
        c.window_time,
        c.hits,
        c.hits,
        1,
        COALESCE(st.avg_hits, 0),
        COALESCE(st.stddev_hits, 0),
        COALESCE(st.p95_hits, 0),
        COALESCE(st.stddev_hits / NULLIF(st.avg_hits, 0), 0),
        ?
    FROM candidates AS c
    LEFT JOIN (
        SELECT
            entity_key,
            AVG(total) AS avg_hits,
            COALESCE(STDDEV_SAMP(total), 0) AS stddev_hits,
            QUANTILE_CONT(total, 0.95) AS p95_hits
        FROM rollup_buckets
        WHERE level = ?
          AND window_start >= ?
          AND window_start < ?
          AND entity_key IN (SELECT entity_key FROM candidates WHERE window_time = ?)
        GROUP BY entity_key
    ) AS st ON st.entity_key = c.entity_key
    WHERE c.window_time = ?
    ON CONFLICT (entity_key) DO UPDATE SET
        cumulative_hits = cumulative_hits + EXCLUDED.cumulative_hits,
        last_election_hits = EXCLUDED.last_election_hits,
        times_elected = times_elected + 1,
        last_seen = EXCLUDED.last_seen,
        avg_hourly_hits = EXCLUDED.avg_hourly_hits,
        stddev_hourly_hits = EXCLUDED.stddev_hourly_hits,
        p95_hourly_hits = EXCLUDED.p95_hourly_hits,
        volatility = EXCLUDED.volatility,
        updated_at = EXCLUDED.updated_at
    WHERE last_seen < EXCLUDED.last_seen
"""

_CLASSIFY_SQL = """
    SELECT
        COUNT(*),
        COUNT(*) FILTER (WHERE l.entity_key IS NULL),
        COUNT(*) FILTER (WHERE l.last_seen < c.window_time),
        COUNT(*) FILTER (WHERE l.last_seen >= c.window_time)
    FROM candidates AS c
    LEFT JOIN leaderboard AS l ON l.entity_key = c.entity_key
    WHERE c.window_time = ?
"""

# Eviction order: least recently seen first; ties by fewest hits, then key
_EVICTION_ORDER = "last_seen ASC, cumulative_hits ASC, entity_key ASC"


class ElectionMerger:
    """Merges the latest candidate snapshot into the leaderboard."""

    # Width from which a rollup level counts as "hourly" for entry statistics
    STATS_WIDTH = timedelta(hours=1)

    def __init__(
        self,
        store: EventStore,
        cascade: RollupCascade,
        stats_level: str | None = None,
    ) -> None:
        """Initialize election merger.

        Args:
            store: Event store holding candidates and the leaderboard
            cascade: Rollup cascade providing the statistics level
            stats_level: Level used for per-entry traffic statistics; defaults
                to the first level at least one hour wide (or the coarsest)
        """
        self.store = store
        self.cascade = cascade
        self.stats_level = stats_level or self._default_stats_level()
        cascade.level(self.stats_level)

    def _default_stats_level(self) -> str:
        for level in self.cascade.levels:
            if level.width >= self.STATS_WIDTH:
                return level.name
        return self.cascade.levels[-1].name

    async def elect(
        self, settings: PipelineSettings, now: datetime | None = None
    ) -> ElectionResult:
        """Run one election.

        Args:
            settings: Settings snapshot for this run
            now: Reference time (defaults to current time)

        Returns:
            Election statistics

        Raises:
            MergeConflict: If a concurrent mutation was detected; nothing is
                committed in that case
        """
        now = ensure_utc(now) if now else utcnow()
        result = await self.store.run(self._elect, settings, now)

        metrics.leaderboard_size.set(result.leaderboard_size)
        metrics.record_evictions("age", result.evicted_age)
        metrics.record_evictions("capacity", result.evicted_capacity)

        if result.window_time is None:
            logger.info("No candidate snapshot to elect from")
        else:
            logger.info(
                f"Election for {result.window_time.isoformat()}: "
                f"{result.candidates} candidate(s), {result.inserted} new, "
                f"{result.updated} updated, {result.unchanged} already folded, "
                f"{result.evicted_capacity + result.evicted_age} evicted, "
                f"leaderboard size {result.leaderboard_size}/{settings.max_leaderboard_size}"
            )
        if result.evicted_keys:
            logger.debug(f"Evicted for capacity: {', '.join(result.evicted_keys)}")
        return result

    def _elect(
        self, cur: duckdb.DuckDBPyConnection, settings: PipelineSettings, now: datetime
    ) -> ElectionResult:
        result = ElectionResult()

        row = cur.execute("SELECT MAX(window_time) FROM candidates").fetchone()
        snapshot = row[0] if row else None

        if snapshot is not None:
            result.window_time = from_db(snapshot)
            counts = cur.execute(_CLASSIFY_SQL, [snapshot]).fetchone()
            result.candidates, result.inserted, result.updated, result.unchanged = (
                int(v) for v in counts
            )
            stats_start = to_db(result.window_time - settings.stats_window)
            cur.execute(
                _UPSERT_SQL,
                [to_db(now), self.stats_level, stats_start, snapshot, snapshot, snapshot],
            )

        # Evictions run after the upsert so fresh entries compete on last_seen
        result.evicted_age = _scalar(
            cur.execute(
                "DELETE FROM leaderboard WHERE last_seen < ?",
                [to_db(now - settings.leaderboard_retention)],
            )
        )
        result.evicted_keys = self._evict_over_capacity(cur, settings.max_leaderboard_size)
        result.evicted_capacity = len(result.evicted_keys)

        result.candidates_pruned = _scalar(
            cur.execute(
                "DELETE FROM candidates WHERE window_time < ?",
                [to_db(now - settings.candidate_retention)],
            )
        )

        result.leaderboard_size = _scalar(cur.execute("SELECT COUNT(*) FROM leaderboard"))
        if result.leaderboard_size > settings.max_leaderboard_size:
            raise MergeConflict(
                f"leaderboard holds {result.leaderboard_size} entries after eviction "
                f"(max {settings.max_leaderboard_size}); concurrent insert suspected"
            )

        cur.execute(
            """
            INSERT INTO election_history
                (window_time, elected_at, candidates, inserted, updated, evicted)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                snapshot,
                to_db(now),
                result.candidates,
                result.inserted,
                result.updated,
                result.evicted_age + result.evicted_capacity,
            ],
        )
        return result

    @staticmethod
    def _evict_over_capacity(cur: duckdb.DuckDBPyConnection, max_size: int) -> list[str]:
        size = _scalar(cur.execute("SELECT COUNT(*) FROM leaderboard"))
        overflow = size - max_size
        if overflow <= 0:
            return []

        keys = [
            r[0]
            for r in cur.execute(
                f"SELECT entity_key FROM leaderboard ORDER BY {_EVICTION_ORDER} LIMIT ?",
                [overflow],
            ).fetchall()
        ]
        cur.execute(
            "DELETE FROM leaderboard WHERE entity_key IN (SELECT UNNEST(?::VARCHAR[]))",
            [keys],
        )
        return keys

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def prune(self, min_cumulative_hits: int, min_times_elected: int) -> int:
        """Remove low-value entries.

        An entry is removed when it has fewer than ``min_cumulative_hits``
        hits and was elected fewer than ``min_times_elected`` times. Typically
        run after raising the threshold to clear entries a lower threshold
        let in.

        Returns:
            Number of entries removed
        """
        removed = await self.store.run(_prune, min_cumulative_hits, min_times_elected)
        metrics.record_evictions("admin", removed)
        logger.info(
            f"Pruned {removed} leaderboard entries "
            f"(hits < {min_cumulative_hits} and elections < {min_times_elected})"
        )
        return removed

    async def history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent elections, newest first."""
        return await self.store.run(_history, limit)


def _scalar(relation: duckdb.DuckDBPyConnection) -> int:
    row = relation.fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def _prune(cur: duckdb.DuckDBPyConnection, min_cumulative_hits: int, min_times_elected: int) -> int:
    return _scalar(
        cur.execute(
            "DELETE FROM leaderboard WHERE cumulative_hits < ? AND times_elected < ?",
            [min_cumulative_hits, min_times_elected],
        )
    )


def _history(cur: duckdb.DuckDBPyConnection, limit: int) -> list[dict[str, Any]]:
    rows = cur.execute(
        """
        SELECT window_time, elected_at, candidates, inserted, updated, evicted
        FROM election_history
        ORDER BY elected_at DESC
        LIMIT ?
        """,
        [limit],
    ).fetchall()
    return [
        {
            "window_time": from_db(r[0]),
            "elected_at": from_db(r[1]),
            "candidates": r[2],
            "inserted": r[3],
            "updated": r[4],
            "evicted": r[5],
        }
        for r in rows
    ]

"""Read-only report surfaces over the leaderboard and pipeline state."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from webtop.models import ReportRow
from webtop.timeutil import ensure_utc, from_db, to_db, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)

# Entries younger than this are rated as if this old
MIN_ELAPSED_SECONDS = 1.0

_REPORT_SQL = """
    SELECT
        ROW_NUMBER() OVER (ORDER BY cumulative_hits DESC, entity_key ASC) AS rank,
        entity_key,
        cumulative_hits,
        last_election_hits,
        times_elected,
        cumulative_hits / (
            GREATEST(epoch(CAST(? AS TIMESTAMP) - first_seen), ?) / 3600.0
        ) AS avg_rate_per_hour,
        avg_hourly_hits,
        stddev_hourly_hits,
        p95_hourly_hits,
        volatility,
        first_seen,
        last_seen
    FROM leaderboard
    ORDER BY rank
"""


class LeaderboardReport:
    """Leaderboard projection ranked by cumulative hits."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    async def top(self, limit: int | None = None, now: datetime | None = None) -> list[ReportRow]:
        """Ranked leaderboard.

        Args:
            limit: Maximum rows returned (all when None)
            now: Reference time for the average rate

        Returns:
            Rows sorted by ``cumulative_hits`` descending; ties broken by key
        """
        now = ensure_utc(now) if now else utcnow()
        return await self.store.run(_top, now, limit)

    async def entry(self, entity_key: str, now: datetime | None = None) -> ReportRow | None:
        """Report row (with its rank) for one entity."""
        rows = await self.top(now=now)
        return next((r for r in rows if r.entity_key == entity_key), None)

    async def overview(self, now: datetime | None = None) -> dict[str, Any]:
        """Pipeline overview: table sizes, raw event stats and watermark lag."""
        now = ensure_utc(now) if now else utcnow()
        return await self.store.run(_overview, now)


def _top(cur: duckdb.DuckDBPyConnection, now: datetime, limit: int | None) -> list[ReportRow]:
    query = _REPORT_SQL
    params: list[Any] = [to_db(now), MIN_ELAPSED_SECONDS]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    rows = cur.execute(query, params).fetchall()
    return [
        ReportRow(
            rank=r[0],
            entity_key=r[1],
            cumulative_hits=r[2],
            last_election_hits=r[3],
            times_elected=r[4],
            avg_rate_per_hour=float(r[5]),
            avg_hourly_hits=r[6],
            stddev_hourly_hits=r[7],
            p95_hourly_hits=r[8],
            volatility=r[9],
            first_seen=from_db(r[10]),
            last_seen=from_db(r[11]),
        )
        for r in rows
    ]


def _overview(cur: duckdb.DuckDBPyConnection, now: datetime) -> dict[str, Any]:
    raw = cur.execute(
        """
        SELECT COUNT(DISTINCT entity_key), COUNT(*), MIN(event_time), MAX(event_time)
        FROM raw_events
        """
    ).fetchone()

    buckets = {
        level: count
        for level, count in cur.execute(
            "SELECT level, COUNT(*) FROM rollup_buckets GROUP BY level ORDER BY level"
        ).fetchall()
    }

    watermarks = {}
    for level, settled, purged in cur.execute(
        "SELECT level, settled_until, purged_before FROM level_watermarks ORDER BY level"
    ).fetchall():
        settled_until = from_db(settled)
        watermarks[level] = {
            "settled_until": settled_until.isoformat() if settled_until else None,
            "purged_before": from_db(purged).isoformat() if purged else None,
            "lag_seconds": (now - settled_until).total_seconds() if settled_until else None,
        }

    candidates, latest_window = cur.execute(
        "SELECT COUNT(*), MAX(window_time) FROM candidates"
    ).fetchone()
    leaderboard, total_hits = cur.execute(
        "SELECT COUNT(*), COALESCE(SUM(cumulative_hits), 0) FROM leaderboard"
    ).fetchone()
    elections, last_election = cur.execute(
        "SELECT COUNT(*), MAX(elected_at) FROM election_history"
    ).fetchone()

    return {
        "raw_events": {
            "total_entities": raw[0],
            "total_events": raw[1],
            "earliest_event": from_db(raw[2]),
            "latest_event": from_db(raw[3]),
        },
        "rollup_buckets": buckets,
        "watermarks": watermarks,
        "candidates": {"total": candidates, "latest_window": from_db(latest_window)},
        "leaderboard": {"entries": leaderboard, "total_hits": int(total_hits)},
        "elections": {"total": elections, "last_elected_at": from_db(last_election)},
    }

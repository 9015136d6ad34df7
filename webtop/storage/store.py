"""Event store: DuckDB tables shared by every pipeline job."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import duckdb

from webtop.errors import ConfigMissing, MergeConflict, StoreUnavailable
from webtop.models import (
    CandidateRecord,
    LeaderboardEntry,
    LevelWatermark,
    PipelineSettings,
    RollupBucket,
)
from webtop.timeutil import from_db, to_db, utcnow

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Rows per multi-row INSERT when appending raw events
APPEND_CHUNK_SIZE = 1000

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS raw_events (
        event_time TIMESTAMP NOT NULL,
        entity_key VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollup_buckets (
        level VARCHAR NOT NULL,
        window_start TIMESTAMP NOT NULL,
        entity_key VARCHAR NOT NULL,
        total BIGINT NOT NULL,
        samples BIGINT NOT NULL,
        peak BIGINT NOT NULL,
        sum_squares DOUBLE NOT NULL,
        PRIMARY KEY (level, window_start, entity_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS level_watermarks (
        level VARCHAR PRIMARY KEY,
        settled_until TIMESTAMP,
        purged_before TIMESTAMP,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidates (
        entity_key VARCHAR NOT NULL,
        window_time TIMESTAMP NOT NULL,
        hits BIGINT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (entity_key, window_time)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leaderboard (
        entity_key VARCHAR PRIMARY KEY,
        first_seen TIMESTAMP NOT NULL,
        last_seen TIMESTAMP NOT NULL,
        cumulative_hits BIGINT NOT NULL,
        last_election_hits BIGINT NOT NULL,
        times_elected INTEGER NOT NULL,
        avg_hourly_hits DOUBLE NOT NULL DEFAULT 0,
        stddev_hourly_hits DOUBLE NOT NULL DEFAULT 0,
        p95_hourly_hits DOUBLE NOT NULL DEFAULT 0,
        volatility DOUBLE NOT NULL DEFAULT 0,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS election_history (
        window_time TIMESTAMP,
        elected_at TIMESTAMP NOT NULL,
        candidates INTEGER NOT NULL,
        inserted INTEGER NOT NULL,
        updated INTEGER NOT NULL,
        evicted INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_settings (
        id INTEGER PRIMARY KEY,
        document VARCHAR NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_status (
        name VARCHAR PRIMARY KEY,
        document VARCHAR NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
)

# Tables cleared by reset(); settings and schema survive
DATA_TABLES = (
    "raw_events",
    "rollup_buckets",
    "level_watermarks",
    "candidates",
    "leaderboard",
    "election_history",
    "job_status",
)

LEADERBOARD_COLUMNS = (
    "entity_key, first_seen, last_seen, cumulative_hits, last_election_hits, "
    "times_elected, avg_hourly_hits, stddev_hourly_hits, p95_hourly_hits, "
    "volatility, updated_at"
)


class EventStore:
    """DuckDB-backed store for raw events, rollups, candidates and the leaderboard.

    Every unit of work runs on its own DuckDB cursor inside an explicit
    transaction, in a worker thread, so independent jobs can run
    concurrently against the same database. DuckDB's optimistic concurrency
    control rejects conflicting writes, which surface as ``MergeConflict``.
    """

    def __init__(self, database_path: str | Path = ":memory:") -> None:
        """Initialize event store.

        Args:
            database_path: DuckDB database path (":memory:" for in-memory)
        """
        self.db_path = database_path
        self.conn: duckdb.DuckDBPyConnection | None = None
        self._lock = asyncio.Lock()
        self._cursor_lock = threading.Lock()

    async def initialize(self, seed_settings: PipelineSettings | None = None) -> None:
        """Create the schema and optionally seed the settings record.

        Args:
            seed_settings: Settings inserted when no settings record exists yet.
                Without it the store starts empty and jobs fail with
                ``ConfigMissing`` until settings are written.
        """
        async with self._lock:
            if str(self.db_path) != ":memory:":
                from pathlib import Path

                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            try:
                self.conn = duckdb.connect(str(self.db_path))
            except duckdb.IOException as e:
                raise StoreUnavailable(f"Cannot open event store at {self.db_path}: {e}") from e

            for statement in SCHEMA:
                self.conn.execute(statement)

            if seed_settings is not None:
                self.conn.execute(
                    """
                    INSERT INTO pipeline_settings (id, document, updated_at)
                    SELECT 1, ?, ?
                    WHERE NOT EXISTS (SELECT 1 FROM pipeline_settings)
                    """,
                    [seed_settings.model_dump_json(), to_db(utcnow())],
                )

            logger.info(f"Event store initialized at {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info("Event store closed")

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        with self._cursor_lock:
            if not self.conn:
                raise StoreUnavailable("Event store not initialized")
            return self.conn.cursor()

    @contextlib.contextmanager
    def transaction(
        self, cur: duckdb.DuckDBPyConnection | None = None
    ) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block inside one DuckDB transaction on a fresh cursor.

        Commits on success and rolls back on any exception. DuckDB errors are
        translated into the pipeline's error kinds. The cursor is closed on
        exit, including one handed in by the caller.
        """
        if cur is None:
            cur = self._cursor()
        try:
            cur.begin()
            try:
                yield cur
                cur.commit()
            except BaseException:
                with contextlib.suppress(duckdb.Error):
                    cur.rollback()
                raise
        except duckdb.TransactionException as e:
            raise MergeConflict(f"Concurrent modification detected: {e}") from e
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            raise StoreUnavailable(f"Event store I/O failure: {e}") from e
        finally:
            with contextlib.suppress(duckdb.Error):
                cur.close()

    def run_sync(self, func: Callable[..., T], *args: Any) -> T:
        """Run ``func(cursor, *args)`` in a transaction on the calling thread."""
        with self.transaction() as cur:
            return func(cur, *args)

    def _run_on(self, cur: duckdb.DuckDBPyConnection, func: Callable[..., T], *args: Any) -> T:
        with self.transaction(cur) as tx:
            return func(tx, *args)

    async def run(self, func: Callable[..., T], *args: Any) -> T:
        """Run ``func(cursor, *args)`` in a transaction on a worker thread.

        Cancelling the caller interrupts the statement in progress and then
        waits for the worker thread to return, so cancelled work never keeps
        writing after its caller has finished.
        """
        cur = self._cursor()
        worker = asyncio.ensure_future(asyncio.to_thread(self._run_on, cur, func, *args))
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            with contextlib.suppress(duckdb.Error):
                cur.interrupt()
            await _wait_for_worker(worker)
            raise

    # ------------------------------------------------------------------
    # Raw events
    # ------------------------------------------------------------------

    async def append_events(self, events: Sequence[tuple[datetime, str]]) -> int:
        """Append already-validated raw events in one transaction.

        Args:
            events: ``(time, entity_key)`` pairs

        Returns:
            Number of rows appended
        """
        if not events:
            return 0
        return await self.run(append_rows, list(events))

    async def raw_event_stats(self) -> dict[str, Any]:
        """Summary of the raw event table for dashboards."""
        return await self.run(_raw_event_stats)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def load_settings(self) -> PipelineSettings:
        """Load the settings record.

        Raises:
            ConfigMissing: If no settings record exists
        """
        return await self.run(load_settings)

    async def replace_settings(self, settings: PipelineSettings) -> PipelineSettings:
        """Replace the settings record; takes effect on each job's next tick."""
        await self.run(_replace_settings, settings)
        logger.info("Pipeline settings replaced")
        return settings

    async def update_settings(self, **changes: Any) -> PipelineSettings:
        """Validate and apply a partial settings change.

        Raises:
            ConfigMissing: If no settings record exists
            pydantic.ValidationError: If the resulting settings are invalid
        """
        current = await self.load_settings()
        updated = PipelineSettings.model_validate({**current.model_dump(), **changes})
        return await self.replace_settings(updated)

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    async def get_watermark(self, level: str) -> LevelWatermark:
        return await self.run(get_watermark, level)

    async def watermarks(self) -> list[LevelWatermark]:
        return await self.run(_all_watermarks)

    # ------------------------------------------------------------------
    # Rollup buckets
    # ------------------------------------------------------------------

    async def list_buckets(
        self,
        level: str,
        start: datetime,
        end: datetime,
        entity_key: str | None = None,
    ) -> list[RollupBucket]:
        """Buckets of one level with ``start <= window_start < end``.

        Ordered by entity key, then window start.
        """
        return await self.run(list_buckets, level, start, end, entity_key)

    # ------------------------------------------------------------------
    # Candidates and leaderboard
    # ------------------------------------------------------------------

    async def list_candidates(self, window_time: datetime | None = None) -> list[CandidateRecord]:
        """List candidate rows, optionally for a single window."""
        return await self.run(_list_candidates, window_time)

    async def get_entry(self, entity_key: str) -> LeaderboardEntry | None:
        return await self.run(_get_entry, entity_key)

    async def list_entries(self) -> list[LeaderboardEntry]:
        """All leaderboard entries ordered by entity key."""
        return await self.run(_list_entries)

    async def count_rows(self, table: str) -> int:
        if table not in DATA_TABLES and table != "pipeline_settings":
            raise ValueError(f"Unknown table: {table}")
        return await self.run(_count_rows, table)

    # ------------------------------------------------------------------
    # Job status
    # ------------------------------------------------------------------

    async def save_job_status(self, name: str, document: dict[str, Any]) -> None:
        await self.run(_save_job_status, name, document)

    async def job_statuses(self) -> list[dict[str, Any]]:
        return await self.run(_job_statuses)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        """Delete all pipeline data, keeping the schema and settings."""
        await self.run(_reset)
        logger.warning("Event store reset: all pipeline data deleted")


async def _wait_for_worker(worker: asyncio.Future[Any]) -> None:
    """Block until an interrupted worker thread has returned."""
    while not worker.done():
        # Repeated cancellation must not abandon the thread
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.wait([worker])
    error = worker.exception()
    if error is not None:
        logger.debug(f"Interrupted unit of work ended with {error!r}")


# ----------------------------------------------------------------------
# Cursor-level operations (called inside a transaction)
# ----------------------------------------------------------------------


def append_rows(cur: duckdb.DuckDBPyConnection, events: list[tuple[datetime, str]]) -> int:
    for start in range(0, len(events), APPEND_CHUNK_SIZE):
        chunk = events[start : start + APPEND_CHUNK_SIZE]
        placeholders = ", ".join(["(?, ?)"] * len(chunk))
        params: list[Any] = []
        for event_time, entity_key in chunk:
            params.extend((to_db(event_time), entity_key))
        cur.execute(
            f"INSERT INTO raw_events (event_time, entity_key) VALUES {placeholders}",
            params,
        )
    return len(events)


def _raw_event_stats(cur: duckdb.DuckDBPyConnection) -> dict[str, Any]:
    row = cur.execute(
        """
        SELECT COUNT(DISTINCT entity_key), COUNT(*), MIN(event_time), MAX(event_time)
        FROM raw_events
        """
    ).fetchone()
    return {
        "total_entities": row[0] if row else 0,
        "total_events": row[1] if row else 0,
        "earliest_event": from_db(row[2]) if row else None,
        "latest_event": from_db(row[3]) if row else None,
    }


def load_settings(cur: duckdb.DuckDBPyConnection) -> PipelineSettings:
    row = cur.execute("SELECT document FROM pipeline_settings WHERE id = 1").fetchone()
    if row is None:
        raise ConfigMissing()
    return PipelineSettings.model_validate_json(row[0])


def _replace_settings(cur: duckdb.DuckDBPyConnection, settings: PipelineSettings) -> None:
    cur.execute(
        """
        INSERT INTO pipeline_settings (id, document, updated_at) VALUES (1, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            document = EXCLUDED.document,
            updated_at = EXCLUDED.updated_at
        """,
        [settings.model_dump_json(), to_db(utcnow())],
    )


def get_watermark(cur: duckdb.DuckDBPyConnection, level: str) -> LevelWatermark:
    row = cur.execute(
        """
        SELECT settled_until, purged_before, updated_at
        FROM level_watermarks WHERE level = ?
        """,
        [level],
    ).fetchone()
    if row is None:
        return LevelWatermark(level=level)
    return LevelWatermark(
        level=level,
        settled_until=from_db(row[0]),
        purged_before=from_db(row[1]),
        updated_at=from_db(row[2]),
    )


def _all_watermarks(cur: duckdb.DuckDBPyConnection) -> list[LevelWatermark]:
    rows = cur.execute(
        "SELECT level, settled_until, purged_before, updated_at FROM level_watermarks ORDER BY level"
    ).fetchall()
    return [
        LevelWatermark(
            level=r[0],
            settled_until=from_db(r[1]),
            purged_before=from_db(r[2]),
            updated_at=from_db(r[3]),
        )
        for r in rows
    ]


def advance_settled(cur: duckdb.DuckDBPyConnection, level: str, settled_until: datetime) -> None:
    """Move a level's settled watermark forward; never moves it back."""
    cur.execute(
        """
        INSERT INTO level_watermarks (level, settled_until, purged_before, updated_at)
        VALUES (?, ?, NULL, ?)
        ON CONFLICT (level) DO UPDATE SET
            settled_until = EXCLUDED.settled_until,
            updated_at = EXCLUDED.updated_at
        WHERE settled_until IS NULL OR settled_until < EXCLUDED.settled_until
        """,
        [level, to_db(settled_until), to_db(utcnow())],
    )


def advance_purged(cur: duckdb.DuckDBPyConnection, level: str, purged_before: datetime) -> None:
    """Record the boundary below which a level's rows were deleted."""
    cur.execute(
        """
        INSERT INTO level_watermarks (level, settled_until, purged_before, updated_at)
        VALUES (?, NULL, ?, ?)
        ON CONFLICT (level) DO UPDATE SET
            purged_before = EXCLUDED.purged_before,
            updated_at = EXCLUDED.updated_at
        WHERE purged_before IS NULL OR purged_before < EXCLUDED.purged_before
        """,
        [level, to_db(purged_before), to_db(utcnow())],
    )


def list_buckets(
    cur: duckdb.DuckDBPyConnection,
    level: str,
    start: datetime,
    end: datetime,
    entity_key: str | None = None,
) -> list[RollupBucket]:
    query = """
        SELECT window_start, entity_key, total, samples, peak, sum_squares
        FROM rollup_buckets
        WHERE level = ? AND window_start >= ? AND window_start < ?
    """
    params: list[Any] = [level, to_db(start), to_db(end)]
    if entity_key is not None:
        query += " AND entity_key = ?"
        params.append(entity_key)
    query += " ORDER BY entity_key, window_start"

    return [
        RollupBucket(
            level=level,
            window_start=from_db(r[0]),
            entity_key=r[1],
            count=r[2],
            samples=r[3],
            peak=r[4],
            sum_squares=r[5],
        )
        for r in cur.execute(query, params).fetchall()
    ]


def _list_candidates(
    cur: duckdb.DuckDBPyConnection, window_time: datetime | None
) -> list[CandidateRecord]:
    query = "SELECT entity_key, window_time, hits, created_at FROM candidates"
    params: list[Any] = []
    if window_time is not None:
        query += " WHERE window_time = ?"
        params.append(to_db(window_time))
    query += " ORDER BY window_time, entity_key"
    return [
        CandidateRecord(
            entity_key=r[0],
            window_time=from_db(r[1]),
            hits=r[2],
            created_at=from_db(r[3]),
        )
        for r in cur.execute(query, params).fetchall()
    ]


def _entry_from_row(row: tuple[Any, ...]) -> LeaderboardEntry:
    return LeaderboardEntry(
        entity_key=row[0],
        first_seen=from_db(row[1]),
        last_seen=from_db(row[2]),
        cumulative_hits=row[3],
        last_election_hits=row[4],
        times_elected=row[5],
        avg_hourly_hits=row[6],
        stddev_hourly_hits=row[7],
        p95_hourly_hits=row[8],
        volatility=row[9],
        updated_at=from_db(row[10]),
    )


def _get_entry(cur: duckdb.DuckDBPyConnection, entity_key: str) -> LeaderboardEntry | None:
    row = cur.execute(
        f"SELECT {LEADERBOARD_COLUMNS} FROM leaderboard WHERE entity_key = ?",
        [entity_key],
    ).fetchone()
    return _entry_from_row(row) if row else None


def _list_entries(cur: duckdb.DuckDBPyConnection) -> list[LeaderboardEntry]:
    rows = cur.execute(
        f"SELECT {LEADERBOARD_COLUMNS} FROM leaderboard ORDER BY entity_key"
    ).fetchall()
    return [_entry_from_row(r) for r in rows]


def _count_rows(cur: duckdb.DuckDBPyConnection, table: str) -> int:
    row = cur.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return row[0] if row else 0


def _save_job_status(cur: duckdb.DuckDBPyConnection, name: str, document: dict[str, Any]) -> None:
    cur.execute(
        """
        INSERT INTO job_status (name, document, updated_at) VALUES (?, ?, ?)
        ON CONFLICT (name) DO UPDATE SET
            document = EXCLUDED.document,
            updated_at = EXCLUDED.updated_at
        """,
        [name, json.dumps(document, default=str), to_db(utcnow())],
    )


def _job_statuses(cur: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    rows = cur.execute("SELECT document FROM job_status ORDER BY name").fetchall()
    return [json.loads(r[0]) for r in rows]


def _reset(cur: duckdb.DuckDBPyConnection) -> None:
    for table in DATA_TABLES:
        cur.execute(f"DELETE FROM {table}")

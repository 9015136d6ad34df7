"""Ingestion boundary: the only writer of raw events."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError

from webtop.models import IngestResult
from webtop.models.schemas import normalize_entity_key
from webtop.monitoring import metrics
from webtop.rollup.levels import DEFAULT_LEVELS, RAW_LEVEL
from webtop.storage.store import append_rows, get_watermark
from webtop.timeutil import ensure_utc, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)


class IngestionBoundary:
    """Validates and appends ``(timestamp, entity_key)`` pairs.

    Events are append-only. Keys are normalized before storage. Events with
    an invalid key or a timestamp too far in the future are rejected, and so
    are events older than the ingest horizon: the later of the base level's
    settled watermark and the raw purge boundary, since no rollup would
    ever count them. There is no ordering requirement across entities, and
    events of one batch are appended in the order given.
    """

    # Maximum rejection messages kept per batch result
    MAX_REPORTED_ERRORS = 20

    def __init__(
        self,
        store: EventStore,
        max_clock_skew: timedelta = timedelta(minutes=5),
        base_level: str = DEFAULT_LEVELS[0].name,
    ) -> None:
        """Initialize ingestion boundary.

        Args:
            store: Event store receiving raw events
            max_clock_skew: Events stamped later than now + skew are rejected
            base_level: Finest rollup level, whose watermark bounds late events
        """
        self.store = store
        self.max_clock_skew = max_clock_skew
        self.base_level = base_level

    async def ingest(self, timestamp: datetime, entity_key: str) -> bool:
        """Append a single event.

        Returns:
            True if the event was accepted, False if it was rejected
        """
        result = await self.ingest_batch([(timestamp, entity_key)])
        return result.accepted == 1

    async def ingest_batch(
        self, events: Iterable[tuple[datetime, str]], now: datetime | None = None
    ) -> IngestResult:
        """Validate and append a batch of events in one transaction.

        Args:
            events: ``(timestamp, entity_key)`` pairs
            now: Reference time for the clock-skew check

        Returns:
            Counts of accepted and rejected events
        """
        now = ensure_utc(now) if now else utcnow()
        latest_allowed = now + self.max_clock_skew

        result = IngestResult()
        rows: list[tuple[datetime, str]] = []
        for timestamp, entity_key in events:
            try:
                row = self._validate(timestamp, entity_key, latest_allowed)
            except (ValueError, TypeError, ValidationError) as e:
                result.rejected += 1
                if len(result.errors) < self.MAX_REPORTED_ERRORS:
                    result.errors.append(str(e))
                continue
            rows.append(row)

        if rows:
            result.accepted, late, horizon = await self.store.run(
                _append_within_horizon, rows, self.base_level
            )
            if late:
                result.rejected += len(late)
                for timestamp, _key in late[: self.MAX_REPORTED_ERRORS - len(result.errors)]:
                    result.errors.append(
                        f"timestamp {timestamp.isoformat()} is older than the ingest "
                        f"horizon {horizon}"
                    )

        metrics.record_ingestion(result.accepted, result.rejected)
        if result.rejected:
            logger.warning(
                f"Ingested {result.accepted} event(s), rejected {result.rejected}: "
                f"{result.errors[0]}"
            )
        else:
            logger.debug(f"Ingested {result.accepted} event(s)")
        return result

    @staticmethod
    def _validate(
        timestamp: datetime, entity_key: str, latest_allowed: datetime
    ) -> tuple[datetime, str]:
        if not isinstance(timestamp, datetime):
            raise TypeError(f"timestamp must be a datetime, got {type(timestamp).__name__}")
        timestamp = ensure_utc(timestamp)
        if timestamp > latest_allowed:
            raise ValueError(f"timestamp {timestamp.isoformat()} is in the future")
        return timestamp, normalize_entity_key(entity_key)


def parse_event_line(line: str) -> tuple[datetime, str] | None:
    """Parse one ``<iso-timestamp> <entity>`` line.

    Blank lines and ``#`` comments yield None. A line holding only an entity
    is stamped with the current time, which is what capture adapters that
    stream bare domain names produce.

    Raises:
        ValueError: If the timestamp cannot be parsed
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    parts = line.split()
    if len(parts) == 1:
        return utcnow(), parts[0]

    timestamp = datetime.fromisoformat(parts[0].replace("Z", "+00:00"))
    return ensure_utc(timestamp), parts[1]


def ingest_horizon(cur: duckdb.DuckDBPyConnection, base_level: str) -> datetime | None:
    """Earliest event time that can still be rolled up, or None if unbounded."""
    bounds = [
        get_watermark(cur, RAW_LEVEL).purged_before,
        get_watermark(cur, base_level).settled_until,
    ]
    present = [b for b in bounds if b is not None]
    return max(present) if present else None


def _append_within_horizon(
    cur: duckdb.DuckDBPyConnection, rows: list[tuple[datetime, str]], base_level: str
) -> tuple[int, list[tuple[datetime, str]], datetime | None]:
    horizon = ingest_horizon(cur, base_level)
    late: list[tuple[datetime, str]] = []
    if horizon is not None:
        late = [row for row in rows if row[0] < horizon]
        rows = [row for row in rows if row[0] >= horizon]
    appended = append_rows(cur, rows) if rows else 0
    return appended, late, horizon

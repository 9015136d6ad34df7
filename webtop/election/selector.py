"""Candidate selection: recent rollup activity to a replayable hot list."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from webtop.errors import RefreshLagExceeded
from webtop.monitoring import metrics
from webtop.storage.store import get_watermark
from webtop.timeutil import ensure_utc, to_db, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.models import PipelineSettings
    from webtop.rollup.cascade import RollupCascade
    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    """Outcome of one selection run."""

    window_time: datetime
    window_start: datetime
    candidates_written: int
    candidates_removed: int = 0


_QUALIFYING_SQL = """
    SELECT entity_key, SUM(total) AS hits
    FROM rollup_buckets
    WHERE level = ? AND window_start >= ? AND window_start < ?
    GROUP BY entity_key
    HAVING SUM(total) >= ?
"""


class CandidateSelector:
    """Writes one candidate row per entity whose recent hits cross the threshold.

    The election window trails the most granular level's watermark, so a
    selection only reads settled buckets and re-running it on unchanged data
    targets the same ``window_time``.
    """

    def __init__(self, store: EventStore, cascade: RollupCascade) -> None:
        self.store = store
        self.cascade = cascade

    async def select(
        self, settings: PipelineSettings, now: datetime | None = None
    ) -> SelectionResult:
        """Select candidates over the trailing election window.

        Args:
            settings: Settings snapshot for this run
            now: Reference time (only used for ``created_at``)

        Returns:
            Selection result with the number of candidates written

        Raises:
            RefreshLagExceeded: If the base level has never settled a window
        """
        now = ensure_utc(now) if now else utcnow()
        level = self.cascade.base_level
        if settings.election_window < level.width:
            logger.warning(
                f"election_window {settings.election_window} is shorter than one "
                f"{level.name} window; no bucket fits inside it"
            )

        result = await self.store.run(self._select, settings, now)

        metrics.record_candidates(result.candidates_written)
        logger.info(
            f"Selected {result.candidates_written} candidate(s) for window "
            f"[{result.window_start.isoformat()}, {result.window_time.isoformat()}) "
            f"with min_hits_threshold={settings.min_hits_threshold}"
        )
        return result

    def _select(
        self, cur: duckdb.DuckDBPyConnection, settings: PipelineSettings, now: datetime
    ) -> SelectionResult:
        level = self.cascade.base_level
        watermark = get_watermark(cur, level.name)
        if watermark.settled_until is None:
            raise RefreshLagExceeded("candidates", level.name)

        window_time = watermark.settled_until
        window_start = window_time - settings.election_window
        params = [
            level.name,
            to_db(window_start),
            to_db(window_time),
            settings.min_hits_threshold,
        ]

        # Entities that qualified on an earlier run for this window but no
        # longer do (threshold raised) lose their row.
        removed = cur.execute(
            f"""
            DELETE FROM candidates
            WHERE window_time = ?
              AND entity_key NOT IN (SELECT entity_key FROM ({_QUALIFYING_SQL}))
            """,
            [to_db(window_time), *params],
        ).fetchone()

        written = cur.execute(
            f"""
            INSERT INTO candidates (entity_key, window_time, hits, created_at)
            SELECT q.entity_key, ?, q.hits, ?
            FROM ({_QUALIFYING_SQL}) AS q
            ON CONFLICT (entity_key, window_time) DO UPDATE SET hits = EXCLUDED.hits
            """,
            [to_db(window_time), to_db(now), *params],
        ).fetchone()

        return SelectionResult(
            window_time=window_time,
            window_start=window_start,
            candidates_written=int(written[0]) if written else 0,
            candidates_removed=int(removed[0]) if removed else 0,
        )


__all__ = ["CandidateSelector", "SelectionResult"]

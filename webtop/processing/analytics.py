"""Traffic analytics over rollup buckets.

This module provides the dashboard views over settled rollup data:
- Traffic monitor: per-entity pattern, traffic level and leaderboard status
- Anomaly detection: buckets whose count deviates from the entity's mean
- Trend analysis: linear regression over an entity's bucket series
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from webtop.storage.store import list_buckets
from webtop.timeutil import ensure_utc, utcnow

if TYPE_CHECKING:
    import duckdb

    from webtop.rollup.cascade import RollupCascade
    from webtop.storage.store import EventStore

logger = logging.getLogger(__name__)

# Average per-window counts above these mark HIGH and MEDIUM traffic
HIGH_TRAFFIC = 1000
MEDIUM_TRAFFIC = 100


@dataclass
class TrafficPattern:
    """One row of the traffic monitor."""

    entity_key: str
    pattern: str  # "BURSTY", "DECLINING", "STEADY"
    traffic_level: str  # "HIGH", "MEDIUM", "LOW"
    status: str  # "TOP", "CANDIDATE", "RANDOM"
    avg_hits: float
    max_hits: int
    min_hits: int
    stddev_hits: float
    windows: int


@dataclass
class TrendAnalysis:
    """Results of trend analysis."""

    entity_key: str
    level: str
    trend_direction: str  # "increasing", "decreasing", "stable"
    slope: float  # hits per window
    trend_strength: float  # R², 0 to 1
    percent_change: float
    confidence: float  # 0 to 1
    time_range: tuple[datetime, datetime]


@dataclass
class AnomalyDetection:
    """Results of anomaly detection."""

    level: str
    anomalies: list[dict[str, Any]]
    threshold: float
    total_points: int
    anomaly_count: int
    anomaly_rate: float
    entities: int = 0
    time_range: tuple[datetime, datetime] | None = None


@dataclass
class _Series:
    starts: list[datetime] = field(default_factory=list)
    totals: list[int] = field(default_factory=list)

    def values(self) -> npt.NDArray[np.float64]:
        return np.array(self.totals, dtype=np.float64)


def classify_pattern(avg: float, max_hits: float, stddev: float) -> str:
    """Classify a traffic series as BURSTY, DECLINING or STEADY."""
    if stddev > avg * 0.5 or max_hits > avg * 2:
        return "BURSTY"
    if max_hits < avg * 0.5:
        return "DECLINING"
    return "STEADY"


def classify_level(avg: float) -> str:
    if avg > HIGH_TRAFFIC:
        return "HIGH"
    if avg > MEDIUM_TRAFFIC:
        return "MEDIUM"
    return "LOW"


class TrafficAnalytics:
    """Read-only analytics over settled rollup buckets."""

    def __init__(self, store: EventStore, cascade: RollupCascade) -> None:
        self.store = store
        self.cascade = cascade
        logger.debug("Traffic analytics initialized")

    async def traffic_monitor(
        self,
        window: timedelta = timedelta(minutes=10),
        level: str | None = None,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[TrafficPattern]:
        """Per-entity traffic pattern over the most recent windows.

        Args:
            window: How far back to look
            level: Rollup level to read (defaults to the base level)
            now: Reference time
            limit: Maximum rows returned

        Returns:
            Rows ordered by average hits, busiest first
        """
        level = level or self.cascade.base_level.name
        self.cascade.level(level)
        now = ensure_utc(now) if now else utcnow()

        series, top, candidates = await self.store.run(
            _load_monitor_data, level, now - window, now
        )

        rows: list[TrafficPattern] = []
        for entity_key, s in series.items():
            values = s.values()
            avg = float(np.mean(values))
            stddev = float(np.std(values, ddof=1)) if len(values) > 1 else 0.0
            max_hits = int(values.max())
            if entity_key in top:
                status = "TOP"
            elif entity_key in candidates:
                status = "CANDIDATE"
            else:
                status = "RANDOM"
            rows.append(
                TrafficPattern(
                    entity_key=entity_key,
                    pattern=classify_pattern(avg, max_hits, stddev),
                    traffic_level=classify_level(avg),
                    status=status,
                    avg_hits=avg,
                    max_hits=max_hits,
                    min_hits=int(values.min()),
                    stddev_hits=stddev,
                    windows=len(values),
                )
            )

        rows.sort(key=lambda r: (-r.avg_hits, r.entity_key))
        return rows[:limit] if limit is not None else rows

    async def detect_anomalies(
        self,
        level: str | None = None,
        entity_key: str | None = None,
        time_window: timedelta = timedelta(hours=1),
        threshold_std: float = 2.0,
        now: datetime | None = None,
    ) -> AnomalyDetection | None:
        """Detect buckets that deviate from their entity's mean.

        Each entity is compared against its own series; a bucket is anomalous
        when its z-score exceeds ``threshold_std``.

        Returns:
            Anomaly detection results or None if no entity has enough data
        """
        level = level or self.cascade.base_level.name
        self.cascade.level(level)
        now = ensure_utc(now) if now else utcnow()
        start = now - time_window

        series = await self.store.run(_load_series, level, start, now, entity_key)

        anomalies: list[dict[str, Any]] = []
        total_points = 0
        entities = 0
        for key, s in series.items():
            if len(s.totals) < 3:
                continue
            entities += 1
            values = s.values()
            total_points += len(values)
            mean = np.mean(values)
            std = np.std(values)
            if std == 0:
                continue
            z_scores = (values - mean) / std
            for window_start, value, z in zip(s.starts, s.totals, z_scores, strict=True):
                if abs(z) > threshold_std:
                    anomalies.append(
                        {
                            "entity_key": key,
                            "window_start": window_start.isoformat(),
                            "actual_hits": value,
                            "expected_hits": float(mean),
                            "deviation": float(value - mean),
                            "z_score": float(z),
                        }
                    )

        if not total_points:
            logger.warning(f"Insufficient data for anomaly detection at level {level}")
            return None

        anomalies.sort(key=lambda a: -abs(a["z_score"]))
        anomaly_rate = len(anomalies) / total_points
        logger.info(
            f"Anomaly detection at level {level}: {len(anomalies)} anomalies "
            f"across {entities} entities ({anomaly_rate:.1%})"
        )
        return AnomalyDetection(
            level=level,
            anomalies=anomalies,
            threshold=threshold_std,
            total_points=total_points,
            anomaly_count=len(anomalies),
            anomaly_rate=anomaly_rate,
            entities=entities,
            time_range=(start, now),
        )

    async def analyze_trend(
        self,
        entity_key: str,
        level: str | None = None,
        time_window: timedelta = timedelta(days=7),
        now: datetime | None = None,
    ) -> TrendAnalysis | None:
        """Fit a line through an entity's bucket series.

        Returns:
            Trend analysis results or None if fewer than two buckets exist
        """
        level = level or self.cascade.base_level.name
        self.cascade.level(level)
        now = ensure_utc(now) if now else utcnow()

        series = await self.store.run(_load_series, level, now - time_window, now, entity_key)
        s = series.get(entity_key)
        if s is None or len(s.totals) < 2:
            logger.warning(f"Insufficient data for trend analysis: {entity_key} at {level}")
            return None

        values = s.values()
        # x in window units since the first bucket, so gaps count as elapsed time
        width = self.cascade.level(level).width.total_seconds()
        x = np.array([(t - s.starts[0]).total_seconds() / width for t in s.starts])
        coeffs = np.polyfit(x, values, 1)
        slope = float(coeffs[0])

        y_hat = np.poly1d(coeffs)(x)
        ss_tot = np.sum((values - np.mean(values)) ** 2)
        ss_res = np.sum((values - y_hat) ** 2)
        r_squared = float(1 - ss_res / ss_tot) if ss_tot > 0 else 0.0

        # Slopes within 1% of the mean per window count as flat
        tolerance = 0.01 * float(np.mean(values))
        if slope > tolerance:
            direction = "increasing"
        elif slope < -tolerance:
            direction = "decreasing"
        else:
            direction = "stable"

        percent_change = (
            float((values[-1] - values[0]) / values[0] * 100) if values[0] != 0 else 0.0
        )
        confidence = min(1.0, len(values) / 100)

        logger.info(
            f"Trend for {entity_key} at {level}: {direction} "
            f"(strength={r_squared:.2f}, change={percent_change:.1f}%)"
        )
        return TrendAnalysis(
            entity_key=entity_key,
            level=level,
            trend_direction=direction,
            slope=slope,
            trend_strength=r_squared,
            percent_change=percent_change,
            confidence=confidence,
            time_range=(s.starts[0], s.starts[-1]),
        )


def _load_series(
    cur: duckdb.DuckDBPyConnection,
    level: str,
    start: datetime,
    end: datetime,
    entity_key: str | None = None,
) -> dict[str, _Series]:
    series: dict[str, _Series] = defaultdict(_Series)
    for bucket in list_buckets(cur, level, start, end, entity_key):
        s = series[bucket.entity_key]
        s.starts.append(bucket.window_start)
        s.totals.append(bucket.count)
    return dict(series)


def _load_monitor_data(
    cur: duckdb.DuckDBPyConnection, level: str, start: datetime, end: datetime
) -> tuple[dict[str, _Series], set[str], set[str]]:
    series = _load_series(cur, level, start, end)
    top = {r[0] for r in cur.execute("SELECT entity_key FROM leaderboard").fetchall()}
    candidates = {
        r[0]
        for r in cur.execute(
            """
            SELECT entity_key FROM candidates
            WHERE window_time = (SELECT MAX(window_time) FROM candidates)
            """
        ).fetchall()
    }
    return series, top, candidates

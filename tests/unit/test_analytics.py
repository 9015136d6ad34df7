"""Tests for traffic analytics."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from webtop.processing import TrafficAnalytics, classify_level, classify_pattern
from webtop.rollup import RollupCascade
from webtop.storage import EventStore
from webtop.timeutil import to_db

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


async def add_series(store: EventStore, entity_key: str, totals: list[int], level: str = "1m") -> None:
    """Write consecutive 1m buckets ending right before NOW."""
    start = NOW - timedelta(minutes=len(totals))

    def insert(cur) -> None:
        for i, total in enumerate(totals):
            cur.execute(
                "INSERT INTO rollup_buckets VALUES (?, ?, ?, ?, 1, ?, ?)",
                [level, to_db(start + timedelta(minutes=i)), entity_key, total, total, total * total],
            )

    await store.run(insert)


@pytest.fixture
def analytics(store: EventStore, cascade: RollupCascade) -> TrafficAnalytics:
    return TrafficAnalytics(store, cascade)


class TestClassification:
    """Test suite for the pattern and level classifiers."""

    @pytest.mark.parametrize(
        ("avg", "max_hits", "stddev", "expected"),
        [
            (100, 150, 10, "STEADY"),
            (100, 300, 10, "BURSTY"),
            (100, 120, 60, "BURSTY"),
            (100, 40, 0, "DECLINING"),
        ],
    )
    def test_classify_pattern(self, avg, max_hits, stddev, expected) -> None:
        assert classify_pattern(avg, max_hits, stddev) == expected

    @pytest.mark.parametrize(
        ("avg", "expected"),
        [(1001, "HIGH"), (1000, "MEDIUM"), (101, "MEDIUM"), (100, "LOW"), (0, "LOW")],
    )
    def test_classify_level(self, avg, expected) -> None:
        assert classify_level(avg) == expected


class TestTrafficMonitor:
    """Test suite for the traffic monitor."""

    @pytest.mark.asyncio
    async def test_statuses_and_order(
        self, analytics: TrafficAnalytics, store: EventStore
    ) -> None:
        await add_series(store, "top.com", [200] * 10)
        await add_series(store, "hot.com", [50] * 10)
        await add_series(store, "random.com", [1, 1, 1, 1, 20])

        def mark(cur) -> None:
            cur.execute(
                """
                INSERT INTO leaderboard (
                    entity_key, first_seen, last_seen, cumulative_hits,
                    last_election_hits, times_elected, updated_at
                ) VALUES ('top.com', ?, ?, 2000, 2000, 1, ?)
                """,
                [to_db(NOW), to_db(NOW), to_db(NOW)],
            )
            cur.execute(
                "INSERT INTO candidates VALUES ('hot.com', ?, 500, ?)",
                [to_db(NOW), to_db(NOW)],
            )

        await store.run(mark)

        rows = await analytics.traffic_monitor(now=NOW)

        assert [(r.entity_key, r.status) for r in rows] == [
            ("top.com", "TOP"),
            ("hot.com", "CANDIDATE"),
            ("random.com", "RANDOM"),
        ]
        top = rows[0]
        assert (top.pattern, top.traffic_level, top.windows) == ("STEADY", "MEDIUM", 10)
        assert rows[2].pattern == "BURSTY"
        assert rows[2].max_hits == 20
        assert rows[2].min_hits == 1

    @pytest.mark.asyncio
    async def test_window_and_limit(self, analytics: TrafficAnalytics, store: EventStore) -> None:
        await add_series(store, "a.com", [5] * 30)
        await add_series(store, "b.com", [1] * 30)

        rows = await analytics.traffic_monitor(window=timedelta(minutes=5), now=NOW, limit=1)

        assert len(rows) == 1
        assert rows[0].entity_key == "a.com"
        assert rows[0].windows == 5

    @pytest.mark.asyncio
    async def test_unknown_level(self, analytics: TrafficAnalytics) -> None:
        with pytest.raises(KeyError):
            await analytics.traffic_monitor(level="5m", now=NOW)


class TestAnomalies:
    """Test suite for anomaly detection."""

    @pytest.mark.asyncio
    async def test_spike_detected(self, analytics: TrafficAnalytics, store: EventStore) -> None:
        await add_series(store, "a.com", [10] * 9 + [100])
        await add_series(store, "short.com", [1, 500])

        result = await analytics.detect_anomalies(now=NOW)

        assert result is not None
        assert result.entities == 1
        assert result.total_points == 10
        assert result.anomaly_count == 1
        [anomaly] = result.anomalies
        assert anomaly["entity_key"] == "a.com"
        assert anomaly["actual_hits"] == 100
        assert anomaly["z_score"] == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_flat_series_has_no_anomalies(
        self, analytics: TrafficAnalytics, store: EventStore
    ) -> None:
        await add_series(store, "a.com", [10] * 10)

        result = await analytics.detect_anomalies(now=NOW)

        assert result is not None
        assert result.anomaly_count == 0

    @pytest.mark.asyncio
    async def test_no_data(self, analytics: TrafficAnalytics) -> None:
        assert await analytics.detect_anomalies(now=NOW) is None


class TestTrend:
    """Test suite for trend analysis."""

    @pytest.mark.asyncio
    async def test_increasing(self, analytics: TrafficAnalytics, store: EventStore) -> None:
        await add_series(store, "a.com", [10, 20, 30, 40, 50])

        trend = await analytics.analyze_trend("a.com", now=NOW)

        assert trend is not None
        assert trend.trend_direction == "increasing"
        assert trend.slope == pytest.approx(10.0)
        assert trend.trend_strength == pytest.approx(1.0)
        assert trend.percent_change == pytest.approx(400.0)

    @pytest.mark.asyncio
    async def test_stable(self, analytics: TrafficAnalytics, store: EventStore) -> None:
        await add_series(store, "a.com", [100, 100, 100, 100])

        trend = await analytics.analyze_trend("a.com", now=NOW)

        assert trend is not None
        assert trend.trend_direction == "stable"

    @pytest.mark.asyncio
    async def test_decreasing_on_hourly_level(
        self, analytics: TrafficAnalytics, store: EventStore
    ) -> None:
        def insert(cur) -> None:
            for hours_ago, total in ((3, 300), (2, 200), (1, 100)):
                cur.execute(
                    "INSERT INTO rollup_buckets VALUES ('1h', ?, 'a.com', ?, 60, 0, 0)",
                    [to_db(NOW - timedelta(hours=hours_ago)), total],
                )

        await store.run(insert)

        trend = await analytics.analyze_trend("a.com", level="1h", now=NOW)

        assert trend is not None
        assert trend.trend_direction == "decreasing"
        assert trend.slope == pytest.approx(-100.0)

    @pytest.mark.asyncio
    async def test_insufficient_data(self, analytics: TrafficAnalytics, store: EventStore) -> None:
        await add_series(store, "a.com", [10])

        assert await analytics.analyze_trend("a.com", now=NOW) is None

"""Unit tests for Prometheus metrics collection."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry
from prometheus_client.metrics import MetricWrapperBase

from webtop.election import ElectionMerger
from webtop.ingestion import IngestionBoundary
from webtop.monitoring import get_metrics_registry, metrics
from webtop.models import PipelineSettings
from webtop.rollup import RollupCascade
from webtop.storage import EventStore


def sample(name: str, **labels: str) -> float:
    value = get_metrics_registry().get_sample_value(name, labels)
    return value or 0.0


class TestRegistry:
    """Test suite for the metrics registry."""

    def test_singleton(self) -> None:
        assert get_metrics_registry() is get_metrics_registry()

    def test_metrics_not_in_default_registry(self) -> None:
        from prometheus_client import REGISTRY

        assert REGISTRY.get_sample_value("webtop_leaderboard_size") is None

    def test_metric_names_do_not_collide(self) -> None:
        """Test that every metric registers cleanly alongside the others."""
        collectors = [v for v in vars(metrics).values() if isinstance(v, MetricWrapperBase)]
        fresh = CollectorRegistry()

        for collector in collectors:
            fresh.register(collector)

        assert len(collectors) == 12
        assert fresh.get_sample_value("webtop_leaderboard_size") is not None


class TestRecorders:
    """Test suite for the convenience recorders."""

    def test_record_ingestion(self) -> None:
        before = sample("webtop_events_ingested_total", status="rejected")

        metrics.record_ingestion(accepted=0, rejected=3)

        assert sample("webtop_events_ingested_total", status="rejected") == before + 3

    def test_record_candidates(self) -> None:
        before = sample("webtop_candidates_written_total")

        metrics.record_candidates(4)

        assert sample("webtop_candidates_last_run") == 4.0
        assert sample("webtop_candidates_written_total") == before + 4

    def test_record_job_run_failure(self) -> None:
        before_runs = sample("webtop_job_runs_total", job="metrics_test", status="failure")
        before_errors = sample("webtop_job_errors_total", job="metrics_test", kind="MergeConflict")

        metrics.record_job_run("metrics_test", "failure", 0.2, error_kind="MergeConflict")

        assert (
            sample("webtop_job_runs_total", job="metrics_test", status="failure")
            == before_runs + 1
        )
        assert (
            sample("webtop_job_errors_total", job="metrics_test", kind="MergeConflict")
            == before_errors + 1
        )

    def test_zero_evictions_not_recorded(self) -> None:
        before = sample("webtop_leaderboard_evictions_total", reason="admin")

        metrics.record_evictions("admin", 0)

        assert sample("webtop_leaderboard_evictions_total", reason="admin") == before


class TestInstrumentation:
    """Test suite for metrics emitted by pipeline components."""

    @pytest.mark.asyncio
    async def test_ingestion_counts(self, store: EventStore) -> None:
        boundary = IngestionBoundary(store)
        before = sample("webtop_events_ingested_total", status="accepted")

        await boundary.ingest_batch([(datetime.now(UTC), "a.com"), (datetime.now(UTC), "")])

        assert sample("webtop_events_ingested_total", status="accepted") == before + 1

    @pytest.mark.asyncio
    async def test_refresh_updates_buckets_and_lag(
        self, cascade: RollupCascade, store: EventStore, now: datetime
    ) -> None:
        await store.append_events([(now - timedelta(minutes=5), "a.com")])
        before = sample("webtop_rollup_buckets_written_total", level="1m")

        await cascade.refresh("1m", now)

        assert sample("webtop_rollup_buckets_written_total", level="1m") == before + 1
        assert sample("webtop_rollup_watermark_lag_seconds", level="1m") == 90.0

    @pytest.mark.asyncio
    async def test_election_sets_leaderboard_size(
        self, cascade: RollupCascade, store: EventStore, now: datetime
    ) -> None:
        merger = ElectionMerger(store, cascade)

        await merger.elect(PipelineSettings(), now)

        assert sample("webtop_leaderboard_size") == 0.0

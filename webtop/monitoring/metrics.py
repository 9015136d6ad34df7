"""Prometheus metrics collection for webtop.

Provides instrumentation for ingestion, the rollup cascade, retention,
candidate selection, elections and the job scheduler. All metrics live in a
dedicated registry so tests and embedding applications do not collide with
the default global one.
"""

from __future__ import annotations

import logging
from threading import Lock

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

_registry: CollectorRegistry | None = None
_registry_lock = Lock()


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the singleton Prometheus metrics registry."""
    global _registry

    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = CollectorRegistry()
                logger.debug("Created Prometheus metrics registry")

    return _registry


# =============================================================================
# Ingestion Metrics
# =============================================================================

events_ingested_total = Counter(
    "webtop_events_ingested_total",
    "Raw events offered to the ingestion boundary",
    ["status"],  # accepted, rejected
    registry=get_metrics_registry(),
)

# =============================================================================
# Rollup Metrics
# =============================================================================

rollup_buckets_written_total = Counter(
    "webtop_rollup_buckets_written_total",
    "Rollup buckets upserted by refresh runs",
    ["level"],
    registry=get_metrics_registry(),
)

rollup_watermark_lag_seconds = Gauge(
    "webtop_rollup_watermark_lag_seconds",
    "Seconds between now and the settled watermark of a level",
    ["level"],
    registry=get_metrics_registry(),
)

# =============================================================================
# Retention Metrics
# =============================================================================

rows_purged_total = Counter(
    "webtop_rows_purged_total",
    "Rows deleted by the retention manager",
    ["level"],  # "raw" or a rollup level name
    registry=get_metrics_registry(),
)

# =============================================================================
# Election Metrics
# =============================================================================

candidates_last_run = Gauge(
    "webtop_candidates_last_run",
    "Candidates written by the most recent selection run",
    registry=get_metrics_registry(),
)

candidates_written_total = Counter(
    "webtop_candidates_written_total",
    "Candidates written across all selection runs",
    registry=get_metrics_registry(),
)

leaderboard_size = Gauge(
    "webtop_leaderboard_size",
    "Leaderboard entries after the most recent election",
    registry=get_metrics_registry(),
)

leaderboard_evictions_total = Counter(
    "webtop_leaderboard_evictions_total",
    "Leaderboard entries evicted",
    ["reason"],  # capacity, age, admin
    registry=get_metrics_registry(),
)

# =============================================================================
# Scheduler Metrics
# =============================================================================

job_runs_total = Counter(
    "webtop_job_runs_total",
    "Job invocations by outcome",
    ["job", "status"],  # success, failure
    registry=get_metrics_registry(),
)

job_errors_total = Counter(
    "webtop_job_errors_total",
    "Job failures by error kind",
    ["job", "kind"],
    registry=get_metrics_registry(),
)

job_skipped_ticks_total = Counter(
    "webtop_job_skipped_ticks_total",
    "Ticks skipped because the previous run was still in flight",
    ["job"],
    registry=get_metrics_registry(),
)

job_duration_seconds = Histogram(
    "webtop_job_duration_seconds",
    "Job run duration in seconds",
    ["job"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
    registry=get_metrics_registry(),
)


# =============================================================================
# Convenience functions
# =============================================================================


def record_ingestion(accepted: int, rejected: int) -> None:
    """Record the outcome of an ingestion call."""
    if accepted:
        events_ingested_total.labels(status="accepted").inc(accepted)
    if rejected:
        events_ingested_total.labels(status="rejected").inc(rejected)


def record_candidates(count: int) -> None:
    """Record the number of candidates written by one selection run."""
    candidates_last_run.set(count)
    candidates_written_total.inc(count)


def record_evictions(reason: str, count: int) -> None:
    if count:
        leaderboard_evictions_total.labels(reason=reason).inc(count)


def record_job_run(job: str, status: str, duration: float, error_kind: str | None = None) -> None:
    """Record one finished job run."""
    job_runs_total.labels(job=job, status=status).inc()
    job_duration_seconds.labels(job=job).observe(duration)
    if error_kind:
        job_errors_total.labels(job=job, kind=error_kind).inc()


def start_metrics_server(port: int) -> None:
    """Expose the webtop registry over HTTP for Prometheus scraping."""
    from prometheus_client import start_http_server

    start_http_server(port, registry=get_metrics_registry())
    logger.info(f"Prometheus metrics exposed on port {port}")

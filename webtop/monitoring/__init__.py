"""Prometheus instrumentation."""

from webtop.monitoring.metrics import get_metrics_registry, start_metrics_server

__all__ = ["get_metrics_registry", "start_metrics_server"]

"""Ingestion boundary for raw domain-access events."""

from webtop.ingestion.boundary import IngestionBoundary, parse_event_line

__all__ = ["IngestionBoundary", "parse_event_line"]

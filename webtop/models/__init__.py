"""webtop data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel

from webtop.models.schemas import PipelineSettings, RawEvent, normalize_entity_key


@dataclass
class RollupBucket:
    """Per-entity count for one window of one rollup level."""

    level: str
    window_start: datetime
    entity_key: str
    count: int
    samples: int = 1  # level-0 windows with activity
    peak: int = 0  # largest level-0 count in the window
    sum_squares: float = 0.0


@dataclass
class CandidateRecord:
    """Entity that crossed the hit threshold at ``window_time``."""

    entity_key: str
    window_time: datetime
    hits: int
    created_at: datetime | None = None


@dataclass
class LeaderboardEntry:
    """Long-lived leaderboard row."""

    entity_key: str
    first_seen: datetime
    last_seen: datetime
    cumulative_hits: int
    last_election_hits: int
    times_elected: int
    avg_hourly_hits: float = 0.0
    stddev_hourly_hits: float = 0.0
    p95_hourly_hits: float = 0.0
    volatility: float = 0.0
    updated_at: datetime | None = None


@dataclass
class LevelWatermark:
    """Settled and purged boundaries of one level (or of raw events)."""

    level: str
    settled_until: datetime | None = None
    purged_before: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class IngestResult:
    """Outcome of a batch append."""

    accepted: int = 0
    rejected: int = 0
    errors: list[str] = field(default_factory=list)


class ReportRow(BaseModel):
    """One row of the leaderboard report."""

    rank: int
    entity_key: str
    cumulative_hits: int
    last_election_hits: int
    times_elected: int
    avg_rate_per_hour: float
    avg_hourly_hits: float
    stddev_hourly_hits: float
    p95_hourly_hits: float
    volatility: float
    first_seen: datetime
    last_seen: datetime


__all__ = [
    "CandidateRecord",
    "IngestResult",
    "LeaderboardEntry",
    "LevelWatermark",
    "PipelineSettings",
    "RawEvent",
    "ReportRow",
    "RollupBucket",
    "normalize_entity_key",
]

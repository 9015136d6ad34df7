"""Pydantic validation schemas for webtop.

This module validates the data crossing the pipeline's outer surfaces: raw
events pushed into the ingestion boundary and the runtime settings record
that every job reads once per tick.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Entity keys
# ============================================================================

MAX_ENTITY_KEY_LENGTH = 253

_ENTITY_KEY_PATTERN = re.compile(r"^[^\s\x00-\x1f\x7f]+$")


def normalize_entity_key(entity_key: str) -> str:
    """Normalize and validate an entity key.

    Domain names are case-insensitive and may carry a trailing root dot, so
    ``"Example.COM."`` and ``"example.com"`` are the same entity.

    Args:
        entity_key: Raw entity key

    Returns:
        Normalized entity key

    Raises:
        ValueError: If the key is empty, too long or contains whitespace or
            control characters
    """
    if not isinstance(entity_key, str):
        raise ValueError(f"entity_key must be a string, got {type(entity_key).__name__}")

    key = entity_key.strip().lower().rstrip(".")
    if not key:
        raise ValueError("entity_key cannot be empty")

    if len(key) > MAX_ENTITY_KEY_LENGTH:
        raise ValueError(
            f"entity_key too long: {len(key)} characters (max: {MAX_ENTITY_KEY_LENGTH})"
        )

    if not _ENTITY_KEY_PATTERN.match(key):
        raise ValueError(f"entity_key contains whitespace or control characters: {key!r}")

    return key


# ============================================================================
# Raw events
# ============================================================================


class RawEvent(BaseModel):
    """A single domain-access event as accepted by the ingestion boundary."""

    model_config = ConfigDict(frozen=True)

    time: datetime
    entity_key: str

    @field_validator("entity_key")
    @classmethod
    def validate_entity_key(cls, v: str) -> str:
        return normalize_entity_key(v)


# ============================================================================
# Runtime pipeline settings
# ============================================================================


class PipelineSettings(BaseModel):
    """The single process-wide settings record.

    Persisted in the store and replaced at runtime. Jobs load it once per
    tick and keep the snapshot for the whole run, so the model is frozen.

    Attributes:
        min_hits_threshold: Minimum summed hits over the election window for
            an entity to become a candidate
        election_window: Trailing window the candidate selector aggregates
        candidate_retention: Candidate rows older than this are pruned
        leaderboard_retention: Entries whose last_seen is older are evicted
        max_leaderboard_size: Upper bound on leaderboard entries
        election_interval: Interval of the election job
        raw_retention: Raw events older than this are dropped
        level_retention: Per rollup level retention overrides, keyed by level
            name; levels not listed keep their configured horizon
        stats_window: Window of stats-level buckets used for the hourly
            traffic statistics recorded on leaderboard entries
    """

    model_config = ConfigDict(frozen=True)

    min_hits_threshold: int = Field(100, ge=1)
    election_window: timedelta = timedelta(hours=1)
    candidate_retention: timedelta = timedelta(days=7)
    leaderboard_retention: timedelta = timedelta(days=90)
    max_leaderboard_size: int = Field(1000, ge=1, le=10_000_000)
    election_interval: timedelta = timedelta(hours=1)
    raw_retention: timedelta = timedelta(hours=1)
    level_retention: dict[str, timedelta] = Field(default_factory=dict)
    stats_window: timedelta = timedelta(hours=24)

    @field_validator(
        "election_window",
        "candidate_retention",
        "leaderboard_retention",
        "election_interval",
        "raw_retention",
        "stats_window",
    )
    @classmethod
    def validate_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("durations must be positive")
        return v

    @field_validator("level_retention")
    @classmethod
    def validate_level_retention(cls, v: dict[str, timedelta]) -> dict[str, timedelta]:
        for level, horizon in v.items():
            if horizon <= timedelta(0):
                raise ValueError(f"retention for level '{level}' must be positive")
        return v

    @model_validator(mode="after")
    def validate_candidate_retention(self) -> "PipelineSettings":
        """Candidates must outlive at least one election cycle.

        Raises:
            ValueError: If candidates would be pruned before the next
                election could fold them
        """
        if self.candidate_retention < self.election_interval:
            raise ValueError(
                "candidate_retention must be at least election_interval, "
                "otherwise candidates are pruned before they are elected"
            )
        return self

    def retention_for(self, level: str, default: timedelta) -> timedelta:
        """Retention horizon for a rollup level."""
        return self.level_retention.get(level, default)


__all__ = [
    "MAX_ENTITY_KEY_LENGTH",
    "PipelineSettings",
    "RawEvent",
    "normalize_entity_key",
]

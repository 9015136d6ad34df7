"""Time helpers shared by the cascade, retention and election jobs.

The store keeps naive UTC timestamps; everything above the store works with
timezone-aware UTC datetimes. Windows are aligned to the Unix epoch.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
EPOCH_NAIVE = datetime(1970, 1, 1)


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db(value: datetime) -> datetime:
    """Convert to the naive UTC representation stored in DuckDB."""
    return ensure_utc(value).replace(tzinfo=None)


def from_db(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive timestamp read back from DuckDB."""
    if value is None:
        return None
    return ensure_utc(value)


def floor_time(value: datetime, width: timedelta) -> datetime:
    """Start of the epoch-aligned window of ``width`` containing ``value``."""
    value = ensure_utc(value)
    width_us = _micros(width)
    offset_us = _micros(value - EPOCH)
    return EPOCH + timedelta(microseconds=offset_us - offset_us % width_us)


def ceil_time(value: datetime, width: timedelta) -> datetime:
    """Smallest window boundary that is not before ``value``."""
    floored = floor_time(value, width)
    if floored == ensure_utc(value):
        return floored
    return floored + width


def _micros(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds

"""Pytest configuration and fixtures for webtop tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import pytest

from webtop.models import PipelineSettings
from webtop.rollup import DEFAULT_LEVELS, RollupCascade
from webtop.storage import EventStore

# Fixed reference time; 30 seconds into a minute so window edges are explicit
NOW = datetime(2025, 1, 15, 12, 0, 30, tzinfo=UTC)

EventFactory = Callable[..., list[tuple[datetime, str]]]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> PipelineSettings:
    """Default pipeline settings."""
    return PipelineSettings()


@pytest.fixture
async def store(settings: PipelineSettings) -> AsyncIterator[EventStore]:
    """In-memory event store seeded with the ``settings`` fixture."""
    event_store = EventStore(":memory:")
    await event_store.initialize(seed_settings=settings)
    yield event_store
    await event_store.close()


@pytest.fixture
async def empty_store() -> AsyncIterator[EventStore]:
    """In-memory event store without a settings record."""
    event_store = EventStore(":memory:")
    await event_store.initialize()
    yield event_store
    await event_store.close()


@pytest.fixture
def cascade(store: EventStore) -> RollupCascade:
    """Default 1m -> 1h -> 1d cascade."""
    return RollupCascade(store, DEFAULT_LEVELS)


@pytest.fixture
def make_events() -> EventFactory:
    """Factory for evenly spread events.

    ``make_events(entity, start, minutes, per_minute)`` returns ``per_minute``
    events inside each of ``minutes`` consecutive minutes from ``start``.
    """

    def factory(
        entity: str, start: datetime, minutes: int, per_minute: int
    ) -> list[tuple[datetime, str]]:
        step = timedelta(seconds=60) / per_minute
        return [
            (start + timedelta(minutes=m) + i * step, entity)
            for m in range(minutes)
            for i in range(per_minute)
        ]

    return factory

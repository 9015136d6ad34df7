"""Tests for the candidate selector."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from webtop.election import CandidateSelector
from webtop.errors import RefreshLagExceeded
from webtop.models import PipelineSettings
from webtop.rollup import RollupCascade
from webtop.storage import EventStore

T11 = datetime(2025, 1, 15, 11, 0, tzinfo=UTC)
T12 = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
LATER = datetime(2025, 1, 15, 12, 1, 30, tzinfo=UTC)


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(min_hits_threshold=20, election_window=timedelta(minutes=10))


@pytest.fixture
def selector(store: EventStore, cascade: RollupCascade) -> CandidateSelector:
    return CandidateSelector(store, cascade)


@pytest.fixture
async def settled(store: EventStore, cascade: RollupCascade, make_events) -> None:
    """a.com at 5 hits/minute and b.com at 1 hit/minute, settled until 12:00."""
    await store.append_events(make_events("a.com", T11, 60, 5))
    await store.append_events(make_events("b.com", T11, 60, 1))
    await cascade.refresh("1m", LATER)


class TestCandidateSelector:
    """Test suite for CandidateSelector."""

    @pytest.mark.asyncio
    async def test_requires_base_watermark(
        self, selector: CandidateSelector, settings: PipelineSettings
    ) -> None:
        with pytest.raises(RefreshLagExceeded):
            await selector.select(settings, LATER)

    @pytest.mark.asyncio
    async def test_selects_entities_over_threshold(
        self,
        selector: CandidateSelector,
        store: EventStore,
        settings: PipelineSettings,
        settled: None,
    ) -> None:
        """Test that only entities with enough hits in the window are written."""
        result = await selector.select(settings, LATER)

        assert result.window_time == T12
        assert result.window_start == T12 - timedelta(minutes=10)
        assert result.candidates_written == 1
        candidates = await store.list_candidates()
        assert [(c.entity_key, c.window_time, c.hits) for c in candidates] == [
            ("a.com", T12, 50)
        ]
        assert candidates[0].created_at == LATER

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(
        self, selector: CandidateSelector, store: EventStore, settled: None
    ) -> None:
        at_threshold = PipelineSettings(min_hits_threshold=50, election_window=timedelta(minutes=10))
        above = PipelineSettings(min_hits_threshold=51, election_window=timedelta(minutes=10))

        assert (await selector.select(at_threshold, LATER)).candidates_written == 1
        assert (await selector.select(above, LATER)).candidates_written == 0

    @pytest.mark.asyncio
    async def test_reselecting_same_window_is_idempotent(
        self,
        selector: CandidateSelector,
        store: EventStore,
        settings: PipelineSettings,
        settled: None,
    ) -> None:
        await selector.select(settings, LATER)
        first = await store.list_candidates()

        await selector.select(settings, LATER + timedelta(seconds=10))

        assert [(c.entity_key, c.hits) for c in await store.list_candidates()] == [
            (c.entity_key, c.hits) for c in first
        ]

    @pytest.mark.asyncio
    async def test_raised_threshold_removes_rows(
        self, selector: CandidateSelector, store: EventStore, settled: None
    ) -> None:
        """Test that entities that no longer qualify lose their row for the window."""
        low = PipelineSettings(min_hits_threshold=5, election_window=timedelta(minutes=10))
        high = PipelineSettings(min_hits_threshold=20, election_window=timedelta(minutes=10))

        await selector.select(low, LATER)
        assert {c.entity_key for c in await store.list_candidates()} == {"a.com", "b.com"}

        result = await selector.select(high, LATER)

        assert result.candidates_removed == 1
        assert {c.entity_key for c in await store.list_candidates()} == {"a.com"}

    @pytest.mark.asyncio
    async def test_new_window_adds_snapshot(
        self,
        selector: CandidateSelector,
        cascade: RollupCascade,
        store: EventStore,
        settings: PipelineSettings,
        settled: None,
    ) -> None:
        """Test that each settled window gets its own candidate snapshot."""
        await selector.select(settings, LATER)
        await cascade.refresh("1m", LATER + timedelta(minutes=1))

        result = await selector.select(settings, LATER + timedelta(minutes=1))

        assert result.window_time == T12 + timedelta(minutes=1)
        assert len(await store.list_candidates()) == 2
        # The window [11:51, 12:01) holds 9 active minutes of a.com
        latest = await store.list_candidates(result.window_time)
        assert [(c.entity_key, c.hits) for c in latest] == [("a.com", 45)]

"""End-to-end pipeline scenarios: ingestion through election."""

from __future__ import annotations

import asyncio
import signal
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from webtop.config import StorageConfig, WebtopConfig
from webtop.main import WebtopApplication
from webtop.models import PipelineSettings
from webtop.pipeline import ELECT_JOB, SELECT_JOB, WebtopPipeline, rollup_job_name
from webtop.storage import EventStore
from webtop.timeutil import to_db

pytestmark = pytest.mark.integration

T11 = datetime(2025, 1, 15, 11, 0, tzinfo=UTC)
T12 = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


def make_config(**pipeline: object) -> WebtopConfig:
    return WebtopConfig(
        storage=StorageConfig(path=":memory:"),
        pipeline=PipelineSettings(**pipeline),
    )


@pytest.fixture
async def pipeline():
    config = make_config(min_hits_threshold=100, election_window=timedelta(minutes=5))
    p = WebtopPipeline(config)
    await p.initialize()
    yield p
    await p.close()


class TestSteadyTraffic:
    """One domain at 1000 hits per minute for an hour."""

    @pytest.mark.asyncio
    async def test_domain_reaches_leaderboard(self, pipeline: WebtopPipeline, make_events) -> None:
        events = make_events("example.com", T11, 60, 1000)
        result = await pipeline.ingestion.ingest_batch(events, now=T12)
        assert result.accepted == 60_000

        first = await pipeline.run_cycle(now=T12 + timedelta(seconds=30))
        second = await pipeline.run_cycle(now=T12 + timedelta(minutes=1))

        assert first["candidates"] == 1
        assert second["refreshed"]["1h"] == 1
        candidates = await pipeline.store.list_candidates(T12)
        assert [(c.entity_key, c.hits) for c in candidates] == [("example.com", 5000)]

        entry = await pipeline.store.get_entry("example.com")
        assert entry is not None
        assert entry.cumulative_hits == 10_000
        assert entry.last_election_hits == 5000
        assert entry.times_elected == 2
        assert entry.avg_hourly_hits == pytest.approx(60_000.0)
        assert entry.stddev_hourly_hits == 0

        [row] = await pipeline.report.top(now=T12 + timedelta(minutes=1))
        assert (row.rank, row.entity_key) == (1, "example.com")

    @pytest.mark.asyncio
    async def test_repeated_cycle_is_idempotent(self, pipeline: WebtopPipeline, make_events) -> None:
        await pipeline.ingestion.ingest_batch(make_events("example.com", T11, 60, 200), now=T12)
        now = T12 + timedelta(minutes=1)

        await pipeline.run_cycle(now=now)
        before = await pipeline.store.get_entry("example.com")
        await pipeline.run_cycle(now=now)
        after = await pipeline.store.get_entry("example.com")

        assert before is not None and after is not None
        assert after.cumulative_hits == before.cumulative_hits == 1000
        assert after.times_elected == 1

    @pytest.mark.asyncio
    async def test_below_threshold_never_elected(
        self, pipeline: WebtopPipeline, make_events
    ) -> None:
        await pipeline.ingestion.ingest_batch(make_events("quiet.org", T11, 60, 10), now=T12)

        summary = await pipeline.run_cycle(now=T12 + timedelta(minutes=1))

        assert summary["candidates"] == 0
        assert await pipeline.store.count_rows("leaderboard") == 0

    @pytest.mark.asyncio
    async def test_cycle_with_retention(self, pipeline: WebtopPipeline, make_events) -> None:
        await pipeline.store.update_settings(raw_retention=timedelta(minutes=5))
        await pipeline.ingestion.ingest_batch(make_events("example.com", T12, 1, 200), now=T12)

        summary = await pipeline.run_cycle(now=T12 + timedelta(minutes=7), purge=True)

        assert summary["retention"].rows_deleted["raw"] == 200
        assert await pipeline.store.count_rows("raw_events") == 0


class TestCapacity:
    """A full leaderboard admitting a new domain."""

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted(self, pipeline: WebtopPipeline) -> None:
        def seed(cur) -> None:
            cur.execute(
                """
                INSERT INTO leaderboard (
                    entity_key, first_seen, last_seen, cumulative_hits,
                    last_election_hits, times_elected, updated_at
                )
                SELECT 'site' || CAST(i AS VARCHAR) || '.com', ?, ?, 500, 500, 1, ?
                FROM range(999) AS t(i)
                """,
                [to_db(T11), to_db(T11), to_db(T11)],
            )
            cur.execute(
                """
                INSERT INTO leaderboard (
                    entity_key, first_seen, last_seen, cumulative_hits,
                    last_election_hits, times_elected, updated_at
                ) VALUES ('old.com', ?, ?, 90000, 900, 100, ?)
                """,
                [to_db(T11 - timedelta(hours=1))] * 3,
            )
            cur.execute(
                "INSERT INTO candidates VALUES ('new.com', ?, 150, ?)",
                [to_db(T12), to_db(T12)],
            )

        await pipeline.store.run(seed)
        settings = await pipeline.store.load_settings()

        result = await pipeline.merger.elect(settings, T12 + timedelta(minutes=1))

        assert result.evicted_keys == ["old.com"]
        assert result.leaderboard_size == 1000
        assert await pipeline.store.get_entry("new.com") is not None
        assert await pipeline.store.get_entry("old.com") is None


class TestScheduledPipeline:
    """Job registration and the application lifecycle."""

    @pytest.mark.asyncio
    async def test_register_jobs(self, pipeline: WebtopPipeline) -> None:
        await pipeline.register_jobs()

        names = [status.name for status in pipeline.scheduler.list_jobs()]
        assert names == sorted(
            ["rollup_1m", "rollup_1h", "rollup_1d", "select_candidates", "elect", "retention"]
        )
        assert pipeline.scheduler.get_job(ELECT_JOB).interval == timedelta(hours=1)
        assert pipeline.scheduler.get_job(rollup_job_name("1d")).interval == timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_election_job_follows_settings(self, pipeline: WebtopPipeline) -> None:
        await pipeline.register_jobs()
        await pipeline.store.update_settings(
            election_interval=timedelta(hours=2), candidate_retention=timedelta(days=7)
        )

        await pipeline.scheduler.run_now(ELECT_JOB)

        assert pipeline.scheduler.get_job(ELECT_JOB).interval == timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_missing_settings_recorded_as_job_error(self) -> None:
        config = WebtopConfig(storage=StorageConfig(path=":memory:", seed_settings=False))
        pipeline = WebtopPipeline(config)
        await pipeline.initialize()
        try:
            await pipeline.register_jobs()
            await pipeline.scheduler.run_now(SELECT_JOB)

            status = pipeline.scheduler.get_job(SELECT_JOB)
            assert status.last_error is not None
            assert status.last_error.kind == "ConfigMissing"
            [persisted] = await pipeline.store.job_statuses()
            assert persisted["last_error"]["kind"] == "ConfigMissing"
        finally:
            await pipeline.close()

    @pytest.mark.asyncio
    async def test_application_lifecycle(self) -> None:
        store = EventStore(":memory:")
        application = WebtopApplication(make_config(), store=store)

        with patch("webtop.main.signal.signal") as install:
            task = asyncio.create_task(application.run())
            await asyncio.sleep(0.2)

            status = application.pipeline.scheduler.get_job(rollup_job_name("1m"))
            assert status.runs == 1
            assert status.last_success is not None
            assert install.call_count == 2

            application._handle_shutdown(signal.SIGTERM)
            await asyncio.wait_for(task, timeout=5)

        assert application.pipeline.scheduler.running is False
        assert store.conn is None

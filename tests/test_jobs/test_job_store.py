"""Tests for the job stores: record replacement, TTLs, result expiry and eviction."""

import json
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from race_backtest.backtest.schemas import DateRange
from race_backtest.jobs.errors import ResultExpiredError
from race_backtest.jobs.schemas import BacktestJob, BacktestRequest, JobStatus
from race_backtest.jobs.store import RedisJobStore


def _job(strategy, job_id: str, client_id: str = "client-a", minutes: int = 0) -> BacktestJob:
    return BacktestJob(
        job_id=job_id,
        client_id=client_id,
        request=BacktestRequest(
            strategy=strategy,
            date_range=DateRange(start=date(2024, 3, 2), end=date(2024, 3, 4)),
            initial_capital=1_000_000,
            seed=7,
        ),
        created_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


# ── update ──────────────────────────────────────────────────


class TestUpdate:
    @pytest.mark.asyncio
    async def test_replacement_bumps_version(self, store, strategy):
        await store.create(_job(strategy, "bt_1"))
        updated = await store.update("bt_1", lambda j: replace(j, status=JobStatus.RUNNING))
        assert updated.status is JobStatus.RUNNING
        assert updated.version == 1
        assert (await store.get("bt_1")).version == 1

    @pytest.mark.asyncio
    async def test_unchanged_record_skips_write(self, store, strategy):
        job = _job(strategy, "bt_1")
        await store.create(job)
        same = await store.update("bt_1", lambda j: j)
        assert same.version == 0
        assert same.updated_at == job.updated_at

    @pytest.mark.asyncio
    async def test_unknown_job(self, store):
        assert await store.update("missing", lambda j: j) is None

    @pytest.mark.asyncio
    async def test_exception_aborts_update(self, store, strategy):
        await store.create(_job(strategy, "bt_1"))

        def boom(job):
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await store.update("bt_1", boom)
        assert (await store.get("bt_1")).version == 0

    @pytest.mark.asyncio
    async def test_delete(self, store, strategy):
        await store.create(_job(strategy, "bt_1"))
        assert await store.delete("bt_1") is True
        assert await store.get("bt_1") is None
        assert await store.delete("bt_1") is False


# ── job TTL ─────────────────────────────────────────────────


class TestJobTtl:
    @pytest.mark.asyncio
    async def test_job_expires(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        clock.advance(599)
        assert await store.get("bt_1") is not None
        clock.advance(2)
        assert await store.get("bt_1") is None

    @pytest.mark.asyncio
    async def test_update_extends_ttl(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        clock.advance(500)
        await store.update("bt_1", lambda j: replace(j, status=JobStatus.RUNNING))
        clock.advance(500)
        assert await store.get("bt_1") is not None


# ── results ─────────────────────────────────────────────────


class TestResults:
    @pytest.mark.asyncio
    async def test_live_result(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {"roi": 1.5}}, ttl_seconds=100)
        clock.advance(50)
        assert await store.get_result("bt_1") == {"summary": {"roi": 1.5}}

    @pytest.mark.asyncio
    async def test_expired_distinct_from_never_stored(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {}}, ttl_seconds=100)

        clock.advance(150)
        with pytest.raises(ResultExpiredError):
            await store.get_result("bt_1")

        assert await store.get_result("bt_never") is None

    @pytest.mark.asyncio
    async def test_marker_ages_out(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {}}, ttl_seconds=100)
        clock.advance(250)
        assert await store.get_result("bt_1") is None

    @pytest.mark.asyncio
    async def test_result_keeps_job_alive(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {}}, ttl_seconds=1000)
        clock.advance(1500)
        assert await store.get("bt_1") is not None

    @pytest.mark.asyncio
    async def test_delete_result(self, store, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {}}, ttl_seconds=100)
        await store.delete_result("bt_1")
        assert await store.get_result("bt_1") is None


# ── expired entry eviction ──────────────────────────────────


class TestExpiredEviction:
    @pytest.mark.asyncio
    async def test_unread_entries_purged(self, store, clock, strategy):
        for n in range(20):
            await store.create(_job(strategy, f"bt_{n}"))
            await store.save_result(f"bt_{n}", {"summary": {}}, ttl_seconds=60)
        clock.advance(10_000)

        await store.list_for_client("someone-else")

        assert store._jobs == {}
        assert store._results == {}
        assert store._result_markers == {}

    @pytest.mark.asyncio
    async def test_purge_keeps_live_marker(self, store, clock, strategy):
        await store.create(_job(strategy, "bt_1"))
        await store.save_result("bt_1", {"summary": {}}, ttl_seconds=100)
        clock.advance(150)

        await store.create(_job(strategy, "bt_2"))

        assert "bt_1" not in store._results
        with pytest.raises(ResultExpiredError):
            await store.get_result("bt_1")


# ── Redis client index ──────────────────────────────────────


@pytest.fixture
def redis_client():
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True])
    client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
    client.ttl = AsyncMock(return_value=-2)
    client.get = AsyncMock(return_value=None)
    return client, pipe


@pytest.fixture
def redis_store(redis_client):
    client, _ = redis_client
    return RedisJobStore(key_prefix="bt", job_ttl_seconds=600, client=client)


class TestRedisClientIndex:
    @pytest.mark.asyncio
    async def test_new_index_gets_job_ttl(self, redis_store, redis_client, strategy):
        _, pipe = redis_client
        await redis_store.create(_job(strategy, "bt_1"))
        pipe.expire.assert_called_once_with("bt:client:client-a", 600)

    @pytest.mark.asyncio
    async def test_create_does_not_shorten_index(self, redis_store, redis_client, strategy):
        client, pipe = redis_client
        client.ttl = AsyncMock(return_value=7200)
        await redis_store.create(_job(strategy, "bt_2"))
        pipe.expire.assert_called_once_with("bt:client:client-a", 7200)

    @pytest.mark.asyncio
    async def test_save_result_extends_index_with_job(self, redis_store, redis_client, strategy):
        client, pipe = redis_client
        client.get = AsyncMock(return_value=json.dumps(_job(strategy, "bt_1").to_dict()))
        client.ttl = AsyncMock(return_value=500)

        await redis_store.save_result("bt_1", {"summary": {}}, ttl_seconds=3600)

        assert call("bt:job:bt_1", 7200) in pipe.expire.call_args_list
        assert call("bt:client:client-a", 7200) in pipe.expire.call_args_list

    @pytest.mark.asyncio
    async def test_save_result_for_unknown_job(self, redis_store, redis_client):
        _, pipe = redis_client
        await redis_store.save_result("bt_gone", {"summary": {}}, ttl_seconds=3600)
        pipe.expire.assert_called_once_with("bt:job:bt_gone", 7200)


# ── listing ─────────────────────────────────────────────────


class TestListForClient:
    @pytest.mark.asyncio
    async def test_newest_first_and_filtered(self, store, strategy):
        await store.create(_job(strategy, "bt_old", minutes=0))
        await store.create(_job(strategy, "bt_new", minutes=10))
        await store.create(_job(strategy, "bt_mid", minutes=5))
        await store.create(_job(strategy, "bt_other", client_id="client-b"))
        await store.update("bt_mid", lambda j: replace(j, status=JobStatus.RUNNING))

        jobs = await store.list_for_client("client-a")
        assert [j.job_id for j in jobs] == ["bt_new", "bt_mid", "bt_old"]

        running = await store.list_for_client("client-a", status=JobStatus.RUNNING)
        assert [j.job_id for j in running] == ["bt_mid"]

        page = await store.list_for_client("client-a", limit=1, offset=1)
        assert [j.job_id for j in page] == ["bt_mid"]


# ── serialisation ───────────────────────────────────────────


class TestJobRecord:
    def test_dict_round_trip(self, strategy):
        job = _job(strategy, "bt_1")
        restored = BacktestJob.from_dict(job.to_dict())
        assert restored.job_id == job.job_id
        assert restored.created_at == job.created_at
        assert restored.request.date_range == job.request.date_range
        assert restored.request.seed == 7
        assert restored.request.strategy.id == strategy.id

    def test_progress(self, strategy):
        job = replace(_job(strategy, "bt_1"), status=JobStatus.RUNNING, processed_races=3, total_races=8)
        assert job.progress == 37
        assert replace(job, status=JobStatus.COMPLETED).progress == 100
        assert replace(job, total_races=0).progress == 0

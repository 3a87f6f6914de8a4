"""Tests for job dispatch: local tasks, the Redis stream queue and its worker."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from race_backtest.jobs.queue import BacktestQueue, QueuedJob
from race_backtest.jobs.runner import BacktestRunner
from race_backtest.jobs.schemas import JobStatus
from race_backtest.jobs.worker import BacktestWorker, LocalDispatcher, QueueDispatcher, backoff_delay


class BlockingExecutor:
    """Never finishes on its own; signals once it has started."""

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, *args, **kwargs):
        self.started.set()
        await asyncio.Event().wait()


# ── backoff ─────────────────────────────────────────────────


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert backoff_delay(0, 1.0, 60.0, jitter_range=0) == 1.0
        assert backoff_delay(3, 1.0, 60.0, jitter_range=0) == 8.0

    def test_capped(self):
        assert backoff_delay(10, 1.0, 60.0, jitter_range=0) == 60.0

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 2.0 <= backoff_delay(2, 1.0, 60.0, jitter_range=0.5) <= 6.0


# ── LocalDispatcher ─────────────────────────────────────────


class TestLocalDispatcher:
    @pytest.mark.asyncio
    async def test_runs_jobs_to_completion(self, manager, race_source, strategy, short_range):
        dispatcher = LocalDispatcher(BacktestRunner(manager, race_source), max_concurrent=1)
        jobs = [
            await manager.create_job(strategy, short_range, client_id="client-a")
            for _ in range(3)
        ]
        for job in jobs:
            await dispatcher.submit(job.job_id)
        assert dispatcher.active == 3

        await dispatcher.wait_idle()
        assert dispatcher.active == 0
        for job in jobs:
            assert (await manager.store.get(job.job_id)).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_fails_in_flight_jobs(self, manager, race_source, strategy, short_range):
        executor = BlockingExecutor()
        dispatcher = LocalDispatcher(
            BacktestRunner(manager, race_source, executor=executor), max_concurrent=2
        )
        job = await manager.create_job(strategy, short_range, client_id="client-a")
        await dispatcher.submit(job.job_id)
        await asyncio.wait_for(executor.started.wait(), timeout=5)

        await dispatcher.shutdown()

        current = await manager.store.get(job.job_id)
        assert current.status is JobStatus.FAILED
        assert current.error.code == "INTERNAL_ERROR"
        assert current.error.retryable is True


# ── BacktestQueue ───────────────────────────────────────────


@pytest.fixture
def queue():
    q = BacktestQueue(
        redis_url="redis://localhost:6379/1",
        stream_name="bt_test",
        consumer_group="bt_group",
        consumer_name="bt-test-1",
    )
    q._redis = AsyncMock()
    return q


class TestBacktestQueue:
    @pytest.mark.asyncio
    async def test_publish(self, queue):
        queue.redis.xadd = AsyncMock(return_value="1-0")
        assert await queue.publish("bt_1") == "1-0"
        args, kwargs = queue.redis.xadd.call_args
        assert args[0] == "bt_test"
        assert args[1]["job_id"] == "bt_1"

    @pytest.mark.asyncio
    async def test_malformed_message_goes_to_dlq(self, queue):
        queue.redis.xreadgroup = AsyncMock(return_value=[
            ("bt_test", [("1-0", {"foo": "bar"}), ("2-0", {"job_id": "bt_2"})]),
        ])
        queue.redis.xadd = AsyncMock(return_value="9-0")
        queue.redis.xack = AsyncMock()

        consumer = queue.consume()
        queued = await consumer.__anext__()
        await consumer.aclose()

        assert queued == QueuedJob(message_id="2-0", job_id="bt_2")
        assert queue.redis.xadd.call_args.args[0] == "bt_test:dlq"
        queue.redis.xack.assert_awaited_once_with("bt_test", "bt_group", "1-0")

    def test_requires_connection(self):
        with pytest.raises(RuntimeError):
            BacktestQueue(redis_url="redis://localhost:6379/1").redis


class TestQueueDispatcher:
    @pytest.mark.asyncio
    async def test_connects_once(self):
        mock_queue = AsyncMock()
        dispatcher = QueueDispatcher(mock_queue)
        await dispatcher.submit("bt_1")
        await dispatcher.submit("bt_2")
        mock_queue.connect.assert_awaited_once()
        assert mock_queue.publish.await_count == 2

        await dispatcher.shutdown()
        mock_queue.close.assert_awaited_once()


# ── BacktestWorker ──────────────────────────────────────────


class FakeQueue:
    """Delivers a fixed batch, then stops the worker."""

    def __init__(self, deliveries: list[QueuedJob]):
        self.deliveries = deliveries
        self.worker = None
        self.connect = AsyncMock()
        self.close = AsyncMock()
        self.ack = AsyncMock()

    async def consume(self, count: int = 1, block_ms: int = 5000):
        for queued in self.deliveries:
            yield queued
        await self.worker.stop()


class TestBacktestWorker:
    @pytest.mark.asyncio
    async def test_runs_and_acks_each_delivery(self):
        fake = FakeQueue([QueuedJob("1-0", "bt_1"), QueuedJob("2-0", "bt_2")])
        runner = AsyncMock()
        worker = BacktestWorker(runner, queue=fake)
        fake.worker = worker

        await worker.start()

        assert [c.args[0] for c in runner.run.await_args_list] == ["bt_1", "bt_2"]
        assert [c.args[0] for c in fake.ack.await_args_list] == ["1-0", "2-0"]
        assert worker.jobs_processed == 2
        fake.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_gives_up_after_consecutive_failures(self):
        mock_queue = AsyncMock()
        mock_queue.connect = AsyncMock(side_effect=ConnectionError("redis down"))
        worker = BacktestWorker(AsyncMock(), queue=mock_queue)

        with patch("race_backtest.jobs.worker.backoff_delay", return_value=0.0):
            with pytest.raises(ConnectionError):
                await worker.start()

        assert mock_queue.connect.await_count == 11

"""
Job dispatch: in-process tasks or a Redis Streams worker.

``LocalDispatcher`` runs jobs as asyncio tasks inside the API process
with bounded concurrency. ``QueueDispatcher`` publishes job ids to the
stream, where ``BacktestWorker`` processes pick them up.
"""

import asyncio
import random

import structlog

from race_backtest.config.settings import get_settings
from race_backtest.jobs.queue import BacktestQueue
from race_backtest.jobs.runner import BacktestRunner

logger = structlog.get_logger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_range: float = 0.5,
) -> float:
    """Exponential delay for reconnect attempt ``attempt`` (0-based), with jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return max(0.0, delay + delay * random.uniform(-jitter_range, jitter_range))


class LocalDispatcher:
    """
    Runs jobs in the current event loop.

    Usage:
        dispatcher = LocalDispatcher(runner, max_concurrent=4)
        await dispatcher.submit(job.job_id)
        ...
        await dispatcher.shutdown()
    """

    def __init__(self, runner: BacktestRunner, max_concurrent: int | None = None):
        self._runner = runner
        limit = max_concurrent or get_settings().max_concurrent_jobs
        self._semaphore = asyncio.Semaphore(limit)
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def submit(self, job_id: str) -> None:
        task = asyncio.create_task(self._run(job_id), name=f"backtest-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_id: str) -> None:
        async with self._semaphore:
            await self._runner.run(job_id)

    async def wait_idle(self) -> None:
        """Wait for every submitted job to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight jobs; the runner marks them failed (retryable)."""
        if not self._tasks:
            return
        logger.info("Cancelling in-flight backtests", count=len(self._tasks))
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


class QueueDispatcher:
    """Publishes job ids to the Redis stream for external workers."""

    def __init__(self, queue: BacktestQueue | None = None):
        self._queue = queue or BacktestQueue()
        self._connected = False

    @property
    def queue(self) -> BacktestQueue:
        return self._queue

    async def submit(self, job_id: str) -> None:
        if not self._connected:
            await self._queue.connect()
            self._connected = True
        await self._queue.publish(job_id)

    async def shutdown(self) -> None:
        if self._connected:
            await self._queue.close()
            self._connected = False


class BacktestWorker:
    """
    Worker that consumes backtest job ids from the stream.

    Each delivery is run to a terminal status and then acknowledged.
    Reconnects with exponential backoff on transient failures.

    Usage:
        worker = BacktestWorker(runner)
        await worker.start()  # Runs until stopped
    """

    def __init__(
        self,
        runner: BacktestRunner,
        queue: BacktestQueue | None = None,
    ):
        self._runner = runner
        self._queue = queue or BacktestQueue()
        self._running = False
        self._jobs_processed = 0

    @property
    def jobs_processed(self) -> int:
        return self._jobs_processed

    async def start(self) -> None:
        """
        Start the worker with a supervised retry loop.

        Exits after ``worker_max_consecutive_failures`` failures in a row
        or on CancelledError.
        """
        self._running = True
        settings = get_settings()
        attempt = 0

        logger.info("Starting backtest worker")

        while self._running:
            try:
                await self._queue.connect()
                await self._process_loop()
                if not self._running:
                    break
            except asyncio.CancelledError:
                logger.info("Backtest worker cancelled")
                break
            except Exception as e:
                if attempt >= settings.worker_max_consecutive_failures:
                    logger.error(
                        "Backtest worker exceeded max consecutive failures",
                        failures=attempt,
                        error=str(e),
                    )
                    raise
                delay = backoff_delay(
                    attempt,
                    settings.worker_backoff_base_delay,
                    settings.worker_backoff_max_delay,
                )
                attempt += 1
                logger.warning(
                    "Backtest worker error, retrying",
                    error=str(e),
                    attempt=attempt,
                    retry_delay=round(delay, 1),
                )
                await self._cleanup()
                await asyncio.sleep(delay)
            else:
                attempt = 0

        await self._cleanup()

    async def stop(self) -> None:
        """Stop after the current job finishes."""
        logger.info("Stopping backtest worker")
        self._running = False

    async def _cleanup(self) -> None:
        await self._queue.close()
        logger.info("Backtest worker cleaned up")

    async def _process_loop(self) -> None:
        async for queued in self._queue.consume(count=1, block_ms=5000):
            if not self._running:
                break
            await self._runner.run(queued.job_id)
            await self._queue.ack(queued.message_id)
            self._jobs_processed += 1

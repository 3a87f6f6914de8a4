"""
Redis Streams transport for backtest job ids.

Used with ``JOB_DISPATCH_MODE=queue``, when API processes and workers are
separate. A message carries the job id only; the job record and its
request live in the shared ``RedisJobStore``, so a redelivered message
simply finds the job no longer pending.
"""

import asyncio
import logging
import os
import socket
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from types import TracebackType

import redis.asyncio as redis

from race_backtest.config.settings import get_settings

logger = logging.getLogger(__name__)

DLQ_MAX_LENGTH = 10_000


@dataclass(frozen=True)
class QueuedJob:
    """One delivery: the stream message id (for ack) and the job to run."""

    message_id: str
    job_id: str


def _consumer_name() -> str:
    return f"bt-{socket.gethostname()}-{os.getpid()}"


class BacktestQueue:
    """
    Consumer-group stream of job ids.

    Keys:
        {JOB_STREAM_NAME}        job ids awaiting a worker
        {JOB_STREAM_NAME}:dlq    deliveries that could not be parsed

    Usage:
        async with BacktestQueue() as queue:
            await queue.publish(job.job_id)

            async for queued in queue.consume():
                await runner.run(queued.job_id)
                await queue.ack(queued.message_id)
    """

    def __init__(
        self,
        redis_url: str | None = None,
        stream_name: str | None = None,
        consumer_group: str | None = None,
        consumer_name: str | None = None,
    ):
        settings = get_settings()
        self._redis_url = redis_url or str(settings.redis_url)
        self._stream = stream_name or settings.job_stream_name
        self._group = consumer_group or settings.job_consumer_group
        self._maxlen = settings.job_stream_max_length
        self._consumer = consumer_name or _consumer_name()
        self._redis: redis.Redis | None = None

    @property
    def stream_name(self) -> str:
        return self._stream

    @property
    def dlq_name(self) -> str:
        return f"{self._stream}:dlq"

    async def connect(self) -> None:
        """Open the client and make sure the consumer group exists."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        try:
            await self._redis.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self._group} on {self._stream}")
        except redis.ResponseError as e:
            # BUSYGROUP: another process created it first
            if "BUSYGROUP" not in str(e):
                raise
        logger.info(f"Job stream {self._stream} ready (consumer {self._consumer})")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
            logger.info(f"Job stream {self._stream} connection closed")

    async def __aenter__(self) -> "BacktestQueue":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Job stream not connected. Call connect() first.")
        return self._redis

    async def publish(self, job_id: str) -> str:
        """Append a job id to the stream; returns the message id."""
        message_id = await self.redis.xadd(
            self._stream,
            {"job_id": job_id, "enqueued_at": f"{time.time():.3f}"},
            maxlen=self._maxlen,
        )
        logger.debug(f"Queued job {job_id} as {message_id}")
        return message_id

    async def _read_batch(self, count: int, block_ms: int) -> list[QueuedJob]:
        response = await self.redis.xreadgroup(
            groupname=self._group,
            consumername=self._consumer,
            streams={self._stream: ">"},
            count=count,
            block=block_ms,
        )
        batch: list[QueuedJob] = []
        for _stream, entries in response or []:
            for message_id, fields in entries:
                job_id = fields.get("job_id")
                if job_id:
                    batch.append(QueuedJob(message_id=message_id, job_id=job_id))
                else:
                    await self._dead_letter(message_id, fields, "missing job_id")
        return batch

    async def consume(self, count: int = 1, block_ms: int = 5000) -> AsyncIterator[QueuedJob]:
        """
        Yield deliveries for this consumer until cancelled.

        Malformed messages are copied to the DLQ and acknowledged without
        being yielded. Connection errors propagate so the worker can
        reconnect; other read errors are logged and retried after a pause.
        """
        while True:
            try:
                batch = await self._read_batch(count, block_ms)
            except asyncio.CancelledError:
                logger.info("Job stream consumer cancelled")
                return
            except redis.ConnectionError:
                raise
            except Exception as e:
                logger.error(f"Reading job stream {self._stream} failed: {e}")
                await asyncio.sleep(1)
                continue
            for queued in batch:
                yield queued

    async def ack(self, message_id: str) -> None:
        await self.redis.xack(self._stream, self._group, message_id)

    async def _dead_letter(self, message_id: str, fields: dict[str, str], reason: str) -> None:
        await self.redis.xadd(
            self.dlq_name,
            {**fields, "original_id": message_id, "error": reason, "failed_at": f"{time.time():.3f}"},
            maxlen=DLQ_MAX_LENGTH,
        )
        await self.ack(message_id)
        logger.warning(f"Moved message {message_id} to {self.dlq_name}: {reason}")

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning(f"Job stream health check failed: {e}")
            return False

"""
Job and result persistence.

Two backends share the ``JobStore`` interface:
- ``InMemoryJobStore`` for single-process deployments and tests
- ``RedisJobStore`` when API processes and stream workers are separate

Job records are replaced wholesale: ``update(job_id, fn)`` reads the
current record, applies ``fn`` and writes the returned record back under
a lock (in memory) or an optimistic WATCH/MULTI transaction (Redis).
Each write bumps ``version`` and ``updated_at``.

Results carry an expiry marker that outlives the result itself, so a
reader can tell "expired" from "never stored".
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from types import TracebackType
from typing import Any

import redis.asyncio as redis

from race_backtest.config.settings import get_settings
from race_backtest.jobs.errors import ResultExpiredError
from race_backtest.jobs.schemas import BacktestJob, JobStatus

logger = logging.getLogger(__name__)

JobUpdate = Callable[[BacktestJob], BacktestJob]

DEFAULT_JOB_TTL_SECONDS = 7 * 24 * 3600
# Expiry markers survive this many result lifetimes.
MARKER_TTL_FACTOR = 2


def _bump(new: BacktestJob, current: BacktestJob) -> BacktestJob:
    return replace(
        new,
        version=current.version + 1,
        updated_at=datetime.now(timezone.utc),
    )


class JobStore(ABC):
    """Persistence interface for backtest jobs and their results."""

    @abstractmethod
    async def create(self, job: BacktestJob) -> None:
        """Store a new job record."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> BacktestJob | None:
        """Return the job, or None if unknown or expired."""
        ...

    @abstractmethod
    async def update(self, job_id: str, fn: JobUpdate) -> BacktestJob | None:
        """
        Atomically replace a job record.

        Args:
            job_id: Job to update.
            fn: Receives the current record and returns the new one.
                Returning the record unchanged skips the write.
                Exceptions raised by ``fn`` abort the update and propagate.

        Returns:
            The stored record, or None if the job does not exist.
        """
        ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def list_for_client(
        self,
        client_id: str,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BacktestJob]:
        """Jobs owned by ``client_id``, newest first."""
        ...

    @abstractmethod
    async def save_result(
        self, job_id: str, payload: dict[str, Any], ttl_seconds: int
    ) -> None:
        ...

    @abstractmethod
    async def get_result(self, job_id: str) -> dict[str, Any] | None:
        """
        Return a stored result payload.

        Returns:
            The payload, or None if no result was ever stored.

        Raises:
            ResultExpiredError: A result was stored but has expired.
        """
        ...

    @abstractmethod
    async def delete_result(self, job_id: str) -> None:
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    """
    Process-local job store.

    Usage:
        store = InMemoryJobStore()
        await store.create(job)
        job = await store.update(job.job_id, lambda j: replace(j, status=...))
    """

    def __init__(
        self,
        job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        self._job_ttl = job_ttl_seconds
        self._clock = clock or time.time
        self._lock = asyncio.Lock()
        # job_id -> (record, expires_at)
        self._jobs: dict[str, tuple[BacktestJob, float]] = {}
        # job_id -> (payload, expires_at)
        self._results: dict[str, tuple[dict[str, Any], float]] = {}
        # job_id -> marker expires_at
        self._result_markers: dict[str, float] = {}

    def _purge_expired(self, now: float) -> None:
        """Drop every job, result and marker past its expiry. Caller holds the lock."""
        for job_id in [k for k, (_, exp) in self._jobs.items() if now >= exp]:
            del self._jobs[job_id]
        for job_id in [k for k, (_, exp) in self._results.items() if now >= exp]:
            del self._results[job_id]
        for job_id in [k for k, exp in self._result_markers.items() if now >= exp]:
            del self._result_markers[job_id]

    def _live(self, job_id: str) -> BacktestJob | None:
        entry = self._jobs.get(job_id)
        if entry is None:
            return None
        job, expires_at = entry
        if self._clock() >= expires_at:
            del self._jobs[job_id]
            return None
        return job

    async def create(self, job: BacktestJob) -> None:
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._jobs[job.job_id] = (job, now + self._job_ttl)

    async def get(self, job_id: str) -> BacktestJob | None:
        async with self._lock:
            return self._live(job_id)

    async def update(self, job_id: str, fn: JobUpdate) -> BacktestJob | None:
        async with self._lock:
            current = self._live(job_id)
            if current is None:
                return None
            updated = fn(current)
            if updated is current:
                return current
            new = _bump(updated, current)
            _, expires_at = self._jobs[job_id]
            self._jobs[job_id] = (new, max(expires_at, self._clock() + self._job_ttl))
            return new

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            self._results.pop(job_id, None)
            self._result_markers.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    async def list_for_client(
        self,
        client_id: str,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BacktestJob]:
        async with self._lock:
            self._purge_expired(self._clock())
            jobs = [
                job
                for job in (self._live(job_id) for job_id in list(self._jobs))
                if job is not None
                and job.client_id == client_id
                and (status is None or job.status == status)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[offset : offset + limit]

    async def save_result(
        self, job_id: str, payload: dict[str, Any], ttl_seconds: int
    ) -> None:
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)
            self._results[job_id] = (payload, now + ttl_seconds)
            marker_expiry = now + ttl_seconds * MARKER_TTL_FACTOR
            self._result_markers[job_id] = marker_expiry
            # Keep the job record reachable for as long as the marker lives.
            entry = self._jobs.get(job_id)
            if entry is not None:
                self._jobs[job_id] = (entry[0], max(entry[1], marker_expiry))

    async def get_result(self, job_id: str) -> dict[str, Any] | None:
        async with self._lock:
            now = self._clock()
            entry = self._results.get(job_id)
            if entry is not None:
                payload, expires_at = entry
                if now < expires_at:
                    return payload
                del self._results[job_id]
            marker = self._result_markers.get(job_id)
            if marker is None:
                return None
            if now >= marker:
                del self._result_markers[job_id]
                return None
            raise ResultExpiredError(job_id)

    async def delete_result(self, job_id: str) -> None:
        async with self._lock:
            self._results.pop(job_id, None)
            self._result_markers.pop(job_id, None)


class RedisJobStore(JobStore):
    """
    Redis-backed job store shared by API processes and workers.

    Keys (``prefix`` defaults to ``backtest``):
        {prefix}:job:{job_id}           JSON job record, EX job TTL
        {prefix}:client:{client_id}     sorted set of job ids by created_at
        {prefix}:result:{job_id}        JSON result payload, EX result TTL
        {prefix}:result_meta:{job_id}   expiry marker, EX 2x result TTL

    Usage:
        async with RedisJobStore() as store:
            job = await store.get("bt_...")
    """

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str | None = None,
        job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS,
        client: redis.Redis | None = None,
    ):
        settings = get_settings()
        self._redis_url = redis_url or str(settings.redis_url)
        self._prefix = key_prefix or settings.job_key_prefix
        self._job_ttl = job_ttl_seconds
        self._redis: redis.Redis | None = client

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info(f"Job store connected to Redis (prefix={self._prefix})")

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Job store Redis connection closed")

    async def __aenter__(self) -> "RedisJobStore":
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
            raise RuntimeError("Not connected to Redis. Call connect() first.")
        return self._redis

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _client_key(self, client_id: str) -> str:
        return f"{self._prefix}:client:{client_id}"

    def _result_key(self, job_id: str) -> str:
        return f"{self._prefix}:result:{job_id}"

    def _marker_key(self, job_id: str) -> str:
        return f"{self._prefix}:result_meta:{job_id}"

    @staticmethod
    def _dump(job: BacktestJob) -> str:
        return json.dumps(job.to_dict())

    @staticmethod
    def _load(raw: str) -> BacktestJob:
        return BacktestJob.from_dict(json.loads(raw))

    async def _index_ttl(self, client_key: str, seconds: int) -> int:
        """TTL that keeps the client index alive for at least ``seconds`` without shortening it."""
        current = await self.redis.ttl(client_key)
        return max(int(current), seconds) if current and current > 0 else seconds

    async def create(self, job: BacktestJob) -> None:
        client_key = self._client_key(job.client_id)
        index_ttl = await self._index_ttl(client_key, self._job_ttl)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.job_id), self._dump(job), ex=self._job_ttl)
            pipe.zadd(client_key, {job.job_id: job.created_at.timestamp()})
            pipe.expire(client_key, index_ttl)
            await pipe.execute()

    async def get(self, job_id: str) -> BacktestJob | None:
        raw = await self.redis.get(self._job_key(job_id))
        return self._load(raw) if raw else None

    async def update(self, job_id: str, fn: JobUpdate) -> BacktestJob | None:
        key = self._job_key(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None
                    current = self._load(raw)
                    updated = fn(current)
                    if updated is current:
                        await pipe.unwatch()
                        return current
                    new = _bump(updated, current)
                    ttl = await pipe.ttl(key)
                    pipe.multi()
                    pipe.set(
                        key,
                        self._dump(new),
                        ex=max(int(ttl), self._job_ttl) if ttl and ttl > 0 else self._job_ttl,
                    )
                    await pipe.execute()
                    return new
                except redis.WatchError:
                    logger.debug(f"Concurrent update on job {job_id}, retrying")
                    continue

    async def delete(self, job_id: str) -> bool:
        job = await self.get(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._job_key(job_id), self._result_key(job_id), self._marker_key(job_id))
            if job is not None:
                pipe.zrem(self._client_key(job.client_id), job_id)
            results = await pipe.execute()
        return bool(results[0])

    async def list_for_client(
        self,
        client_id: str,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BacktestJob]:
        job_ids = await self.redis.zrevrange(self._client_key(client_id), 0, -1)
        if not job_ids:
            return []
        raws = await self.redis.mget([self._job_key(job_id) for job_id in job_ids])
        jobs = [self._load(raw) for raw in raws if raw]
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return jobs[offset : offset + limit]

    async def save_result(
        self, job_id: str, payload: dict[str, Any], ttl_seconds: int
    ) -> None:
        marker_ttl = ttl_seconds * MARKER_TTL_FACTOR
        job = await self.get(job_id)
        client_key = index_ttl = None
        if job is not None:
            client_key = self._client_key(job.client_id)
            index_ttl = await self._index_ttl(client_key, marker_ttl)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._result_key(job_id), json.dumps(payload), ex=ttl_seconds)
            pipe.set(self._marker_key(job_id), str(int(time.time()) + ttl_seconds), ex=marker_ttl)
            pipe.expire(self._job_key(job_id), marker_ttl)
            if client_key is not None:
                # Listing must cover every job whose record is still readable.
                pipe.expire(client_key, index_ttl)
            await pipe.execute()

    async def get_result(self, job_id: str) -> dict[str, Any] | None:
        raw = await self.redis.get(self._result_key(job_id))
        if raw is not None:
            return json.loads(raw)
        if await self.redis.exists(self._marker_key(job_id)):
            raise ResultExpiredError(job_id)
        return None

    async def delete_result(self, job_id: str) -> None:
        await self.redis.delete(self._result_key(job_id), self._marker_key(job_id))

    async def health_check(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Job store health check failed: {e}")
            return False

"""
PostgreSQL access for the historical race store.

Race cards, odds history and results are written by the ingestion
pipeline that owns those tables; the backtest service only reads them.
Pools opened for simulation are therefore read-only at the session level,
and only ``init-db`` opens a writable pool.
"""

import logging
from types import TracebackType
from typing import Any

import asyncpg

from race_backtest.config.settings import get_settings

logger = logging.getLogger(__name__)

APPLICATION_NAME = "race-backtest"


class Database:
    """
    asyncpg pool for historical race queries.

    Usage:
        async with Database() as db:
            rows = await db.fetch("SELECT ... WHERE race_date = $1", day)

        async with Database(read_only=False) as db:
            await db.execute(HISTORICAL_TABLES_SQL)
    """

    def __init__(
        self,
        database_url: str | None = None,
        read_only: bool = True,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        settings = get_settings()
        self._dsn = database_url or str(settings.database_url)
        self._read_only = read_only
        self._pool_size = (
            min_size or settings.db_pool_min_size,
            max_size or settings.db_pool_max_size,
        )
        self._pool: asyncpg.Pool | None = None

    @property
    def read_only(self) -> bool:
        return self._read_only

    async def connect(self) -> None:
        if self._pool is not None:
            return
        server_settings = {"application_name": APPLICATION_NAME}
        if self._read_only:
            server_settings["default_transaction_read_only"] = "on"
        min_size, max_size = self._pool_size
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=60,
                server_settings=server_settings,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Could not open race database pool: {e}")
            raise
        mode = "read-only" if self._read_only else "read-write"
        logger.info(f"Race database pool open ({mode}, size {min_size}-{max_size})")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Race database pool closed")

    async def __aenter__(self) -> "Database":
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
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def execute(self, query: str, *args: Any) -> str:
        if self._read_only:
            raise RuntimeError("execute() needs a pool opened with read_only=False")
        return await self.pool.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        return await self.pool.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        return await self.pool.fetchrow(query, *args)

    async def health_check(self) -> bool:
        try:
            return await self.pool.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning(f"Race database health check failed: {e}")
            return False

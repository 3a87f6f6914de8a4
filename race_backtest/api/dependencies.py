"""
Dependency injection for FastAPI endpoints.

Services are process-wide singletons created on first use and released
by ``cleanup_dependencies()`` at shutdown. Tests replace them through
``app.dependency_overrides``.
"""

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.data_source import HistoricalDataSource, InMemoryDataSource
from race_backtest.backtest.pg_source import PostgresDataSource
from race_backtest.config.settings import get_settings
from race_backtest.jobs.manager import JobManager
from race_backtest.jobs.runner import BacktestRunner
from race_backtest.jobs.store import InMemoryJobStore, JobStore, RedisJobStore
from race_backtest.jobs.worker import LocalDispatcher, QueueDispatcher
from race_backtest.storage.database import Database

# Global service instances (initialized on first request)
_backtest_config: BacktestConfig | None = None
_job_store: JobStore | None = None
_job_manager: JobManager | None = None
_data_source: HistoricalDataSource | None = None
_database: Database | None = None
_dispatcher: LocalDispatcher | QueueDispatcher | None = None


def get_backtest_config() -> BacktestConfig:
    global _backtest_config

    if _backtest_config is None:
        _backtest_config = BacktestConfig()
    return _backtest_config


async def get_job_store() -> JobStore:
    """Job store selected by JOB_STORE_BACKEND."""
    global _job_store

    if _job_store is None:
        settings = get_settings()
        config = get_backtest_config()
        if settings.job_store_backend == "redis":
            store = RedisJobStore(job_ttl_seconds=config.job_ttl_seconds)
            await store.connect()
            _job_store = store
        else:
            _job_store = InMemoryJobStore(job_ttl_seconds=config.job_ttl_seconds)

    return _job_store


async def get_job_manager() -> JobManager:
    global _job_manager

    if _job_manager is None:
        _job_manager = JobManager(await get_job_store(), get_backtest_config())
    return _job_manager


async def get_data_source() -> HistoricalDataSource:
    """Historical source selected by DATA_SOURCE_BACKEND."""
    global _data_source, _database

    if _data_source is None:
        settings = get_settings()
        if settings.data_source_backend == "fixture":
            if not settings.data_fixture_path:
                raise RuntimeError("DATA_FIXTURE_PATH is required for the fixture backend")
            _data_source = InMemoryDataSource.from_fixture(settings.data_fixture_path)
        else:
            if _database is None:
                _database = Database()
                await _database.connect()
            _data_source = PostgresDataSource(_database)

    return _data_source


async def get_dispatcher() -> LocalDispatcher | QueueDispatcher:
    """Dispatcher selected by JOB_DISPATCH_MODE."""
    global _dispatcher

    if _dispatcher is None:
        settings = get_settings()
        if settings.job_dispatch_mode == "queue":
            _dispatcher = QueueDispatcher()
        else:
            runner = BacktestRunner(
                await get_job_manager(),
                await get_data_source(),
                get_backtest_config(),
            )
            _dispatcher = LocalDispatcher(runner, settings.max_concurrent_jobs)

    return _dispatcher


async def cleanup_dependencies() -> None:
    """Clean up global dependencies on shutdown."""
    global _backtest_config, _job_store, _job_manager, _data_source, _database, _dispatcher

    if _dispatcher is not None:
        await _dispatcher.shutdown()
        _dispatcher = None

    _job_manager = None

    if _job_store is not None:
        await _job_store.close()
        _job_store = None

    if _data_source is not None:
        await _data_source.close()
        _data_source = None

    if _database is not None:
        await _database.close()
        _database = None

    _backtest_config = None

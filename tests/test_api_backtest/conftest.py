"""Shared fixtures for backtest API tests."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from race_backtest.api.app import create_app
from race_backtest.api.auth import verify_api_key
from race_backtest.api.dependencies import (
    get_backtest_config,
    get_data_source,
    get_dispatcher,
    get_job_manager,
    get_job_store,
)
from race_backtest.backtest.config import BacktestConfig
from race_backtest.jobs.manager import JobManager
from race_backtest.jobs.store import InMemoryJobStore

CLIENT_ID = "client-a"


@pytest.fixture
def api_config() -> BacktestConfig:
    return BacktestConfig(slippage_enabled=False, initial_capital=1_000_000)


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def job_manager(job_store, api_config) -> JobManager:
    return JobManager(job_store, api_config)


@pytest.fixture
def mock_dispatcher():
    """Dispatcher that accepts jobs without running them."""
    dispatcher = AsyncMock()
    dispatcher.submit = AsyncMock()
    return dispatcher


@pytest.fixture
def run():
    """Run a coroutine to completion from a synchronous test."""
    return asyncio.run


@pytest.fixture
def app(job_store, job_manager, mock_dispatcher, race_source, api_config):
    """App with in-memory services and authentication bypassed."""
    app = create_app()

    async def _store():
        return job_store

    async def _manager():
        return job_manager

    async def _dispatcher():
        return mock_dispatcher

    async def _source():
        return race_source

    app.dependency_overrides[verify_api_key] = lambda: CLIENT_ID
    app.dependency_overrides[get_job_store] = _store
    app.dependency_overrides[get_job_manager] = _manager
    app.dependency_overrides[get_dispatcher] = _dispatcher
    app.dependency_overrides[get_data_source] = _source
    app.dependency_overrides[get_backtest_config] = lambda: api_config
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def submit_body(strategy_data) -> dict:
    return {
        "strategy": strategy_data,
        "start_date": "2024-03-02",
        "end_date": "2024-03-04",
        "seed": 11,
    }

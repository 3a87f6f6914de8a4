"""Fixtures for job store, manager and runner tests."""

from datetime import date

import pytest

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.schemas import DateRange
from race_backtest.jobs.manager import JobManager
from race_backtest.jobs.store import InMemoryJobStore


class FakeClock:
    """Manually advanced replacement for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def job_config() -> BacktestConfig:
    return BacktestConfig(
        slippage_enabled=False,
        initial_capital=1_000_000,
        result_ttl_seconds=3600,
        job_ttl_seconds=600,
    )


@pytest.fixture
def store(clock, job_config) -> InMemoryJobStore:
    return InMemoryJobStore(job_ttl_seconds=job_config.job_ttl_seconds, clock=clock)


@pytest.fixture
def manager(store, job_config) -> JobManager:
    return JobManager(store, job_config)


@pytest.fixture
def short_range() -> DateRange:
    return DateRange(start=date(2024, 3, 2), end=date(2024, 3, 4))

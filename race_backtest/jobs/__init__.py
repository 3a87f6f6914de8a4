"""Asynchronous backtest jobs: records, storage, state machine and dispatch."""

from race_backtest.jobs.errors import (
    InvalidDateRangeError,
    InvalidStatusTransitionError,
    JobAccessDeniedError,
    JobManagerError,
    JobNotFoundError,
    ResultExpiredError,
    ResultNotReadyError,
)
from race_backtest.jobs.manager import JobManager
from race_backtest.jobs.runner import BacktestRunner
from race_backtest.jobs.schemas import BacktestJob, BacktestRequest, JobError, JobErrorCode, JobStatus
from race_backtest.jobs.store import InMemoryJobStore, JobStore, RedisJobStore

__all__ = [
    "BacktestJob",
    "BacktestRequest",
    "BacktestRunner",
    "InMemoryJobStore",
    "InvalidDateRangeError",
    "InvalidStatusTransitionError",
    "JobAccessDeniedError",
    "JobError",
    "JobErrorCode",
    "JobManager",
    "JobManagerError",
    "JobNotFoundError",
    "JobStatus",
    "JobStore",
    "RedisJobStore",
    "ResultExpiredError",
    "ResultNotReadyError",
]

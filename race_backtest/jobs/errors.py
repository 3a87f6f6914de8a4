"""Exceptions raised by the job store and job manager."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from race_backtest.jobs.schemas import BacktestJob, JobStatus


class JobManagerError(Exception):
    """Base exception for job lifecycle errors."""

    code = "JOB_ERROR"


class JobNotFoundError(JobManagerError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobAccessDeniedError(JobManagerError):
    code = "FORBIDDEN"

    def __init__(self, job_id: str, client_id: str):
        super().__init__(f"Client {client_id} may not access job {job_id}")
        self.job_id = job_id
        self.client_id = client_id


class InvalidStatusTransitionError(JobManagerError):
    code = "INVALID_STATUS"

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus):
        super().__init__(
            f"Job {job_id} cannot move from {current.value} to {target.value}"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class ResultNotReadyError(JobManagerError):
    """The job exists but has no result yet (or never will)."""

    code = "RESULT_NOT_READY"

    def __init__(self, job: BacktestJob):
        super().__init__(f"Result for job {job.job_id} is not available ({job.status.value})")
        self.job = job


class ResultExpiredError(JobManagerError):
    """The result existed but its retention period has passed."""

    code = "RESULT_EXPIRED"

    def __init__(self, job_id: str):
        super().__init__(f"Result for job {job_id} has expired")
        self.job_id = job_id


class InvalidDateRangeError(JobManagerError):
    code = "INVALID_DATE_RANGE"

"""Backtest job records.

A ``BacktestJob`` is an immutable snapshot: every change produces a new
record via ``dataclasses.replace`` and the store swaps the whole record.
Progress percentage is derived from the processed/total pair held in the
same record, so readers never see the two disagree.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from race_backtest.backtest.schemas import DateRange
from race_backtest.strategy.schemas import StrategyDefinition


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# status -> statuses it may move to
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EVALUATION_ERROR = "EVALUATION_ERROR"
    DATA_NOT_FOUND = "DATA_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CANCELLED = "CANCELLED"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return f"bt_{uuid.uuid4().hex[:16]}"


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class JobError:
    """Failure payload stored on a job.

    ``retryable`` tells the caller whether resubmitting the same
    strategy may succeed (infrastructure fault) or not (invalid input).
    """

    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobError:
        return cls(
            code=data["code"],
            message=data["message"],
            retryable=bool(data.get("retryable", False)),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class BacktestRequest:
    """Everything needed to reproduce a run."""

    strategy: StrategyDefinition
    date_range: DateRange
    initial_capital: float
    seed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.model_dump(mode="json"),
            "date_range": self.date_range.to_dict(),
            "initial_capital": self.initial_capital,
            "seed": self.seed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BacktestRequest:
        return cls(
            strategy=StrategyDefinition.model_validate(data["strategy"]),
            date_range=DateRange(
                start=date.fromisoformat(data["date_range"]["start"]),
                end=date.fromisoformat(data["date_range"]["end"]),
            ),
            initial_capital=float(data["initial_capital"]),
            seed=int(data["seed"]),
        )


@dataclass(frozen=True)
class BacktestJob:
    """One asynchronous execution of a backtest."""

    job_id: str
    client_id: str
    request: BacktestRequest
    status: JobStatus = JobStatus.PENDING
    processed_races: int = 0
    total_races: int = 0
    progress_message: str | None = None
    error: JobError | None = None
    warnings: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> int:
        """Percentage complete, 0-100."""
        if self.status is JobStatus.COMPLETED:
            return 100
        if self.total_races <= 0:
            return 0
        return min(100, self.processed_races * 100 // self.total_races)

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "client_id": self.client_id,
            "request": self.request.to_dict(),
            "status": self.status.value,
            "processed_races": self.processed_races,
            "total_races": self.total_races,
            "progress_message": self.progress_message,
            "error": self.error.to_dict() if self.error else None,
            "warnings": list(self.warnings),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BacktestJob:
        return cls(
            job_id=data["job_id"],
            client_id=data["client_id"],
            request=BacktestRequest.from_dict(data["request"]),
            status=JobStatus(data["status"]),
            processed_races=int(data.get("processed_races", 0)),
            total_races=int(data.get("total_races", 0)),
            progress_message=data.get("progress_message"),
            error=JobError.from_dict(data["error"]) if data.get("error") else None,
            warnings=tuple(data.get("warnings") or ()),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data.get("updated_at")) or _dt(data["created_at"]),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
            version=int(data.get("version", 0)),
        )

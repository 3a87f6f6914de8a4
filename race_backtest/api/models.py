"""
Request and response models for the backtest API.
"""

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field, model_validator

from race_backtest.jobs.schemas import BacktestJob


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: Any = Field(
        ...,
        description="Error message, or an object with code/message/issues",
    )
    error_type: str | None = Field(
        default=None,
        description="Error category",
    )


class StrategyIssueItem(BaseModel):
    path: str
    code: str
    message: str
    position: int | None = None


class BacktestSubmitRequest(BaseModel):
    """Request model for submitting a backtest."""

    strategy: dict[str, Any] = Field(
        ...,
        description="Strategy definition (id, name, rules, bet_type, stake, filters)",
    )
    start_date: dt.date = Field(..., description="First simulated day (inclusive)")
    end_date: dt.date = Field(..., description="Last simulated day (inclusive)")
    initial_capital: float | None = Field(
        default=None,
        gt=0,
        le=1e12,
        description="Starting bankroll; server default when omitted",
    )
    seed: int | None = Field(
        default=None,
        ge=0,
        le=2**32 - 1,
        description="Slippage seed; drawn and reported when omitted",
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_date_range(cls, data: Any) -> Any:
        # Also accept {"date_range": {"start": ..., "end": ...}}
        if isinstance(data, dict) and isinstance(data.get("date_range"), dict):
            data = dict(data)
            date_range = data.pop("date_range")
            data.setdefault("start_date", date_range.get("start"))
            data.setdefault("end_date", date_range.get("end"))
        return data


class BacktestSubmitResponse(BaseModel):
    """Response model for an accepted submission (HTTP 202)."""

    job_id: str
    status: str
    status_url: str
    result_url: str
    estimated_duration_seconds: int = Field(
        ...,
        description="Rough execution time estimate",
    )
    seed: int = Field(..., description="Seed used for slippage draws")
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-fatal compile warnings (sparse fields, out-of-range thresholds)",
    )


class JobErrorItem(BaseModel):
    code: str
    message: str
    retryable: bool
    details: dict[str, Any] | None = None


class BacktestJobStatus(BaseModel):
    """Status of a single backtest job."""

    job_id: str
    status: str
    strategy_id: str
    strategy_name: str
    start_date: str
    end_date: str
    progress: int = Field(..., ge=0, le=100, description="Percent complete")
    processed_races: int
    total_races: int
    progress_message: str | None = None
    error: JobErrorItem | None = None
    warnings: list[str] = Field(default_factory=list)
    seed: int
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_job(cls, job: BacktestJob) -> "BacktestJobStatus":
        request = job.request
        return cls(
            job_id=job.job_id,
            status=job.status.value,
            strategy_id=request.strategy.id,
            strategy_name=request.strategy.name,
            start_date=request.date_range.start.isoformat(),
            end_date=request.date_range.end.isoformat(),
            progress=job.progress,
            processed_races=job.processed_races,
            total_races=job.total_races,
            progress_message=job.progress_message,
            error=JobErrorItem(**job.error.to_dict()) if job.error else None,
            warnings=list(job.warnings),
            seed=request.seed,
            created_at=job.created_at.isoformat(),
            started_at=job.started_at.isoformat() if job.started_at else None,
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
        )


class BacktestJobList(BaseModel):
    jobs: list[BacktestJobStatus]
    total: int
    latency_ms: float


class BacktestResultResponse(BaseModel):
    """Result of a backtest job.

    ``summary`` is present only for completed jobs; ``message`` explains
    why it is absent otherwise.
    """

    job_id: str
    status: str
    message: str | None = None
    summary: dict[str, Any] | None = None
    monthly: list[dict[str, Any]] | None = None
    execution: dict[str, Any] | None = None
    bets: list[dict[str, Any]] | None = None
    equity_curve: list[dict[str, Any]] | None = None
    disclaimer: dict[str, Any] | None = None


class ComponentHealth(BaseModel):
    """Health status of an individual infrastructure component."""

    status: str = Field(..., description="healthy or unhealthy")
    latency_ms: float | None = Field(default=None, description="Check latency")
    details: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="healthy or degraded")
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    running_jobs: int = Field(default=0, description="Jobs executing in this process")

"""Backtest job endpoints: submit, list, status, result and cancel."""

import time
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from race_backtest.api.auth import require_backtest_access
from race_backtest.api.dependencies import get_dispatcher, get_job_manager
from race_backtest.api.models import (
    BacktestJobList,
    BacktestJobStatus,
    BacktestResultResponse,
    BacktestSubmitRequest,
    BacktestSubmitResponse,
    ErrorResponse,
)
from race_backtest.backtest.disclaimer import build_disclaimer
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
from race_backtest.jobs.schemas import JobError, JobErrorCode, JobStatus
from race_backtest.jobs.worker import LocalDispatcher, QueueDispatcher
from race_backtest.observability.metrics import get_metrics
from race_backtest.strategy.errors import InvalidStrategyError
from race_backtest.strategy.validator import parse_strategy

logger = structlog.get_logger(__name__)
router = APIRouter()

_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Invalid API key"},
    403: {"model": ErrorResponse, "description": "Job belongs to another client or backtesting not enabled"},
    404: {"model": ErrorResponse, "description": "Job not found"},
    500: {"model": ErrorResponse, "description": "Server error"},
}

_PENDING_MESSAGES = {
    JobStatus.PENDING: "Job is waiting in queue",
    JobStatus.CANCELLED: "Job was cancelled",
}


def _http_error(e: JobManagerError) -> HTTPException:
    """Map a job manager exception to its HTTP status."""
    if isinstance(e, JobNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, JobAccessDeniedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, ResultExpiredError):
        code = status.HTTP_410_GONE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail={"code": e.code, "message": str(e)})


def _observe(route: str, start_time: float) -> float:
    latency = time.perf_counter() - start_time
    get_metrics().request_latency.labels(route=route).observe(latency)
    return round(latency * 1000, 2)


@router.post(
    "/v1/backtest",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=BacktestSubmitResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid strategy or date range"},
        **_ERROR_RESPONSES,
    },
    summary="Submit a backtest",
    description=(
        "Validate a strategy and queue a backtest over the given period. "
        "Returns immediately with a job id; poll the status URL for progress."
    ),
)
async def submit_backtest(
    body: BacktestSubmitRequest,
    client_id: str = Depends(require_backtest_access),
    manager: JobManager = Depends(get_job_manager),
    dispatcher: LocalDispatcher | QueueDispatcher = Depends(get_dispatcher),
) -> BacktestSubmitResponse:
    start_time = time.perf_counter()
    metrics = get_metrics()

    try:
        try:
            strategy = parse_strategy(body.strategy)
        except InvalidStrategyError:
            metrics.record_job_rejected("invalid_strategy")
            raise

        try:
            date_range = manager.build_date_range(body.start_date, body.end_date)
        except InvalidDateRangeError:
            metrics.record_job_rejected("invalid_date_range")
            raise

        job = await manager.create_job(
            strategy,
            date_range,
            client_id,
            initial_capital=body.initial_capital,
            seed=body.seed,
        )

        try:
            await dispatcher.submit(job.job_id)
        except Exception as e:
            logger.error(f"Failed to dispatch job {job.job_id}: {e}", exc_info=True)
            await manager.update_job_status(
                job.job_id,
                JobStatus.FAILED,
                error=JobError(
                    code=JobErrorCode.INTERNAL_ERROR.value,
                    message="Failed to dispatch job",
                    retryable=True,
                ),
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "DISPATCH_FAILED", "message": "Job queue unavailable"},
            )

        latency_ms = _observe("submit", start_time)
        logger.info(
            "Backtest submitted",
            job_id=job.job_id,
            client_id=client_id,
            strategy_id=strategy.id,
            latency_ms=latency_ms,
        )

        return BacktestSubmitResponse(
            job_id=job.job_id,
            status=job.status.value,
            status_url=f"/v1/backtest/{job.job_id}",
            result_url=f"/v1/backtest/{job.job_id}/result",
            estimated_duration_seconds=manager.estimate_duration(date_range),
            seed=job.request.seed,
            warnings=list(job.warnings),
        )

    except InvalidStrategyError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "VALIDATION_ERROR",
                "message": "Invalid strategy",
                "issues": [issue.to_dict() for issue in e.issues],
            },
        )
    except InvalidDateRangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Backtest submission failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Backtest submission failed: {str(e)}",
        )


@router.get(
    "/v1/backtest",
    response_model=BacktestJobList,
    responses=_ERROR_RESPONSES,
    summary="List backtest jobs",
    description="Jobs submitted by the calling client, newest first.",
)
async def list_backtests(
    status_filter: Literal["pending", "running", "completed", "failed", "cancelled"] | None = Query(
        default=None,
        alias="status",
        description="Filter by job status",
    ),
    limit: int = Query(default=50, ge=1, le=200, description="Maximum jobs to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    client_id: str = Depends(require_backtest_access),
    manager: JobManager = Depends(get_job_manager),
) -> BacktestJobList:
    start_time = time.perf_counter()

    jobs = await manager.list_jobs(
        client_id,
        status=JobStatus(status_filter) if status_filter else None,
        limit=limit,
        offset=offset,
    )
    items = [BacktestJobStatus.from_job(job) for job in jobs]

    return BacktestJobList(
        jobs=items,
        total=len(items),
        latency_ms=_observe("list", start_time),
    )


@router.get(
    "/v1/backtest/{job_id}",
    response_model=BacktestJobStatus,
    responses=_ERROR_RESPONSES,
    summary="Get backtest status",
)
async def get_backtest_status(
    job_id: str,
    client_id: str = Depends(require_backtest_access),
    manager: JobManager = Depends(get_job_manager),
) -> BacktestJobStatus:
    start_time = time.perf_counter()
    try:
        job = await manager.get_job(job_id, client_id)
    except JobManagerError as e:
        raise _http_error(e)

    _observe("status", start_time)
    return BacktestJobStatus.from_job(job)


@router.get(
    "/v1/backtest/{job_id}/result",
    response_model=BacktestResultResponse,
    responses={
        202: {"model": BacktestResultResponse, "description": "Job still pending or running"},
        410: {"model": ErrorResponse, "description": "Result expired"},
        **_ERROR_RESPONSES,
    },
    summary="Get backtest result",
    description=(
        "Summary statistics of a completed backtest. Pass bets=true and/or "
        "equity=true (or full=true) to include the bet ledger and equity curve."
    ),
)
async def get_backtest_result(
    job_id: str,
    bets: bool = Query(default=False, description="Include the bet ledger"),
    equity: bool = Query(default=False, description="Include the equity curve"),
    full: bool = Query(default=False, description="Include ledger and equity curve"),
    lang: Literal["ko", "en"] = Query(default="ko", description="Disclaimer language"),
    client_id: str = Depends(require_backtest_access),
    manager: JobManager = Depends(get_job_manager),
):
    start_time = time.perf_counter()

    try:
        payload = await manager.get_result(job_id, client_id)
    except ResultNotReadyError as e:
        job = e.job
        if job.status is JobStatus.RUNNING:
            message = f"Job is processing ({job.progress}%)"
        elif job.status is JobStatus.FAILED:
            message = f"Job failed: {job.error.message if job.error else 'Unknown error'}"
        else:
            message = _PENDING_MESSAGES.get(job.status, job.status.value)
        code = status.HTTP_200_OK if job.is_terminal else status.HTTP_202_ACCEPTED
        body = BacktestResultResponse(job_id=job.job_id, status=job.status.value, message=message)
        return JSONResponse(status_code=code, content=body.model_dump(exclude_none=True))
    except JobManagerError as e:
        raise _http_error(e)

    response = BacktestResultResponse(
        job_id=job_id,
        status=JobStatus.COMPLETED.value,
        summary=payload["summary"],
        monthly=payload.get("monthly"),
        execution=payload.get("execution"),
        bets=payload.get("bets") if (bets or full) else None,
        equity_curve=payload.get("equity_curve") if (equity or full) else None,
        disclaimer=build_disclaimer(
            slippage_applied=manager.config.slippage_enabled,
            language=lang,
        ).to_dict(),
    )

    logger.info(
        "Backtest result served",
        job_id=job_id,
        include_bets=bets or full,
        include_equity=equity or full,
        latency_ms=_observe("result", start_time),
    )
    return response


@router.delete(
    "/v1/backtest/{job_id}",
    response_model=BacktestJobStatus,
    responses={
        400: {"model": ErrorResponse, "description": "Job already finished"},
        **_ERROR_RESPONSES,
    },
    summary="Cancel a backtest",
)
async def cancel_backtest(
    job_id: str,
    client_id: str = Depends(require_backtest_access),
    manager: JobManager = Depends(get_job_manager),
) -> BacktestJobStatus:
    try:
        job = await manager.cancel_job(job_id, client_id)
    except InvalidStatusTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "INVALID_STATUS",
                "message": f"Job is already {e.current.value}",
            },
        )
    except JobManagerError as e:
        raise _http_error(e)

    logger.info("Backtest cancelled", job_id=job_id, client_id=client_id)
    return BacktestJobStatus.from_job(job)

"""
Backtest runner - executes one job from start to a terminal status.

Shared by the in-process dispatcher and the Redis Streams worker:
1. Moves the job from pending to running
2. Recompiles the stored strategy and runs the executor
3. Stores the result and marks the job completed, or records a failure

``run()`` never raises; every outcome is recorded on the job itself.
"""

import asyncio
import time

import structlog

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.data_source import HistoricalDataSource
from race_backtest.backtest.executor import BacktestCancelled, BacktestExecutor
from race_backtest.backtest.schemas import BacktestResult
from race_backtest.jobs.errors import InvalidStatusTransitionError
from race_backtest.jobs.manager import JobManager
from race_backtest.jobs.schemas import BacktestJob, JobError, JobErrorCode, JobStatus
from race_backtest.observability.metrics import get_metrics
from race_backtest.strategy.errors import EvaluationError, InvalidStrategyError
from race_backtest.strategy.validator import compile_strategy

logger = structlog.get_logger(__name__)


class BacktestRunner:
    """
    Runs backtest jobs against a historical data source.

    Usage:
        runner = BacktestRunner(manager, data_source)
        await runner.run(job.job_id)
    """

    def __init__(
        self,
        manager: JobManager,
        data_source: HistoricalDataSource,
        config: BacktestConfig | None = None,
        executor: BacktestExecutor | None = None,
    ):
        self._manager = manager
        self._data_source = data_source
        self._config = config or manager.config
        self._executor = executor or BacktestExecutor(self._config)

    async def run(self, job_id: str) -> BacktestJob | None:
        """
        Execute a job to completion.

        Returns:
            The job record after the run, or None if the job could not be
            started (unknown, or no longer pending).
        """
        with structlog.contextvars.bound_contextvars(job_id=job_id):
            try:
                job = await self._manager.start_job(job_id)
            except Exception as e:
                logger.error("Failed to start job", error=str(e))
                return None
            if job is None:
                return None

            metrics = get_metrics()
            metrics.jobs_running.inc()
            try:
                return await self._execute(job)
            except Exception as e:
                logger.exception("Unexpected error recording job outcome", error=str(e))
                return None
            finally:
                metrics.jobs_running.dec()

    async def _execute(self, job: BacktestJob) -> BacktestJob | None:
        request = job.request
        started = time.perf_counter()

        async def report_progress(processed: int, total: int, message: str) -> None:
            await self._manager.update_progress(job.job_id, processed, total, message)

        async def cancel_requested() -> bool:
            return await self._manager.is_cancel_requested(job.job_id)

        logger.info(
            "Backtest job started",
            strategy_id=request.strategy.id,
            start=request.date_range.start.isoformat(),
            end=request.date_range.end.isoformat(),
            seed=request.seed,
        )

        try:
            compiled = compile_strategy(request.strategy)
            result = await asyncio.wait_for(
                self._executor.execute(
                    compiled,
                    request.date_range,
                    self._data_source,
                    progress_sink=report_progress,
                    should_cancel=cancel_requested,
                    seed=request.seed,
                    initial_capital=request.initial_capital,
                ),
                timeout=self._config.job_timeout_seconds,
            )
        except BacktestCancelled as e:
            logger.info(
                "Backtest job cancelled",
                processed=e.processed,
                total=e.total,
            )
            return await self._manager.store.get(job.job_id)
        except InvalidStrategyError as e:
            return await self._fail(
                job,
                JobErrorCode.VALIDATION_ERROR,
                str(e),
                retryable=False,
                details={"issues": [issue.to_dict() for issue in e.issues]},
            )
        except EvaluationError as e:
            return await self._fail(
                job, JobErrorCode.EVALUATION_ERROR, str(e), retryable=False
            )
        except asyncio.TimeoutError:
            return await self._fail(
                job,
                JobErrorCode.TIMEOUT,
                f"Backtest exceeded {self._config.job_timeout_seconds:.0f}s",
                retryable=True,
            )
        except asyncio.CancelledError:
            await self._fail(
                job, JobErrorCode.INTERNAL_ERROR, "Worker shut down", retryable=True
            )
            raise
        except Exception as e:
            logger.exception("Backtest job crashed", error=str(e))
            return await self._fail(
                job, JobErrorCode.INTERNAL_ERROR, str(e), retryable=True
            )

        return await self._complete(job, result, time.perf_counter() - started)

    async def _complete(
        self, job: BacktestJob, result: BacktestResult, elapsed: float
    ) -> BacktestJob | None:
        try:
            done = await self._manager.update_job_status(
                job.job_id, JobStatus.COMPLETED, result=result
            )
        except InvalidStatusTransitionError as e:
            # Cancelled while the last races were settling.
            logger.info("Discarding result", reason=str(e))
            return await self._manager.store.get(job.job_id)

        logger.info(
            "Backtest job completed",
            bets=result.summary.total_bets,
            roi=result.summary.roi,
            duration_s=round(elapsed, 2),
        )
        return done

    async def _fail(
        self,
        job: BacktestJob,
        code: JobErrorCode,
        message: str,
        retryable: bool,
        details: dict | None = None,
    ) -> BacktestJob | None:
        logger.warning(
            "Backtest job failed",
            code=code.value,
            error=message,
            retryable=retryable,
        )
        try:
            return await self._manager.update_job_status(
                job.job_id,
                JobStatus.FAILED,
                error=JobError(
                    code=code.value,
                    message=message,
                    retryable=retryable,
                    details=details,
                ),
            )
        except InvalidStatusTransitionError as e:
            logger.info("Failure not recorded", reason=str(e))
            return await self._manager.store.get(job.job_id)

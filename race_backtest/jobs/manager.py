"""Job manager: the backtest job state machine and its access rules.

Jobs move ``pending -> running -> {completed, failed, cancelled}``, and a
pending job may also be cancelled or failed directly. Terminal states
are final. Every mutation goes through ``JobStore.update`` so concurrent
writers (a cancelling client and a finishing runner) cannot interleave
within a record.

Submission is all-or-nothing: the strategy is compiled and the date
range checked before a job record exists, so a rejected submission
leaves no trace in the store.
"""

import logging
import math
from dataclasses import replace
from datetime import date, datetime, timezone

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.schemas import BacktestResult, DateRange
from race_backtest.backtest.slippage import draw_seed
from race_backtest.jobs.errors import (
    InvalidDateRangeError,
    InvalidStatusTransitionError,
    JobAccessDeniedError,
    JobNotFoundError,
    ResultExpiredError,
    ResultNotReadyError,
)
from race_backtest.jobs.schemas import (
    BacktestJob,
    BacktestRequest,
    JobError,
    JobErrorCode,
    JobStatus,
    TERMINAL_STATUSES,
    new_job_id,
)
from race_backtest.jobs.store import JobStore
from race_backtest.observability.metrics import get_metrics
from race_backtest.strategy.errors import InvalidStrategyError
from race_backtest.strategy.schemas import StrategyDefinition
from race_backtest.strategy.validator import compile_strategy

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobManager:
    """
    Owns job creation, status transitions, cancellation and result access.

    Usage:
        manager = JobManager(InMemoryJobStore())
        job = await manager.create_job(strategy, date_range, client_id="acme")
        status = await manager.get_job(job.job_id, "acme")
    """

    def __init__(self, store: JobStore, config: BacktestConfig | None = None):
        self._store = store
        self._config = config or BacktestConfig()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def config(self) -> BacktestConfig:
        return self._config

    def build_date_range(self, start: date, end: date) -> DateRange:
        """Validate a requested period.

        Raises:
            InvalidDateRangeError: start is after end, or the period is
                longer than ``max_period_days``.
        """
        if start > end:
            raise InvalidDateRangeError(
                f"start_date {start.isoformat()} is after end_date {end.isoformat()}"
            )
        date_range = DateRange(start=start, end=end)
        if date_range.days > self._config.max_period_days:
            raise InvalidDateRangeError(
                f"Period of {date_range.days} days exceeds the maximum of "
                f"{self._config.max_period_days} days"
            )
        return date_range

    def estimate_duration(self, date_range: DateRange) -> int:
        """Rough wall-clock estimate in seconds, for the submit response."""
        races = date_range.days * self._config.estimated_races_per_day
        return max(1, math.ceil(races * self._config.estimated_ms_per_race / 1000))

    async def create_job(
        self,
        strategy: StrategyDefinition,
        date_range: DateRange,
        client_id: str,
        initial_capital: float | None = None,
        seed: int | None = None,
    ) -> BacktestJob:
        """
        Validate a submission and store a pending job.

        Args:
            strategy: Strategy to run.
            date_range: Inclusive period to simulate.
            client_id: Owner of the job.
            initial_capital: Starting bankroll (config default if None).
            seed: Slippage seed; drawn and recorded when None.

        Returns:
            The new pending job. Compile warnings are kept on the record.

        Raises:
            InvalidStrategyError: The strategy failed to compile.
            InvalidDateRangeError: The period is inverted or too long.
        """
        metrics = get_metrics()

        try:
            compiled = compile_strategy(strategy)
        except InvalidStrategyError:
            metrics.record_job_rejected("invalid_strategy")
            raise

        try:
            date_range = self.build_date_range(date_range.start, date_range.end)
        except InvalidDateRangeError:
            metrics.record_job_rejected("invalid_date_range")
            raise

        request = BacktestRequest(
            strategy=strategy,
            date_range=date_range,
            initial_capital=float(
                initial_capital if initial_capital is not None else self._config.initial_capital
            ),
            seed=seed if seed is not None else draw_seed(),
        )
        job = BacktestJob(
            job_id=new_job_id(),
            client_id=client_id,
            request=request,
            warnings=compiled.warnings,
        )
        await self._store.create(job)
        metrics.record_job_submitted()

        logger.info(
            f"Created job {job.job_id} for client={client_id} "
            f"strategy={strategy.id} range={date_range.start}..{date_range.end} "
            f"seed={request.seed}"
        )
        return job

    async def _require(self, job_id: str) -> BacktestJob:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_job(self, job_id: str, client_id: str) -> BacktestJob:
        """
        Fetch a job on behalf of a client.

        Raises:
            JobNotFoundError: Unknown or expired job.
            JobAccessDeniedError: The job belongs to another client.
        """
        job = await self._require(job_id)
        if job.client_id != client_id:
            raise JobAccessDeniedError(job_id, client_id)
        return job

    async def list_jobs(
        self,
        client_id: str,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BacktestJob]:
        return await self._store.list_for_client(client_id, status, limit, offset)

    async def start_job(self, job_id: str) -> BacktestJob | None:
        """Move a pending job to running.

        Returns:
            The running job, or None if the job is unknown or no longer
            pending (for example cancelled while queued).
        """
        started = False

        def apply(job: BacktestJob) -> BacktestJob:
            nonlocal started
            started = job.status is JobStatus.PENDING
            if not started:
                return job
            return replace(job, status=JobStatus.RUNNING, started_at=_now())

        job = await self._store.update(job_id, apply)
        if job is None:
            logger.warning(f"Cannot start job {job_id}: not found")
            return None
        if not started:
            logger.info(f"Not starting job {job_id}: status is {job.status.value}")
            return None
        logger.info(f"Job {job_id} running")
        return job

    async def update_progress(
        self,
        job_id: str,
        processed: int,
        total: int,
        message: str | None = None,
    ) -> None:
        """Record progress on a running job; ignored in any other state."""

        def apply(job: BacktestJob) -> BacktestJob:
            if job.status is not JobStatus.RUNNING:
                return job
            return replace(
                job,
                processed_races=processed,
                total_races=total,
                progress_message=message,
            )

        await self._store.update(job_id, apply)

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: JobError | None = None,
        result: BacktestResult | None = None,
    ) -> BacktestJob:
        """
        Apply a status transition. The only path into a terminal state.

        A result, when given, is stored before the transition so a reader
        that sees ``completed`` can always fetch it. If the transition is
        rejected the stored result is removed again.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidStatusTransitionError: Transition not allowed (e.g. the
                job is already terminal).
        """
        current = await self._require(job_id)
        if not current.can_transition_to(status):
            raise InvalidStatusTransitionError(job_id, current.status, status)

        if result is not None:
            await self._store.save_result(
                job_id,
                result.to_dict(include_bets=True, include_equity=True),
                self._config.result_ttl_seconds,
            )

        def apply(job: BacktestJob) -> BacktestJob:
            if not job.can_transition_to(status):
                raise InvalidStatusTransitionError(job_id, job.status, status)
            now = _now()
            changes: dict = {"status": status, "error": error}
            if status is JobStatus.RUNNING and job.started_at is None:
                changes["started_at"] = now
            if status in TERMINAL_STATUSES:
                changes["completed_at"] = now
            if status is JobStatus.COMPLETED and result is not None:
                changes["processed_races"] = result.execution.processed_races
                changes["total_races"] = result.execution.total_races
            return replace(job, **changes)

        try:
            updated = await self._store.update(job_id, apply)
        except InvalidStatusTransitionError as e:
            if result is not None and e.current is not JobStatus.COMPLETED:
                await self._store.delete_result(job_id)
            logger.warning(f"Rejected transition for job {job_id}: {e}")
            raise

        if updated is None:
            raise JobNotFoundError(job_id)

        if status in TERMINAL_STATUSES:
            self._record_finished(updated)
        logger.info(f"Job {job_id} -> {status.value}")
        return updated

    def _record_finished(self, job: BacktestJob) -> None:
        duration = None
        if job.started_at is not None and job.completed_at is not None:
            duration = (job.completed_at - job.started_at).total_seconds()
        get_metrics().record_job_finished(job.status.value, duration)

    async def cancel_job(self, job_id: str, requester_id: str) -> BacktestJob:
        """
        Cancel a pending or running job owned by ``requester_id``.

        A running job stops at its next cancellation check; the executor
        sees the cancelled status and abandons the run without a result.

        Raises:
            JobNotFoundError, JobAccessDeniedError,
            InvalidStatusTransitionError: The job is already terminal.
        """
        job = await self.get_job(job_id, requester_id)
        if job.is_terminal:
            raise InvalidStatusTransitionError(job_id, job.status, JobStatus.CANCELLED)

        cancelled = await self.update_job_status(
            job_id,
            JobStatus.CANCELLED,
            error=JobError(
                code=JobErrorCode.CANCELLED.value,
                message="Cancelled by client",
                retryable=False,
            ),
        )
        logger.info(f"Job {job_id} cancelled by {requester_id}")
        return cancelled

    async def is_cancel_requested(self, job_id: str) -> bool:
        job = await self._store.get(job_id)
        return job is None or job.status is JobStatus.CANCELLED

    async def get_result(self, job_id: str, client_id: str) -> dict:
        """
        Fetch the stored result payload for a completed job.

        Raises:
            JobNotFoundError, JobAccessDeniedError,
            ResultNotReadyError: Job is not completed; carries the job.
            ResultExpiredError: Retention period has passed.
        """
        job = await self.get_job(job_id, client_id)
        if job.status is not JobStatus.COMPLETED:
            raise ResultNotReadyError(job)

        payload = await self._store.get_result(job_id)
        if payload is None:
            # Completed with nothing stored: the marker itself has aged out.
            raise ResultExpiredError(job_id)
        return payload

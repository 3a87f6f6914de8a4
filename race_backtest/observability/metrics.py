"""
Prometheus metrics for the backtest service.

Defines and exposes metrics for:
- Job submissions and terminal outcomes
- Job execution duration
- Races processed per outcome (settled, skipped, error)
- Bets placed per bet type and outcome

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from race_backtest.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for job duration histograms (in seconds)
JOB_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0)

# Buckets for HTTP latency histograms (in seconds)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """
    Prometheus metrics collector for backtest jobs.

    Usage:
        metrics = get_metrics()
        metrics.record_job_submitted()
        metrics.record_job_finished("completed", duration=12.5)
    """

    def __init__(self):
        """Initialize Prometheus metrics."""

        self.jobs_submitted = Counter(
            "race_backtest_jobs_submitted_total",
            "Total number of backtest jobs accepted",
        )

        self.jobs_rejected = Counter(
            "race_backtest_jobs_rejected_total",
            "Total number of submissions rejected before a job was created",
            ["reason"],  # invalid_strategy, invalid_date_range
        )

        self.jobs_finished = Counter(
            "race_backtest_jobs_finished_total",
            "Total number of jobs reaching a terminal status",
            ["status"],  # completed, failed, cancelled
        )

        self.jobs_running = Gauge(
            "race_backtest_jobs_running",
            "Number of backtest jobs currently executing",
        )

        self.job_duration = Histogram(
            "race_backtest_job_duration_seconds",
            "Wall-clock duration of backtest executions",
            buckets=JOB_DURATION_BUCKETS,
        )

        self.races_processed = Counter(
            "race_backtest_races_processed_total",
            "Races visited by the executor",
            ["outcome"],  # evaluated, skipped, error
        )

        self.bets_placed = Counter(
            "race_backtest_bets_placed_total",
            "Simulated bets settled by the executor",
            ["bet_type", "outcome"],  # outcome: won, lost, refunded
        )

        self.request_latency = Histogram(
            "race_backtest_request_latency_seconds",
            "API request latency",
            ["route"],
            buckets=LATENCY_BUCKETS,
        )

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to expose metrics on (default from settings)
        """
        settings = get_settings()
        port = port or settings.metrics_port
        start_http_server(port, registry=REGISTRY)
        logger.info(f"Prometheus metrics server started on port {port}")

    def record_job_submitted(self) -> None:
        self.jobs_submitted.inc()

    def record_job_rejected(self, reason: str) -> None:
        self.jobs_rejected.labels(reason=reason).inc()

    def record_job_finished(self, status: str, duration: float | None = None) -> None:
        """
        Record a terminal job transition.

        Args:
            status: Terminal status (completed, failed, cancelled)
            duration: Execution time in seconds, when the job actually ran
        """
        self.jobs_finished.labels(status=status).inc()
        if duration is not None:
            self.job_duration.observe(duration)

    def record_races(self, evaluated: int, skipped: int, errors: int) -> None:
        """Record per-run race counters in one call."""
        if evaluated:
            self.races_processed.labels(outcome="evaluated").inc(evaluated)
        if skipped:
            self.races_processed.labels(outcome="skipped").inc(skipped)
        if errors:
            self.races_processed.labels(outcome="error").inc(errors)

    def record_bet(self, bet_type: str, outcome: str) -> None:
        self.bets_placed.labels(bet_type=bet_type, outcome=outcome).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics

"""Observability layer - logging and metrics."""

from race_backtest.observability.logging import setup_logging
from race_backtest.observability.metrics import MetricsCollector, get_metrics

__all__ = ["setup_logging", "MetricsCollector", "get_metrics"]

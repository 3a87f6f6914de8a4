"""Historical simulation of compiled strategies.

Components:
- BacktestConfig: capital, decision timing, slippage and retention settings
- HistoricalDataSource / InMemoryDataSource: race cards, odds snapshots, results
- SlippageModel: seeded decision-odds to realized-odds drift
- BacktestMetrics: summary statistics computed from the finished ledger
- BacktestResult and friends: ledger, equity curve, summary

The executor lives in ``race_backtest.backtest.executor`` and is not
re-exported here because it depends on the strategy package, which in
turn uses this package's context types.
"""

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.data_source import HistoricalDataSource, InMemoryDataSource
from race_backtest.backtest.disclaimer import build_disclaimer
from race_backtest.backtest.metrics import BacktestMetrics
from race_backtest.backtest.schemas import (
    BacktestResult,
    BacktestSummary,
    BetRecord,
    DateRange,
    EquityPoint,
    Race,
    SettledResult,
)
from race_backtest.backtest.slippage import SlippageModel

__all__ = [
    "BacktestConfig",
    "BacktestMetrics",
    "BacktestResult",
    "BacktestSummary",
    "BetRecord",
    "DateRange",
    "EquityPoint",
    "HistoricalDataSource",
    "InMemoryDataSource",
    "Race",
    "SettledResult",
    "SlippageModel",
    "build_disclaimer",
]

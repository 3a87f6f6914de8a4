"""Storage layer for the historical race database."""

from race_backtest.storage.database import Database

__all__ = ["Database"]

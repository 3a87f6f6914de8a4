"""Strategy backtesting for pari-mutuel race betting."""

__version__ = "0.1.0"

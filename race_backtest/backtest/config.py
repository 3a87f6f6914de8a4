"""Backtest service configuration.

Controls simulated capital, settlement rules, slippage, cancellation
granularity and job retention. All settings can be overridden via
``BACKTEST_*`` environment variables.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestConfig(BaseSettings):
    """Configuration for backtest execution and job retention."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        case_sensitive=False,
        extra="ignore",
    )

    # Capital
    initial_capital: float = Field(
        default=1_000_000,
        gt=0,
        description="Starting bankroll when the request does not set one",
    )

    # Decision timing and settlement
    decision_minutes_before_post: int = Field(
        default=5,
        ge=0,
        le=120,
        description="Odds snapshot is taken this many minutes before post time",
    )
    place_positions: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Finishing positions that pay on a place bet",
    )
    max_period_days: int = Field(
        default=365,
        ge=1,
        le=3660,
        description="Longest accepted backtest date range",
    )

    # Slippage
    slippage_enabled: bool = Field(
        default=True,
        description="Model drift between decision-time and realized odds",
    )
    slippage_min_percent: float = Field(
        default=-5.0,
        ge=-50.0,
        le=0.0,
        description="Lowest odds variance in percent",
    )
    slippage_max_percent: float = Field(
        default=5.0,
        ge=0.0,
        le=50.0,
        description="Highest odds variance in percent",
    )
    slippage_distribution: Literal["gaussian", "uniform"] = Field(
        default="gaussian",
        description="Distribution of the odds variance",
    )
    slippage_horizon_minutes: float = Field(
        default=30.0,
        gt=0,
        le=1440,
        description="Minutes-to-post at which drift reaches its full range",
    )
    odds_floor: float = Field(
        default=1.0,
        ge=1.0,
        le=10.0,
        description="Realized odds never drop below this value",
    )

    # Execution
    cancellation_granularity: Literal["day", "race"] = Field(
        default="day",
        description="How often a running backtest checks for cancellation",
    )
    estimated_races_per_day: int = Field(
        default=12,
        ge=1,
        description="Used for the duration estimate returned at submission",
    )
    estimated_ms_per_race: int = Field(
        default=50,
        ge=1,
        description="Used for the duration estimate returned at submission",
    )
    job_timeout_seconds: float = Field(
        default=1800.0,
        ge=1.0,
        le=86400.0,
        description="Wall-clock limit for a single backtest execution",
    )

    # Retention
    job_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="How long job records are kept",
    )
    result_ttl_seconds: int = Field(
        default=30 * 24 * 3600,
        ge=60,
        description="How long completed results stay retrievable",
    )

    @model_validator(mode="after")
    def _check_slippage_range(self) -> "BacktestConfig":
        if self.slippage_min_percent > self.slippage_max_percent:
            raise ValueError("slippage_min_percent must not exceed slippage_max_percent")
        return self

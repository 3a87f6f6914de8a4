"""Strategy definition models.

A strategy is submitted as JSON (or YAML from the CLI) and validated
with pydantic. All models are frozen: a definition never changes once a
backtest run has started.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from race_backtest.strategy.fields import VALID_RACE_TYPES

MAX_RULES = 10
DEFAULT_STAKE_AMOUNT = 10_000


class BetType(str, Enum):
    WIN = "win"
    PLACE = "place"


class Comparator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    BETWEEN = "between"
    IN = "in"


COMPARATOR_SYMBOLS: dict[Comparator, str] = {
    Comparator.EQ: "==",
    Comparator.NE: "!=",
    Comparator.GT: ">",
    Comparator.GTE: ">=",
    Comparator.LT: "<",
    Comparator.LTE: "<=",
}

RuleValue = float | bool | str | list[float | bool | str]


class ConditionRule(BaseModel):
    """One qualification rule.

    Three shapes are accepted:

    - ``field`` + ``operator`` + ``value``: compare a declared variable,
      e.g. ``{"field": "odds_win", "operator": "gte", "value": 5}``.
    - ``formula`` + ``operator`` + ``value``: compare a computed score
      against a threshold.
    - ``formula`` alone: a boolean expression.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str | None = None
    formula: str | None = None
    operator: Comparator | None = None
    value: RuleValue | None = None
    description: str | None = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_shape(self) -> "ConditionRule":
        if self.field and self.formula:
            raise ValueError("rule takes either 'field' or 'formula', not both")
        if not self.field and not self.formula:
            raise ValueError("rule needs a 'field' or a 'formula'")
        if self.field and self.operator is None:
            raise ValueError("field rules need an 'operator'")
        if self.operator is None:
            if self.value is not None:
                raise ValueError("'value' given without an 'operator'")
            return self
        if self.value is None:
            raise ValueError(f"operator '{self.operator.value}' needs a 'value'")

        if self.operator is Comparator.BETWEEN:
            if not isinstance(self.value, list) or len(self.value) != 2:
                raise ValueError("'between' needs a [min, max] list")
            low, high = self.value
            if any(isinstance(v, (bool, str)) for v in (low, high)):
                raise ValueError("'between' bounds must be numbers")
            if low > high:
                raise ValueError("'between' min must not exceed max")
        elif self.operator is Comparator.IN:
            if not isinstance(self.value, list) or not self.value:
                raise ValueError("'in' needs a non-empty list")
        elif isinstance(self.value, list):
            raise ValueError(f"operator '{self.operator.value}' needs a single value")
        return self


class StakePolicy(BaseModel):
    """Bet sizing policy.

    - ``fixed``: ``amount`` per bet.
    - ``percent_of_capital``: ``floor(capital * percent / 100)``.
    - ``kelly``: ``kelly_fraction`` of the Kelly stake for the win
      probability given by ``probability_formula``, capped at
      ``max_fraction`` of capital. Without a formula the stake is
      ``floor(capital * max_fraction)``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["fixed", "percent_of_capital", "kelly"] = "fixed"
    amount: float = Field(default=DEFAULT_STAKE_AMOUNT, gt=0)
    percent: float | None = Field(default=None, gt=0, le=100)
    kelly_fraction: float = Field(default=0.5, gt=0, le=1)
    max_fraction: float = Field(default=0.02, gt=0, le=1)
    probability_formula: str | None = None
    min_stake: float = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _check_kind(self) -> "StakePolicy":
        if self.kind == "percent_of_capital" and self.percent is None:
            raise ValueError("percent_of_capital sizing needs 'percent'")
        if self.probability_formula is not None and self.kind != "kelly":
            raise ValueError("'probability_formula' only applies to kelly sizing")
        return self


class EntryFilters(BaseModel):
    """Race-level filters applied before any entrant is evaluated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tracks: tuple[str, ...] | None = None
    race_types: tuple[str, ...] | None = None
    grades: tuple[str, ...] | None = None
    min_entries: int | None = Field(default=None, ge=2, le=20)
    max_entries: int | None = Field(default=None, ge=2, le=30)

    @field_validator("race_types")
    @classmethod
    def _check_race_types(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is not None:
            invalid = set(v) - VALID_RACE_TYPES
            if invalid:
                raise ValueError(
                    f"Invalid race types {sorted(invalid)}. "
                    f"Must be one of: {sorted(VALID_RACE_TYPES)}"
                )
        return v

    @model_validator(mode="after")
    def _check_bounds(self) -> "EntryFilters":
        if (
            self.min_entries is not None
            and self.max_entries is not None
            and self.min_entries > self.max_entries
        ):
            raise ValueError("min_entries must not exceed max_entries")
        return self


class StrategyDefinition(BaseModel):
    """A complete, immutable betting strategy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    version: str = "1.0.0"
    rules: tuple[ConditionRule, ...] = Field(min_length=1, max_length=MAX_RULES)
    bet_type: BetType = BetType.WIN
    stake: StakePolicy = Field(default_factory=StakePolicy)
    filters: EntryFilters | None = None

"""Strategy evaluation: one race in, zero or more bet decisions out.

Decisions are a pure function of the compiled strategy, the race
snapshot and the capital it is told about. The evaluator never touches
the data source, the clock or a random generator, so replaying a race
always gives the same decisions.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from race_backtest.backtest.schemas import EntryContext, RaceContext
from race_backtest.strategy.formula import evaluate
from race_backtest.strategy.schemas import BetType, StakePolicy
from race_backtest.strategy.validator import CompiledStrategy

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BetDecision:
    """A wager the strategy wants to place."""

    race_id: str
    entry_no: int
    bet_type: BetType
    stake: float
    decision_odds: float


def compute_stake(
    policy: StakePolicy,
    capital: float,
    odds: float,
    probability: float | None = None,
) -> float:
    """Size one bet from the policy and the current capital.

    Returns 0 when the policy declines to bet. Stakes are whole
    currency units.
    """
    if policy.kind == "fixed":
        return float(math.floor(policy.amount))

    if capital <= 0:
        return 0.0

    if policy.kind == "percent_of_capital":
        return float(math.floor(capital * policy.percent / 100))

    # kelly
    if probability is None:
        return float(math.floor(capital * policy.max_fraction))
    b = odds - 1.0
    if b <= 0:
        return 0.0
    p = min(max(probability, 0.0), 1.0)
    kelly = (b * p - (1.0 - p)) / b
    if kelly <= 0:
        return 0.0
    fraction = min(kelly * policy.kelly_fraction, policy.max_fraction)
    return float(math.floor(capital * fraction))


class StrategyEvaluator:
    """Evaluate a compiled strategy race by race.

    Usage:
        evaluator = StrategyEvaluator(compile_strategy(definition))
        decisions = evaluator.evaluate_race(race_ctx, entries, capital=1_000_000)
    """

    def __init__(self, strategy: CompiledStrategy):
        self._strategy = strategy
        self._definition = strategy.definition
        self._variables = strategy.variables
        # Entrants passed over because a referenced value was missing.
        self.missing_data = 0

    @property
    def strategy(self) -> CompiledStrategy:
        return self._strategy

    def passes_filters(self, race: RaceContext, entry_count: int) -> bool:
        """Cheap race-level prune applied before any entrant is bound."""
        filters = self._definition.filters
        if filters is None:
            return True
        if filters.tracks and race.track not in filters.tracks:
            return False
        if filters.race_types and race.race_type not in filters.race_types:
            return False
        if filters.grades and race.grade not in filters.grades:
            return False
        if filters.min_entries is not None and entry_count < filters.min_entries:
            return False
        if filters.max_entries is not None and entry_count > filters.max_entries:
            return False
        return True

    def evaluate_race(
        self,
        race: RaceContext,
        entries: Sequence[EntryContext],
        capital: float,
    ) -> list[BetDecision]:
        """Decide which entrants to bet on.

        An entrant qualifies when every rule evaluates true. Entrants
        missing a referenced value or the price for the bet type are
        passed over. Stakes use ``capital`` as given.

        Returns:
            Decisions ordered by ascending entrant number.

        Raises:
            EvaluationError: A formula failed at runtime.
        """
        if not self.passes_filters(race, len(entries)):
            return []

        bet_type = self._definition.bet_type
        policy = self._definition.stake
        race_bindings = race.bindings(entry_count=len(entries))
        decisions: list[BetDecision] = []

        for entry in sorted(entries, key=lambda e: e.entry_no):
            odds = entry.odds_for(bet_type.value)
            if odds is None or odds <= 0:
                continue

            bindings = {**race_bindings, **entry.bindings()}
            missing = sorted(name for name in self._variables if bindings.get(name) is None)
            if missing:
                self.missing_data += 1
                logger.debug(
                    "Entrant skipped, missing values",
                    race_id=race.race_id,
                    entry_no=entry.entry_no,
                    missing=missing,
                )
                continue

            if not all(evaluate(rule.ast, bindings) for rule in self._strategy.rules):
                continue

            probability = None
            if self._strategy.probability is not None:
                probability = float(evaluate(self._strategy.probability, bindings))

            stake = compute_stake(policy, capital, odds, probability)
            if stake <= 0 or stake < policy.min_stake:
                continue

            decisions.append(
                BetDecision(
                    race_id=race.race_id,
                    entry_no=entry.entry_no,
                    bet_type=bet_type,
                    stake=stake,
                    decision_odds=odds,
                )
            )

        return decisions


def evaluate_race(
    strategy: CompiledStrategy,
    race: RaceContext,
    entries: Sequence[EntryContext],
    capital: float,
) -> list[BetDecision]:
    """Functional form of ``StrategyEvaluator.evaluate_race``."""
    return StrategyEvaluator(strategy).evaluate_race(race, entries, capital)

"""Tests for per-race strategy evaluation and bet sizing."""

from datetime import date, datetime, timezone

import pytest

from race_backtest.backtest.schemas import EntryContext, RaceContext
from race_backtest.strategy.errors import EvaluationError
from race_backtest.strategy.evaluator import StrategyEvaluator, compute_stake, evaluate_race
from race_backtest.strategy.schemas import BetType, StakePolicy, StrategyDefinition
from race_backtest.strategy.validator import compile_strategy


@pytest.fixture
def race_ctx() -> RaceContext:
    return RaceContext(
        race_id="seoul_20240302_01",
        race_date=date(2024, 3, 2),
        race_no=1,
        track="seoul",
        race_type="horse",
        post_time=datetime(2024, 3, 2, 11, 0, tzinfo=timezone.utc),
        distance=1200,
        grade="G3",
        pool_total=50_000_000,
    )


@pytest.fixture
def entries() -> list[EntryContext]:
    # Deliberately out of entry order
    return [
        EntryContext(entry_no=7, odds_win=6.0, odds_place=2.1, popularity_rank=3, pool_win_pct=12.0),
        EntryContext(entry_no=2, odds_win=4.5, odds_place=1.8, popularity_rank=2, pool_win_pct=18.0),
        EntryContext(entry_no=1, odds_win=1.9, odds_place=1.1, popularity_rank=1, pool_win_pct=45.0),
        EntryContext(entry_no=5, odds_win=8.0, odds_place=None, popularity_rank=None),
    ]


def _compile(rules, **kwargs):
    return compile_strategy(
        StrategyDefinition.model_validate({"id": "s", "name": "n", "rules": rules, **kwargs})
    )


# ── compute_stake ───────────────────────────────────────────


class TestComputeStake:
    def test_fixed_is_floored(self):
        policy = StakePolicy(kind="fixed", amount=10_000.7)
        assert compute_stake(policy, capital=1_000_000, odds=3.0) == 10_000.0

    def test_fixed_ignores_capital(self):
        policy = StakePolicy(kind="fixed", amount=5_000)
        assert compute_stake(policy, capital=0, odds=3.0) == 5_000.0

    def test_percent_of_capital(self):
        policy = StakePolicy(kind="percent_of_capital", percent=2)
        assert compute_stake(policy, capital=123_456, odds=3.0) == 2_469.0

    def test_percent_with_no_capital(self):
        policy = StakePolicy(kind="percent_of_capital", percent=2)
        assert compute_stake(policy, capital=-10, odds=3.0) == 0.0

    def test_kelly_capped_at_max_fraction(self):
        # b=2, p=0.5 -> full Kelly 0.25, half Kelly 0.125, cap 0.02
        policy = StakePolicy(kind="kelly", kelly_fraction=0.5, max_fraction=0.02)
        assert compute_stake(policy, capital=1_000_000, odds=3.0, probability=0.5) == 20_000.0

    def test_kelly_below_cap(self):
        # b=1, p=0.51 -> full Kelly 0.02, half Kelly 0.01
        policy = StakePolicy(kind="kelly", kelly_fraction=0.5, max_fraction=0.05)
        assert compute_stake(policy, capital=1_000_000, odds=2.0, probability=0.51) == pytest.approx(10_000.0, abs=1)

    def test_kelly_negative_edge(self):
        policy = StakePolicy(kind="kelly")
        assert compute_stake(policy, capital=1_000_000, odds=3.0, probability=0.2) == 0.0

    def test_kelly_without_probability(self):
        policy = StakePolicy(kind="kelly", max_fraction=0.01)
        assert compute_stake(policy, capital=1_000_000, odds=3.0) == 10_000.0


# ── StrategyEvaluator ───────────────────────────────────────


class TestEvaluateRace:
    def test_decisions_ordered_by_entry(self, race_ctx, entries):
        compiled = _compile([{"field": "odds_win", "operator": "gte", "value": 4}])
        decisions = StrategyEvaluator(compiled).evaluate_race(race_ctx, entries, capital=1_000_000)
        assert [d.entry_no for d in decisions] == [2, 5, 7]
        assert all(d.stake == 10_000 for d in decisions)
        assert decisions[0].decision_odds == 4.5
        assert decisions[0].race_id == "seoul_20240302_01"

    def test_all_rules_must_pass(self, race_ctx, entries, compiled):
        decisions = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        assert [d.entry_no for d in decisions] == [2, 7]

    def test_missing_variable_skips_entry(self, race_ctx, entries):
        compiled = _compile([{"formula": "popularity_rank >= 1"}])
        decisions = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        assert 5 not in [d.entry_no for d in decisions]
        assert len(decisions) == 3

    def test_missing_variable_counted(self, race_ctx, entries):
        evaluator = StrategyEvaluator(_compile([{"formula": "popularity_rank >= 1"}]))
        evaluator.evaluate_race(race_ctx, entries, capital=1_000_000)
        evaluator.evaluate_race(race_ctx, entries, capital=1_000_000)
        assert evaluator.missing_data == 2

    def test_place_bet_uses_place_odds(self, race_ctx, entries):
        compiled = _compile(
            [{"field": "odds_win", "operator": "gte", "value": 4}],
            bet_type="place",
        )
        decisions = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        # #5 has no place price
        assert [(d.entry_no, d.decision_odds) for d in decisions] == [(2, 1.8), (7, 2.1)]
        assert decisions[0].bet_type is BetType.PLACE

    def test_race_bindings_available(self, race_ctx, entries):
        compiled = _compile([{"formula": "track == 'seoul' and entry_count == 4 and odds_win < 2"}])
        decisions = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        assert [d.entry_no for d in decisions] == [1]

    def test_track_filter(self, race_ctx, entries):
        compiled = _compile(
            [{"field": "odds_win", "operator": "gte", "value": 1}],
            filters={"tracks": ["busan"]},
        )
        assert evaluate_race(compiled, race_ctx, entries, capital=1_000_000) == []

    def test_entry_count_filter(self, race_ctx, entries):
        compiled = _compile(
            [{"field": "odds_win", "operator": "gte", "value": 1}],
            filters={"min_entries": 8},
        )
        evaluator = StrategyEvaluator(compiled)
        assert evaluator.passes_filters(race_ctx, len(entries)) is False
        assert evaluator.evaluate_race(race_ctx, entries, capital=1_000_000) == []

    def test_stake_below_minimum_skipped(self, race_ctx, entries):
        compiled = _compile(
            [{"field": "odds_win", "operator": "gte", "value": 4}],
            stake={"kind": "percent_of_capital", "percent": 0.001, "min_stake": 100},
        )
        assert evaluate_race(compiled, race_ctx, entries, capital=1_000_000) == []

    def test_sizing_uses_given_capital(self, race_ctx, entries):
        compiled = _compile(
            [{"field": "odds_win", "operator": "gte", "value": 4}],
            stake={"kind": "percent_of_capital", "percent": 1},
        )
        decisions = evaluate_race(compiled, race_ctx, entries, capital=500_000)
        assert {d.stake for d in decisions} == {5_000.0}

    def test_evaluation_error_propagates(self, race_ctx, entries):
        compiled = _compile([{"formula": "odds_win / (popularity_rank - 1) > 2"}])
        with pytest.raises(EvaluationError, match="Division by zero"):
            evaluate_race(compiled, race_ctx, entries, capital=1_000_000)

    def test_pure_function(self, race_ctx, entries, compiled):
        first = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        second = evaluate_race(compiled, race_ctx, entries, capital=1_000_000)
        assert first == second

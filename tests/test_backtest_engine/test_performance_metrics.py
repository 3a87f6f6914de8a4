"""Tests for BacktestMetrics: all synchronous, built from hand-made ledgers.

Covers totals and ROI, refund handling, drawdown, Sharpe, profit
factor, streaks and the monthly breakdown.
"""

from datetime import date, datetime, timezone

import pytest

from race_backtest.backtest.metrics import BacktestMetrics
from race_backtest.backtest.schemas import BetRecord, EquityPoint


def _bet(outcome: str, stake: float = 10_000, odds: float = 4.0, day: date = date(2024, 1, 5)) -> BetRecord:
    payout = {"won": float(int(stake * odds)), "lost": 0.0, "refunded": stake}[outcome]
    return BetRecord(
        race_id=f"r_{day.isoformat()}",
        race_date=day,
        track="seoul",
        race_no=1,
        entry_no=3,
        bet_type="win",
        stake=stake,
        decision_odds=odds,
        realized_odds=odds,
        outcome=outcome,
        payout=payout,
        placed_at=datetime(day.year, day.month, day.day, 10, 55, tzinfo=timezone.utc),
    )


def _curve(*capitals: float) -> list[EquityPoint]:
    return [
        EquityPoint(date=date(2024, 1, i + 1), capital=c, drawdown_pct=0.0)
        for i, c in enumerate(capitals)
    ]


# ── compute ─────────────────────────────────────────────────


class TestCompute:
    def test_totals(self):
        bets = [_bet("won", odds=4.0), _bet("lost"), _bet("lost")]
        summary, _ = BacktestMetrics.compute(bets, _curve(1_010_000), 1_000_000, total_races=5, matched_races=3)

        assert summary.total_races == 5
        assert summary.matched_races == 3
        assert summary.total_bets == 3
        assert summary.wins == 1
        assert summary.losses == 2
        assert summary.win_rate == pytest.approx(33.33)
        assert summary.total_staked == 30_000
        assert summary.total_payout == 40_000
        assert summary.total_profit == 10_000
        assert summary.roi == pytest.approx(33.33)
        assert summary.expected_value == pytest.approx(3_333.33)
        assert summary.final_capital == 1_010_000
        assert summary.capital_return == 1.0
        assert summary.avg_odds == 4.0
        assert summary.avg_stake == 10_000

    def test_refunds_excluded_from_totals(self):
        bets = [_bet("won", odds=2.0), _bet("refunded")]
        summary, monthly = BacktestMetrics.compute(bets, _curve(1_010_000), 1_000_000)
        assert summary.total_bets == 1
        assert summary.refunds == 1
        assert summary.total_staked == 10_000
        assert summary.win_rate == 100.0
        assert monthly[0].bets == 1

    def test_empty_ledger(self):
        summary, monthly = BacktestMetrics.compute([], [], 500_000)
        assert summary.total_bets == 0
        assert summary.roi == 0.0
        assert summary.win_rate == 0.0
        assert summary.final_capital == 500_000
        assert summary.capital_return == 0.0
        assert summary.max_drawdown == 0.0
        assert summary.sharpe_ratio is None
        assert summary.profit_factor is None
        assert monthly == []


# ── drawdown ────────────────────────────────────────────────


class TestDrawdown:
    def test_max_drawdown_includes_initial_peak(self):
        assert BacktestMetrics._max_drawdown(1_000, [900, 1_100, 880]) == pytest.approx(20.0)

    def test_first_day_loss(self):
        assert BacktestMetrics._max_drawdown(1_000, [750]) == pytest.approx(25.0)

    def test_monotonic_gain(self):
        assert BacktestMetrics._max_drawdown(1_000, [1_100, 1_200]) == 0.0

    def test_drawdown_pct(self):
        assert BacktestMetrics.drawdown_pct(900, 1_000) == 10.0
        assert BacktestMetrics.drawdown_pct(1_100, 1_000) == 0.0
        assert BacktestMetrics.drawdown_pct(0, 0) == 0.0


# ── sharpe / profit factor ──────────────────────────────────


class TestRatios:
    def test_sharpe_needs_two_returns(self):
        assert BacktestMetrics._sharpe_ratio(1_000, [1_100]) is None

    def test_sharpe_sign(self):
        assert BacktestMetrics._sharpe_ratio(1_000, [1_100, 1_050, 1_200]) > 0
        assert BacktestMetrics._sharpe_ratio(1_000, [900, 950, 800]) < 0

    def test_profit_factor(self):
        won = [_bet("won", odds=3.0)]          # +20,000
        lost = [_bet("lost"), _bet("lost")]    # -20,000
        assert BacktestMetrics._profit_factor(won, lost) == 1.0

    def test_profit_factor_without_losses(self):
        assert BacktestMetrics._profit_factor([_bet("won")], []) is None

    def test_avg_win_loss_ratio(self):
        won = [_bet("won", odds=4.0)]          # +30,000
        lost = [_bet("lost", stake=15_000)]    # -15,000
        assert BacktestMetrics._avg_win_loss_ratio(won, lost) == 2.0


# ── streaks / monthly ───────────────────────────────────────


class TestStreaksAndMonthly:
    def test_streaks(self):
        outcomes = ["won", "lost", "lost", "won", "won", "won", "lost"]
        assert BacktestMetrics._streaks([_bet(o) for o in outcomes]) == (3, 2)

    def test_monthly_sorted(self):
        bets = [
            _bet("won", odds=3.0, day=date(2024, 2, 10)),
            _bet("lost", day=date(2024, 1, 20)),
            _bet("lost", day=date(2024, 2, 11)),
        ]
        monthly = BacktestMetrics._monthly(bets)
        assert [m.month for m in monthly] == ["2024-01", "2024-02"]
        assert monthly[0].profit == -10_000
        assert monthly[0].roi == -100.0
        assert monthly[1].bets == 2
        assert monthly[1].wins == 1
        assert monthly[1].profit == 10_000
        assert monthly[1].roi == 50.0

"""Backtest performance metrics computation.

Stateless service: all methods are static and operate on the complete
bet ledger and equity curve once a run has finished. Nothing here is
updated incrementally during the run, so long runs do not accumulate
floating-point drift in the summary.
"""

from __future__ import annotations

import math
from collections import defaultdict

import numpy as np

from race_backtest.backtest.schemas import BacktestSummary, BetRecord, EquityPoint, MonthlyReturn

# Trading-day convention for annualising the daily Sharpe ratio.
ANNUALISATION_DAYS = 252


def _r2(value: float) -> float:
    return round(float(value), 2)


class BacktestMetrics:
    """Stateless computation of betting performance metrics."""

    @staticmethod
    def compute(
        bets: list[BetRecord],
        equity_curve: list[EquityPoint],
        initial_capital: float,
        total_races: int = 0,
        matched_races: int = 0,
    ) -> tuple[BacktestSummary, list[MonthlyReturn]]:
        """Build the run summary and the monthly breakdown.

        Args:
            bets: Complete ledger in settlement order.
            equity_curve: One point per day with a settled bet.
            initial_capital: Starting bankroll.
            total_races: Races visited by the executor.
            matched_races: Races in which at least one bet was placed.

        Returns:
            (summary, monthly returns sorted by month)
        """
        settled = [b for b in bets if b.outcome != "refunded"]
        won = [b for b in settled if b.outcome == "won"]
        lost = [b for b in settled if b.outcome == "lost"]

        total_staked = sum(b.stake for b in settled)
        total_payout = sum(b.payout for b in settled)
        total_profit = total_payout - total_staked

        capitals = [p.capital for p in equity_curve]
        final_capital = capitals[-1] if capitals else initial_capital
        win_streak, lose_streak = BacktestMetrics._streaks(settled)

        summary = BacktestSummary(
            total_races=total_races,
            matched_races=matched_races,
            total_bets=len(settled),
            wins=len(won),
            losses=len(lost),
            refunds=len(bets) - len(settled),
            win_rate=_r2(len(won) / len(settled) * 100) if settled else 0.0,
            total_staked=_r2(total_staked),
            total_payout=_r2(total_payout),
            total_profit=_r2(total_profit),
            roi=_r2(total_profit / total_staked * 100) if total_staked else 0.0,
            max_drawdown=_r2(BacktestMetrics._max_drawdown(initial_capital, capitals)),
            sharpe_ratio=BacktestMetrics._sharpe_ratio(initial_capital, capitals),
            profit_factor=BacktestMetrics._profit_factor(won, lost),
            avg_win_loss_ratio=BacktestMetrics._avg_win_loss_ratio(won, lost),
            expected_value=_r2(total_profit / len(settled)) if settled else 0.0,
            initial_capital=_r2(initial_capital),
            final_capital=_r2(final_capital),
            capital_return=(
                _r2((final_capital - initial_capital) / initial_capital * 100)
                if initial_capital
                else 0.0
            ),
            avg_odds=_r2(np.mean([b.realized_odds for b in settled])) if settled else 0.0,
            avg_stake=_r2(np.mean([b.stake for b in settled])) if settled else 0.0,
            max_win_streak=win_streak,
            max_lose_streak=lose_streak,
        )
        return summary, BacktestMetrics._monthly(settled)

    @staticmethod
    def drawdown_pct(capital: float, peak: float) -> float:
        """Percentage below the running peak (0 when at a new high)."""
        if peak <= 0:
            return 0.0
        return _r2(max(0.0, (peak - capital) / peak * 100))

    @staticmethod
    def _max_drawdown(initial_capital: float, capitals: list[float]) -> float:
        """Largest peak-to-trough decline in percent.

        The starting capital counts as the first peak, so a loss on the
        very first day is a drawdown.
        """
        if not capitals:
            return 0.0
        wealth = np.array([initial_capital, *capitals], dtype=float)
        peak = np.maximum.accumulate(wealth)
        drawdowns = np.where(peak > 0, (peak - wealth) / peak, 0.0)
        return float(np.max(drawdowns) * 100)

    @staticmethod
    def _sharpe_ratio(initial_capital: float, capitals: list[float]) -> float | None:
        """Annualised Sharpe ratio of day-over-day equity returns.

        Zero risk-free rate, sample standard deviation. Returns None if
        fewer than 2 returns or zero standard deviation.
        """
        wealth = np.array([initial_capital, *capitals], dtype=float)
        prev = wealth[:-1]
        valid = prev > 0
        if valid.sum() < 2:
            return None
        returns = wealth[1:][valid] / prev[valid] - 1.0
        std = float(np.std(returns, ddof=1))
        if std == 0.0:
            return None
        return _r2(float(np.mean(returns)) / std * math.sqrt(ANNUALISATION_DAYS))

    @staticmethod
    def _profit_factor(won: list[BetRecord], lost: list[BetRecord]) -> float | None:
        """Gross winnings over gross losses. None if nothing was lost."""
        gross_loss = sum(b.stake - b.payout for b in lost)
        if gross_loss == 0:
            return None
        gross_win = sum(b.payout - b.stake for b in won)
        return _r2(gross_win / gross_loss)

    @staticmethod
    def _avg_win_loss_ratio(won: list[BetRecord], lost: list[BetRecord]) -> float | None:
        if not won or not lost:
            return None
        avg_win = float(np.mean([b.payout - b.stake for b in won]))
        avg_loss = float(np.mean([b.stake - b.payout for b in lost]))
        if avg_loss == 0:
            return None
        return _r2(avg_win / avg_loss)

    @staticmethod
    def _streaks(settled: list[BetRecord]) -> tuple[int, int]:
        """Longest consecutive run of wins and of losses."""
        best_win = best_loss = current_win = current_loss = 0
        for bet in settled:
            if bet.outcome == "won":
                current_win += 1
                current_loss = 0
            else:
                current_loss += 1
                current_win = 0
            best_win = max(best_win, current_win)
            best_loss = max(best_loss, current_loss)
        return best_win, best_loss

    @staticmethod
    def _monthly(settled: list[BetRecord]) -> list[MonthlyReturn]:
        buckets: dict[str, list[BetRecord]] = defaultdict(list)
        for bet in settled:
            buckets[bet.race_date.strftime("%Y-%m")].append(bet)

        monthly = []
        for month in sorted(buckets):
            month_bets = buckets[month]
            staked = sum(b.stake for b in month_bets)
            profit = sum(b.payout for b in month_bets) - staked
            monthly.append(
                MonthlyReturn(
                    month=month,
                    bets=len(month_bets),
                    wins=sum(1 for b in month_bets if b.outcome == "won"),
                    staked=_r2(staked),
                    profit=_r2(profit),
                    roi=_r2(profit / staked * 100) if staked else 0.0,
                )
            )
        return monthly

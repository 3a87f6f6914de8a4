"""Backtest simulation executor.

Walks the requested date range one day at a time. For every race it
reads the decision-time odds snapshot and the official result from a
historical data source, asks the strategy evaluator for bets, realizes
each bet's odds through the slippage model, and settles it. Stakes and
payouts are applied to capital at the end of each day, producing one
equity point per day with at least one settled bet. Summary statistics
are computed once, from the full ledger, after the last day.

Days are processed strictly in order because each day's sizing depends
on the capital left by the previous one.
"""

from __future__ import annotations

import inspect
import logging
import math
import time
from collections.abc import Awaitable, Callable
from datetime import date, timedelta

import numpy as np

from race_backtest.backtest.config import BacktestConfig
from race_backtest.backtest.data_source import HistoricalDataSource
from race_backtest.backtest.metrics import BacktestMetrics
from race_backtest.backtest.schemas import (
    BacktestResult,
    BetRecord,
    DateRange,
    EquityPoint,
    ExecutionStats,
    Race,
    SettledResult,
    build_contexts,
)
from race_backtest.backtest.slippage import SlippageModel, make_rng
from race_backtest.observability.metrics import get_metrics
from race_backtest.strategy.evaluator import BetDecision, StrategyEvaluator
from race_backtest.strategy.validator import CompiledStrategy

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int, str], "Awaitable[object] | object"]
CancelCheck = Callable[[], "Awaitable[bool] | bool"]


class BacktestCancelled(Exception):
    """A cooperative cancellation check fired; no result is produced."""

    def __init__(self, processed: int, total: int):
        super().__init__(f"Backtest cancelled after {processed}/{total} races")
        self.processed = processed
        self.total = total


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class BacktestExecutor:
    """
    Drive a compiled strategy across historical races.

    Usage:
        executor = BacktestExecutor(BacktestConfig())
        result = await executor.execute(
            compiled, DateRange(start, end), source, seed=42,
        )
    """

    def __init__(
        self,
        config: BacktestConfig | None = None,
        slippage: SlippageModel | None = None,
    ):
        self._config = config or BacktestConfig()
        self._slippage = slippage or SlippageModel(self._config)

    async def execute(
        self,
        strategy: CompiledStrategy,
        date_range: DateRange,
        data_source: HistoricalDataSource,
        progress_sink: ProgressSink | None = None,
        should_cancel: CancelCheck | None = None,
        rng: np.random.Generator | None = None,
        seed: int | None = None,
        initial_capital: float | None = None,
    ) -> BacktestResult:
        """Run the simulation.

        Args:
            strategy: Compiled strategy to evaluate.
            date_range: Inclusive range of days.
            data_source: Historical races, odds and results.
            progress_sink: Called as ``(processed, total, message)`` after
                each day; may be a coroutine function.
            should_cancel: Polled before each day (or each race, with
                ``cancellation_granularity="race"``); may be async.
            rng: Generator for slippage draws. Created from ``seed``
                when omitted.
            seed: Seed recorded in the execution metadata.
            initial_capital: Starting bankroll (config default if None).

        Returns:
            BacktestResult with ledger, equity curve and summary.

        Raises:
            BacktestCancelled: The cancellation check returned True.
            EvaluationError: A formula failed at runtime.
        """
        started = time.perf_counter()
        rng = rng if rng is not None else make_rng(seed)
        capital = float(
            initial_capital if initial_capital is not None else self._config.initial_capital
        )
        initial = capital
        evaluator = StrategyEvaluator(strategy)
        stats = ExecutionStats(seed=seed, days=date_range.days)
        per_race_cancel = self._config.cancellation_granularity == "race"

        logger.info(
            f"Backtest starting: strategy={strategy.id} "
            f"range={date_range.start}..{date_range.end} capital={capital:,.0f}"
        )

        schedule = await self._load_schedule(date_range, data_source, stats)
        stats.total_races = sum(len(races) for _, races in schedule)

        bets: list[BetRecord] = []
        equity_curve: list[EquityPoint] = []
        peak = capital

        for day, races in schedule:
            await self._check_cancel(should_cancel, stats)

            day_bets: list[BetRecord] = []
            available = capital
            for race in races:
                if per_race_cancel:
                    await self._check_cancel(should_cancel, stats)
                stats.processed_races += 1
                race_bets = await self._process_race(
                    race, evaluator, data_source, capital, available, rng, stats
                )
                if race_bets:
                    stats.matched_races += 1
                    available -= sum(b.stake for b in race_bets)
                    day_bets.extend(race_bets)

            if day_bets:
                day_profit = sum(b.payout for b in day_bets) - sum(b.stake for b in day_bets)
                capital += day_profit
                peak = max(peak, capital)
                equity_curve.append(
                    EquityPoint(
                        date=day,
                        capital=capital,
                        drawdown_pct=BacktestMetrics.drawdown_pct(capital, peak),
                        bets=len(day_bets),
                        day_profit=day_profit,
                    )
                )
                bets.extend(day_bets)

            if progress_sink is not None:
                await _resolve(
                    progress_sink(
                        stats.processed_races,
                        stats.total_races,
                        f"Processed {day.isoformat()}",
                    )
                )

        stats.entrants_missing_data = evaluator.missing_data
        summary, monthly = BacktestMetrics.compute(
            bets,
            equity_curve,
            initial,
            total_races=stats.processed_races,
            matched_races=stats.matched_races,
        )
        stats.duration_ms = round((time.perf_counter() - started) * 1000, 2)

        metrics = get_metrics()
        metrics.record_races(
            evaluated=max(0, stats.processed_races - stats.skipped_races - stats.error_races),
            skipped=stats.skipped_races,
            errors=stats.error_races,
        )

        logger.info(
            f"Backtest finished: strategy={strategy.id} bets={len(bets)} "
            f"skipped={stats.skipped_races} errors={stats.error_races} "
            f"final_capital={summary.final_capital:,.0f} in {stats.duration_ms:.0f}ms"
        )

        return BacktestResult(
            strategy_id=strategy.id,
            strategy_name=strategy.definition.name,
            date_range=date_range,
            initial_capital=initial,
            summary=summary,
            bets=bets,
            equity_curve=equity_curve,
            monthly=monthly,
            execution=stats,
        )

    async def _load_schedule(
        self,
        date_range: DateRange,
        data_source: HistoricalDataSource,
        stats: ExecutionStats,
    ) -> list[tuple[date, list[Race]]]:
        """Fetch every day's race list up front so progress has a total."""
        schedule = []
        for day in date_range.iter_days():
            try:
                races = await data_source.get_races_for_date(day)
            except Exception as e:
                logger.warning(f"Failed to load races for {day}: {e}")
                stats.error_races += 1
                races = []
            schedule.append((day, races))
        return schedule

    @staticmethod
    async def _check_cancel(should_cancel: CancelCheck | None, stats: ExecutionStats) -> None:
        if should_cancel is not None and await _resolve(should_cancel()):
            raise BacktestCancelled(stats.processed_races, stats.total_races)

    async def _process_race(
        self,
        race: Race,
        evaluator: StrategyEvaluator,
        data_source: HistoricalDataSource,
        capital: float,
        available: float,
        rng: np.random.Generator,
        stats: ExecutionStats,
    ) -> list[BetRecord]:
        """Evaluate and settle one race. Returns the bets placed."""
        decision_time = race.post_time - timedelta(
            minutes=self._config.decision_minutes_before_post
        )

        try:
            snapshot = await data_source.get_odds_snapshot(race.race_id, decision_time)
            result = await data_source.get_result(race.race_id)
        except Exception as e:
            logger.warning(f"Data source error for race {race.race_id}: {e}")
            stats.error_races += 1
            return []

        if snapshot is None or not snapshot.is_complete or result is None:
            logger.debug(f"Skipping race {race.race_id}: incomplete odds or result")
            stats.skipped_races += 1
            return []

        race_ctx, entries = build_contexts(race, snapshot)
        if not entries:
            stats.skipped_races += 1
            return []

        decisions = evaluator.evaluate_race(race_ctx, entries, capital)
        if not decisions:
            return []

        minutes_to_post = max(0.0, (race.post_time - snapshot.as_of).total_seconds() / 60)
        metrics = get_metrics()
        placed: list[BetRecord] = []

        for decision in decisions:
            if decision.stake > available:
                stats.insufficient_funds += 1
                continue
            available -= decision.stake

            realized = self._slippage.apply_slippage(
                decision.decision_odds, minutes_to_post, rng
            )
            outcome, payout = self.settle(
                decision, realized, result, self._config.place_positions
            )
            placed.append(
                BetRecord(
                    race_id=race.race_id,
                    race_date=race.race_date,
                    track=race.track,
                    race_no=race.race_no,
                    entry_no=decision.entry_no,
                    bet_type=decision.bet_type.value,
                    stake=decision.stake,
                    decision_odds=decision.decision_odds,
                    realized_odds=realized,
                    outcome=outcome,
                    payout=payout,
                    placed_at=decision_time,
                )
            )
            metrics.record_bet(decision.bet_type.value, outcome)

        return placed

    @staticmethod
    def settle(
        decision: BetDecision,
        realized_odds: float,
        result: SettledResult,
        place_positions: int = 3,
    ) -> tuple[str, float]:
        """Settle one bet against the official result.

        Returns:
            (outcome, payout). Cancelled races and withdrawn entrants
            refund the stake; winnings are floored to whole units.
        """
        if result.cancelled or decision.entry_no in result.refunded_entries:
            return "refunded", decision.stake

        position = result.position_of(decision.entry_no)
        if position is None:
            return "lost", 0.0

        if decision.bet_type.value == "win":
            won = position == 1
        else:
            won = position <= place_positions

        if not won:
            return "lost", 0.0
        return "won", float(math.floor(decision.stake * realized_odds))

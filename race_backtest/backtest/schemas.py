"""Data types for historical races and simulation output.

Race-side types (``Race``, ``OddsSnapshot``, ``SettledResult``) are what
a historical data source returns. ``RaceContext`` / ``EntryContext`` are
the read-only views the strategy evaluator binds formulas against.
``BetRecord``, ``EquityPoint`` and ``BacktestResult`` are simulation
output; ``to_dict()`` produces the plain structured form that the job
store persists and the API serves.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

VALID_OUTCOMES = frozenset({"won", "lost", "refunded"})


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of simulated days."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def iter_days(self) -> list[date]:
        return [self.start + timedelta(days=i) for i in range(self.days)]

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# ── Historical source types ─────────────────────────────────


@dataclass(frozen=True)
class Entrant:
    """Static race-card information for one runner."""

    entry_no: int
    name: str = ""
    gate: int | None = None
    horse_rating: float | None = None
    burden_weight: float | None = None
    horse_age: int | None = None
    jockey_win_rate: float | None = None
    trainer_win_rate: float | None = None
    scratched: bool = False


@dataclass(frozen=True)
class Race:
    """A scheduled race and its card."""

    race_id: str
    race_date: date
    race_no: int
    track: str
    post_time: datetime
    race_type: str = "horse"
    distance: int | None = None
    grade: str | None = None
    entrants: tuple[Entrant, ...] = ()


@dataclass(frozen=True)
class OddsQuote:
    """Market view of one entrant at a point in time."""

    odds_win: float | None = None
    odds_place: float | None = None
    odds_drift_pct: float | None = None
    odds_stddev: float | None = None
    popularity_rank: int | None = None
    pool_win_pct: float | None = None


@dataclass(frozen=True)
class OddsSnapshot:
    """Odds for every entrant of a race as of a timestamp."""

    race_id: str
    as_of: datetime
    quotes: dict[int, OddsQuote] = field(default_factory=dict)
    pool_total: float | None = None

    @property
    def is_complete(self) -> bool:
        """True when at least one entrant has a win price."""
        return any(q.odds_win is not None for q in self.quotes.values())


@dataclass(frozen=True)
class SettledResult:
    """Official outcome of a race.

    Attributes:
        finish_positions: entry_no -> finishing position (1 = winner).
        cancelled: Race was abandoned; every bet is refunded.
        refunded_entries: Entrants withdrawn after betting closed.
    """

    race_id: str
    finish_positions: dict[int, int] = field(default_factory=dict)
    cancelled: bool = False
    refunded_entries: frozenset[int] = frozenset()

    def position_of(self, entry_no: int) -> int | None:
        return self.finish_positions.get(entry_no)


# ── Evaluation contexts ─────────────────────────────────────


@dataclass(frozen=True)
class RaceContext:
    race_id: str
    race_date: date
    race_no: int
    track: str
    race_type: str
    post_time: datetime
    distance: int | None = None
    grade: str | None = None
    pool_total: float | None = None

    def bindings(self, entry_count: int) -> dict[str, Any]:
        return {
            "entry_count": entry_count,
            "pool_total": self.pool_total,
            "distance": self.distance,
            "race_no": self.race_no,
            "track": self.track,
            "race_type": self.race_type,
            "grade": self.grade,
        }


@dataclass(frozen=True)
class EntryContext:
    entry_no: int
    name: str = ""
    gate: int | None = None
    odds_win: float | None = None
    odds_place: float | None = None
    odds_drift_pct: float | None = None
    odds_stddev: float | None = None
    popularity_rank: int | None = None
    pool_win_pct: float | None = None
    horse_rating: float | None = None
    burden_weight: float | None = None
    horse_age: int | None = None
    jockey_win_rate: float | None = None
    trainer_win_rate: float | None = None

    def bindings(self) -> dict[str, Any]:
        return {
            "entry_no": self.entry_no,
            "gate": self.gate,
            "odds_win": self.odds_win,
            "odds_place": self.odds_place,
            "odds_drift_pct": self.odds_drift_pct,
            "odds_stddev": self.odds_stddev,
            "popularity_rank": self.popularity_rank,
            "pool_win_pct": self.pool_win_pct,
            "horse_rating": self.horse_rating,
            "burden_weight": self.burden_weight,
            "horse_age": self.horse_age,
            "jockey_win_rate": self.jockey_win_rate,
            "trainer_win_rate": self.trainer_win_rate,
        }

    def odds_for(self, bet_type: str) -> float | None:
        """Decision-time price for a bet type ("win" or "place")."""
        return self.odds_win if bet_type == "win" else self.odds_place


def build_contexts(
    race: Race, snapshot: OddsSnapshot
) -> tuple[RaceContext, tuple[EntryContext, ...]]:
    """Join a race card with an odds snapshot.

    Scratched entrants are dropped; entrants without a quote keep
    ``None`` odds and therefore never qualify for a bet.
    """
    race_ctx = RaceContext(
        race_id=race.race_id,
        race_date=race.race_date,
        race_no=race.race_no,
        track=race.track,
        race_type=race.race_type,
        post_time=race.post_time,
        distance=race.distance,
        grade=race.grade,
        pool_total=snapshot.pool_total,
    )
    entries = []
    for entrant in sorted(race.entrants, key=lambda e: e.entry_no):
        if entrant.scratched:
            continue
        quote = snapshot.quotes.get(entrant.entry_no, OddsQuote())
        entries.append(
            EntryContext(
                entry_no=entrant.entry_no,
                name=entrant.name,
                gate=entrant.gate,
                odds_win=quote.odds_win,
                odds_place=quote.odds_place,
                odds_drift_pct=quote.odds_drift_pct,
                odds_stddev=quote.odds_stddev,
                popularity_rank=quote.popularity_rank,
                pool_win_pct=quote.pool_win_pct,
                horse_rating=entrant.horse_rating,
                burden_weight=entrant.burden_weight,
                horse_age=entrant.horse_age,
                jockey_win_rate=entrant.jockey_win_rate,
                trainer_win_rate=entrant.trainer_win_rate,
            )
        )
    return race_ctx, tuple(entries)


# ── Simulation output ───────────────────────────────────────


@dataclass(frozen=True)
class BetRecord:
    """One settled simulated bet."""

    race_id: str
    race_date: date
    track: str
    race_no: int
    entry_no: int
    bet_type: str
    stake: float
    decision_odds: float
    realized_odds: float
    outcome: str
    payout: float
    placed_at: datetime

    def __post_init__(self) -> None:
        if self.outcome not in VALID_OUTCOMES:
            raise ValueError(
                f"Invalid outcome {self.outcome!r}. Must be one of: {sorted(VALID_OUTCOMES)}"
            )

    @property
    def profit(self) -> float:
        return self.payout - self.stake

    def to_dict(self) -> dict[str, Any]:
        return {
            "race_id": self.race_id,
            "race_date": self.race_date.isoformat(),
            "track": self.track,
            "race_no": self.race_no,
            "entry_no": self.entry_no,
            "bet_type": self.bet_type,
            "stake": self.stake,
            "decision_odds": self.decision_odds,
            "realized_odds": self.realized_odds,
            "outcome": self.outcome,
            "payout": self.payout,
            "profit": self.profit,
            "placed_at": self.placed_at.isoformat(),
        }


@dataclass(frozen=True)
class EquityPoint:
    """Capital after one simulated day's settlement."""

    date: date
    capital: float
    drawdown_pct: float
    bets: int = 0
    day_profit: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "capital": self.capital,
            "drawdown_pct": self.drawdown_pct,
            "bets": self.bets,
            "day_profit": self.day_profit,
        }


@dataclass
class BacktestSummary:
    """Aggregate statistics for a run. Percentages are 0-100."""

    total_races: int = 0
    matched_races: int = 0
    total_bets: int = 0
    wins: int = 0
    losses: int = 0
    refunds: int = 0
    win_rate: float = 0.0
    total_staked: float = 0.0
    total_payout: float = 0.0
    total_profit: float = 0.0
    roi: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float | None = None
    profit_factor: float | None = None
    avg_win_loss_ratio: float | None = None
    expected_value: float = 0.0
    initial_capital: float = 0.0
    final_capital: float = 0.0
    capital_return: float = 0.0
    avg_odds: float = 0.0
    avg_stake: float = 0.0
    max_win_streak: int = 0
    max_lose_streak: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MonthlyReturn:
    month: str  # YYYY-MM
    bets: int
    wins: int
    staked: float
    profit: float
    roi: float

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ExecutionStats:
    """Bookkeeping for one executor run.

    ``duration_ms`` is the only field that varies between otherwise
    identical runs and is excluded from the result fingerprint.
    """

    total_races: int = 0
    processed_races: int = 0
    skipped_races: int = 0
    error_races: int = 0
    matched_races: int = 0
    insufficient_funds: int = 0
    entrants_missing_data: int = 0
    days: int = 0
    seed: int | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class BacktestResult:
    """Complete output of a backtest run."""

    strategy_id: str
    strategy_name: str
    date_range: DateRange
    initial_capital: float
    summary: BacktestSummary
    bets: list[BetRecord] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    monthly: list[MonthlyReturn] = field(default_factory=list)
    execution: ExecutionStats = field(default_factory=ExecutionStats)

    def to_dict(self, include_bets: bool = True, include_equity: bool = True) -> dict[str, Any]:
        """JSON-serialisable representation."""
        data: dict[str, Any] = {
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "date_range": self.date_range.to_dict(),
            "initial_capital": self.initial_capital,
            "summary": self.summary.to_dict(),
            "monthly": [m.to_dict() for m in self.monthly],
            "execution": self.execution.to_dict(),
        }
        if include_bets:
            data["bets"] = [b.to_dict() for b in self.bets]
        if include_equity:
            data["equity_curve"] = [p.to_dict() for p in self.equity_curve]
        return data

    def fingerprint(self) -> str:
        """SHA-256 over the deterministic content of the result."""
        data = self.to_dict()
        data["execution"] = {
            k: v for k, v in data["execution"].items() if k != "duration_ms"
        }
        payload = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

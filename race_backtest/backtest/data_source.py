"""Historical race data sources.

The executor only needs three read-only lookups: the races on a date,
the odds for a race as of a timestamp, and the official result. Sources
return empty values (``[]`` / ``None``) for data that does not exist yet
instead of raising; an exception from a source is treated as a data
error for that race.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any

import numpy as np

from race_backtest.backtest.schemas import (
    Entrant,
    OddsQuote,
    OddsSnapshot,
    Race,
    SettledResult,
)

logger = logging.getLogger(__name__)


class HistoricalDataSource(ABC):
    """Read-only access to historical races, odds and results."""

    @abstractmethod
    async def get_races_for_date(self, race_date: date) -> list[Race]:
        """Races run on ``race_date``, ordered by post time."""

    @abstractmethod
    async def get_odds_snapshot(self, race_id: str, as_of: datetime) -> OddsSnapshot | None:
        """Latest odds published at or before ``as_of``; None if none."""

    @abstractmethod
    async def get_result(self, race_id: str) -> SettledResult | None:
        """Official result; None while the race is unsettled or unknown."""

    async def close(self) -> None:
        """Release any resources held by the source."""


def derive_odds_features(history: list[OddsSnapshot]) -> OddsSnapshot | None:
    """Fill drift and volatility from an ordered odds history.

    The last snapshot is the decision-time view. For each entrant,
    ``odds_drift_pct`` is the change in win odds from the first to the
    last quote and ``odds_stddev`` the population standard deviation of
    all win quotes. Values already present on the last snapshot win.
    """
    if not history:
        return None
    latest = history[-1]
    if len(history) == 1:
        return latest

    series: dict[int, list[float]] = defaultdict(list)
    for snapshot in history:
        for entry_no, quote in snapshot.quotes.items():
            if quote.odds_win is not None:
                series[entry_no].append(quote.odds_win)

    quotes: dict[int, OddsQuote] = {}
    for entry_no, quote in latest.quotes.items():
        values = series.get(entry_no, [])
        drift = quote.odds_drift_pct
        stddev = quote.odds_stddev
        if len(values) >= 2:
            if drift is None and values[0] > 0:
                drift = round((values[-1] - values[0]) / values[0] * 100, 2)
            if stddev is None:
                stddev = round(float(np.std(values)), 4)
        quotes[entry_no] = replace(quote, odds_drift_pct=drift, odds_stddev=stddev)

    return replace(latest, quotes=quotes)


class InMemoryDataSource(HistoricalDataSource):
    """
    Data source backed by in-process collections.

    Used by tests and by the CLI with a JSON fixture file.

    Usage:
        source = InMemoryDataSource()
        source.add_race(race, snapshots=[snap_t30, snap_t5], result=result)
    """

    def __init__(self):
        self._races_by_date: dict[date, list[Race]] = defaultdict(list)
        self._snapshots: dict[str, list[OddsSnapshot]] = defaultdict(list)
        self._results: dict[str, SettledResult] = {}

    def add_race(
        self,
        race: Race,
        snapshots: list[OddsSnapshot] | None = None,
        result: SettledResult | None = None,
    ) -> None:
        self._races_by_date[race.race_date].append(race)
        self._races_by_date[race.race_date].sort(key=lambda r: (r.post_time, r.race_no))
        for snapshot in snapshots or []:
            self._snapshots[race.race_id].append(snapshot)
        self._snapshots[race.race_id].sort(key=lambda s: s.as_of)
        if result is not None:
            self._results[race.race_id] = result

    async def get_races_for_date(self, race_date: date) -> list[Race]:
        return list(self._races_by_date.get(race_date, []))

    async def get_odds_snapshot(self, race_id: str, as_of: datetime) -> OddsSnapshot | None:
        history = [s for s in self._snapshots.get(race_id, []) if s.as_of <= as_of]
        return derive_odds_features(history)

    async def get_result(self, race_id: str) -> SettledResult | None:
        return self._results.get(race_id)

    @classmethod
    def from_fixture(cls, path: str | Path) -> "InMemoryDataSource":
        """Load races from a JSON fixture file (format in ``_parse_fixture_race``)."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        source = cls()
        for item in data.get("races", []):
            race, snapshots, result = _parse_fixture_race(item)
            source.add_race(race, snapshots, result)
        logger.info(f"Loaded {len(data.get('races', []))} races from {path}")
        return source


def _parse_quote(raw: dict[str, Any]) -> OddsQuote:
    return OddsQuote(
        odds_win=raw.get("odds_win"),
        odds_place=raw.get("odds_place"),
        odds_drift_pct=raw.get("odds_drift_pct"),
        odds_stddev=raw.get("odds_stddev"),
        popularity_rank=raw.get("popularity_rank"),
        pool_win_pct=raw.get("pool_win_pct"),
    )


def _parse_fixture_race(
    item: dict[str, Any],
) -> tuple[Race, list[OddsSnapshot], SettledResult | None]:
    """Parse one race entry of a fixture file.

    Expected shape::

        {"race_id": "...", "race_date": "2024-03-02", "race_no": 1,
         "track": "seoul", "post_time": "2024-03-02T11:00:00+09:00",
         "race_type": "horse", "distance": 1200, "grade": "G3",
         "entrants": [{"entry_no": 1, "name": "...", ...}],
         "odds": [{"as_of": "...", "pool_total": 1.0e8,
                   "quotes": {"1": {"odds_win": 5.2, "odds_place": 1.9}}}],
         "result": {"finish_positions": {"1": 1}, "cancelled": false}}
    """
    race_id = item["race_id"]
    race = Race(
        race_id=race_id,
        race_date=date.fromisoformat(item["race_date"]),
        race_no=int(item.get("race_no", 1)),
        track=item.get("track", ""),
        post_time=datetime.fromisoformat(item["post_time"]),
        race_type=item.get("race_type", "horse"),
        distance=item.get("distance"),
        grade=item.get("grade"),
        entrants=tuple(
            Entrant(
                entry_no=int(e["entry_no"]),
                name=e.get("name", ""),
                gate=e.get("gate"),
                horse_rating=e.get("horse_rating"),
                burden_weight=e.get("burden_weight"),
                horse_age=e.get("horse_age"),
                jockey_win_rate=e.get("jockey_win_rate"),
                trainer_win_rate=e.get("trainer_win_rate"),
                scratched=bool(e.get("scratched", False)),
            )
            for e in item.get("entrants", [])
        ),
    )

    snapshots = [
        OddsSnapshot(
            race_id=race_id,
            as_of=datetime.fromisoformat(s["as_of"]),
            quotes={int(k): _parse_quote(v) for k, v in s.get("quotes", {}).items()},
            pool_total=s.get("pool_total"),
        )
        for s in item.get("odds", [])
    ]

    result = None
    raw_result = item.get("result")
    if raw_result is not None:
        result = SettledResult(
            race_id=race_id,
            finish_positions={int(k): int(v) for k, v in raw_result.get("finish_positions", {}).items()},
            cancelled=bool(raw_result.get("cancelled", False)),
            refunded_entries=frozenset(int(n) for n in raw_result.get("refunded_entries", [])),
        )

    return race, snapshots, result

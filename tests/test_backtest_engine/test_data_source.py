"""Tests for the in-memory historical data source and fixture loading."""

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from race_backtest.backtest.data_source import InMemoryDataSource, derive_odds_features
from race_backtest.backtest.schemas import DateRange, OddsQuote, OddsSnapshot, Race, build_contexts

POST = datetime(2024, 3, 2, 11, 0, tzinfo=timezone.utc)


def _snapshot(minutes_before: int, odds: dict[int, float]) -> OddsSnapshot:
    return OddsSnapshot(
        race_id="r1",
        as_of=POST - timedelta(minutes=minutes_before),
        quotes={n: OddsQuote(odds_win=o) for n, o in odds.items()},
    )


# ── derive_odds_features ────────────────────────────────────


class TestDeriveOddsFeatures:
    def test_empty_history(self):
        assert derive_odds_features([]) is None

    def test_single_snapshot_unchanged(self):
        snap = _snapshot(5, {1: 3.0})
        assert derive_odds_features([snap]) is snap

    def test_drift_and_stddev(self):
        history = [_snapshot(30, {1: 4.0, 2: 2.0}), _snapshot(5, {1: 5.0, 2: 2.0})]
        latest = derive_odds_features(history)
        assert latest.as_of == history[-1].as_of
        assert latest.quotes[1].odds_drift_pct == 25.0
        assert latest.quotes[1].odds_stddev == 0.5
        assert latest.quotes[2].odds_drift_pct == 0.0
        assert latest.quotes[2].odds_stddev == 0.0

    def test_existing_values_win(self):
        history = [
            _snapshot(30, {1: 4.0}),
            OddsSnapshot(
                race_id="r1",
                as_of=POST - timedelta(minutes=5),
                quotes={1: OddsQuote(odds_win=5.0, odds_drift_pct=-3.0)},
            ),
        ]
        assert derive_odds_features(history).quotes[1].odds_drift_pct == -3.0


# ── InMemoryDataSource ──────────────────────────────────────


class TestInMemoryDataSource:
    @pytest.mark.asyncio
    async def test_races_ordered_by_post_time(self, race_factory):
        source = InMemoryDataSource()
        day = date(2024, 3, 2)
        source.add_race(*race_factory("late", day, 2, 14, {1: (3.0, 1)}, {1: 1}))
        source.add_race(*race_factory("early", day, 1, 11, {1: (3.0, 1)}, {1: 1}))
        races = await source.get_races_for_date(day)
        assert [r.race_id for r in races] == ["early", "late"]
        assert await source.get_races_for_date(date(2024, 3, 3)) == []

    @pytest.mark.asyncio
    async def test_snapshot_never_from_the_future(self):
        source = InMemoryDataSource()
        race = Race(race_id="r1", race_date=POST.date(), race_no=1, track="seoul", post_time=POST)
        source.add_race(race, snapshots=[_snapshot(1, {1: 9.0}), _snapshot(20, {1: 4.0})])

        decision = POST - timedelta(minutes=5)
        snapshot = await source.get_odds_snapshot("r1", decision)
        assert snapshot.as_of <= decision
        assert snapshot.quotes[1].odds_win == 4.0

        assert await source.get_odds_snapshot("r1", POST - timedelta(minutes=60)) is None

    @pytest.mark.asyncio
    async def test_missing_result(self, race_factory):
        source = InMemoryDataSource()
        source.add_race(*race_factory("r9", date(2024, 3, 2), 1, 11, {1: (3.0, 1)}, None))
        assert await source.get_result("r9") is None
        assert await source.get_result("unknown") is None

    @pytest.mark.asyncio
    async def test_from_fixture(self, tmp_path):
        fixture = {
            "races": [
                {
                    "race_id": "seoul_20240302_01",
                    "race_date": "2024-03-02",
                    "race_no": 1,
                    "track": "seoul",
                    "post_time": "2024-03-02T11:00:00+09:00",
                    "distance": 1200,
                    "entrants": [
                        {"entry_no": 1, "name": "Alpha"},
                        {"entry_no": 2, "name": "Bravo", "scratched": True},
                    ],
                    "odds": [
                        {
                            "as_of": "2024-03-02T10:50:00+09:00",
                            "pool_total": 1.0e8,
                            "quotes": {"1": {"odds_win": 3.2, "odds_place": 1.4, "popularity_rank": 1}},
                        }
                    ],
                    "result": {"finish_positions": {"1": 1}, "refunded_entries": [2]},
                }
            ]
        }
        path = tmp_path / "races.json"
        path.write_text(json.dumps(fixture), encoding="utf-8")

        source = InMemoryDataSource.from_fixture(path)
        races = await source.get_races_for_date(date(2024, 3, 2))
        assert len(races) == 1
        race = races[0]
        assert race.entrants[1].scratched is True

        snapshot = await source.get_odds_snapshot(race.race_id, race.post_time - timedelta(minutes=5))
        assert snapshot.pool_total == 1.0e8
        result = await source.get_result(race.race_id)
        assert result.position_of(1) == 1
        assert result.refunded_entries == frozenset({2})

        race_ctx, entries = build_contexts(race, snapshot)
        assert [e.entry_no for e in entries] == [1]
        assert entries[0].odds_win == 3.2
        assert race_ctx.pool_total == 1.0e8


# ── DateRange ───────────────────────────────────────────────


class TestDateRange:
    def test_inclusive_days(self):
        dr = DateRange(start=date(2024, 1, 30), end=date(2024, 2, 2))
        assert dr.days == 4
        assert dr.iter_days()[-1] == date(2024, 2, 2)

    def test_inverted(self):
        with pytest.raises(ValueError):
            DateRange(start=date(2024, 2, 2), end=date(2024, 1, 30))

"""PostgreSQL-backed historical data source.

Reads race cards, odds history and official results from the tables
populated by the ingestion pipeline. Odds are stored as one row per
entrant per capture time; a snapshot is rebuilt from every capture up
to the requested timestamp so drift and volatility never look ahead.
"""

import json
import logging
from collections import defaultdict
from datetime import date, datetime

from race_backtest.backtest.data_source import HistoricalDataSource, derive_odds_features
from race_backtest.backtest.schemas import (
    Entrant,
    OddsQuote,
    OddsSnapshot,
    Race,
    SettledResult,
)
from race_backtest.storage.database import Database

logger = logging.getLogger(__name__)

HISTORICAL_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS races (
    race_id TEXT PRIMARY KEY,
    race_date DATE NOT NULL,
    race_no INTEGER NOT NULL,
    track TEXT NOT NULL,
    race_type TEXT NOT NULL DEFAULT 'horse',
    post_time TIMESTAMPTZ NOT NULL,
    distance INTEGER,
    grade TEXT
);
CREATE INDEX IF NOT EXISTS idx_races_date ON races (race_date);

CREATE TABLE IF NOT EXISTS race_entries (
    race_id TEXT NOT NULL REFERENCES races (race_id),
    entry_no INTEGER NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    gate INTEGER,
    horse_rating REAL,
    burden_weight REAL,
    horse_age INTEGER,
    jockey_win_rate REAL,
    trainer_win_rate REAL,
    scratched BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (race_id, entry_no)
);

CREATE TABLE IF NOT EXISTS odds_snapshots (
    race_id TEXT NOT NULL REFERENCES races (race_id),
    entry_no INTEGER NOT NULL,
    captured_at TIMESTAMPTZ NOT NULL,
    odds_win REAL,
    odds_place REAL,
    popularity_rank INTEGER,
    pool_win_pct REAL,
    pool_total DOUBLE PRECISION,
    PRIMARY KEY (race_id, entry_no, captured_at)
);

CREATE TABLE IF NOT EXISTS race_results (
    race_id TEXT PRIMARY KEY REFERENCES races (race_id),
    cancelled BOOLEAN NOT NULL DEFAULT FALSE,
    finish_positions JSONB NOT NULL DEFAULT '{}',
    refunded_entries INTEGER[] NOT NULL DEFAULT '{}'
);
"""


async def create_tables(database: Database) -> None:
    """Create the historical tables (development and test setups)."""
    await database.execute(HISTORICAL_TABLES_SQL)
    logger.info("Historical race tables ensured")


class PostgresDataSource(HistoricalDataSource):
    """
    Historical source over the races / race_entries / odds_snapshots /
    race_results tables.

    Usage:
        db = Database()
        await db.connect()
        source = PostgresDataSource(db)
    """

    def __init__(self, database: Database, owns_database: bool = False):
        self._db = database
        self._owns_database = owns_database

    async def get_races_for_date(self, race_date: date) -> list[Race]:
        race_rows = await self._db.fetch(
            """
            SELECT race_id, race_date, race_no, track, race_type,
                   post_time, distance, grade
            FROM races
            WHERE race_date = $1
            ORDER BY post_time, race_no
            """,
            race_date,
        )
        if not race_rows:
            return []

        race_ids = [r["race_id"] for r in race_rows]
        entry_rows = await self._db.fetch(
            """
            SELECT race_id, entry_no, name, gate, horse_rating, burden_weight,
                   horse_age, jockey_win_rate, trainer_win_rate, scratched
            FROM race_entries
            WHERE race_id = ANY($1)
            ORDER BY race_id, entry_no
            """,
            race_ids,
        )

        entrants: dict[str, list[Entrant]] = defaultdict(list)
        for row in entry_rows:
            entrants[row["race_id"]].append(
                Entrant(
                    entry_no=row["entry_no"],
                    name=row["name"],
                    gate=row["gate"],
                    horse_rating=row["horse_rating"],
                    burden_weight=row["burden_weight"],
                    horse_age=row["horse_age"],
                    jockey_win_rate=row["jockey_win_rate"],
                    trainer_win_rate=row["trainer_win_rate"],
                    scratched=row["scratched"],
                )
            )

        return [
            Race(
                race_id=row["race_id"],
                race_date=row["race_date"],
                race_no=row["race_no"],
                track=row["track"],
                race_type=row["race_type"],
                post_time=row["post_time"],
                distance=row["distance"],
                grade=row["grade"],
                entrants=tuple(entrants.get(row["race_id"], [])),
            )
            for row in race_rows
        ]

    async def get_odds_snapshot(self, race_id: str, as_of: datetime) -> OddsSnapshot | None:
        rows = await self._db.fetch(
            """
            SELECT entry_no, captured_at, odds_win, odds_place,
                   popularity_rank, pool_win_pct, pool_total
            FROM odds_snapshots
            WHERE race_id = $1 AND captured_at <= $2
            ORDER BY captured_at, entry_no
            """,
            race_id,
            as_of,
        )
        if not rows:
            return None

        by_capture: dict[datetime, list] = defaultdict(list)
        for row in rows:
            by_capture[row["captured_at"]].append(row)

        history = []
        for captured_at in sorted(by_capture):
            capture_rows = by_capture[captured_at]
            history.append(
                OddsSnapshot(
                    race_id=race_id,
                    as_of=captured_at,
                    quotes={
                        row["entry_no"]: OddsQuote(
                            odds_win=row["odds_win"],
                            odds_place=row["odds_place"],
                            popularity_rank=row["popularity_rank"],
                            pool_win_pct=row["pool_win_pct"],
                        )
                        for row in capture_rows
                    },
                    pool_total=next(
                        (r["pool_total"] for r in capture_rows if r["pool_total"] is not None),
                        None,
                    ),
                )
            )
        return derive_odds_features(history)

    async def get_result(self, race_id: str) -> SettledResult | None:
        row = await self._db.fetchrow(
            """
            SELECT race_id, cancelled, finish_positions, refunded_entries
            FROM race_results
            WHERE race_id = $1
            """,
            race_id,
        )
        if row is None:
            return None

        positions = row["finish_positions"]
        if isinstance(positions, str):
            positions = json.loads(positions)

        return SettledResult(
            race_id=row["race_id"],
            finish_positions={int(k): int(v) for k, v in (positions or {}).items()},
            cancelled=row["cancelled"],
            refunded_entries=frozenset(row["refunded_entries"] or []),
        )

    async def close(self) -> None:
        if self._owns_database:
            await self._db.close()

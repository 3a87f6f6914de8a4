"""Variable schema for strategy formulas.

Every name a formula may reference is declared here, with its type,
whether it is read from the entrant or the race, and the value range
used for validation warnings. Dotted aliases (``odds.win``) are accepted
by the parser and normalised to the canonical snake_case name.
"""

from dataclasses import dataclass
from enum import Enum


class FieldType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"


class FieldScope(str, Enum):
    ENTRY = "entry"
    RACE = "race"


@dataclass(frozen=True)
class FieldSpec:
    """Declared formula variable.

    Attributes:
        name: Canonical variable name.
        type: Value type used for type checking.
        scope: Whether the value comes from the entrant or the race.
        description: Human-readable description.
        min_value: Lowest meaningful value (used for warnings only).
        max_value: Highest meaningful value (used for warnings only).
        phase: 0 for fields every data source populates; higher phases
            may be sparse in historical data.
    """

    name: str
    type: FieldType
    scope: FieldScope
    description: str
    min_value: float | None = None
    max_value: float | None = None
    phase: int = 0


_N = FieldType.NUMBER
_S = FieldType.STRING
_E = FieldScope.ENTRY
_R = FieldScope.RACE

FIELD_SPECS: tuple[FieldSpec, ...] = (
    # Odds (entry)
    FieldSpec("odds_win", _N, _E, "Win odds at decision time", 1.0, 999.9),
    FieldSpec("odds_place", _N, _E, "Place odds at decision time", 1.0, 999.9),
    FieldSpec("odds_drift_pct", _N, _E, "Win odds change since first quote (%)", -100, 1000),
    FieldSpec("odds_stddev", _N, _E, "Standard deviation of win odds quotes", 0, 100),
    FieldSpec("popularity_rank", _N, _E, "Betting popularity rank (1 = favourite)", 1, 20),
    FieldSpec("pool_win_pct", _N, _E, "Share of the win pool on this entrant (%)", 0, 100),
    # Entrant profile
    FieldSpec("entry_no", _N, _E, "Entrant (saddle cloth) number", 1, 20),
    FieldSpec("gate", _N, _E, "Starting gate", 1, 20, phase=1),
    FieldSpec("horse_rating", _N, _E, "Official rating", 0, 150, phase=1),
    FieldSpec("burden_weight", _N, _E, "Carried weight (kg)", 45, 65, phase=1),
    FieldSpec("horse_age", _N, _E, "Age in years", 2, 15, phase=1),
    FieldSpec("jockey_win_rate", _N, _E, "Jockey career win rate (%)", 0, 100, phase=2),
    FieldSpec("trainer_win_rate", _N, _E, "Trainer career win rate (%)", 0, 100, phase=2),
    # Race
    FieldSpec("entry_count", _N, _R, "Number of runners", 2, 16, phase=1),
    FieldSpec("pool_total", _N, _R, "Total win pool", 0, None),
    FieldSpec("distance", _N, _R, "Race distance (m)", 200, 5000),
    FieldSpec("race_no", _N, _R, "Race number on the card", 1, 20),
    FieldSpec("track", _S, _R, "Track code"),
    FieldSpec("race_type", _S, _R, "Race type: horse, cycle, boat"),
    FieldSpec("grade", _S, _R, "Race grade or class"),
)

FIELD_SCHEMA: dict[str, FieldSpec] = {spec.name: spec for spec in FIELD_SPECS}

FIELD_ALIASES: dict[str, str] = {
    "odds.win": "odds_win",
    "odds.place": "odds_place",
    "odds.drift_pct": "odds_drift_pct",
    "odds.stddev": "odds_stddev",
    "popularity.rank": "popularity_rank",
    "pool.total": "pool_total",
    "pool.win_pct": "pool_win_pct",
    "horse.rating": "horse_rating",
    "horse.age": "horse_age",
    "burden.weight": "burden_weight",
    "entry.count": "entry_count",
    "entry.no": "entry_no",
    "jockey.win_rate": "jockey_win_rate",
    "trainer.win_rate": "trainer_win_rate",
    "race.distance": "distance",
    "race.no": "race_no",
    "race.track": "track",
    "race.type": "race_type",
    "race.grade": "grade",
}

VALID_RACE_TYPES = frozenset({"horse", "cycle", "boat"})


def normalize_name(name: str) -> str:
    """Map a dotted alias to its canonical name; other names pass through."""
    return FIELD_ALIASES.get(name, name)


def allowed_variables(
    schema: dict[str, FieldSpec] | None = None,
) -> dict[str, FieldType]:
    """Name -> type mapping consumed by formula validation."""
    schema = schema if schema is not None else FIELD_SCHEMA
    return {name: spec.type for name, spec in schema.items()}

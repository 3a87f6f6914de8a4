"""Strategy definitions, the condition formula language, and per-race evaluation.

Components:
- formula: tokenizer, parser, validation and evaluation of condition formulas
- StrategyDefinition: immutable strategy model (rules, bet type, stake policy, filters)
- compile_strategy: parse and validate every formula, collecting all issues
- StrategyEvaluator: apply a compiled strategy to one race's entrants
"""

from race_backtest.strategy.errors import (
    EvaluationError,
    InvalidStrategyError,
    ParseError,
    StrategyError,
    StrategyIssue,
    ValidationError,
)
from race_backtest.strategy.evaluator import BetDecision, StrategyEvaluator, compute_stake, evaluate_race
from race_backtest.strategy.formula import evaluate, extract_variables, parse, validate
from race_backtest.strategy.schemas import (
    BetType,
    Comparator,
    ConditionRule,
    EntryFilters,
    StakePolicy,
    StrategyDefinition,
)
from race_backtest.strategy.validator import (
    CompiledStrategy,
    compile_strategy,
    load_strategy_file,
    parse_strategy,
)

__all__ = [
    "BetDecision",
    "BetType",
    "Comparator",
    "CompiledStrategy",
    "ConditionRule",
    "EntryFilters",
    "EvaluationError",
    "InvalidStrategyError",
    "ParseError",
    "StakePolicy",
    "StrategyDefinition",
    "StrategyError",
    "StrategyEvaluator",
    "StrategyIssue",
    "ValidationError",
    "compile_strategy",
    "compute_stake",
    "evaluate",
    "evaluate_race",
    "extract_variables",
    "load_strategy_file",
    "parse",
    "parse_strategy",
    "validate",
]

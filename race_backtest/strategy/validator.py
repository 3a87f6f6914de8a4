"""Strategy compilation.

Turns a ``StrategyDefinition`` into a ``CompiledStrategy``: every rule
parsed and type-checked into a boolean formula tree, the set of
variables the evaluator must bind, and non-fatal warnings. All problems
are collected and raised together as ``InvalidStrategyError`` so a
submitter sees every issue at once, before any job is created.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pydantic
import yaml

from race_backtest.strategy.errors import (
    InvalidStrategyError,
    ParseError,
    StrategyIssue,
    ValidationError,
)
from race_backtest.strategy.fields import FIELD_SCHEMA, FieldSpec, FieldType, allowed_variables, normalize_name
from race_backtest.strategy.formula import (
    BinaryOp,
    FormulaAST,
    Literal,
    Variable,
    extract_variables,
    parse,
    validate,
)
from race_backtest.strategy.schemas import (
    COMPARATOR_SYMBOLS,
    Comparator,
    ConditionRule,
    StrategyDefinition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledRule:
    """A rule reduced to a single boolean formula tree."""

    index: int
    source: str
    ast: FormulaAST


@dataclass(frozen=True)
class CompiledStrategy:
    """Validated, ready-to-evaluate form of a strategy definition."""

    definition: StrategyDefinition
    rules: tuple[CompiledRule, ...]
    probability: FormulaAST | None
    variables: frozenset[str]
    warnings: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.definition.id


def _to_literal(value: Any, position: int = 0) -> Literal:
    if isinstance(value, bool) or isinstance(value, str):
        return Literal(value, position)
    return Literal(float(value), position)


def _comparison(left: FormulaAST, operator: Comparator, value: Any) -> FormulaAST:
    """Build the formula tree for ``left <operator> value``."""
    position = getattr(left, "position", 0)
    if operator is Comparator.BETWEEN:
        low, high = value
        return BinaryOp(
            "and",
            BinaryOp(">=", left, _to_literal(low, position), position),
            BinaryOp("<=", left, _to_literal(high, position), position),
            position,
        )
    if operator is Comparator.IN:
        node: FormulaAST = BinaryOp("==", left, _to_literal(value[0], position), position)
        for item in value[1:]:
            node = BinaryOp(
                "or", node, BinaryOp("==", left, _to_literal(item, position), position), position
            )
        return node
    return BinaryOp(COMPARATOR_SYMBOLS[operator], left, _to_literal(value, position), position)


def _describe(rule: ConditionRule) -> str:
    subject = rule.field or f"({rule.formula})"
    if rule.operator is None:
        return rule.formula or ""
    if rule.operator is Comparator.BETWEEN:
        return f"{subject} between {rule.value[0]:g} and {rule.value[1]:g}"
    if rule.operator is Comparator.IN:
        return f"{subject} in {list(rule.value)}"
    return f"{subject} {COMPARATOR_SYMBOLS[rule.operator]} {rule.value}"


def _range_warnings(spec: FieldSpec, rule: ConditionRule) -> list[str]:
    values = rule.value if isinstance(rule.value, list) else [rule.value]
    warnings = []
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            continue
        if spec.min_value is not None and v < spec.min_value:
            warnings.append(f"Threshold {v:g} for '{spec.name}' is below its range minimum {spec.min_value:g}")
        if spec.max_value is not None and v > spec.max_value:
            warnings.append(f"Threshold {v:g} for '{spec.name}' is above its range maximum {spec.max_value:g}")
    return warnings


def _compile_rule(
    index: int,
    rule: ConditionRule,
    schema: dict[str, FieldSpec],
    allowed: dict[str, FieldType],
) -> tuple[CompiledRule, list[str]]:
    """Compile one rule; raises ParseError/ValidationError on failure."""
    warnings: list[str] = []

    if rule.field is not None:
        name = normalize_name(rule.field)
        left: FormulaAST = Variable(name)
        if name in schema:
            warnings.extend(_range_warnings(schema[name], rule))
    else:
        left = parse(rule.formula)

    ast = _comparison(left, rule.operator, rule.value) if rule.operator else left
    result = validate(ast, allowed)
    if result.result_type is not FieldType.BOOLEAN:
        raise ValidationError(
            f"Rule must evaluate to a boolean, got {result.result_type.value}",
            code="TYPE_MISMATCH",
        )
    return CompiledRule(index=index, source=_describe(rule), ast=ast), warnings


def compile_strategy(
    strategy: StrategyDefinition,
    schema: dict[str, FieldSpec] | None = None,
) -> CompiledStrategy:
    """Parse and validate every formula in a strategy.

    Args:
        strategy: The definition to compile.
        schema: Variable schema (defaults to FIELD_SCHEMA).

    Returns:
        CompiledStrategy ready for evaluation.

    Raises:
        InvalidStrategyError: One or more rules failed to parse or
            validate; ``issues`` lists all of them.
    """
    schema = schema if schema is not None else FIELD_SCHEMA
    allowed = allowed_variables(schema)

    issues: list[StrategyIssue] = []
    warnings: list[str] = []
    compiled: list[CompiledRule] = []

    for i, rule in enumerate(strategy.rules):
        path = f"rules.{i}.{'field' if rule.field is not None else 'formula'}"
        try:
            compiled_rule, rule_warnings = _compile_rule(i, rule, schema, allowed)
        except (ParseError, ValidationError) as e:
            issues.append(
                StrategyIssue(path=path, code=e.code, message=e.message, position=e.position)
            )
            continue
        compiled.append(compiled_rule)
        warnings.extend(rule_warnings)

    probability: FormulaAST | None = None
    formula = strategy.stake.probability_formula
    if formula is not None:
        try:
            probability = parse(formula)
            result = validate(probability, allowed)
            if result.result_type is not FieldType.NUMBER:
                raise ValidationError(
                    f"Probability formula must be numeric, got {result.result_type.value}",
                    code="TYPE_MISMATCH",
                )
        except (ParseError, ValidationError) as e:
            issues.append(
                StrategyIssue(
                    path="stake.probability_formula",
                    code=e.code,
                    message=e.message,
                    position=e.position,
                )
            )

    if issues:
        raise InvalidStrategyError(issues)

    variables: set[str] = set()
    for rule in compiled:
        variables |= extract_variables(rule.ast)
    if probability is not None:
        variables |= extract_variables(probability)

    for name in sorted(variables):
        spec = schema.get(name)
        if spec is not None and spec.phase > 0:
            warnings.append(
                f"Field '{name}' is phase {spec.phase} data and may be sparse in history"
            )

    logger.debug(
        f"Compiled strategy {strategy.id}: {len(compiled)} rules, "
        f"variables={sorted(variables)}"
    )

    return CompiledStrategy(
        definition=strategy,
        rules=tuple(compiled),
        probability=probability,
        variables=frozenset(variables),
        warnings=tuple(warnings),
    )


def parse_strategy(data: dict[str, Any]) -> StrategyDefinition:
    """Build a StrategyDefinition from plain data.

    Raises:
        InvalidStrategyError: The data does not match the model; pydantic
            errors are converted to StrategyIssue entries.
    """
    try:
        return StrategyDefinition.model_validate(data)
    except pydantic.ValidationError as e:
        issues = [
            StrategyIssue(
                path=".".join(str(p) for p in err["loc"]) or "strategy",
                code=err["type"].upper(),
                message=err["msg"],
            )
            for err in e.errors()
        ]
        raise InvalidStrategyError(issues) from e


def load_strategy_file(path: str | Path) -> StrategyDefinition:
    """Load a strategy from a JSON or YAML file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise InvalidStrategyError(
            [StrategyIssue(path="strategy", code="INVALID_TYPE", message="Strategy file must contain a mapping")]
        )
    return parse_strategy(data)

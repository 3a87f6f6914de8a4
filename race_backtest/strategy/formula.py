"""Strategy formula language.

A small expression language for strategy conditions, e.g.::

    odds_win >= 5 and popularity_rank <= 3
    pool_win_pct / 100 * entry_count > 1.2
    abs(odds.drift_pct) < 15

Source text is tokenized and parsed into a closed tree of frozen
dataclass nodes. ``validate`` type-checks the tree against a declared
variable schema; ``evaluate`` interprets it against a flat binding map.
Nothing is ever passed to ``eval``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from race_backtest.strategy.errors import (
    EvaluationError,
    FormulaSyntaxError,
    ParseError,
    TypeMismatchError,
    UnknownVariableError,
)
from race_backtest.strategy.fields import FieldType, normalize_name

MAX_FORMULA_LENGTH = 200

# name -> (min args, max args or None for variadic)
FUNCTIONS: dict[str, tuple[int, int | None]] = {
    "min": (1, None),
    "max": (1, None),
    "abs": (1, 1),
    "floor": (1, 1),
    "ceil": (1, 1),
    "round": (1, 2),
    "sqrt": (1, 1),
}

ARITHMETIC_OPS = frozenset({"+", "-", "*", "/", "%", "^"})
ORDERING_OPS = frozenset({"<", "<=", ">", ">="})
EQUALITY_OPS = frozenset({"==", "!="})
LOGICAL_OPS = frozenset({"and", "or"})

_KEYWORDS = {"and": "and", "or": "or", "not": "not", "true": True, "false": False}
_SYMBOL_ALIASES = {"&&": "and", "||": "or", "!": "not"}
_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "+", "-", "*", "/", "%", "^", "!", "(", ")", ",")

_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*")


# ── AST ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: float | str | bool
    position: int = 0


@dataclass(frozen=True)
class Variable:
    name: str
    position: int = 0


@dataclass(frozen=True)
class UnaryOp:
    op: str  # "-", "+", "not"
    operand: FormulaAST
    position: int = 0


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: FormulaAST
    right: FormulaAST
    position: int = 0


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple[FormulaAST, ...]
    position: int = 0


FormulaAST = Union[Literal, Variable, UnaryOp, BinaryOp, Call]


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a successful type check."""

    result_type: FieldType
    variables: frozenset[str]


# ── Tokenizer ───────────────────────────────────────────────


@dataclass(frozen=True)
class Token:
    kind: str  # number, string, ident, keyword, op, eof
    value: Any
    position: int


def tokenize(source: str) -> list[Token]:
    """Split formula source into tokens, ending with an ``eof`` token."""
    tokens: list[Token] = []
    i = 0
    length = len(source)

    while i < length:
        ch = source[i]

        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < length and source[i + 1].isdigit()):
            m = _NUMBER_RE.match(source, i)
            tokens.append(Token("number", float(m.group()), i))
            i = m.end()
            continue

        if ch.isalpha() or ch == "_":
            m = _IDENT_RE.match(source, i)
            word = m.group()
            if word in _KEYWORDS:
                tokens.append(Token("keyword", _KEYWORDS[word], i))
            else:
                tokens.append(Token("ident", word, i))
            i = m.end()
            continue

        if ch in ("'", '"'):
            start = i
            i += 1
            chars: list[str] = []
            while i < length and source[i] != ch:
                if source[i] == "\\" and i + 1 < length:
                    i += 1
                chars.append(source[i])
                i += 1
            if i >= length:
                raise FormulaSyntaxError("Unterminated string literal", start, source=source)
            tokens.append(Token("string", "".join(chars), start))
            i += 1
            continue

        for op in _OPERATORS:
            if source.startswith(op, i):
                value = _SYMBOL_ALIASES.get(op, op)
                kind = "keyword" if value in ("and", "or", "not") else "op"
                tokens.append(Token(kind, value, i))
                i += len(op)
                break
        else:
            if ch == "=":
                raise FormulaSyntaxError("Unknown operator '=' (did you mean '=='?)", i, source=source)
            raise FormulaSyntaxError(f"Unknown operator or character '{ch}'", i, source=source)

    tokens.append(Token("eof", None, length))
    return tokens


# ── Parser ──────────────────────────────────────────────────


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, source: str, tokens: list[Token]):
        self._source = source
        self._tokens = tokens
        self._index = 0

    @property
    def _current(self) -> Token:
        return self._tokens[self._index]

    def _advance(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != "eof":
            self._index += 1
        return token

    def _check(self, kind: str, value: Any = None) -> bool:
        token = self._current
        return token.kind == kind and (value is None or token.value == value)

    def _error(self, message: str, position: int | None = None) -> FormulaSyntaxError:
        pos = self._current.position if position is None else position
        return FormulaSyntaxError(message, pos, source=self._source)

    def parse(self) -> FormulaAST:
        if self._check("eof"):
            raise self._error("Empty formula")
        node = self._or()
        if not self._check("eof"):
            token = self._current
            if token.kind == "op" and token.value == ")":
                raise self._error("Unbalanced parenthesis: unexpected ')'")
            raise self._error(f"Unexpected token '{token.value}'")
        return node

    def _or(self) -> FormulaAST:
        node = self._and()
        while self._check("keyword", "or"):
            token = self._advance()
            node = BinaryOp("or", node, self._and(), token.position)
        return node

    def _and(self) -> FormulaAST:
        node = self._not()
        while self._check("keyword", "and"):
            token = self._advance()
            node = BinaryOp("and", node, self._not(), token.position)
        return node

    def _not(self) -> FormulaAST:
        if self._check("keyword", "not"):
            token = self._advance()
            return UnaryOp("not", self._not(), token.position)
        return self._comparison()

    def _comparison(self) -> FormulaAST:
        node = self._additive()
        token = self._current
        if token.kind == "op" and token.value in ORDERING_OPS | EQUALITY_OPS:
            self._advance()
            node = BinaryOp(token.value, node, self._additive(), token.position)
            nxt = self._current
            if nxt.kind == "op" and nxt.value in ORDERING_OPS | EQUALITY_OPS:
                raise self._error("Chained comparisons are not supported; combine with 'and'")
        return node

    def _additive(self) -> FormulaAST:
        node = self._term()
        while self._current.kind == "op" and self._current.value in ("+", "-"):
            token = self._advance()
            node = BinaryOp(token.value, node, self._term(), token.position)
        return node

    def _term(self) -> FormulaAST:
        node = self._unary()
        while self._current.kind == "op" and self._current.value in ("*", "/", "%"):
            token = self._advance()
            node = BinaryOp(token.value, node, self._unary(), token.position)
        return node

    def _unary(self) -> FormulaAST:
        if self._current.kind == "op" and self._current.value in ("-", "+"):
            token = self._advance()
            return UnaryOp(token.value, self._unary(), token.position)
        return self._power()

    def _power(self) -> FormulaAST:
        node = self._primary()
        if self._check("op", "^"):
            token = self._advance()
            # right-associative; exponent may carry its own sign
            node = BinaryOp("^", node, self._unary(), token.position)
        return node

    def _primary(self) -> FormulaAST:
        token = self._current

        if token.kind == "number" or token.kind == "string":
            self._advance()
            return Literal(token.value, token.position)

        if token.kind == "keyword" and isinstance(token.value, bool):
            self._advance()
            return Literal(token.value, token.position)

        if token.kind == "ident":
            self._advance()
            if self._check("op", "("):
                return self._call(token)
            return Variable(normalize_name(token.value), token.position)

        if self._check("op", "("):
            self._advance()
            node = self._or()
            if not self._check("op", ")"):
                raise self._error("Unbalanced parenthesis: expected ')'", token.position)
            self._advance()
            return node

        if token.kind == "eof":
            raise self._error("Unexpected end of formula")
        raise self._error(f"Unexpected token '{token.value}'")

    def _call(self, name_token: Token) -> FormulaAST:
        name = name_token.value
        if name not in FUNCTIONS:
            raise self._error(f"Unknown function '{name}'", name_token.position)

        self._advance()  # "("
        args: list[FormulaAST] = []
        if not self._check("op", ")"):
            args.append(self._or())
            while self._check("op", ","):
                self._advance()
                args.append(self._or())
        if not self._check("op", ")"):
            raise self._error(
                f"Unbalanced parenthesis in call to '{name}'", name_token.position
            )
        self._advance()

        min_args, max_args = FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            expected = str(min_args) if min_args == max_args else (
                f"{min_args}+" if max_args is None else f"{min_args}-{max_args}"
            )
            raise self._error(
                f"Function '{name}' expects {expected} argument(s), got {len(args)}",
                name_token.position,
            )
        return Call(name, tuple(args), name_token.position)


def parse(source: str) -> FormulaAST:
    """Parse formula source into an AST.

    Raises:
        ParseError: Formula longer than MAX_FORMULA_LENGTH.
        FormulaSyntaxError: Malformed expression; ``position`` points at
            the offending character.
    """
    if len(source) > MAX_FORMULA_LENGTH:
        raise ParseError(
            f"Formula exceeds {MAX_FORMULA_LENGTH} characters",
            MAX_FORMULA_LENGTH,
            source=source,
            code="FORMULA_TOO_LONG",
        )
    return _Parser(source, tokenize(source)).parse()


# ── Static analysis ─────────────────────────────────────────


def extract_variables(ast: FormulaAST) -> frozenset[str]:
    """Return the set of variable names referenced by the tree."""
    names: set[str] = set()
    stack: list[FormulaAST] = [ast]
    while stack:
        node = stack.pop()
        if isinstance(node, Variable):
            names.add(node.name)
        elif isinstance(node, UnaryOp):
            stack.append(node.operand)
        elif isinstance(node, BinaryOp):
            stack.extend((node.left, node.right))
        elif isinstance(node, Call):
            stack.extend(node.args)
    return frozenset(names)


def _literal_type(value: Any) -> FieldType:
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, str):
        return FieldType.STRING
    return FieldType.NUMBER


def _infer(node: FormulaAST, allowed: Mapping[str, FieldType]) -> FieldType:
    if isinstance(node, Literal):
        return _literal_type(node.value)

    if isinstance(node, Variable):
        if node.name not in allowed:
            raise UnknownVariableError(node.name, node.position)
        return FieldType(allowed[node.name])

    if isinstance(node, UnaryOp):
        operand = _infer(node.operand, allowed)
        expected = FieldType.BOOLEAN if node.op == "not" else FieldType.NUMBER
        if operand is not expected:
            raise TypeMismatchError(
                f"Operator '{node.op}' expects {expected.value}, got {operand.value}",
                node.position,
            )
        return expected

    if isinstance(node, BinaryOp):
        left = _infer(node.left, allowed)
        right = _infer(node.right, allowed)

        if node.op in LOGICAL_OPS:
            if left is not FieldType.BOOLEAN or right is not FieldType.BOOLEAN:
                raise TypeMismatchError(
                    f"Operator '{node.op}' expects boolean operands, "
                    f"got {left.value} and {right.value}",
                    node.position,
                )
            return FieldType.BOOLEAN

        if node.op in EQUALITY_OPS:
            if left is not right:
                raise TypeMismatchError(
                    f"Cannot compare {left.value} with {right.value} using '{node.op}'",
                    node.position,
                )
            return FieldType.BOOLEAN

        if left is not FieldType.NUMBER or right is not FieldType.NUMBER:
            raise TypeMismatchError(
                f"Operator '{node.op}' expects numeric operands, "
                f"got {left.value} and {right.value}",
                node.position,
            )
        return FieldType.BOOLEAN if node.op in ORDERING_OPS else FieldType.NUMBER

    if isinstance(node, Call):
        for arg in node.args:
            arg_type = _infer(arg, allowed)
            if arg_type is not FieldType.NUMBER:
                raise TypeMismatchError(
                    f"Function '{node.name}' expects numeric arguments, got {arg_type.value}",
                    node.position,
                )
        return FieldType.NUMBER

    raise TypeError(f"Unsupported AST node: {node!r}")


def validate(ast: FormulaAST, allowed_variables: Mapping[str, FieldType]) -> ValidationResult:
    """Type-check an AST against the declared variable schema.

    Raises:
        UnknownVariableError: A referenced name is not declared.
        TypeMismatchError: An operator or function is applied to
            incompatible operand types.
    """
    result_type = _infer(ast, allowed_variables)
    return ValidationResult(result_type=result_type, variables=extract_variables(ast))


# ── Evaluation ──────────────────────────────────────────────


def _round_half_up(value: float, digits: float = 0) -> float:
    factor = 10 ** int(digits)
    return math.floor(value * factor + 0.5) / factor


def _call(name: str, args: list[Any]) -> float:
    if name == "min":
        return min(args)
    if name == "max":
        return max(args)
    if name == "abs":
        return abs(args[0])
    if name == "floor":
        return float(math.floor(args[0]))
    if name == "ceil":
        return float(math.ceil(args[0]))
    if name == "round":
        return _round_half_up(*args)
    if name == "sqrt":
        if args[0] < 0:
            raise EvaluationError(f"sqrt of negative value {args[0]}")
        return math.sqrt(args[0])
    raise EvaluationError(f"Unknown function '{name}'")


def _arith(op: str, left: float, right: float) -> float:
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op == "/":
        if right == 0:
            raise EvaluationError("Division by zero")
        return left / right
    if op == "%":
        if right == 0:
            raise EvaluationError("Modulo by zero")
        return math.fmod(left, right)
    if op == "^":
        try:
            return math.pow(left, right)
        except (OverflowError, ValueError) as e:
            raise EvaluationError(f"Invalid power {left} ^ {right}: {e}") from e
    raise EvaluationError(f"Unknown operator '{op}'")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _eval(node: FormulaAST, bindings: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Variable):
        value = bindings.get(node.name)
        if value is None:
            raise EvaluationError(f"Missing binding for variable '{node.name}'")
        return value

    if isinstance(node, UnaryOp):
        operand = _eval(node.operand, bindings)
        if node.op == "not":
            return not operand
        return -operand if node.op == "-" else +operand

    if isinstance(node, BinaryOp):
        if node.op == "and":
            return bool(_eval(node.left, bindings)) and bool(_eval(node.right, bindings))
        if node.op == "or":
            return bool(_eval(node.left, bindings)) or bool(_eval(node.right, bindings))
        left = _eval(node.left, bindings)
        right = _eval(node.right, bindings)
        if node.op in ARITHMETIC_OPS:
            result = _arith(node.op, left, right)
            if not math.isfinite(result):
                raise EvaluationError(f"Non-finite result from '{node.op}'")
            return result
        return _compare(node.op, left, right)

    if isinstance(node, Call):
        result = _call(node.name, [_eval(arg, bindings) for arg in node.args])
        if not math.isfinite(result):
            raise EvaluationError(f"Non-finite result from '{node.name}'")
        return result

    raise EvaluationError(f"Unsupported AST node: {node!r}")


def evaluate(ast: FormulaAST, bindings: Mapping[str, Any]) -> bool | float:
    """Interpret an AST against a flat name -> value mapping.

    Raises:
        EvaluationError: Missing binding, arithmetic fault, or a value
            whose runtime type contradicts the validated schema.
    """
    try:
        return _eval(ast, bindings)
    except TypeError as e:
        raise EvaluationError(f"Type error during evaluation: {e}") from e

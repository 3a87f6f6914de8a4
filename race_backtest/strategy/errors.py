"""Exception hierarchy for strategy parsing, validation and evaluation.

``ParseError`` and ``ValidationError`` are raised synchronously at
submission time, before any job exists. ``EvaluationError`` signals a
contract violation during a run and aborts it.
"""

from dataclasses import dataclass


class StrategyError(Exception):
    """Base class for all strategy-layer errors."""

    code = "STRATEGY_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ParseError(StrategyError):
    """A formula could not be parsed.

    ``position`` is the 0-based character offset into the formula source.
    """

    code = "PARSE_ERROR"

    def __init__(
        self,
        message: str,
        position: int = 0,
        *,
        source: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.position = position
        self.source = source

    def __str__(self) -> str:
        return f"{self.message} (at position {self.position})"


class FormulaSyntaxError(ParseError):
    """Malformed expression: unbalanced parens, unknown operator, etc."""

    code = "SYNTAX_ERROR"


class ValidationError(StrategyError):
    """A parsed formula does not fit the declared variable schema."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, position: int = 0, *, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.position = position


class UnknownVariableError(ValidationError):
    code = "UNKNOWN_VARIABLE"

    def __init__(self, name: str, position: int = 0) -> None:
        super().__init__(f"Unknown variable '{name}'", position)
        self.name = name


class TypeMismatchError(ValidationError):
    code = "TYPE_MISMATCH"


class EvaluationError(StrategyError):
    """Runtime failure while interpreting a validated formula."""

    code = "EVALUATION_ERROR"


@dataclass(frozen=True)
class StrategyIssue:
    """One problem found while compiling a strategy."""

    path: str
    code: str
    message: str
    position: int | None = None

    def to_dict(self) -> dict:
        data = {"path": self.path, "code": self.code, "message": self.message}
        if self.position is not None:
            data["position"] = self.position
        return data


class InvalidStrategyError(StrategyError):
    """Aggregate of every issue found in a strategy definition."""

    code = "INVALID_STRATEGY"

    def __init__(self, issues: list[StrategyIssue]) -> None:
        summary = "; ".join(f"{i.path}: {i.message}" for i in issues[:3])
        if len(issues) > 3:
            summary += f" (+{len(issues) - 3} more)"
        super().__init__(f"Invalid strategy: {summary}")
        self.issues = issues

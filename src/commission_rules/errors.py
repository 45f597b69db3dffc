from __future__ import annotations

from typing import Any, Sequence


class RuleEngineError(ValueError):
    """Base class for every error surfaced by the rule pipeline."""

    kind = "rule_engine"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "kind": self.kind, "details": self.details}


class ParseError(RuleEngineError):
    """Raised when rule text does not follow the grammar or misses a section."""

    kind = "parse"

    def __init__(
        self,
        message: str,
        *,
        line_number: int | None = None,
        line: str | None = None,
        expected: Sequence[str] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message, details)
        self.line_number = line_number
        self.line = line
        self.expected = tuple(expected)
        if line_number is not None:
            self.details.setdefault("line_number", line_number)
        if line is not None:
            self.details.setdefault("line", line)
        if self.expected:
            self.details.setdefault("expected", list(self.expected))


class ValidationError(RuleEngineError):
    """Raised when a well-formed rule violates a domain constraint."""

    kind = "validation"


class EvaluationError(RuleEngineError):
    """Raised when a valid rule cannot be evaluated against a context."""

    kind = "evaluation"


class ExpressionSyntaxError(ValueError):
    """Raised when a calculation expression cannot be tokenized or parsed."""

    def __init__(self, message: str, position: int | None = None) -> None:
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)
        self.position = position

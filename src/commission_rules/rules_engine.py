from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from .config import EngineConfig
from .errors import EvaluationError, ParseError, ValidationError
from .expressions import ExpressionEvaluator
from .models import Condition, Rule
from .parser import RuleParser, numbered_lines, split_blocks
from .validation import RuleValidator

SENSITIVE_VARIABLE_MARKERS = ("password", "secret", "token", "key", "credential", "auth")

logger = logging.getLogger(__name__)

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


def _contains_sensitive_marker(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_VARIABLE_MARKERS)


def safe_snapshot_value(variable_name: str, value: Any) -> Any:
    if _contains_sensitive_marker(variable_name):
        return "<redacted>"

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return value if len(value) <= 160 else f"{value[:157]}..."

    if isinstance(value, (list, tuple)):
        if len(value) > 10:
            return f"<sequence len={len(value)}>"
        if all(item is None or isinstance(item, bool | int | float | str) for item in value):
            return [safe_snapshot_value(variable_name, item) for item in value]
        return f"<sequence len={len(value)}>"

    if isinstance(value, dict):
        return f"<mapping keys={len(value)}>"

    return f"<object type={type(value).__name__}>"


def snapshot_context(context: Mapping[str, Any]) -> dict[str, Any]:
    return {str(name): safe_snapshot_value(str(name), value) for name, value in context.items()}


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without coercion between strings, numbers and booleans."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


class ConditionEvaluator:
    def evaluate(self, conditions: Iterable[Condition], context: Mapping[str, Any]) -> bool:
        return all(self.matches(condition, context) for condition in conditions)

    def matches(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        if condition.field not in context:
            raise EvaluationError(
                f"Missing required field '{condition.field}' in context",
                details={"field": condition.field},
            )
        left = context[condition.field]
        right = condition.value
        # A bare identifier on the right may name another context entry.
        if isinstance(right, str) and right in context:
            right = context[right]

        op = condition.operator
        if op == "==":
            return strict_equals(left, right)
        if op == "!=":
            return not strict_equals(left, right)
        if op == "in":
            if not isinstance(right, (list, tuple)):
                raise EvaluationError(
                    "Operator 'in' requires an array value",
                    details={"field": condition.field, "value_type": type(right).__name__},
                )
            return any(strict_equals(left, item) for item in right)
        if op in _ORDERING:
            try:
                return bool(_ORDERING[op](left, right))
            except TypeError as exc:
                raise EvaluationError(
                    f"Cannot compare '{condition.field}' using '{op}'",
                    details={
                        "field": condition.field,
                        "left_type": type(left).__name__,
                        "right_type": type(right).__name__,
                    },
                ) from exc
        raise EvaluationError(f"Invalid operator '{op}'", details={"field": condition.field, "operator": op})


@dataclass(slots=True, frozen=True)
class RuleOutcome:
    rule: Rule
    fired: bool
    result: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.rule.name,
            "priority": self.rule.priority,
            "fired": self.fired,
            "result": self.result,
        }


@dataclass(slots=True)
class RuleEngine:
    config: EngineConfig
    parser: RuleParser
    validator: RuleValidator
    conditions: ConditionEvaluator
    expressions: ExpressionEvaluator

    @classmethod
    def from_config(cls, config: EngineConfig | None = None) -> RuleEngine:
        resolved = config or EngineConfig()
        return cls(
            config=resolved,
            parser=RuleParser(resolved),
            validator=RuleValidator(resolved),
            conditions=ConditionEvaluator(),
            expressions=ExpressionEvaluator(resolved.functions),
        )

    def parse(self, rule_text: str) -> Rule:
        rule = self.parser.parse_block(numbered_lines(rule_text))
        self.validator.validate(rule)
        logger.debug(
            "rule_parsed",
            extra={"rule_name": rule.name, "priority": rule.priority, "condition_count": len(rule.conditions)},
        )
        return rule

    def parse_many(self, rules_text: str) -> list[Rule]:
        rules: list[Rule] = []
        for block_index, block in enumerate(split_blocks(rules_text), start=1):
            try:
                rule = self.parser.parse_block(block)
                self.validator.validate(rule)
            except (ParseError, ValidationError) as exc:
                exc.details.setdefault("block", block_index)
                raise
            rules.append(rule)
        return rules

    def validate(self, rule: Rule) -> None:
        self.validator.validate(rule)

    def evaluate(self, rule: Rule, context: Mapping[str, Any]) -> float:
        return self.run(rule, context).result

    def evaluate_many(self, rules: Sequence[Rule], context: Mapping[str, Any]) -> list[RuleOutcome]:
        return [self.run(rule, context) for rule in rules]

    def run(self, rule: Rule, context: Mapping[str, Any]) -> RuleOutcome:
        try:
            if not self.conditions.evaluate(rule.conditions, context):
                logger.debug("rule_not_fired", extra={"rule_name": rule.name})
                return RuleOutcome(rule=rule, fired=False, result=0.0)
            result = self.expressions.evaluate(rule.calculation.expression, context)
        except EvaluationError as exc:
            logger.warning(
                "rule_evaluation_failed",
                extra={"rule_name": rule.name, "error": exc.message, "cause": exc.details},
            )
            raise EvaluationError(
                f"Failed to evaluate rule '{rule.name}': {exc.message}",
                details={
                    "rule": rule.to_dict(),
                    "context": snapshot_context(context),
                    "cause": exc.to_dict(),
                },
            ) from exc

        logger.info("rule_evaluated", extra={"rule_name": rule.name, "result": result})
        return RuleOutcome(rule=rule, fired=True, result=result)


def parse_rule(rule_text: str, config: EngineConfig | None = None) -> Rule:
    return RuleEngine.from_config(config).parse(rule_text)


def parse_rules(rules_text: str, config: EngineConfig | None = None) -> list[Rule]:
    return RuleEngine.from_config(config).parse_many(rules_text)


def evaluate_rule(rule: Rule, context: Mapping[str, Any], config: EngineConfig | None = None) -> float:
    return RuleEngine.from_config(config).evaluate(rule, context)

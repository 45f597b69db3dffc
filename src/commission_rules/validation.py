from __future__ import annotations

import logging
import re
from typing import Any

from .config import EngineConfig
from .errors import ValidationError
from .models import OPERATORS, Calculation, Condition, Rule

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*$")
MAX_NAME_LENGTH = 100
MIN_PRIORITY = 1
MAX_PRIORITY = 100
MAX_CONDITIONS = 10
MAX_ARRAY_ITEMS = 10
MAX_NOTES_LENGTH = 500


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


class RuleValidator:
    """Checks a draft rule before it is trusted.

    Checks run in a fixed order (name, priority, conditions, calculation,
    notes) and the first violation is raised; nothing is aggregated.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()

    def validate(self, rule: Rule) -> None:
        try:
            self.validate_name(rule.name)
            self.validate_priority(rule.priority)
            self.validate_conditions(rule.conditions)
            self.validate_calculation(rule.calculation)
            self.validate_notes(rule.notes)
        except ValidationError as exc:
            logger.info("rule_validation_failed", extra={"rule_name": str(rule.name), "error": exc.message})
            raise

    def validate_name(self, name: Any) -> None:
        if not name or not isinstance(name, str):
            raise ValidationError("Rule name is required and must be a string")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Rule name must be at most {MAX_NAME_LENGTH} characters")
        if not NAME_PATTERN.fullmatch(name):
            raise ValidationError(
                "Rule name must start with a letter and contain only letters, numbers, spaces, and underscores",
                details={"name": name},
            )

    def validate_priority(self, priority: Any) -> None:
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("Priority must be an integer")
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                details={"priority": priority},
            )

    def validate_conditions(self, conditions: Any) -> None:
        if not isinstance(conditions, (list, tuple)):
            raise ValidationError("Conditions must be an array")
        if not conditions:
            raise ValidationError("At least one condition is required")
        if len(conditions) > MAX_CONDITIONS:
            raise ValidationError(f"Maximum of {MAX_CONDITIONS} conditions allowed per rule")
        for index, condition in enumerate(conditions, start=1):
            self.validate_condition(condition, index)

    def validate_condition(self, condition: Condition, index: int) -> None:
        if condition.field not in self.config.recognized_fields:
            raise ValidationError(
                f"Invalid field '{condition.field}' in condition {index}",
                details={"condition_index": index, "valid_fields": sorted(self.config.recognized_fields)},
            )
        if condition.operator not in OPERATORS:
            raise ValidationError(
                f"Invalid operator '{condition.operator}' in condition {index}",
                details={"condition_index": index, "valid_operators": list(OPERATORS)},
            )

        value = condition.value
        if condition.operator == "in":
            if not isinstance(value, (list, tuple)):
                raise ValidationError(f"Operator 'in' requires an array value in condition {index}")
            if not value:
                raise ValidationError(f"Array value cannot be empty in condition {index}")
            if len(value) > MAX_ARRAY_ITEMS:
                raise ValidationError(
                    f"Array value cannot have more than {MAX_ARRAY_ITEMS} items in condition {index}"
                )
            if not all(_is_scalar(item) for item in value):
                raise ValidationError(f"Array items must be strings, numbers or booleans in condition {index}")
            return

        if value is None:
            raise ValidationError(f"Value is required in condition {index}")
        if not _is_scalar(value):
            raise ValidationError(
                f"Operator '{condition.operator}' requires a single value in condition {index}"
            )

    def validate_calculation(self, calculation: Any) -> None:
        if not isinstance(calculation, Calculation) or not isinstance(calculation.expression, str):
            raise ValidationError("Calculation expression is required and must be a string")

        expression = calculation.expression.strip()
        if not expression:
            raise ValidationError("Calculation expression cannot be empty")
        if not self.config.calculation_pattern.fullmatch(expression):
            raise ValidationError(
                "Calculation expression contains invalid characters",
                details={"expression": expression},
            )

        depth = 0
        for ch in expression:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            if depth < 0:
                break
        if depth != 0:
            raise ValidationError(
                "Unbalanced parentheses in calculation expression",
                details={"expression": expression},
            )

    def validate_notes(self, notes: Any) -> None:
        if notes is None:
            return
        if not isinstance(notes, str):
            raise ValidationError("Notes must be a string if provided")
        if len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Notes must be at most {MAX_NOTES_LENGTH} characters")

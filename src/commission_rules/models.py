from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

from .errors import ValidationError

Scalar = Union[str, int, float, bool]
ConditionValue = Union[Scalar, tuple[Scalar, ...]]

OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "in")


@dataclass(slots=True, frozen=True)
class Condition:
    field: str
    operator: str
    value: ConditionValue | None

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Condition:
        value = payload.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return cls(
            field=str(payload.get("field") or ""),
            operator=str(payload.get("operator") or ""),
            value=value,
        )


@dataclass(slots=True, frozen=True)
class Calculation:
    expression: str


@dataclass(slots=True, frozen=True)
class Rule:
    """A named, prioritized commission rule.

    Rules are value objects: once validated they are never mutated, so the
    same instance can be evaluated against many contexts.
    """

    name: str
    priority: int
    conditions: tuple[Condition, ...]
    calculation: Calculation
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "priority": self.priority,
            "conditions": [condition.to_dict() for condition in self.conditions],
            "calculation": {"expression": self.calculation.expression},
        }
        if self.notes is not None:
            payload["notes"] = self.notes
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Rule:
        calculation = payload.get("calculation") or {}
        if isinstance(calculation, Mapping):
            expression = calculation.get("expression", "")
        else:
            expression = calculation
        conditions = payload.get("conditions") or []
        if not isinstance(conditions, (list, tuple)) or not all(isinstance(item, Mapping) for item in conditions):
            raise ValidationError("Conditions must be an array of objects")
        priority = payload.get("priority")
        # JSON clients may send whole numbers as floats.
        if isinstance(priority, float) and priority.is_integer():
            priority = int(priority)
        return cls(
            name=payload.get("name", ""),
            priority=priority,
            conditions=tuple(Condition.from_dict(item) for item in conditions),
            calculation=Calculation(expression=str(expression or "")),
            notes=payload.get("notes"),
        )

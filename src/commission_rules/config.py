from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .expressions import ALLOWED_FUNCTIONS
from .fields import DEFAULT_RECOGNIZED_FIELDS

CALCULATION_PATTERN = re.compile(r"^[A-Za-z0-9_+\-*/(). ]+$")
# Admits argument separators and comparison operators for multi-argument calls.
EXTENDED_CALCULATION_PATTERN = re.compile(r"^[A-Za-z0-9_+\-*/(). ,<>=!]+$")

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}


def _default_functions() -> Mapping[str, Callable[..., Any]]:
    return MappingProxyType(dict(ALLOWED_FUNCTIONS))


@dataclass(slots=True, frozen=True)
class EngineConfig:
    """Read-only tables shared by the parser, validator and evaluators."""

    recognized_fields: frozenset[str] = DEFAULT_RECOGNIZED_FIELDS
    strict_sections: bool = False
    calculation_pattern: re.Pattern[str] = CALCULATION_PATTERN
    functions: Mapping[str, Callable[..., Any]] = field(default_factory=_default_functions)

    def with_fields(self, *names: str) -> EngineConfig:
        return EngineConfig(
            recognized_fields=self.recognized_fields | frozenset(names),
            strict_sections=self.strict_sections,
            calculation_pattern=self.calculation_pattern,
            functions=self.functions,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        env = os.environ if environ is None else environ
        extra_fields = {
            name.strip() for name in env.get("RULES_EXTRA_FIELDS", "").split(",") if name.strip()
        }
        allow_arguments = env.get("RULES_ALLOW_FUNCTION_ARGUMENTS", "").strip().lower() in TRUTHY_ENV_VALUES
        return cls(
            recognized_fields=DEFAULT_RECOGNIZED_FIELDS | frozenset(extra_fields),
            strict_sections=env.get("RULES_STRICT_SECTIONS", "").strip().lower() in TRUTHY_ENV_VALUES,
            calculation_pattern=EXTENDED_CALCULATION_PATTERN if allow_arguments else CALCULATION_PATTERN,
        )

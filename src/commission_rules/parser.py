"""Indentation-based rule text grammar.

A rule block looks like::

    Basic Sales Commission (1)
        When
            sale_amount > 0
        Then
            sale_amount * 0.05
        Notes
            Standard 5% commission on all sales

Each physical line is classified into a ``ParsedLine`` record, then the
records are folded into a draft ``Rule``. Validation happens afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Sequence, Union

from .config import EngineConfig
from .errors import ParseError
from .models import Calculation, Condition, Rule

logger = logging.getLogger(__name__)

INDENT_UNIT = "    "
SECTIONS = {"When": "when", "Then": "then", "Notes": "notes"}
BOOLEAN_LITERALS = {"true": True, "false": False}

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
NUMBER_PATTERN = re.compile(r"[+-]?(?:0|[1-9][0-9]*)(?:\.[0-9]+)?")
STRING_PATTERN = re.compile(r'"([^"]*)"')
HEADER_PATTERN = re.compile(r"(?P<name>.*?\S)\s*\(\s*(?P<priority>[+-]?[0-9]+)\s*\)")
# Longest operators first so ">=" never lexes as ">".
CONDITION_PATTERN = re.compile(
    r"(?P<field>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?:\s*(?P<symbol>==|!=|>=|<=|>|<)\s*|\s+(?P<keyword>in)\s+)"
    r"(?P<value>\S.*)"
)

HEADER_TOKEN = "rule header 'Name (priority)'"
CONDITION_TOKEN = "condition 'field operator value'"
EXPECTED_BY_SECTION: dict[str | None, tuple[str, ...]] = {
    None: (HEADER_TOKEN, *SECTIONS),
    "when": (CONDITION_TOKEN, *SECTIONS),
    "then": ("calculation", *SECTIONS),
    "notes": ("note", *SECTIONS),
}

_NO_MATCH = object()


@dataclass(slots=True, frozen=True)
class RuleHeaderLine:
    line_number: int
    depth: int
    name: str
    priority: int


@dataclass(slots=True, frozen=True)
class SectionLine:
    line_number: int
    depth: int
    section: str


@dataclass(slots=True, frozen=True)
class ConditionLine:
    line_number: int
    depth: int
    condition: Condition


@dataclass(slots=True, frozen=True)
class CalculationLine:
    line_number: int
    depth: int
    expression: str


@dataclass(slots=True, frozen=True)
class NoteLine:
    line_number: int
    depth: int
    text: str


ParsedLine = Union[RuleHeaderLine, SectionLine, ConditionLine, CalculationLine, NoteLine]


def parse_scalar(text: str) -> Any:
    if NUMBER_PATTERN.fullmatch(text):
        return float(text) if "." in text else int(text)
    if string := STRING_PATTERN.fullmatch(text):
        return string.group(1)
    if text in BOOLEAN_LITERALS:
        return BOOLEAN_LITERALS[text]
    if IDENTIFIER_PATTERN.fullmatch(text):
        return text
    return _NO_MATCH


def _split_items(body: str) -> list[str]:
    items: list[str] = []
    current: list[str] = []
    quoted = False
    for ch in body:
        if ch == '"':
            quoted = not quoted
        elif ch == "," and not quoted:
            items.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail or items:
        items.append(tail)
    return items


def parse_value(text: str) -> Any:
    """Parse a condition right-hand side; arrays come back as tuples."""
    text = text.strip()
    if text.startswith("[") and text.endswith("]"):
        values = tuple(parse_scalar(item) for item in _split_items(text[1:-1]))
        if any(value is _NO_MATCH for value in values):
            return _NO_MATCH
        return values
    return parse_scalar(text)


def parse_condition(text: str) -> Condition | None:
    match = CONDITION_PATTERN.fullmatch(text)
    if match is None:
        return None
    value = parse_value(match.group("value"))
    if value is _NO_MATCH:
        return None
    return Condition(
        field=match.group("field"),
        operator=match.group("symbol") or match.group("keyword"),
        value=value,
    )


def parse_line(raw: str, line_number: int = 1, section: str | None = None) -> ParsedLine:
    """Classify one non-blank physical line.

    Calculation and note text share the same lexical shape, so the open
    section decides between them. Headers are only recognized before the
    first section marker.
    """
    content = raw.strip()
    leading = raw[: len(raw) - len(raw.lstrip(" \t"))]
    if "\t" in leading:
        raise ParseError(
            "indentation must use spaces, not tabs",
            line_number=line_number,
            line=raw,
            expected=(f"{len(INDENT_UNIT)}-space indentation",),
        )
    if not content:
        raise ParseError(
            "unexpected blank line",
            line_number=line_number,
            line=raw,
            expected=EXPECTED_BY_SECTION.get(section, ()),
        )
    depth = len(leading) // len(INDENT_UNIT)

    if content in SECTIONS:
        return SectionLine(line_number, depth, SECTIONS[content])
    if section == "notes":
        return NoteLine(line_number, depth, content)
    if section == "then":
        return CalculationLine(line_number, depth, content)
    if section is None and (header := HEADER_PATTERN.fullmatch(content)):
        return RuleHeaderLine(line_number, depth, header.group("name"), int(header.group("priority")))
    if (condition := parse_condition(content)) is not None:
        return ConditionLine(line_number, depth, condition)
    return CalculationLine(line_number, depth, content)


def split_blocks(text: str) -> list[list[tuple[int, str]]]:
    """Group numbered non-blank lines into blank-line separated blocks."""
    blocks: list[list[tuple[int, str]]] = []
    current: list[tuple[int, str]] = []
    for line_number, raw in enumerate(text.splitlines(), start=1):
        if raw.strip():
            current.append((line_number, raw))
            continue
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def numbered_lines(text: str) -> list[tuple[int, str]]:
    return [(number, raw) for number, raw in enumerate(text.splitlines(), start=1) if raw.strip()]


class RuleParser:
    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or EngineConfig()

    def parse_block(self, lines: Iterable[tuple[int, str]]) -> Rule:
        return self.assemble(self.parse_lines(lines))

    def parse_lines(self, lines: Iterable[tuple[int, str]]) -> list[ParsedLine]:
        parsed: list[ParsedLine] = []
        section: str | None = None
        for line_number, raw in lines:
            if not raw.strip():
                continue
            line = parse_line(raw, line_number, section)
            if isinstance(line, SectionLine):
                section = line.section
            parsed.append(line)
        return parsed

    def assemble(self, lines: Sequence[ParsedLine]) -> Rule:
        header: RuleHeaderLine | None = None
        section: str | None = None
        conditions: list[Condition] = []
        calculation: Calculation | None = None
        notes: list[str] = []

        for line in lines:
            match line:
                case RuleHeaderLine():
                    if header is not None and self.config.strict_sections:
                        raise ParseError(
                            "duplicate rule header",
                            line_number=line.line_number,
                            expected=EXPECTED_BY_SECTION[section],
                        )
                    header = line
                case SectionLine(section=name):
                    section = name
                case ConditionLine(condition=condition) if section == "when":
                    conditions.append(condition)
                case CalculationLine(expression=expression) if section == "then":
                    calculation = Calculation(expression=expression)
                case NoteLine(text=text) if section == "notes":
                    notes.append(text)
                case _:
                    self._drop(line, section)

        if header is None:
            raise ParseError("Invalid rule structure: missing rule header", expected=(HEADER_TOKEN,))
        if calculation is None:
            raise ParseError(
                "Invalid rule structure: missing calculation",
                line_number=header.line_number,
                expected=("Then", "calculation"),
            )
        return Rule(
            name=header.name,
            priority=header.priority,
            conditions=tuple(conditions),
            calculation=calculation,
            notes="\n".join(notes) if notes else None,
        )

    def _drop(self, line: ParsedLine, section: str | None) -> None:
        if self.config.strict_sections:
            where = f"'{section.capitalize()}' section" if section else "rule header"
            raise ParseError(
                f"unexpected {_describe(line)} under {where}",
                line_number=line.line_number,
                expected=EXPECTED_BY_SECTION[section],
            )
        logger.debug(
            "line_dropped",
            extra={"line_number": line.line_number, "section": section, "line_kind": _describe(line)},
        )


_LINE_KINDS = {ConditionLine: "condition", CalculationLine: "calculation", NoteLine: "note"}


def _describe(line: ParsedLine) -> str:
    return _LINE_KINDS.get(type(line), "line")


def format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_value(item) for item in value) + "]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return repr(value)
    if isinstance(value, float):
        # Number literals have no exponent form.
        text = format(Decimal(repr(value)), "f")
        return text if "." in text else f"{text}.0"
    text = str(value)
    if IDENTIFIER_PATTERN.fullmatch(text) and text not in BOOLEAN_LITERALS:
        return text
    return f'"{text}"'


def format_rule(rule: Rule) -> str:
    """Render a rule back into the text format accepted by the parser."""
    lines = [f"{rule.name} ({rule.priority})", f"{INDENT_UNIT}When"]
    lines.extend(
        f"{INDENT_UNIT * 2}{condition.field} {condition.operator} {format_value(condition.value)}"
        for condition in rule.conditions
    )
    lines.append(f"{INDENT_UNIT}Then")
    lines.append(f"{INDENT_UNIT * 2}{rule.calculation.expression.strip()}")
    if rule.notes:
        lines.append(f"{INDENT_UNIT}Notes")
        lines.extend(f"{INDENT_UNIT * 2}{note.strip()}" for note in rule.notes.splitlines() if note.strip())
    return "\n".join(lines)


def format_rules(rules: Iterable[Rule]) -> str:
    return "\n\n".join(format_rule(rule) for rule in rules)

"""Closed arithmetic/logic language used by the ``Then`` section of a rule.

Expressions are tokenized and parsed into a small syntax tree which is then
interpreted directly; nothing is ever handed to the host ``eval``. Evaluation
runs in two phases: every bare identifier is first resolved against the
context, then the tree is reduced using the function table below.
"""

from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Callable, Mapping, Union

from .errors import EvaluationError, ExpressionSyntaxError

logger = logging.getLogger(__name__)


def _round(value: Any, digits: Any = 0) -> float:
    number = float(value)
    if not math.isfinite(number):
        return number
    exact = Decimal(repr(number))
    places = int(digits)
    # Nothing to round; quantizing large values would exceed the decimal context.
    if exact.as_tuple().exponent >= -places:
        return number
    return float(exact.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": _round,
    "min": min,
    "max": max,
    "pow": math.pow,
    "sqrt": math.sqrt,
    "not": operator.not_,
    "eq": operator.eq,
    "neq": operator.ne,
    "gt": operator.gt,
    "lt": operator.lt,
    "gte": operator.ge,
    "lte": operator.le,
}

# Evaluated lazily so an untaken branch never raises.
SHORT_CIRCUIT_FUNCTIONS = {"if": 3, "and": 2, "or": 2}

_BINARY_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_COMPARISONS = {"==", "!=", "<", "<=", ">", ">="}

_NUMBER = re.compile(r"(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMERIC_TEXT = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


@dataclass(slots=True, frozen=True)
class Token:
    type: str
    value: Any
    position: int


@dataclass(slots=True, frozen=True)
class Number:
    value: int | float


@dataclass(slots=True, frozen=True)
class Name:
    name: str


@dataclass(slots=True, frozen=True)
class UnaryOp:
    op: str
    operand: Node


@dataclass(slots=True, frozen=True)
class BinaryOp:
    op: str
    left: Node
    right: Node


@dataclass(slots=True, frozen=True)
class Call:
    name: str
    args: tuple[Node, ...]


Node = Union[Number, Name, UnaryOp, BinaryOp, Call]


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Parsed expression that can be evaluated against many contexts."""

    source: str
    tree: Node
    variables: tuple[str, ...]


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    index = 0
    while index < len(source):
        ch = source[index]
        if ch.isspace():
            index += 1
            continue
        if number := _NUMBER.match(source, index):
            text = number.group(0)
            value: int | float = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token("NUMBER", value, index))
            index = number.end()
            continue
        if name := _NAME.match(source, index):
            tokens.append(Token("NAME", name.group(0), index))
            index = name.end()
            continue
        if ch == "(":
            tokens.append(Token("LPAREN", ch, index))
        elif ch == ")":
            tokens.append(Token("RPAREN", ch, index))
        elif ch == ",":
            tokens.append(Token("COMMA", ch, index))
        elif source[index : index + 2] in _COMPARISONS:
            tokens.append(Token("OP", source[index : index + 2], index))
            index += 2
            continue
        elif ch in _BINARY_OPERATORS:
            tokens.append(Token("OP", ch, index))
        else:
            raise ExpressionSyntaxError(f"Unexpected character '{ch}'", index)
        index += 1
    tokens.append(Token("EOF", None, len(source)))
    return tokens


class _Parser:
    """Recursive descent parser; comparisons bind loosest, then + -, then * /."""

    def __init__(self, tokens: list[Token]) -> None:
        self._tokens = tokens
        self._position = 0

    def parse(self) -> Node:
        node = self._comparison()
        token = self._peek()
        if token.type != "EOF":
            raise ExpressionSyntaxError(f"Unexpected token '{token.value}'", token.position)
        return node

    def _peek(self) -> Token:
        return self._tokens[self._position]

    def _advance(self) -> Token:
        token = self._tokens[self._position]
        if token.type != "EOF":
            self._position += 1
        return token

    def _match_operator(self, operators: set[str] | tuple[str, ...]) -> str | None:
        token = self._peek()
        if token.type == "OP" and token.value in operators:
            self._advance()
            return token.value
        return None

    def _expect(self, token_type: str, message: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise ExpressionSyntaxError(message, token.position)
        return self._advance()

    def _comparison(self) -> Node:
        node = self._additive()
        while op := self._match_operator(_COMPARISONS):
            node = BinaryOp(op, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._term()
        while op := self._match_operator(("+", "-")):
            node = BinaryOp(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while op := self._match_operator(("*", "/")):
            node = BinaryOp(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if op := self._match_operator(("+", "-")):
            return UnaryOp(op, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.type == "NUMBER":
            return Number(token.value)
        if token.type == "NAME":
            if self._peek().type != "LPAREN":
                return Name(token.value)
            self._advance()
            args: list[Node] = []
            if self._peek().type != "RPAREN":
                args.append(self._comparison())
                while self._peek().type == "COMMA":
                    self._advance()
                    args.append(self._comparison())
            self._expect("RPAREN", f"Expected ')' to close call to '{token.value}'")
            return Call(token.value, tuple(args))
        if token.type == "LPAREN":
            node = self._comparison()
            self._expect("RPAREN", "Expected ')'")
            return node
        if token.type == "EOF":
            raise ExpressionSyntaxError("Unexpected end of expression", token.position)
        raise ExpressionSyntaxError(f"Unexpected token '{token.value}'", token.position)


def _collect_variables(node: Node, found: dict[str, None]) -> None:
    match node:
        case Name(name=name):
            found.setdefault(name, None)
        case UnaryOp(operand=operand):
            _collect_variables(operand, found)
        case BinaryOp(left=left, right=right):
            _collect_variables(left, found)
            _collect_variables(right, found)
        case Call(args=args):
            for arg in args:
                _collect_variables(arg, found)


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ExpressionProgram:
    source = expression.strip()
    found: dict[str, None] = {}
    try:
        tree = _Parser(tokenize(source)).parse()
        _collect_variables(tree, found)
    except RecursionError as exc:
        raise ExpressionSyntaxError("Expression is nested too deeply") from exc
    return ExpressionProgram(source=source, tree=tree, variables=tuple(found))


def expression_variables(expression: str) -> list[str]:
    """Return the context names an expression reads, in order of appearance."""
    return list(compile_expression(expression).variables)


def _coerce_operand(name: str, value: Any, expression: str) -> int | float | bool:
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str) and _NUMERIC_TEXT.fullmatch(value.strip()):
        text = value.strip()
        return float(text) if any(c in text for c in ".eE") else int(text)
    raise EvaluationError(
        f"Variable '{name}' is not numeric",
        details={"expression": expression, "variable": name, "value_type": type(value).__name__},
    )


class ExpressionEvaluator:
    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self.functions = dict(ALLOWED_FUNCTIONS if functions is None else functions)

    def is_function(self, name: str) -> bool:
        return name in self.functions or name in SHORT_CIRCUIT_FUNCTIONS

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> float:
        try:
            program = compile_expression(expression)
        except ExpressionSyntaxError as exc:
            raise EvaluationError(
                "Failed to parse expression",
                details={"expression": expression, "reason": str(exc)},
            ) from exc

        bindings = self.substitute(program, context)
        try:
            result = self._evaluate_node(program.tree, bindings)
        except EvaluationError:
            raise
        except (ArithmeticError, ValueError, TypeError, RecursionError) as exc:
            raise EvaluationError(
                "Failed to evaluate expression",
                details={"expression": program.source, "reason": str(exc) or type(exc).__name__},
            ) from exc
        value = _finite_number(result, program.source)
        logger.debug("expression_evaluated", extra={"expression": program.source, "result": value})
        return value

    def substitute(self, program: ExpressionProgram, context: Mapping[str, Any]) -> dict[str, Any]:
        bindings: dict[str, Any] = {}
        for name in program.variables:
            if name not in context:
                if self.is_function(name):
                    raise EvaluationError(
                        f"Function '{name}' must be called with arguments",
                        details={"expression": program.source, "function": name},
                    )
                raise EvaluationError(
                    f"Missing required variable '{name}' in context",
                    details={"expression": program.source, "variable": name},
                )
            bindings[name] = _coerce_operand(name, context[name], program.source)
        return bindings

    def _evaluate_node(self, node: Node, bindings: dict[str, Any]) -> Any:
        match node:
            case Number(value=value):
                return value
            case Name(name=name):
                return bindings[name]
            case UnaryOp(op="-", operand=operand):
                return -self._evaluate_node(operand, bindings)
            case UnaryOp(operand=operand):
                return +self._evaluate_node(operand, bindings)
            case BinaryOp(op=op, left=left, right=right):
                return _BINARY_OPERATORS[op](
                    self._evaluate_node(left, bindings),
                    self._evaluate_node(right, bindings),
                )
            case Call(name=name, args=args):
                return self._call(name, args, bindings)
        raise TypeError(f"Unsupported expression node: {type(node).__name__}")

    def _call(self, name: str, args: tuple[Node, ...], bindings: dict[str, Any]) -> Any:
        if name in SHORT_CIRCUIT_FUNCTIONS:
            expected = SHORT_CIRCUIT_FUNCTIONS[name]
            if len(args) != expected:
                raise TypeError(f"{name}() takes exactly {expected} arguments ({len(args)} given)")
            first = self._evaluate_node(args[0], bindings)
            if name == "if":
                return self._evaluate_node(args[1] if first else args[2], bindings)
            if name == "and":
                return self._evaluate_node(args[1], bindings) if first else first
            return first if first else self._evaluate_node(args[1], bindings)

        function = self.functions.get(name)
        if function is None:
            raise EvaluationError(
                f"Unknown function '{name}'",
                details={"function": name, "valid_functions": sorted(self.functions) + sorted(SHORT_CIRCUIT_FUNCTIONS)},
            )
        return function(*(self._evaluate_node(arg, bindings) for arg in args))


def _finite_number(result: Any, expression: str) -> float:
    if isinstance(result, bool) or not isinstance(result, (int, float)):
        raise EvaluationError(
            "Expression must evaluate to a finite number",
            details={"expression": expression, "result_type": type(result).__name__},
        )
    try:
        value = float(result)
    except OverflowError as exc:
        raise EvaluationError(
            "Expression must evaluate to a finite number",
            details={"expression": expression, "reason": str(exc)},
        ) from exc
    if not math.isfinite(value):
        raise EvaluationError(
            "Expression must evaluate to a finite number",
            details={"expression": expression, "result": str(value)},
        )
    return value

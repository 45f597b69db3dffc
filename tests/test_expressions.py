import math

import pytest

from commission_rules.errors import EvaluationError, ExpressionSyntaxError
from commission_rules.expressions import (
    ExpressionEvaluator,
    compile_expression,
    expression_variables,
    tokenize,
)


def evaluate(expression: str, context: dict | None = None) -> float:
    return ExpressionEvaluator().evaluate(expression, context or {})


def test_arithmetic_precedence_and_unary_minus() -> None:
    assert evaluate("2 + 3 * 4") == 14
    assert evaluate("(2 + 3) * 4") == 20
    assert evaluate("-2 * -3") == 6
    assert evaluate("10 / 4 - 1") == 1.5
    assert evaluate("-(1 + 2)") == -3


def test_variables_are_substituted_from_context() -> None:
    assert evaluate("sale_amount * commission_rate", {"sale_amount": 1000, "commission_rate": 0.07}) == pytest.approx(70)


def test_numeric_strings_and_booleans_substitute_as_numbers() -> None:
    assert evaluate("bonus + 1", {"bonus": "41"}) == 42
    assert evaluate("flag * 10", {"flag": True}) == 10


def test_non_numeric_variable_is_rejected() -> None:
    with pytest.raises(EvaluationError, match="Variable 'region' is not numeric"):
        evaluate("region * 2", {"region": "west"})
    with pytest.raises(EvaluationError, match="not numeric"):
        evaluate("items * 2", {"items": [1, 2]})


def test_missing_variable_raises() -> None:
    with pytest.raises(EvaluationError, match="Missing required variable 'commission_rate'") as excinfo:
        evaluate("sale_amount * commission_rate", {"sale_amount": 1000})
    assert excinfo.value.details["variable"] == "commission_rate"


def test_function_names_are_not_context_lookups() -> None:
    assert evaluate("round(x) + if(x, 1, 0) + and(1, 2)", {"x": 2.4}) == 5
    assert expression_variables("round(x) + max(y, z) + if(and(x, y), x, 0)") == ["x", "y", "z"]


def test_bare_function_name_needs_arguments() -> None:
    with pytest.raises(EvaluationError, match="Function 'round' must be called"):
        evaluate("round + 1")


def test_math_functions() -> None:
    assert evaluate("abs(0 - 5)") == 5
    assert evaluate("ceil(1.2) + floor(1.8)") == 3
    assert evaluate("min(3, 1, 2) + max(3, 1, 2)") == 4
    assert evaluate("pow(2, 10)") == 1024
    assert evaluate("sqrt(pow(sale_amount, 2) + pow(bonus, 2)) * commission_rate",
                    {"sale_amount": 3000, "bonus": 4000, "commission_rate": 0.02}) == pytest.approx(100)


def test_round_is_half_away_from_zero() -> None:
    assert evaluate("round(2.5)") == 3
    assert evaluate("round(0 - 2.5)") == -3
    assert evaluate("round(1.005, 2)") == 1.01
    assert evaluate("round(sale_amount * 0.05)", {"sale_amount": 1234.56}) == 62
    assert evaluate("round(sale_amount * 0.05) + min(sale_amount, 1000)", {"sale_amount": 1234.56}) == 1062


def test_logical_helpers_follow_truthiness() -> None:
    assert evaluate("and(2, 3)") == 3
    assert evaluate("and(0, 3)") == 0
    assert evaluate("or(0, 4)") == 4
    assert evaluate("or(5, 4)") == 5
    assert evaluate("if(not(0), 7, 8)") == 7


def test_comparisons_and_conditional() -> None:
    expression = "(sale_amount * 0.05) + if(sale_amount > 10000, 100, 0)"
    assert evaluate(expression, {"sale_amount": 5000}) == 250
    assert evaluate(expression, {"sale_amount": 15000}) == 850
    logical = "if(and(sale_amount > 1000, sale_amount < 5000), sale_amount * 0.05, sale_amount * 0.03)"
    assert evaluate(logical, {"sale_amount": 2000}) == pytest.approx(100)
    assert evaluate(logical, {"sale_amount": 6000}) == pytest.approx(180)
    assert evaluate("if(eq(a, b), 1, 0) + if(gte(a, b), 10, 0) + gt(a, b) * 100", {"a": 2, "b": 2}) == 11


def test_short_circuit_skips_untaken_branch() -> None:
    assert evaluate("if(eq(count, 0), 0, 100 / count)", {"count": 0}) == 0
    assert evaluate("and(0, 1 / 0)") == 0


def test_division_by_zero_is_wrapped() -> None:
    with pytest.raises(EvaluationError, match="Failed to evaluate expression") as excinfo:
        evaluate("sale_amount / 0", {"sale_amount": 10})
    assert isinstance(excinfo.value.__cause__, ZeroDivisionError)


def test_syntax_errors_are_wrapped() -> None:
    with pytest.raises(EvaluationError, match="Failed to parse expression") as excinfo:
        evaluate("sale_amount * (1 + 1", {"sale_amount": 1000})
    assert isinstance(excinfo.value.__cause__, ExpressionSyntaxError)
    with pytest.raises(EvaluationError, match="Failed to parse expression"):
        evaluate("2 @ 3")


def test_unknown_function_and_wrong_arity() -> None:
    with pytest.raises(EvaluationError, match="Unknown function 'bonus'"):
        evaluate("bonus(1)")
    with pytest.raises(EvaluationError, match="Failed to evaluate expression"):
        evaluate("if(1, 2)")
    with pytest.raises(EvaluationError, match="Failed to evaluate expression"):
        evaluate("sqrt(1, 2)")


@pytest.mark.parametrize("expression", ["gt(2, 1)", "1 > 0", "sqrt(0 - 1)", "pow(10, 400)"])
def test_result_must_be_a_finite_number(expression) -> None:
    with pytest.raises(EvaluationError):
        evaluate(expression)


def test_results_are_floats() -> None:
    result = evaluate("2 * 3")
    assert isinstance(result, float)
    assert math.isfinite(result)


def test_compile_expression_is_reusable() -> None:
    program = compile_expression("  base * rate ")
    assert program.source == "base * rate"
    assert program.variables == ("base", "rate")
    assert compile_expression("  base * rate ") is program
    evaluator = ExpressionEvaluator()
    assert evaluator.evaluate(program.source, {"base": 10, "rate": 2}) == 20
    assert evaluator.evaluate(program.source, {"base": 3, "rate": 3}) == 9


def test_tokenize_reads_two_character_operators() -> None:
    tokens = tokenize("a >= 1.5e2")
    assert [(token.type, token.value) for token in tokens] == [
        ("NAME", "a"),
        ("OP", ">="),
        ("NUMBER", 150.0),
        ("EOF", None),
    ]


def test_long_flat_chain_fails_as_evaluation_error() -> None:
    with pytest.raises(EvaluationError, match="Failed to parse expression") as excinfo:
        evaluate("1" + " + 1" * 1500)
    assert "nested too deeply" in excinfo.value.details["reason"]


def test_round_handles_values_beyond_decimal_precision() -> None:
    assert evaluate("round(x)", {"x": 1e30}) == 1e30
    assert evaluate("round(x, 2)", {"x": 1e30}) == 1e30
    assert evaluate("round(x) + floor(x)", {"x": -1e300}) == -2e300
    assert evaluate("round(1.5, 40)") == 1.5

import pytest

from commission_rules.config import EXTENDED_CALCULATION_PATTERN, EngineConfig
from commission_rules.errors import ValidationError
from commission_rules.fields import SALES_FIELDS
from commission_rules.models import OPERATORS, Calculation, Condition, Rule
from commission_rules.validation import RuleValidator


def make_rule(**overrides) -> Rule:
    values = {
        "name": "Basic Sales Commission",
        "priority": 1,
        "conditions": (Condition(field="sale_amount", operator=">", value=0),),
        "calculation": Calculation(expression="sale_amount * 0.05"),
        "notes": None,
    }
    values.update(overrides)
    return Rule(**values)


def test_valid_rule_passes_and_validation_is_idempotent() -> None:
    validator = RuleValidator()
    rule = make_rule(notes="Standard 5% commission")
    assert validator.validate(rule) is None
    assert validator.validate(rule) is None


@pytest.mark.parametrize(
    ("name", "message"),
    [
        ("", "Rule name is required"),
        ("123Invalid Rule", "must start with a letter"),
        ("Bonus-Rule", "must start with a letter"),
        ("A" * 101, "at most 100 characters"),
    ],
)
def test_invalid_names(name, message) -> None:
    with pytest.raises(ValidationError, match=message):
        RuleValidator().validate(make_rule(name=name))


def test_name_of_exactly_100_characters_is_accepted() -> None:
    RuleValidator().validate(make_rule(name="A" * 100))


@pytest.mark.parametrize("priority", [0, 101, -1])
def test_priority_out_of_range(priority) -> None:
    with pytest.raises(ValidationError, match="between 1 and 100"):
        RuleValidator().validate(make_rule(priority=priority))


@pytest.mark.parametrize("priority", [1.5, "3", True, None])
def test_priority_must_be_an_integer(priority) -> None:
    with pytest.raises(ValidationError, match="Priority must be an integer"):
        RuleValidator().validate(make_rule(priority=priority))


def test_name_error_is_reported_before_priority_error() -> None:
    with pytest.raises(ValidationError, match="Rule name"):
        RuleValidator().validate(make_rule(name="9 lives", priority=500))


def test_conditions_required_and_capped() -> None:
    validator = RuleValidator()
    with pytest.raises(ValidationError, match="At least one condition is required"):
        validator.validate(make_rule(conditions=()))

    many = tuple(Condition(field="sale_amount", operator=">", value=index) for index in range(11))
    with pytest.raises(ValidationError, match="Maximum of 10 conditions"):
        validator.validate(make_rule(conditions=many))

    validator.validate(make_rule(conditions=many[:10]))


def test_unknown_field_reports_index_and_valid_fields() -> None:
    conditions = (
        Condition(field="sale_amount", operator=">", value=0),
        Condition(field="invalid_field", operator=">", value=0),
    )
    with pytest.raises(ValidationError, match="Invalid field 'invalid_field' in condition 2") as excinfo:
        RuleValidator().validate(make_rule(conditions=conditions))
    assert excinfo.value.details["valid_fields"] == sorted(SALES_FIELDS)
    assert excinfo.value.details["condition_index"] == 2


def test_recognized_fields_are_injectable() -> None:
    config = EngineConfig().with_fields("invalid_field")
    rule = make_rule(conditions=(Condition(field="invalid_field", operator=">", value=0),))
    RuleValidator(config).validate(rule)
    with pytest.raises(ValidationError):
        RuleValidator(EngineConfig(recognized_fields=frozenset({"region"}))).validate(make_rule())


def test_unknown_operator_reports_valid_operators() -> None:
    rule = make_rule(conditions=(Condition(field="sale_amount", operator="=>", value=0),))
    with pytest.raises(ValidationError, match="Invalid operator '=>' in condition 1") as excinfo:
        RuleValidator().validate(rule)
    assert excinfo.value.details["valid_operators"] == list(OPERATORS)


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("electronics", "requires an array value"),
        ((), "cannot be empty"),
        (tuple(str(index) for index in range(11)), "more than 10 items"),
        (("electronics", None), "Array items must be"),
    ],
)
def test_in_operator_value_shape(value, message) -> None:
    rule = make_rule(conditions=(Condition(field="product_category", operator="in", value=value),))
    with pytest.raises(ValidationError, match=message):
        RuleValidator().validate(rule)


def test_scalar_operator_value_shape() -> None:
    validator = RuleValidator()
    with pytest.raises(ValidationError, match="Value is required in condition 1"):
        validator.validate(make_rule(conditions=(Condition(field="region", operator="==", value=None),)))
    with pytest.raises(ValidationError, match="requires a single value"):
        validator.validate(make_rule(conditions=(Condition(field="region", operator="==", value=("a", "b")),)))


@pytest.mark.parametrize(
    ("expression", "message"),
    [
        ("   ", "cannot be empty"),
        ("sale_amount * 0.05 + @invalid", "invalid characters"),
        ("min(sale_amount, 1000)", "invalid characters"),
        ("sale_amount * (1 + 1", "Unbalanced parentheses"),
        ("sale_amount) * (2", "Unbalanced parentheses"),
    ],
)
def test_invalid_calculations(expression, message) -> None:
    with pytest.raises(ValidationError, match=message):
        RuleValidator().validate(make_rule(calculation=Calculation(expression=expression)))


def test_extended_calculation_pattern_admits_function_arguments() -> None:
    config = EngineConfig(calculation_pattern=EXTENDED_CALCULATION_PATTERN)
    rule = make_rule(calculation=Calculation(expression="if(sale_amount > 10000, 100, 0) + min(sale_amount, 1000)"))
    RuleValidator(config).validate(rule)


def test_notes_length_limit() -> None:
    validator = RuleValidator()
    validator.validate(make_rule(notes="x" * 500))
    with pytest.raises(ValidationError, match="Notes must be at most 500 characters"):
        validator.validate(make_rule(notes="x" * 501))


def test_checks_run_in_fixed_order() -> None:
    rule = make_rule(
        conditions=(Condition(field="invalid_field", operator=">", value=0),),
        calculation=Calculation(expression="@"),
        notes="x" * 600,
    )
    with pytest.raises(ValidationError, match="Invalid field"):
        RuleValidator().validate(rule)

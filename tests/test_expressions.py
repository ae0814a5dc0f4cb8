from decimal import Decimal

import pytest

from recordbridge.models import ConditionOperator, RoundingPolicy
from recordbridge.utils.expressions import (
    ConditionSyntaxError, ExpressionError, FieldRef, apply_rounding, evaluate_formula,
    formula_fields, parse_condition, parse_formula, to_decimal, to_python_number,
)

def zero(ref):
    return Decimal(0)

def test_formula_precedence():
    """Test multiplication binds tighter than addition"""
    assert evaluate_formula("2 + 3 * 4", zero) == Decimal(14)
    assert evaluate_formula("(2 + 3) * 4", zero) == Decimal(20)

def test_formula_unary_minus():
    """Test unary minus on a parenthesised group"""
    assert evaluate_formula("-(2 + 3) * 2", zero) == Decimal(-10)

def test_formula_resolves_fields():
    """Test field references go through the resolver"""
    values = {"grossPay": Decimal(1000), "deductions": Decimal(200)}
    assert evaluate_formula("(source.grossPay - deductions) / 2", lambda ref: values[ref.name]) == Decimal(400)

def test_formula_fields_in_order():
    """Test referenced field names are listed once, in order"""
    assert formula_fields("(source.grossPay - deductions) / grossPay") == ["grossPay", "deductions"]

def test_source_namespace():
    """Test source.name parses to a source-only reference"""
    assert parse_formula("source.grossPay") == FieldRef("grossPay", source_only=True)
    assert parse_formula("grossPay") == FieldRef("grossPay")

@pytest.mark.parametrize("formula", [
    "__import__('os').system('ls')",
    "1; 2",
    "2 ** 3",
    "().__class__",
    "a[0]",
    "lambda: 1",
    "x = 1",
    '"abc"',
    "os.getcwd()",
    "grossPay.__class__",
    "1 +",
    "(1 + 2",
    "1 2",
    "",
])
def test_adversarial_formulas_rejected(formula):
    """Test injection attempts and malformed formulas never reach the resolver"""
    calls = []

    def resolve(ref):
        calls.append(ref)
        return Decimal(1)

    with pytest.raises(ExpressionError):
        evaluate_formula(formula, resolve)
    assert calls == []

def test_formula_length_limit():
    """Test over-long formulas are rejected"""
    with pytest.raises(ExpressionError):
        parse_formula("1+" * 600 + "1")

def test_formula_depth_limit():
    """Test deeply nested formulas are rejected"""
    with pytest.raises(ExpressionError):
        parse_formula("(" * 60 + "1" + ")" * 60)

def test_division_by_zero():
    """Test division by zero becomes an expression error"""
    with pytest.raises(ExpressionError):
        evaluate_formula("1 / 0", zero)

def test_rounding_half_up():
    """Test cents and dollars rounding"""
    assert apply_rounding(Decimal("250.005"), RoundingPolicy.CENTS) == Decimal("250.01")
    assert apply_rounding(Decimal("2.5"), RoundingPolicy.DOLLARS) == Decimal("3")
    assert apply_rounding(Decimal("2.555"), RoundingPolicy.NONE) == Decimal("2.555")

def test_to_python_number():
    """Test integral results become int"""
    result = to_python_number(Decimal("25000.00"))
    assert result == 25000
    assert isinstance(result, int)
    assert to_python_number(Decimal("12.5")) == 12.5

def test_to_decimal():
    """Test numeric coercion of record values"""
    assert to_decimal("12.5") == Decimal("12.5")
    assert to_decimal(7) == Decimal(7)
    assert to_decimal(True) is None
    assert to_decimal("abc") is None
    assert to_decimal(float("nan")) is None
    assert to_decimal(None) is None

def test_to_decimal_rejects_non_numeric_syntax():
    """Test digit separators and other non-numeric text are not numbers"""
    assert to_decimal("1_000") is None
    assert to_decimal("1_0") is None
    assert to_decimal("NaN") is None
    assert to_decimal("12.") == Decimal("12")
    assert to_decimal(" -1.5e2 ") == Decimal("-150")

def test_parse_equality_condition():
    """Test a quoted string condition"""
    condition = parse_condition('source.status == "TERMINATED"')
    assert condition.field == "status"
    assert condition.operator == ConditionOperator.EQUALS
    assert condition.value == "TERMINATED"
    assert condition.evaluate({"status": "TERMINATED"})
    assert not condition.evaluate({"status": "ACTIVE"})
    assert not condition.evaluate({})

def test_condition_operator_aliases():
    """Test strict operator spellings map to the same operators"""
    assert parse_condition("status === 'A'").operator == ConditionOperator.EQUALS
    assert parse_condition("status !== 'A'").operator == ConditionOperator.NOT_EQUALS

def test_numeric_conditions():
    """Test greater-than and less-than on numeric text"""
    condition = parse_condition("hoursWorked > 1000")
    assert condition.evaluate({"hoursWorked": "1500"})
    assert not condition.evaluate({"hoursWorked": 900})
    assert not condition.evaluate({"hoursWorked": None})
    assert not condition.evaluate({"hoursWorked": "n/a"})
    assert parse_condition("age < 21").evaluate({"age": 20})

def test_condition_equality_on_numbers_and_booleans():
    """Test numeric and boolean literals compare by value"""
    assert parse_condition("deferralBps == 500").evaluate({"deferralBps": "500"})
    assert parse_condition("active == true").evaluate({"active": True})
    assert parse_condition("terminationDate == null").evaluate({})
    assert parse_condition("status != 'ACTIVE'").evaluate({"status": "LEAVE"})

def test_quoted_condition_literals_compare_as_text():
    """Test leading-zero codes are not treated as numbers"""
    plan = parse_condition('source.planCode == "0401"')
    assert plan.evaluate({"planCode": "0401"})
    assert not plan.evaluate({"planCode": "401"})
    assert not plan.evaluate({"planCode": 401})

    dept = parse_condition('source.deptCode == "007"')
    assert not dept.evaluate({"deptCode": "7"})
    assert not dept.evaluate({"deptCode": "7.00"})
    assert parse_condition("code != '0100'").evaluate({"code": "100"})
    assert parse_condition("deferralBps == 500").evaluate({"deferralBps": 500.0})

@pytest.mark.parametrize("condition", [
    "status",
    "status ~= 'A'",
    "source.status == __import__('os')",
    "status > 'abc'",
    "1 == 1",
    "status == 'A' or 1 == 1",
    "other.status == 'A'",
])
def test_malformed_conditions_rejected(condition):
    """Test conditions outside the field-operator-literal grammar"""
    with pytest.raises(ConditionSyntaxError):
        parse_condition(condition)

def test_condition_str():
    """Test conditions render back in canonical form"""
    assert str(parse_condition("source.status == 'A'")) == 'source.status == "A"'
    assert str(parse_condition("hours > 10")) == "source.hours > 10"

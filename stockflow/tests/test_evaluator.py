"""
Tests for formula evaluator
"""

import pytest
from stockflow.evaluator import (
    SafeEquationEvaluator,
    extract_variable_references,
    extract_references,
    formula_coefficients,
)
from stockflow.exceptions import EvaluationError
import ast


def test_evaluator_basic_arithmetic():
    """Test basic arithmetic operations"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 10, "y": 5})

    assert evaluator.evaluate("x + y") == 15
    assert evaluator.evaluate("x - y") == 5
    assert evaluator.evaluate("x * y") == 50
    assert evaluator.evaluate("x / y") == 2.0
    assert evaluator.evaluate("x ** 2") == 100
    assert evaluator.evaluate("x % 3") == 1
    assert evaluator.evaluate("x // 3") == 3


def test_evaluator_functions():
    """Test mathematical functions"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 4})

    assert evaluator.evaluate("sqrt(x)") == 2.0
    assert evaluator.evaluate("abs(-x)") == 4
    assert evaluator.evaluate("min(x, 10)") == 4
    assert evaluator.evaluate("max(x, 10)") == 10
    assert evaluator.evaluate("floor(x / 3)") == 1


def test_evaluator_returns_float():
    """Integer and boolean results are converted to float"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 3})

    result = evaluator.evaluate("x + 1")
    assert isinstance(result, float)
    assert evaluator.evaluate("x > 1") == 1.0
    assert evaluator.evaluate("x > 5") == 0.0
    assert evaluator.evaluate("not x") == 0.0


def test_evaluator_undefined_variable():
    """Test error handling for undefined variables"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 10})

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("y + 5", "aux")

    assert exc_info.value.code == "undefined_variable"
    assert exc_info.value.element_id == "aux"


def test_evaluator_division_by_zero():
    """Division by zero is reported, not returned as inf"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 10, "zero": 0})

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("x / zero")
    assert exc_info.value.code == "division_by_zero"


def test_evaluator_math_domain_error():
    """Math domain errors are reported with their own code"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": -1})

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("sqrt(x)")
    assert exc_info.value.code == "math_domain_error"


def test_evaluator_complex_result_rejected():
    """A negative base with a fractional exponent is an arithmetic error"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": -8})

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("x ** 0.5")
    assert exc_info.value.code == "arithmetic_error"


def test_evaluator_rejects_disallowed_function():
    """Only the safe function set can be called"""
    evaluator = SafeEquationEvaluator()

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("__import__('os')")
    assert exc_info.value.code == "function_not_allowed"


def test_evaluator_syntax_error():
    """Malformed formulas raise a syntax error"""
    evaluator = SafeEquationEvaluator()

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("x +")
    assert exc_info.value.code == "syntax_error"


def test_evaluator_ternary():
    """Test ternary conditional expressions"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 10})

    assert evaluator.evaluate("x if x > 5 else 0") == 10
    assert evaluator.evaluate("x if x < 5 else 0") == 0


def test_evaluator_round_is_half_up():
    """round() sends ties upwards instead of to the even neighbour"""
    evaluator = SafeEquationEvaluator()
    evaluator.set_variables({"x": 2.5})

    assert evaluator.evaluate("round(x)") == 3.0
    assert evaluator.evaluate("round(0.5)") == 1.0
    assert evaluator.evaluate("round(-2.5)") == -2.0
    assert evaluator.evaluate("round(2.4)") == 2.0
    assert evaluator.evaluate("round(1.25, 1)") == pytest.approx(1.3)


def test_evaluator_huge_power_overflows():
    """Integer literals are floats, so a huge power fails fast"""
    evaluator = SafeEquationEvaluator()

    with pytest.raises(EvaluationError) as exc_info:
        evaluator.evaluate("10 ** 10 ** 3", "boom")

    assert exc_info.value.code == "arithmetic_error"
    assert evaluator.evaluate("2 ** 10") == 1024.0


def test_evaluator_sees_variable_updates():
    """The evaluator reads the mapping it was given, not a copy"""
    evaluator = SafeEquationEvaluator()
    state = {"x": 1.0}
    evaluator.set_variables(state)

    assert evaluator.evaluate("x * 2") == 2.0
    state["x"] = 5.0
    assert evaluator.evaluate("x * 2") == 10.0


def test_extract_variable_references():
    """Test variable reference extraction"""
    tree = ast.parse("x + y * z", mode="eval")
    vars = extract_variable_references(tree)
    assert vars == {"x", "y", "z"}


def test_extract_references_skips_function_names():
    """Called function names are not references"""
    assert extract_references("max(stock, 0) + sqrt(k)") == {"stock", "k"}
    assert extract_references("") == set()
    assert extract_references("a +") == set()


def test_extract_references_keeps_bare_function_names():
    """A function name used as a value is a reference"""
    assert extract_references("abs + 1") == {"abs"}
    assert extract_references("max(k, min)") == {"k", "min"}


def test_formula_coefficients():
    """Numeric literals are returned in source order with unary minus folded"""
    assert formula_coefficients("0.1 * stock + 5") == [0.1, 5.0]
    assert formula_coefficients("-5 * x + 2") == [-5.0, 2.0]
    assert formula_coefficients("stock") == []
    assert formula_coefficients("") == []

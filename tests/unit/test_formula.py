"""Unit tests for the conversion-rule formula evaluator."""

from __future__ import annotations

from decimal import Decimal

import pytest

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure
from cmmcalc.rules.formula import FormulaEvaluator, compile_formula, tokenize, variables_of


@pytest.fixture
def evaluator() -> FormulaEvaluator:
    return FormulaEvaluator()


class TestTokenize:
    """Test the formula tokenizer."""

    def test_numbers_names_and_operators(self):
        kinds = [t.kind for t in tokenize("quantity * 1.05 + (a/2)")]
        assert kinds == ["name", "op", "number", "op", "op", "name", "op", "number", "op", "end"]

    def test_scientific_notation_is_one_number(self):
        tokens = tokenize("2.5e3")
        assert tokens[0].kind == "number"
        assert tokens[0].text == "2.5e3"

    def test_unexpected_character(self):
        with pytest.raises(FormulaEvaluationError) as exc_info:
            tokenize("quantity ^ 2")

        assert exc_info.value.kind is FormulaFailure.SYNTAX_ERROR
        assert "position 9" in str(exc_info.value)


class TestEvaluate:
    """Test arithmetic over Decimal bindings."""

    def test_identity(self, evaluator):
        assert evaluator.evaluate("quantity", {"quantity": Decimal("100")}) == Decimal("100")

    def test_precedence(self, evaluator):
        assert evaluator.evaluate("1 + 2 * 3", {}) == Decimal("7")
        assert evaluator.evaluate("(1 + 2) * 3", {}) == Decimal("9")

    def test_unary_minus(self, evaluator):
        assert evaluator.evaluate("-a + 5", {"a": Decimal("2")}) == Decimal("3")
        assert evaluator.evaluate("--2", {}) == Decimal("2")

    def test_decimal_exactness(self, evaluator):
        # 0.1 + 0.2 is exact in Decimal
        assert evaluator.evaluate("0.1 + 0.2", {}) == Decimal("0.3")

    def test_paint_assembly(self, evaluator):
        result = evaluator.evaluate(
            "quantity * coats / coverage",
            {"quantity": Decimal("100"), "coats": Decimal("2"), "coverage": Decimal("10")},
        )
        assert result == Decimal("20")

    def test_rebar_density(self, evaluator):
        result = evaluator.evaluate(
            "quantity * weight", {"quantity": Decimal("1000"), "weight": Decimal("0.994")}
        )
        assert result == Decimal("994.000")

    def test_functions(self, evaluator):
        assert evaluator.evaluate("min(3, 1, 2)", {}) == Decimal("1")
        assert evaluator.evaluate("max(a, 10)", {"a": Decimal("12")}) == Decimal("12")
        assert evaluator.evaluate("round(2.345, 2)", {}) == Decimal("2.35")
        assert evaluator.evaluate("round(2.5)", {}) == Decimal("3")


class TestFailures:
    """Test that every failure is classified."""

    def test_unknown_variable(self, evaluator):
        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate("quantity * thickness", {"quantity": Decimal("1")})

        assert exc_info.value.kind is FormulaFailure.UNKNOWN_VARIABLE
        assert "thickness" in str(exc_info.value)

    def test_division_by_zero(self, evaluator):
        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate("quantity / coverage", {"quantity": Decimal("5"), "coverage": Decimal("0")})

        assert exc_info.value.kind is FormulaFailure.DIVISION_BY_ZERO
        assert exc_info.value.formula == "quantity / coverage"

    @pytest.mark.parametrize(
        "formula",
        ["", "quantity *", "(1 + 2", "1 2", "sqrt(4)", "round(1, 2, 3)", "min()"],
    )
    def test_syntax_errors(self, evaluator, formula):
        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate(formula, {"quantity": Decimal("1")})

        assert exc_info.value.kind is FormulaFailure.SYNTAX_ERROR

    def test_round_digits_must_be_whole(self, evaluator):
        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate("round(1.5, 0.5)", {})

        assert exc_info.value.kind is FormulaFailure.SYNTAX_ERROR

    def test_formula_too_long(self):
        evaluator = FormulaEvaluator(max_length=10)

        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate("quantity + quantity", {"quantity": Decimal("1")})

        assert exc_info.value.kind is FormulaFailure.SYNTAX_ERROR

    def test_deep_nesting_rejected(self, evaluator):
        formula = "(" * 100 + "1" + ")" * 100

        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluator.evaluate(formula, {})

        assert "nested" in str(exc_info.value)

    def test_no_python_evaluation(self, evaluator):
        with pytest.raises(FormulaEvaluationError):
            evaluator.evaluate("__import__('os')", {})


class TestCompile:
    """Test the compiled-formula cache."""

    def test_variables(self):
        assert variables_of("quantity * coats / coverage") == frozenset({"quantity", "coats", "coverage"})
        assert variables_of("round(a, 2)") == frozenset({"a"})

    def test_cached_by_text(self):
        assert compile_formula("quantity * 2") is compile_formula("quantity * 2")

    def test_whitespace_is_stripped_before_lookup(self, evaluator):
        assert evaluator.compile("  quantity  ") is evaluator.compile("quantity")

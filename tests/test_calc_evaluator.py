"""Tests for formcalc.calc FormulaEngine."""

from __future__ import annotations

import pytest
from formcalc import CalculationType, FieldDescriptor, FieldType
from formcalc.calc._evaluator import FormulaEngine
from formcalc.calc._functions import FunctionRegistry
from formcalc.calc._protocol import FormulaError


def _inputs(*ids: str) -> list[FieldDescriptor]:
    return [FieldDescriptor(fid) for fid in ids]


def _calc(fid: str, formula: str | None = None, **kwargs) -> FieldDescriptor:
    return FieldDescriptor(fid, type=FieldType.CALCULATED, formula=formula, **kwargs)


@pytest.fixture
def engine() -> FormulaEngine:
    return FormulaEngine()


class TestArithmetic:
    def test_addition(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a + b", {"a": 2, "b": 3}, _inputs("a", "b"))
        assert r.ok
        assert r.value == 5

    def test_precedence(self, engine: FormulaEngine) -> None:
        fields = _inputs("a", "b", "c")
        assert engine.evaluate("a + b * c", {"a": 1, "b": 2, "c": 3}, fields).value == 7
        assert engine.evaluate("(a + b) * c", {"a": 1, "b": 2, "c": 3}, fields).value == 9

    def test_left_associativity(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("10 - 4 - 3", {}, []).value == 3
        assert engine.evaluate("24 / 4 / 2", {}, []).value == 3

    def test_unary_minus(self, engine: FormulaEngine) -> None:
        fields = _inputs("a")
        assert engine.evaluate("-a * 2", {"a": 4}, fields).value == -8
        assert engine.evaluate("3 - -a", {"a": 4}, fields).value == 7
        assert engine.evaluate("+a", {"a": 4}, fields).value == 4

    def test_decimals(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a * .5 + 1.", {"a": 3}, _inputs("a"))
        assert r.value == 2.5

    def test_literal_formula(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("42", {}, []).value == 42


class TestAggregates:
    def test_sum(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("SUM(a,b,c)", {"a": 1, "b": 2, "c": 3}, _inputs("a", "b", "c"))
        assert r.value == 6

    def test_avg(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("AVG(a,b)", {"a": 2, "b": 4}, _inputs("a", "b")).value == 3

    def test_max_min(self, engine: FormulaEngine) -> None:
        fields = _inputs("a", "b")
        values = {"a": 2, "b": 9}
        assert engine.evaluate("MAX(a, b, 4)", values, fields).value == 9
        assert engine.evaluate("MIN(a, b, 4)", values, fields).value == 2

    def test_nested_innermost_first(self, engine: FormulaEngine) -> None:
        fields = _inputs("a", "b", "c")
        r = engine.evaluate("SUM(a, MAX(b, c)) * 2", {"a": 1, "b": 5, "c": 3}, fields)
        assert r.value == 12

    def test_expression_arguments(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("AVG(a * 2, b + 1)", {"a": 2, "b": 3}, _inputs("a", "b"))
        assert r.value == 4

    def test_lowercase_name(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("sum(1, 2)", {}, []).value == 3

    def test_empty_call_is_malformed(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("SUM()", {}, [])
        assert r.error == FormulaError.MALFORMED
        assert r.value == 0

    def test_custom_registry(self) -> None:
        reg = FunctionRegistry()
        reg.register("COUNT", lambda args: float(len(args)))
        r = FormulaEngine(reg).evaluate("COUNT(a, b, 7)", {}, _inputs("a", "b"))
        assert r.value == 3


class TestCoercion:
    def test_null_is_zero(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("a", {"a": None}, _inputs("a")).value == 0

    def test_missing_is_zero(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("a + 1", {}, _inputs("a")).value == 1

    def test_true_is_one(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("a", {"a": True}, _inputs("a")).value == 1

    def test_numeric_string(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("a", {"a": "7.5"}, _inputs("a")).value == 7.5

    def test_non_numeric_string(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a", {"a": "abc"}, _inputs("a"))
        assert r.ok
        assert r.value == 0

    def test_file_answer_is_zero(self, engine: FormulaEngine) -> None:
        answer = {"fileName": "invoice.pdf", "fileSize": 2048, "downloadUrl": "https://x"}
        assert engine.evaluate("a + 1", {"a": answer}, _inputs("a")).value == 1

    def test_huge_int_does_not_raise(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a + 1", {"a": 10**400}, _inputs("a"))
        assert r.ok
        assert r.value == 1


class TestSafety:
    def test_injection_rejected(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a; deleteEverything()", {"a": 1}, _inputs("a"))
        assert r.error == FormulaError.UNSAFE_TOKEN
        assert r.value == 0

    def test_unknown_name_rejected(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("__import__", {}, _inputs("a"))
        assert r.error == FormulaError.UNSAFE_TOKEN

    def test_attribute_access_rejected(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a.__class__", {"a": 1}, _inputs("a"))
        assert not r.ok
        assert r.value == 0

    def test_python_operators_rejected(self, engine: FormulaEngine) -> None:
        for formula in ("2 ** 10", "a % 2", "a[0]", "a == 1", "'x'"):
            r = engine.evaluate(formula, {"a": 1}, _inputs("a"))
            assert not r.ok, formula

    def test_value_text_is_never_parsed(self, engine: FormulaEngine) -> None:
        """Values are substituted as numbers, never as formula text."""
        r = engine.evaluate("a * 2", {"a": "3); import os; ("}, _inputs("a"))
        assert r.ok
        assert r.value == 6


class TestNumericFaults:
    def test_division_by_zero(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a / b", {"a": 5, "b": 0}, _inputs("a", "b"))
        assert r.value == 0

    def test_division_by_zero_in_larger_expression(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a / b + 3", {"a": 5, "b": 0}, _inputs("a", "b"))
        assert r.value == 3

    def test_overflow(self, engine: FormulaEngine) -> None:
        big = "9" * 200
        r = engine.evaluate(f"{big} * {big} * {big}", {}, [])
        assert r.error == FormulaError.NUMERIC_FAULT
        assert r.value == 0


class TestSubstringSafety:
    def test_qty_and_qty2(self, engine: FormulaEngine) -> None:
        fields = _inputs("qty", "qty2")
        r = engine.evaluate("qty2 * 2", {"qty": 1, "qty2": 10}, fields)
        assert r.value == 20

    def test_declaration_order_irrelevant(self, engine: FormulaEngine) -> None:
        fields = _inputs("qty2", "qty")
        r = engine.evaluate("qty + qty2", {"qty": 1, "qty2": 10}, fields)
        assert r.value == 11


class TestMalformed:
    @pytest.mark.parametrize("formula", ["a +", "(a + 1", "a + 1)", "* a", "a b", "SUM(a", "SUM + 1", "a, b"])
    def test_rejected(self, engine: FormulaEngine, formula: str) -> None:
        r = engine.evaluate(formula, {"a": 1, "b": 2}, _inputs("a", "b"))
        assert r.error == FormulaError.MALFORMED
        assert r.value == 0

    def test_error_has_position(self, engine: FormulaEngine) -> None:
        r = engine.evaluate("a + 1)", {"a": 1}, _inputs("a"))
        assert "position 5" in r.detail

    def test_empty(self, engine: FormulaEngine) -> None:
        assert engine.evaluate("   ", {}, []).error == FormulaError.MALFORMED

    def test_deep_nesting_does_not_raise(self, engine: FormulaEngine) -> None:
        formula = "(" * 5000 + "1" + ")" * 5000
        r = engine.evaluate(formula, {}, [])
        assert r.error == FormulaError.MALFORMED


class TestCalculateField:
    def test_formula_wins(self, engine: FormulaEngine) -> None:
        fields = _inputs("a", "b") + [
            _calc("t", "a - b", depends_on=("a", "b"), calculation_type=CalculationType.SUM),
        ]
        assert engine.calculate_field(fields[-1], {"a": 5, "b": 2}, fields).value == 3

    @pytest.mark.parametrize(
        ("kind", "expected"),
        [
            (CalculationType.SUM, 10),
            (CalculationType.AVERAGE, 5),
            (CalculationType.MULTIPLY, 24),
        ],
    )
    def test_by_type(self, engine: FormulaEngine, kind: CalculationType, expected: float) -> None:
        fields = _inputs("a", "b") + [_calc("t", depends_on=("a", "b"), calculation_type=kind)]
        assert engine.calculate_field(fields[-1], {"a": 4, "b": 6}, fields).value == expected

    def test_percentage(self, engine: FormulaEngine) -> None:
        fd = _calc("t", depends_on=("a",), calculation_type="percentage", constant_value=15)
        assert engine.calculate_field(fd, {"a": 200}, _inputs("a") + [fd]).value == 30

    def test_percentage_without_constant(self, engine: FormulaEngine) -> None:
        fd = _calc("t", depends_on=("a",), calculation_type="percentage")
        assert engine.calculate_field(fd, {"a": 200}, [fd]).value == 0

    def test_custom_without_formula(self, engine: FormulaEngine) -> None:
        fd = _calc("t", depends_on=("a",), calculation_type="custom")
        assert engine.calculate_field(fd, {"a": 200}, [fd]).value == 0

    def test_plain_input(self, engine: FormulaEngine) -> None:
        r = engine.calculate_field(FieldDescriptor("a"), {"a": 5}, [])
        assert r.ok
        assert r.value == 0


class TestValidateFormula:
    def test_valid(self, engine: FormulaEngine) -> None:
        v = engine.validate_formula("SUM(a, b) * 0.2", _inputs("a", "b"))
        assert v.valid
        assert v.references == ("a", "b")

    def test_unknown_field_named(self, engine: FormulaEngine) -> None:
        v = engine.validate_formula("a + unknownField", _inputs("a"))
        assert not v.valid
        assert v.error == FormulaError.INVALID_REFERENCE
        assert v.unresolved == ("unknownField",)
        assert "unknownField" in v.reason

    def test_all_unknown_names_reported(self, engine: FormulaEngine) -> None:
        v = engine.validate_formula("x + a + y + x", _inputs("a"))
        assert v.unresolved == ("x", "y")

    def test_unsafe(self, engine: FormulaEngine) -> None:
        v = engine.validate_formula("a; b", _inputs("a", "b"))
        assert v.error == FormulaError.UNSAFE_TOKEN
        assert "position 1" in v.reason

    def test_malformed(self, engine: FormulaEngine) -> None:
        v = engine.validate_formula("a * (b +", _inputs("a", "b"))
        assert v.error == FormulaError.MALFORMED

    def test_empty(self, engine: FormulaEngine) -> None:
        assert not engine.validate_formula("", _inputs("a")).valid

    def test_dummy_division_is_not_an_error(self, engine: FormulaEngine) -> None:
        assert engine.validate_formula("a / (b - 1)", _inputs("a", "b")).valid

    def test_self_reference(self, engine: FormulaEngine) -> None:
        fields = _inputs("a") + [_calc("t")]
        v = engine.validate_formula("t + a", fields, field_id="t")
        assert not v.valid
        assert "its own field" in v.reason

    def test_cycle_rejected(self, engine: FormulaEngine) -> None:
        fields = _inputs("x") + [_calc("a", "b + 1"), _calc("b", "x")]
        v = engine.validate_formula("a + 1", fields, field_id="b")
        assert not v.valid
        assert v.error == FormulaError.INVALID_REFERENCE
        assert v.reason == "Circular reference: b -> a -> b"

    def test_no_cycle_accepted(self, engine: FormulaEngine) -> None:
        fields = _inputs("x") + [_calc("a", "x + 1"), _calc("b")]
        assert engine.validate_formula("a * 2", fields, field_id="b").valid

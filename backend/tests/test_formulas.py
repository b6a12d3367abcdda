from __future__ import annotations

import math

import pytest

from errors import FormulaError
from formulas import execute_formula, generate_preview, parse_formula, validate_formula


def test_parse_collects_variables_in_order() -> None:
    parsed = parse_formula("price * qty + price / 2")
    assert parsed.expression == "price * qty + price / 2"
    assert parsed.variables == ["price", "qty"]


def test_parse_supports_backtick_column_names() -> None:
    parsed = parse_formula("`Unit Price` * `qty` - `Unit Price`")
    assert parsed.variables == ["Unit Price", "qty"]


def test_parse_does_not_treat_functions_as_columns() -> None:
    parsed = parse_formula("round(max(a, b) / sqrt(c), 2)")
    assert parsed.variables == ["a", "b", "c"]


@pytest.mark.parametrize(
    "formula",
    [
        "",
        "   ",
        "price *",
        "__import__('os')",
        "price.real",
        "price if qty else 0",
        "price == 1",
        "[price]",
        "'text' + price",
        "open(price)",
        "round(price, qty)",
        "sqrt(price, 2)",
        "abs",
        "`unclosed * 2",
        "`` + 1",
        "price & 1",
        "not price",
        "max(x=price)",
    ],
)
def test_parse_rejects_anything_outside_the_grammar(formula: str) -> None:
    with pytest.raises(FormulaError):
        parse_formula(formula)


def test_execute_is_row_aligned_and_coerces_text_numbers() -> None:
    rows = [
        {"price": "150", "qty": "2"},
        {"price": "1.5", "qty": 4},
        {"price": "-3", "qty": "1"},
    ]
    result = execute_formula(parse_formula("price * qty"), rows)
    assert result.values == [300.0, 6.0, -3.0]
    assert result.errors == []


def test_execute_reports_invalid_rows() -> None:
    rows = [
        {"price": "10", "qty": "2"},
        {"price": "abc", "qty": "2"},
        {"price": "10", "qty": "0"},
        {"qty": "1"},
    ]
    result = execute_formula(parse_formula("price / qty"), rows)
    assert result.values == [5.0, None, None, None]
    assert result.errors == [
        "Row 2: Invalid calculation result",
        "Row 3: Invalid calculation result",
        "Row 4: Invalid calculation result",
    ]


def test_functions_and_operators() -> None:
    rows = [{"a": "-2.567", "b": "9", "c": "7"}]

    def value(formula: str) -> float:
        return execute_formula(parse_formula(formula), rows).values[0]

    assert value("abs(a)") == pytest.approx(2.567)
    assert value("round(a, 1)") == pytest.approx(-2.6)
    assert value("round(b / 2)") == pytest.approx(4.0)
    assert value("min(a, b, c)") == pytest.approx(-2.567)
    assert value("max(a, b, c)") == pytest.approx(9.0)
    assert value("sqrt(b)") == pytest.approx(3.0)
    assert value("log(exp(c))") == pytest.approx(7.0)
    assert value("log(b, 3)") == pytest.approx(2.0)
    assert value("floor(a)") == pytest.approx(-3.0)
    assert value("ceil(a)") == pytest.approx(-2.0)
    assert value("c % 4") == pytest.approx(3.0)
    assert value("c ** 2") == pytest.approx(49.0)
    assert value("-(b - c) * +2") == pytest.approx(-4.0)


def test_constant_formula_fills_every_row() -> None:
    result = execute_formula(parse_formula("2 * 21"), [{}, {}])
    assert result.values == [42.0, 42.0]


def test_execute_on_no_rows() -> None:
    assert execute_formula(parse_formula("a + 1"), []).values == []


def test_math_domain_errors_become_none() -> None:
    result = execute_formula(parse_formula("sqrt(a) + log(b)"), [{"a": "-1", "b": "1"}, {"a": "4", "b": "0"}])
    assert result.values == [None, None]
    assert len(result.errors) == 2
    assert not any(isinstance(v, float) and math.isnan(v) for v in result.values)


def test_validate_reports_unknown_columns() -> None:
    result = validate_formula("price * volume", ["price", "qty"])
    assert result.is_valid is False
    assert result.errors == ["Column 'volume' not found in dataset"]


def test_validate_reports_parse_errors() -> None:
    result = validate_formula("price **", ["price"])
    assert result.is_valid is False
    assert result.errors[0].startswith("Formula parsing failed")


def test_validate_warns_without_column_references() -> None:
    result = validate_formula("1 + 1", ["price"])
    assert result.is_valid is True
    assert result.warnings == ["Formula contains no column references"]


def test_validate_accepts_good_formula() -> None:
    result = validate_formula("`Unit Price` * qty", ["Unit Price", "qty"])
    assert result.is_valid is True
    assert result.errors == []
    assert result.warnings == []


def test_preview_uses_first_ten_rows() -> None:
    rows = [{"n": str(i)} for i in range(25)]
    preview = generate_preview("n * 10", rows, ["n"])
    assert preview.formula == "n * 10"
    assert preview.preview_values == [float(i * 10) for i in range(10)]
    assert preview.errors == []


def test_preview_of_invalid_formula_has_no_values() -> None:
    preview = generate_preview("missing + 1", [{"n": "1"}], ["n"])
    assert preview.preview_values == []
    assert preview.errors == ["Column 'missing' not found in dataset"]


def test_very_long_formula_is_rejected_not_crashed() -> None:
    formula = "+".join(["price"] * 5000)

    with pytest.raises(FormulaError):
        parse_formula(formula)

    result = validate_formula(formula, ["price"])
    assert result.is_valid is False
    assert result.errors == ["Formula is nested too deeply"]


def test_moderately_long_formula_still_evaluates() -> None:
    formula = "+".join(["price"] * 50)
    result = execute_formula(parse_formula(formula), [{"price": "2"}])
    assert result.values == [100.0]

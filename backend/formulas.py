"""Arithmetic formulas over row columns, evaluated column-wise with pandas.

A formula is a restricted Python expression: numeric literals, the operators
``+ - * / % **``, unary minus, parentheses, a small set of math functions and
column references. Column names that are not plain identifiers are written
in back-ticks, e.g. ``(`Unit Price` * qty) / 100``.
"""
from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
import pandas as pd

from errors import FormulaError
from models import (
    CalculationResult,
    FormulaPreview,
    FormulaValidation,
    ParsedFormula,
    RowData,
)

PREVIEW_LIMIT = 10

QUOTED_COLUMN = re.compile(r"`([^`]*)`")
ALIAS_PREFIX = "__col"

# Deeper expressions are rejected before evaluation recurses into them.
MAX_NESTING = 200

BINARY_OPS: dict[type, Callable[[pd.Series, pd.Series], pd.Series]] = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
    ast.Mod: lambda a, b: a % b,
    ast.Pow: lambda a, b: a**b,
}

# name -> (min args, max args or None for variadic)
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "abs": (1, 1),
    "round": (1, 2),
    "min": (1, None),
    "max": (1, None),
    "sqrt": (1, 1),
    "log": (1, 2),
    "exp": (1, 1),
    "floor": (1, 1),
    "ceil": (1, 1),
}

UNARY_FUNCTIONS: dict[str, Callable[[pd.Series], pd.Series]] = {
    "abs": np.abs,
    "sqrt": np.sqrt,
    "exp": np.exp,
    "floor": np.floor,
    "ceil": np.ceil,
}


@dataclass(frozen=True)
class _Compiled:
    tree: ast.Expression
    names: dict[str, str]  # expression identifier -> column name

    @property
    def variables(self) -> list[str]:
        return list(dict.fromkeys(self.names.values()))


class _FormulaChecker(ast.NodeVisitor):
    """Rejects anything outside the formula grammar and records column refs."""

    def __init__(self, quoted: dict[str, str]) -> None:
        self.quoted = quoted
        self.names: dict[str, str] = {}
        self.depth = 0

    def visit(self, node: ast.AST) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FormulaError("Formula is nested too deeply")
        try:
            super().visit(node)
        finally:
            self.depth -= 1

    def generic_visit(self, node: ast.AST) -> None:
        raise FormulaError(f"Unsupported syntax in formula: {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> None:
        self.visit(node.body)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        if type(node.op) not in BINARY_OPS:
            raise FormulaError(f"Unsupported operator: {type(node.op).__name__}")
        self.visit(node.left)
        self.visit(node.right)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        if not isinstance(node.op, (ast.UAdd, ast.USub)):
            raise FormulaError(f"Unsupported operator: {type(node.op).__name__}")
        self.visit(node.operand)

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError("Only numeric literals are allowed in formulas")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in FUNCTION_ARITY:
            raise FormulaError(f"Function '{node.id}' must be called with arguments")
        if node.id in self.quoted:
            column = self.quoted[node.id]
        elif node.id.startswith("__"):
            raise FormulaError(f"Invalid column reference: {node.id}")
        else:
            column = node.id
        self.names.setdefault(node.id, column)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTION_ARITY:
            raise FormulaError(f"Unknown function: {ast.unparse(node.func)}")
        name = node.func.id
        if node.keywords:
            raise FormulaError(f"Function '{name}' does not take keyword arguments")

        low, high = FUNCTION_ARITY[name]
        count = len(node.args)
        if count < low or (high is not None and count > high):
            expected = f"{low}" if low == high else f"{low} or more" if high is None else f"{low}-{high}"
            raise FormulaError(
                f"Function '{name}' expects {expected} argument(s), got {count}"
            )

        if name == "round" and count == 2:
            digits = node.args[1]
            if not (
                isinstance(digits, ast.Constant)
                and isinstance(digits.value, int)
                and not isinstance(digits.value, bool)
            ):
                raise FormulaError("round() precision must be an integer literal")

        for arg in node.args:
            self.visit(arg)


def _compile(formula: str) -> _Compiled:
    text = formula.strip() if isinstance(formula, str) else ""
    if not text:
        raise FormulaError("Formula is empty")

    quoted: dict[str, str] = {}

    def substitute(match: re.Match[str]) -> str:
        column = match.group(1)
        if not column.strip():
            raise FormulaError("Formula parsing failed: empty quoted column name")
        for ident, existing in quoted.items():
            if existing == column:
                return ident
        ident = f"{ALIAS_PREFIX}{len(quoted)}__"
        quoted[ident] = column
        return ident

    source = QUOTED_COLUMN.sub(substitute, text)
    if "`" in source:
        raise FormulaError("Formula parsing failed: unbalanced back-tick")

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"Formula parsing failed: {exc.msg}") from exc
    except RecursionError as exc:
        raise FormulaError("Formula is nested too deeply") from exc

    checker = _FormulaChecker(quoted)
    checker.visit(tree)
    return _Compiled(tree=tree, names=checker.names)


def _numeric_frame(rows: Sequence[RowData], names: dict[str, str]) -> pd.DataFrame:
    frame = pd.DataFrame(index=pd.RangeIndex(len(rows)))
    for ident, column in names.items():
        raw = pd.Series([row.get(column) for row in rows], index=frame.index, dtype="object")
        # Blank or non-numeric cells become NaN.
        frame[ident] = pd.to_numeric(raw, errors="coerce").astype("float64")
    return frame


def _evaluate(node: ast.AST, frame: pd.DataFrame) -> pd.Series:
    if isinstance(node, ast.Constant):
        return pd.Series(float(node.value), index=frame.index, dtype="float64")
    if isinstance(node, ast.Name):
        return frame[node.id]
    if isinstance(node, ast.BinOp):
        left = _evaluate(node.left, frame)
        right = _evaluate(node.right, frame)
        return BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, frame)
        return -operand if isinstance(node.op, ast.USub) else operand
    if isinstance(node, ast.Call):
        name = node.func.id  # type: ignore[attr-defined]
        if name == "round":
            digits = node.args[1].value if len(node.args) == 2 else 0  # type: ignore[attr-defined]
            return _evaluate(node.args[0], frame).round(int(digits))

        args = [_evaluate(arg, frame) for arg in node.args]
        if name in ("min", "max"):
            stacked = pd.concat(args, axis=1)
            if name == "min":
                return stacked.min(axis=1, skipna=False)
            return stacked.max(axis=1, skipna=False)
        if name == "log":
            if len(args) == 2:
                return np.log(args[0]) / np.log(args[1])
            return np.log(args[0])
        return UNARY_FUNCTIONS[name](args[0])

    raise FormulaError(f"Unsupported syntax in formula: {type(node).__name__}")


def _run(compiled: _Compiled, rows: Sequence[RowData]) -> CalculationResult:
    frame = _numeric_frame(rows, compiled.names)
    with np.errstate(all="ignore"):
        series = _evaluate(compiled.tree.body, frame)

    values: list[float | None] = []
    errors: list[str] = []
    for position, value in enumerate(series.tolist(), start=1):
        if value is None or not np.isfinite(value):
            values.append(None)
            errors.append(f"Row {position}: Invalid calculation result")
        else:
            values.append(float(value))
    return CalculationResult(values=values, errors=errors)


def parse_formula(formula: str) -> ParsedFormula:
    compiled = _compile(formula)
    return ParsedFormula(expression=formula, variables=compiled.variables)


def validate_formula(formula: str, columns: Sequence[str]) -> FormulaValidation:
    try:
        compiled = _compile(formula)
    except FormulaError as exc:
        return FormulaValidation(is_valid=False, errors=[exc.message])

    known = set(columns)
    errors = [
        f"Column '{variable}' not found in dataset"
        for variable in compiled.variables
        if variable not in known
    ]

    # Trial run with every column set to 1.
    try:
        _run(compiled, [{column: 1 for column in columns}])
    except (FormulaError, ArithmeticError, TypeError, ValueError) as exc:
        errors.append(f"Formula evaluation error: {exc}")

    warnings: list[str] = []
    if not compiled.variables:
        warnings.append("Formula contains no column references")

    return FormulaValidation(is_valid=not errors, errors=errors, warnings=warnings)


def execute_formula(parsed: ParsedFormula, rows: Sequence[RowData]) -> CalculationResult:
    """Evaluate ``parsed`` for every row; failed rows yield None plus a message."""
    return _run(_compile(parsed.expression), rows)


def generate_preview(
    formula: str, rows: Sequence[RowData], columns: Sequence[str]
) -> FormulaPreview:
    validation = validate_formula(formula, columns)
    if not validation.is_valid:
        return FormulaPreview(formula=formula, errors=validation.errors)

    result = execute_formula(parse_formula(formula), list(rows)[:PREVIEW_LIMIT])
    return FormulaPreview(
        formula=formula,
        preview_values=result.values,
        errors=result.errors,
    )

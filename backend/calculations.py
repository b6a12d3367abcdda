"""Stored calculated-column definitions and their display-time application."""

from __future__ import annotations

from typing import Any

import duckdb

from engine import DuckDBEngine, rows_as_dicts, utcnow
from errors import ColumnNotFoundError, FormulaError, NotFoundError, StorageError
from formulas import (
    PREVIEW_LIMIT,
    execute_formula,
    generate_preview,
    parse_formula,
    validate_formula,
)
from logger import get_logger
from models import CalculatedColumn, DataRow, FormulaPreview, FormulaValidation
from storage import DataStorage

log = get_logger("calculations")

CALCULATED_COLUMNS = "id, user_id, upload_id, column_name, formula, created_at"


def calculated_column_from_record(record: dict[str, Any]) -> CalculatedColumn:
    return CalculatedColumn(
        id=record["id"],
        user_id=record["user_id"],
        upload_id=record["upload_id"],
        column_name=record["column_name"],
        formula=record["formula"],
        created_at=record["created_at"],
    )


class CalculationService:
    def __init__(self, engine: DuckDBEngine, storage: DataStorage) -> None:
        self.engine = engine
        self.storage = storage

    def available_columns(self, user_id: int, upload_id: str | None = None) -> list[str]:
        """Columns a formula may reference: one upload's, or all of the user's."""
        if upload_id is None:
            uploads = self.storage.get_user_uploads(user_id, limit=None)
            return list(dict.fromkeys(c for u in uploads for c in u.column_names))

        upload = self.storage.get_upload_metadata(upload_id, user_id)
        if upload is None:
            raise NotFoundError()
        return upload.column_names

    def validate(
        self, user_id: int, formula: str, upload_id: str | None = None
    ) -> FormulaValidation:
        return validate_formula(formula, self.available_columns(user_id, upload_id))

    def preview(self, user_id: int, formula: str, upload_id: str) -> FormulaPreview:
        columns = self.available_columns(user_id, upload_id)
        rows, _ = self.storage.get_data_rows(upload_id, user_id, page=1, limit=PREVIEW_LIMIT)
        return generate_preview(formula, [row.data for row in rows], columns)

    def save_calculated_column(
        self,
        user_id: int,
        column_name: str,
        formula: str,
        upload_id: str | None = None,
    ) -> CalculatedColumn:
        name = (column_name or "").strip()
        if not name:
            raise FormulaError("Column name is required")

        columns = self.available_columns(user_id, upload_id)
        if name in columns:
            raise FormulaError(f"Column '{name}' already exists in the dataset")

        validation = validate_formula(formula, columns)
        if not validation.is_valid:
            raise FormulaError("Invalid formula", details=validation.errors)

        try:
            with self.engine.transaction() as cur:
                result = cur.execute(
                    "INSERT INTO calculated_columns "
                    "(user_id, upload_id, column_name, formula, created_at) "
                    f"VALUES (?, ?, ?, ?, ?) RETURNING {CALCULATED_COLUMNS}",
                    [user_id, upload_id, name, formula.strip(), utcnow()],
                )
                record = rows_as_dicts(result)[0]
        except duckdb.Error as exc:
            raise StorageError(f"Failed to save calculated column: {exc}") from exc

        log.info("Saved calculated column %r for user %s", name, user_id)
        return calculated_column_from_record(record)

    def get_calculated_columns(
        self, user_id: int, upload_id: str | None = None
    ) -> list[CalculatedColumn]:
        """Newest first. With an upload id, user-wide columns are included too."""
        sql = f"SELECT {CALCULATED_COLUMNS} FROM calculated_columns WHERE user_id = ?"
        params: list[Any] = [user_id]
        if upload_id is not None:
            if self.storage.get_upload_metadata(upload_id, user_id) is None:
                raise NotFoundError()
            sql += " AND (upload_id = ? OR upload_id IS NULL)"
            params.append(upload_id)
        sql += " ORDER BY created_at DESC, id DESC"

        try:
            records = self.engine.fetch_all(sql, params)
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve calculated columns: {exc}") from exc
        return [calculated_column_from_record(r) for r in records]

    def delete_calculated_column(self, user_id: int, column_id: int) -> None:
        try:
            with self.engine.transaction() as cur:
                owned = cur.execute(
                    "SELECT id FROM calculated_columns WHERE id = ? AND user_id = ?",
                    [column_id, user_id],
                ).fetchone()
                if not owned:
                    raise ColumnNotFoundError()
                cur.execute("DELETE FROM calculated_columns WHERE id = ?", [column_id])
        except duckdb.Error as exc:
            raise StorageError(f"Failed to delete calculated column: {exc}") from exc

        log.info("Deleted calculated column %s for user %s", column_id, user_id)

    def apply_calculated_columns(
        self, rows: list[DataRow], columns: list[CalculatedColumn]
    ) -> list[DataRow]:
        if not rows or not columns:
            return rows

        data = [row.data for row in rows]
        calculated: list[dict[str, float | None]] = [{} for _ in rows]
        # Oldest first so the newest definition of a name wins.
        for column in reversed(columns):
            try:
                values = execute_formula(parse_formula(column.formula), data).values
            except FormulaError as exc:
                log.warning(
                    "Calculated column %r could not be evaluated: %s",
                    column.column_name,
                    exc.message,
                )
                values = [None] * len(rows)
            for target, value in zip(calculated, values):
                target[column.column_name] = value

        return [
            row.model_copy(update={"calculated": values})
            for row, values in zip(rows, calculated)
        ]

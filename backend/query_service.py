"""Parameterized filter/sort/paginate queries over stored rows."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import duckdb
from pydantic import ValidationError

import settings
from engine import DuckDBEngine, json_field, json_pointer, quote_literal, rows_as_dicts, to_naive_utc
from errors import NotFoundError, QueryError, StorageError
from logger import get_logger
from models import DataResult, Filter, QueryOptions, Upload
from storage import DataStorage, data_row_from_record

log = get_logger("query")

SYSTEM_COLUMNS = {"filename", "uploaded_at"}
SYSTEM_OPERATORS: dict[str, set[str]] = {
    "filename": {"eq", "contains"},
    "uploaded_at": {"gt", "lt"},
}

ROW_SELECT = (
    "dr.id, dr.user_id, dr.upload_id, dr.row_index, dr.row_data, dr.uploaded_at"
)


@dataclass
class Predicate:
    """WHERE clauses with their bound parameters, kept in the same order."""

    clauses: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)

    def add(self, clause: str, *params: Any) -> None:
        self.clauses.append(clause)
        self.params.extend(params)

    def sql(self) -> str:
        return " AND ".join(self.clauses)


# ============================================================================
# Input parsing
# ============================================================================

def parse_filters(raw: str | list | None) -> list[Filter]:
    if raw is None or raw == "":
        return []

    parsed: Any = raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise QueryError("Invalid filters format. Expected JSON array.") from exc

    if not isinstance(parsed, list):
        raise QueryError("Filters must be a JSON array")
    if not all(isinstance(item, dict) for item in parsed):
        raise QueryError("Each filter must be an object")

    filters: list[Filter] = []
    for item in parsed:
        try:
            filters.append(Filter.model_validate(item))
        except ValidationError as exc:
            column = item.get("column")
            raise QueryError(
                f"Invalid filter for column '{column}': unsupported operator or missing column"
            ) from exc
    return filters


def build_options(
    page: int = 1,
    limit: int = settings.DEFAULT_PAGE_LIMIT,
    sort_by: str | None = None,
    sort_order: str | None = None,
    filters: str | list | None = None,
) -> QueryOptions:
    if page < 1:
        raise QueryError("page must be 1 or greater")
    if limit < 1:
        raise QueryError("limit must be 1 or greater")

    order = sort_order.lower() if isinstance(sort_order, str) and sort_order else None
    if order not in (None, "asc", "desc"):
        raise QueryError(f"Invalid sort order: {sort_order}")

    return QueryOptions(
        page=page,
        limit=min(limit, settings.MAX_PAGE_LIMIT),
        sort_by=sort_by or None,
        sort_order=order,
        filters=parse_filters(filters),
    )


def _require_value(f: Filter) -> Any:
    if f.value is None or (isinstance(f.value, str) and f.value == ""):
        raise QueryError(
            f"Filter value is required for column '{f.column}' and operator '{f.operator}'"
        )
    if isinstance(f.value, (dict, list)):
        raise QueryError(f"Filter value for column '{f.column}' must be a scalar")
    return f.value


def _text_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _contains_pattern(value: str) -> str:
    """ILIKE pattern matching ``value`` literally; pair with ``ESCAPE '\\'``."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _numeric_value(f: Filter) -> float:
    value = _require_value(f)
    if isinstance(value, bool):
        raise QueryError(f"Invalid numeric value for column '{f.column}': {value}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise QueryError(
            f"Invalid numeric value for column '{f.column}': {value}"
        ) from exc


def _timestamp_value(f: Filter) -> datetime:
    value = _require_value(f)
    if isinstance(value, str):
        try:
            return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as exc:
            raise QueryError(
                f"Invalid timestamp value for column '{f.column}': {value}. Expected ISO 8601."
            ) from exc
    raise QueryError(f"Invalid timestamp value for column '{f.column}': {value}")


def _direction(options: QueryOptions, default: str) -> str:
    order = options.sort_order or default
    return "DESC" if order == "desc" else "ASC"


# ============================================================================
# Predicate construction
# ============================================================================

def system_filter_clause(f: Filter, pred: Predicate) -> None:
    allowed = SYSTEM_OPERATORS[f.column]
    if f.operator not in allowed:
        raise QueryError(
            f"Unsupported operator '{f.operator}' for column '{f.column}'"
        )

    if f.column == "filename":
        value = _text_value(_require_value(f))
        if f.operator == "eq":
            pred.add("u.filename = ?", value)
        else:
            pred.add("u.filename ILIKE ? ESCAPE '\\'", _contains_pattern(value))
        return

    stamp = _timestamp_value(f)
    op = ">" if f.operator == "gt" else "<"
    pred.add(f"dr.uploaded_at {op} ?", stamp)


def data_filter_clause(f: Filter) -> tuple[str, list[Any]]:
    """JSON-extraction comparison for one data column."""
    pointer = json_pointer(f.column)
    extracted = json_field("dr.row_data")

    if f.operator == "eq":
        return f"{extracted} = ?", [pointer, _text_value(_require_value(f))]
    if f.operator == "gt":
        return f"TRY_CAST({extracted} AS DOUBLE) > ?", [pointer, _numeric_value(f)]
    if f.operator == "lt":
        return f"TRY_CAST({extracted} AS DOUBLE) < ?", [pointer, _numeric_value(f)]
    if f.operator == "contains":
        value = _text_value(_require_value(f))
        return f"{extracted} ILIKE ? ESCAPE '\\'", [pointer, _contains_pattern(value)]

    raise QueryError(f"Unsupported operator '{f.operator}'")


class DataQueryService:
    def __init__(self, engine: DuckDBEngine, storage: DataStorage) -> None:
        self.engine = engine
        self.storage = storage

    # ------------------------------------------------------------------
    # Cross-upload
    # ------------------------------------------------------------------

    def get_user_data(self, user_id: int, options: QueryOptions) -> DataResult:
        pred = Predicate()
        pred.add("dr.user_id = ?", user_id)

        data_filters = [f for f in options.filters if f.column not in SYSTEM_COLUMNS]
        uploads = (
            self.storage.get_user_uploads(user_id, limit=None) if data_filters else []
        )

        for f in options.filters:
            if f.column in SYSTEM_COLUMNS:
                system_filter_clause(f, pred)
                continue

            having = [u.id for u in uploads if f.column in u.column_names]
            if not having:
                continue
            clause, params = data_filter_clause(f)
            lacking = [u.id for u in uploads if f.column not in u.column_names]
            if lacking:
                # Uploads without this column are not filtered by it.
                placeholders = ", ".join("?" for _ in lacking)
                pred.add(
                    f"(dr.upload_id IN ({placeholders}) OR {clause})",
                    *lacking,
                    *params,
                )
            else:
                pred.add(clause, *params)

        order_sql = self._cross_upload_order(options)
        from_sql = "FROM data_rows dr INNER JOIN uploads u ON dr.upload_id = u.id"
        return self._run(from_sql, pred, order_sql, options, "user data")

    def _cross_upload_order(self, options: QueryOptions) -> str:
        if options.sort_by == "uploaded_at":
            direction = _direction(options, "desc")
            return f"dr.uploaded_at {direction}, dr.upload_id ASC, dr.row_index ASC"
        if options.sort_by == "filename":
            direction = _direction(options, "asc")
            return (
                f"u.filename {direction}, dr.uploaded_at DESC, "
                f"dr.upload_id ASC, dr.row_index ASC"
            )
        if options.sort_by:
            direction = _direction(options, "asc")
            return f"dr.row_index {direction}, dr.uploaded_at DESC, dr.upload_id ASC"
        return "dr.uploaded_at DESC, dr.upload_id ASC, dr.row_index ASC"

    # ------------------------------------------------------------------
    # Single upload
    # ------------------------------------------------------------------

    def get_upload_data(
        self, user_id: int, upload_id: str, options: QueryOptions
    ) -> DataResult:
        upload = self.require_upload(user_id, upload_id)

        pred = Predicate()
        pred.add("dr.upload_id = ?", upload.id)
        pred.add("dr.user_id = ?", user_id)

        for f in options.filters:
            if f.column not in upload.column_names:
                continue
            clause, params = data_filter_clause(f)
            pred.add(clause, *params)

        order_sql = self._single_upload_order(options, upload)
        return self._run("FROM data_rows dr", pred, order_sql, options, "upload data")

    def _single_upload_order(self, options: QueryOptions, upload: Upload) -> str:
        sort_by = options.sort_by
        if sort_by == "row_index":
            return f"dr.row_index {_direction(options, 'asc')}"
        if sort_by and sort_by in upload.column_names:
            direction = _direction(options, "asc")
            # sort_by is one of the upload's validated headers
            pointer = quote_literal(json_pointer(sort_by))
            extracted = f"json_extract_string(dr.row_data, {pointer})"
            return (
                f"TRY_CAST({extracted} AS DOUBLE) {direction} NULLS LAST, "
                f"{extracted} {direction} NULLS LAST, dr.row_index ASC"
            )
        return "dr.row_index ASC"

    def require_upload(self, user_id: int, upload_id: str) -> Upload:
        upload = self.storage.get_upload_metadata(upload_id, user_id)
        if upload is None:
            raise NotFoundError()
        return upload

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run(
        self,
        from_sql: str,
        pred: Predicate,
        order_sql: str,
        options: QueryOptions,
        label: str,
    ) -> DataResult:
        where_sql = f"WHERE {pred.sql()}" if pred.clauses else ""
        offset = (options.page - 1) * options.limit

        try:
            with self.engine.reader() as cur:
                # Same predicate for count and page keeps totalCount consistent.
                total_count = cur.execute(
                    f"SELECT COUNT(*) {from_sql} {where_sql}", pred.params
                ).fetchone()[0]
                result = cur.execute(
                    f"SELECT {ROW_SELECT} {from_sql} {where_sql} "
                    f"ORDER BY {order_sql} LIMIT ? OFFSET ?",
                    [*pred.params, options.limit, offset],
                )
                records = rows_as_dicts(result)
        except duckdb.Error as exc:
            log.error("Failed to retrieve %s: %s", label, exc)
            raise StorageError(f"Failed to retrieve {label}: {exc}") from exc

        return DataResult(
            data=[data_row_from_record(r) for r in records],
            total_count=int(total_count),
            page=options.page,
            limit=options.limit,
        )

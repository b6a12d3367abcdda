"""DuckDB store: schema, per-request cursors, transactions, JSON row helpers."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

import duckdb

import settings
from logger import get_logger

log = get_logger("engine")

SCHEMA_STATEMENTS: tuple[str, ...] = (
    "CREATE SEQUENCE IF NOT EXISTS data_rows_id_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS calculated_columns_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS uploads (
        id VARCHAR PRIMARY KEY,
        user_id BIGINT NOT NULL,
        filename VARCHAR NOT NULL,
        row_count INTEGER NOT NULL,
        column_names VARCHAR NOT NULL,
        uploaded_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS data_rows (
        id BIGINT PRIMARY KEY DEFAULT nextval('data_rows_id_seq'),
        user_id BIGINT NOT NULL,
        upload_id VARCHAR NOT NULL,
        row_index INTEGER NOT NULL,
        row_data VARCHAR NOT NULL,
        uploaded_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calculated_columns (
        id BIGINT PRIMARY KEY DEFAULT nextval('calculated_columns_id_seq'),
        user_id BIGINT NOT NULL,
        upload_id VARCHAR,
        column_name VARCHAR NOT NULL,
        formula VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_uploads_user_date ON uploads(user_id, uploaded_at)",
    "CREATE INDEX IF NOT EXISTS idx_data_rows_user_upload ON data_rows(user_id, upload_id)",
    "CREATE INDEX IF NOT EXISTS idx_data_rows_upload_row ON data_rows(upload_id, row_index)",
    "CREATE INDEX IF NOT EXISTS idx_calculated_columns_user ON calculated_columns(user_id, upload_id)",
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def quote_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def json_pointer(column: str) -> str:
    """JSON Pointer addressing one top-level key of a serialized row."""
    return "/" + column.replace("~", "~0").replace("/", "~1")


def json_field(source: str) -> str:
    """SQL extracting one field as text; binds the JSON Pointer as a parameter."""
    return f"json_extract_string({source}, CAST(? AS VARCHAR))"


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class Engine(ABC):
    @abstractmethod
    def cursor(self) -> duckdb.DuckDBPyConnection:
        """Open an independent cursor for one unit of work."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager yielding a cursor inside BEGIN ... COMMIT/ROLLBACK."""

    @abstractmethod
    def close(self) -> None:
        pass


class DuckDBEngine(Engine):
    def __init__(self, database: str | None = None) -> None:
        self.database = database if database is not None else settings.DATABASE_PATH
        self.conn = duckdb.connect(self.database)
        self._cursor_lock = threading.Lock()
        self.ensure_schema()

    def ensure_schema(self) -> None:
        for statement in SCHEMA_STATEMENTS:
            self.conn.execute(statement)
        log.info("Storage schema ready (%s)", self.database)

    def cursor(self) -> duckdb.DuckDBPyConnection:
        # Each cursor is its own DuckDB connection with its own transaction state.
        with self._cursor_lock:
            return self.conn.cursor()

    @contextmanager
    def reader(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cur = self.cursor()
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cur = self.cursor()
        cur.begin()
        try:
            yield cur
        except BaseException:
            cur.rollback()
            raise
        else:
            cur.commit()
        finally:
            cur.close()

    def fetch_all(
        self, sql: str, params: Sequence[Any] = ()
    ) -> list[dict[str, Any]]:
        with self.reader() as cur:
            return rows_as_dicts(cur.execute(sql, list(params)))

    def fetch_one(
        self, sql: str, params: Sequence[Any] = ()
    ) -> dict[str, Any] | None:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        self.conn.close()


def rows_as_dicts(result: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    if result.description is None:
        return []
    col_names = [desc[0] for desc in result.description]
    return [dict(zip(col_names, raw)) for raw in result.fetchall()]

"""Transactional persistence of uploads and their rows."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, time
from typing import Any, Sequence

import duckdb

import settings
from engine import DuckDBEngine, dump_json, rows_as_dicts, utcnow
from errors import CapacityError, NotFoundError, StorageError
from logger import get_logger
from memory_manager import ChunkedMemoryManager
from models import (
    DataRow,
    ParsedData,
    RowData,
    StorageResult,
    StorageStats,
    Upload,
    UploadLimits,
)

log = get_logger("storage")

UPLOAD_COLUMNS = "id, user_id, filename, row_count, column_names, uploaded_at"
DATA_ROW_COLUMNS = "id, user_id, upload_id, row_index, row_data, uploaded_at"
ROW_INSERT_COLUMNS = "(user_id, upload_id, row_index, row_data, uploaded_at)"
ROW_PLACEHOLDERS = "(?, ?, ?, ?, ?)"


def upload_from_record(record: dict[str, Any]) -> Upload:
    return Upload(
        id=record["id"],
        user_id=record["user_id"],
        filename=record["filename"],
        row_count=record["row_count"],
        column_names=json.loads(record["column_names"]),
        uploaded_at=record["uploaded_at"],
    )


def data_row_from_record(record: dict[str, Any]) -> DataRow:
    return DataRow(
        id=record["id"],
        user_id=record["user_id"],
        upload_id=record["upload_id"],
        row_index=record["row_index"],
        data=json.loads(record["row_data"]),
        uploaded_at=record["uploaded_at"],
    )


class DataStorage:
    def __init__(self, engine: DuckDBEngine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def store_data(
        self,
        user_id: int,
        filename: str,
        parsed: ParsedData,
        memory: ChunkedMemoryManager | None = None,
        chunk_size: int | None = None,
    ) -> StorageResult:
        """Persist one upload and all of its rows, or nothing at all.

        The size check runs before a transaction is opened. Rows are written
        in chunks inside a single transaction; any failure rolls the whole
        upload back and surfaces as ``StorageError``.
        """
        upload_id = str(uuid.uuid4())
        memory = memory if memory is not None else ChunkedMemoryManager()

        verdict = memory.validate_csv_size(parsed.rows)
        if not verdict.can_process:
            raise CapacityError(f"Cannot process CSV: {verdict.reason}")

        headers = list(parsed.headers)
        known = set(headers)
        uploaded_at = utcnow()
        total_rows = len(parsed.rows)
        log.info(
            "Storing upload %s (%s) for user %s: %d rows, ~%.3fMB",
            upload_id,
            filename,
            user_id,
            total_rows,
            verdict.estimated_mb,
        )

        try:
            with self.engine.transaction() as cur:
                cur.execute(
                    f"INSERT INTO uploads ({UPLOAD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        upload_id,
                        user_id,
                        filename,
                        total_rows,
                        dump_json(headers),
                        uploaded_at,
                    ],
                )

                def write_chunk(chunk: Sequence[RowData], start: int) -> None:
                    records: list[tuple[Any, ...]] = []
                    for offset, row in enumerate(chunk):
                        row_index = start + offset
                        unknown = [key for key in row if key not in known]
                        if unknown:
                            raise ValueError(
                                f"Row {row_index} has columns outside the header: {', '.join(unknown)}"
                            )
                        ordered = {h: row[h] for h in headers if h in row}
                        records.append(
                            (user_id, upload_id, row_index, dump_json(ordered), uploaded_at)
                        )
                    if records:
                        self._insert_rows(cur, records)

                memory.process_in_chunks(parsed.rows, write_chunk, chunk_size)
        except Exception as exc:
            log.error("Rolled back upload %s (%s): %s", upload_id, filename, exc)
            raise StorageError(f"Failed to store CSV data: {exc}") from exc

        log.info("Stored upload %s with %d rows", upload_id, total_rows)
        return StorageResult(
            upload_id=upload_id, row_count=total_rows, uploaded_at=uploaded_at
        )

    def _insert_rows(
        self, cur: duckdb.DuckDBPyConnection, records: list[tuple[Any, ...]]
    ) -> None:
        # One multi-row INSERT per chunk.
        values_sql = ", ".join([ROW_PLACEHOLDERS] * len(records))
        params = [value for record in records for value in record]
        cur.execute(
            f"INSERT INTO data_rows {ROW_INSERT_COLUMNS} VALUES {values_sql}",
            params,
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def get_upload_metadata(
        self, upload_id: str, user_id: int | None = None
    ) -> Upload | None:
        sql = f"SELECT {UPLOAD_COLUMNS} FROM uploads WHERE id = ?"
        params: list[Any] = [upload_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)

        try:
            record = self.engine.fetch_one(sql, params)
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve upload metadata: {exc}") from exc
        return upload_from_record(record) if record else None

    def get_user_uploads(self, user_id: int, limit: int | None = 10) -> list[Upload]:
        """Newest first. ``limit=None`` returns the full history."""
        sql = (
            f"SELECT {UPLOAD_COLUMNS} FROM uploads WHERE user_id = ? "
            f"ORDER BY uploaded_at DESC, id ASC"
        )
        params: list[Any] = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            records = self.engine.fetch_all(sql, params)
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve user uploads: {exc}") from exc
        return [upload_from_record(r) for r in records]

    def delete_upload(self, upload_id: str, user_id: int) -> bool:
        """Delete an upload with its rows and scoped calculated columns.

        Returns False, touching nothing, when the upload isn't the user's.
        """
        try:
            with self.engine.transaction() as cur:
                owned = cur.execute(
                    "SELECT id FROM uploads WHERE id = ? AND user_id = ?",
                    [upload_id, user_id],
                ).fetchone()
                if not owned:
                    return False

                cur.execute("DELETE FROM data_rows WHERE upload_id = ?", [upload_id])
                cur.execute(
                    "DELETE FROM calculated_columns WHERE upload_id = ?", [upload_id]
                )
                cur.execute("DELETE FROM uploads WHERE id = ?", [upload_id])
        except duckdb.Error as exc:
            log.error("Rolled back delete of upload %s: %s", upload_id, exc)
            raise StorageError(f"Failed to delete upload: {exc}") from exc

        log.info("Deleted upload %s for user %s", upload_id, user_id)
        return True

    def get_data_rows(
        self,
        upload_id: str,
        user_id: int,
        page: int = 1,
        limit: int = settings.DEFAULT_PAGE_LIMIT,
        sort_by: str | None = None,
        sort_order: str = "asc",
    ) -> tuple[list[DataRow], int]:
        upload = self.get_upload_metadata(upload_id, user_id)
        if upload is None:
            raise NotFoundError()

        page = max(1, page)
        limit = max(1, limit)
        direction = "DESC" if sort_order == "desc" and sort_by in (None, "row_index") else "ASC"

        try:
            with self.engine.reader() as cur:
                total_count = cur.execute(
                    "SELECT COUNT(*) FROM data_rows WHERE upload_id = ? AND user_id = ?",
                    [upload_id, user_id],
                ).fetchone()[0]
                result = cur.execute(
                    f"SELECT {DATA_ROW_COLUMNS} FROM data_rows "
                    f"WHERE upload_id = ? AND user_id = ? "
                    f"ORDER BY row_index {direction} LIMIT ? OFFSET ?",
                    [upload_id, user_id, limit, (page - 1) * limit],
                )
                records = rows_as_dicts(result)
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve data rows: {exc}") from exc

        return [data_row_from_record(r) for r in records], int(total_count)

    # ------------------------------------------------------------------
    # Stats and limits
    # ------------------------------------------------------------------

    def get_user_storage_stats(self, user_id: int) -> StorageStats:
        try:
            record = self.engine.fetch_one(
                "SELECT COUNT(*) AS total_uploads, "
                "COALESCE(SUM(row_count), 0) AS total_rows, "
                "MAX(uploaded_at) AS last_upload "
                "FROM uploads WHERE user_id = ?",
                [user_id],
            )
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve storage stats: {exc}") from exc

        record = record or {}
        return StorageStats(
            total_uploads=int(record.get("total_uploads") or 0),
            total_rows=int(record.get("total_rows") or 0),
            last_upload_date=record.get("last_upload"),
        )

    def check_upload_limits(self, user_id: int) -> UploadLimits:
        now = utcnow()
        midnight = datetime.combine(now.date(), time.min)
        try:
            record = self.engine.fetch_one(
                "SELECT "
                "COUNT(*) FILTER (WHERE uploaded_at >= ?) AS uploads_today, "
                "COALESCE(SUM(row_count), 0) AS total_rows "
                "FROM uploads WHERE user_id = ?",
                [midnight, user_id],
            )
        except duckdb.Error as exc:
            raise StorageError(f"Failed to check upload limits: {exc}") from exc

        record = record or {}
        uploads_today = int(record.get("uploads_today") or 0)
        total_rows = int(record.get("total_rows") or 0)

        reason: str | None = None
        if uploads_today >= settings.MAX_UPLOADS_PER_DAY:
            reason = f"Daily upload limit of {settings.MAX_UPLOADS_PER_DAY} files reached"
        elif total_rows >= settings.MAX_TOTAL_ROWS:
            reason = f"Total row limit of {settings.MAX_TOTAL_ROWS} rows reached"

        return UploadLimits(
            can_upload=reason is None,
            reason=reason,
            uploads_today=uploads_today,
            max_uploads_per_day=settings.MAX_UPLOADS_PER_DAY,
            total_rows=total_rows,
            max_total_rows=settings.MAX_TOTAL_ROWS,
        )

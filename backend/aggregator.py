"""Column catalogs and dashboard aggregates derived from stored rows."""

from __future__ import annotations

import duckdb

import settings
from csv_service import infer_type
from engine import DuckDBEngine, json_field, json_pointer
from errors import NotFoundError, StorageError
from logger import get_logger
from models import ColumnInfo, ColumnType, DashboardStats, Upload
from storage import DataStorage

log = get_logger("aggregator")


class ColumnAggregator:
    def __init__(self, engine: DuckDBEngine, storage: DataStorage) -> None:
        self.engine = engine
        self.storage = storage

    def get_column_info(
        self, user_id: int, upload_id: str | None = None
    ) -> list[ColumnInfo]:
        if upload_id is not None:
            upload = self.storage.get_upload_metadata(upload_id, user_id)
            if upload is None:
                raise NotFoundError()
            uploads = [upload]
        else:
            uploads = self.storage.get_user_uploads(user_id, limit=None)

        types: dict[str, ColumnType] = {}
        for upload in uploads:
            for column in upload.column_names:
                if column not in types:
                    types[column] = self._infer_column_type(upload, column)

        return [
            ColumnInfo(name=name, type=types[name], nullable=True)
            for name in sorted(types)
        ]

    def _infer_column_type(self, upload: Upload, column: str) -> ColumnType:
        pointer = json_pointer(column)
        try:
            with self.engine.reader() as cur:
                rows = cur.execute(
                    f"SELECT {json_field('row_data')} AS value "
                    "FROM data_rows "
                    "WHERE upload_id = ? AND user_id = ? "
                    f"AND {json_field('row_data')} IS NOT NULL "
                    "ORDER BY row_index ASC LIMIT ?",
                    [pointer, upload.id, upload.user_id, pointer, settings.TYPE_SAMPLE_SIZE],
                ).fetchall()
        except duckdb.Error as exc:
            log.warning(
                "Sampling column %r of upload %s failed, using text: %s",
                column,
                upload.id,
                exc,
            )
            return "text"
        return infer_type(value for (value,) in rows)

    def get_dashboard_stats(self, user_id: int) -> DashboardStats:
        try:
            record = self.engine.fetch_one(
                "SELECT COUNT(DISTINCT upload_id) AS total_uploads, "
                "COUNT(*) AS total_rows, "
                "MAX(uploaded_at) AS last_upload "
                "FROM data_rows WHERE user_id = ?",
                [user_id],
            )
        except duckdb.Error as exc:
            raise StorageError(f"Failed to retrieve dashboard stats: {exc}") from exc

        uploads = self.storage.get_user_uploads(user_id, limit=None)
        unique_columns = {column for upload in uploads for column in upload.column_names}

        record = record or {}
        return DashboardStats(
            total_rows=int(record.get("total_rows") or 0),
            total_uploads=int(record.get("total_uploads") or 0),
            last_upload_date=record.get("last_upload"),
            unique_columns=len(unique_columns),
        )

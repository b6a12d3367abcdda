"""Upload pipeline: parse, validate, detect types, then store with retry."""

from __future__ import annotations

import csv_service
import settings
from errors import StructuralValidationError
from logger import get_logger
from memory_manager import ChunkedMemoryManager
from models import IngestResult
from retry import STORE_RETRY_POLICY, RetryPolicy, with_retry
from storage import DataStorage

log = get_logger("ingest")


def ingest_csv(
    storage: DataStorage,
    user_id: int,
    filename: str,
    content: bytes,
    memory: ChunkedMemoryManager | None = None,
    retry_policy: RetryPolicy = STORE_RETRY_POLICY,
) -> IngestResult:
    parsed = csv_service.parse_file(content)

    validation = csv_service.validate_structure(parsed)
    if not validation.is_valid:
        log.info("Rejected %s for user %s: %s", filename, user_id, "; ".join(validation.errors))
        raise StructuralValidationError(validation.errors)

    column_types = csv_service.detect_column_types(parsed)

    stored = with_retry(
        lambda: storage.store_data(user_id, filename, parsed, memory=memory),
        retry_policy,
    )
    log.info("Ingested %s as upload %s (%d rows)", filename, stored.upload_id, stored.row_count)

    return IngestResult(
        upload_id=stored.upload_id,
        filename=filename,
        row_count=stored.row_count,
        columns=list(parsed.headers),
        column_types=column_types,
        preview=parsed.rows[: settings.PREVIEW_ROWS],
        uploaded_at=stored.uploaded_at,
    )

"""Bounded-memory batch processing for CSV ingestion.

A ``ChunkedMemoryManager`` is created per ingestion and handed to the
storage writer; nothing here is process-wide.
"""

from __future__ import annotations

import gc
import json
from dataclasses import dataclass
from typing import Callable, Sequence

import settings
from logger import get_logger
from models import RowData

log = get_logger("memory")

ChunkHandler = Callable[[Sequence[RowData], int], None]

SIZE_SAMPLE_ROWS = 10
PROCESSING_OVERHEAD = 2.0


@dataclass(frozen=True)
class SizeVerdict:
    can_process: bool
    reason: str | None = None
    estimated_mb: float = 0.0


def _default_reclaimer() -> None:
    gc.collect()


class ChunkedMemoryManager:
    def __init__(
        self,
        max_rows: int | None = None,
        max_estimated_mb: float | None = None,
        reclaimer: Callable[[], None] | None = _default_reclaimer,
    ) -> None:
        self.max_rows = max_rows if max_rows is not None else settings.MAX_PROCESSING_ROWS
        self.max_estimated_mb = (
            max_estimated_mb
            if max_estimated_mb is not None
            else settings.MAX_ESTIMATED_MB
        )
        self.reclaimer = reclaimer
        self.chunks_processed = 0

    def estimate_mb(self, rows: Sequence[RowData]) -> float:
        """Rough in-flight size: average serialized row size × rows × overhead."""
        if not rows:
            return 0.0
        sample = rows[:SIZE_SAMPLE_ROWS]
        sample_bytes = sum(
            len(json.dumps(row, ensure_ascii=False).encode("utf-8")) for row in sample
        )
        average = sample_bytes / len(sample)
        return round(average * len(rows) * PROCESSING_OVERHEAD / (1024 * 1024), 3)

    def validate_csv_size(self, rows: Sequence[RowData]) -> SizeVerdict:
        # Limits are inclusive: exactly at the ceiling is still processed.
        if len(rows) > self.max_rows:
            return SizeVerdict(
                can_process=False,
                reason=f"Row count ({len(rows)}) exceeds the processing limit of {self.max_rows} rows",
            )
        estimated = self.estimate_mb(rows)
        if estimated > self.max_estimated_mb:
            return SizeVerdict(
                can_process=False,
                reason=f"Estimated memory usage ({estimated}MB) would exceed limits ({self.max_estimated_mb}MB)",
                estimated_mb=estimated,
            )
        return SizeVerdict(can_process=True, estimated_mb=estimated)

    def process_in_chunks(
        self,
        rows: Sequence[RowData],
        handler: ChunkHandler,
        chunk_size: int | None = None,
    ) -> int:
        """Feed ``rows`` to ``handler`` in order, one batch at a time.

        The handler receives the batch and the index of its first row in
        ``rows``. Returns the number of batches processed.
        """
        size = chunk_size if chunk_size is not None else settings.CHUNK_SIZE
        if size < 1:
            raise ValueError("chunk_size must be at least 1")

        total = len(rows)
        batches = 0
        for start in range(0, total, size):
            chunk = rows[start : start + size]
            handler(chunk, start)
            batches += 1
            log.debug("Processed chunk %d (rows %d-%d of %d)", batches, start, start + len(chunk) - 1, total)
            del chunk
            self.reclaim()

        self.chunks_processed += batches
        return batches

    def reclaim(self) -> None:
        if self.reclaimer is None:
            return
        self.reclaimer()

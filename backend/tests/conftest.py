from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from aggregator import ColumnAggregator  # noqa: E402
from calculations import CalculationService  # noqa: E402
from csv_service import parse_file  # noqa: E402
from engine import DuckDBEngine  # noqa: E402
from memory_manager import ChunkedMemoryManager  # noqa: E402
from query_service import DataQueryService  # noqa: E402
from storage import DataStorage  # noqa: E402

SAMPLE_CSV = "symbol,price\nAAPL,150\nMSFT,300\nGOOG,140\n"


@pytest.fixture
def engine():
    eng = DuckDBEngine(":memory:")
    yield eng
    eng.close()


@pytest.fixture
def storage(engine: DuckDBEngine) -> DataStorage:
    return DataStorage(engine)


@pytest.fixture
def query(engine: DuckDBEngine, storage: DataStorage) -> DataQueryService:
    return DataQueryService(engine, storage)


@pytest.fixture
def aggregator(engine: DuckDBEngine, storage: DataStorage) -> ColumnAggregator:
    return ColumnAggregator(engine, storage)


@pytest.fixture
def calculations(engine: DuckDBEngine, storage: DataStorage) -> CalculationService:
    return CalculationService(engine, storage)


@pytest.fixture
def store_csv(storage: DataStorage) -> Callable[..., str]:
    """Parse ``text`` and store it for ``user_id``; returns the upload id."""

    def _store(user_id: int, text: str = SAMPLE_CSV, filename: str = "data.csv") -> str:
        parsed = parse_file(text.encode("utf-8"))
        result = storage.store_data(
            user_id, filename, parsed, memory=ChunkedMemoryManager(reclaimer=None)
        )
        return result.upload_id

    return _store

from __future__ import annotations

import pytest

import settings
from csv_service import parse_file
from engine import utcnow
from errors import CapacityError, NotFoundError, StorageError
from memory_manager import ChunkedMemoryManager

CSV_TEXT = "symbol,price,note\nAAPL,150,\nMSFT,300,big\nGOOG,140,\nAMZN,180,\nTSLA,250,\n"


def _no_reclaim(**kwargs) -> ChunkedMemoryManager:
    return ChunkedMemoryManager(reclaimer=None, **kwargs)


def test_store_then_read_back_preserves_order_and_content(storage) -> None:
    parsed = parse_file(CSV_TEXT.encode())
    result = storage.store_data(7, "prices.csv", parsed, memory=_no_reclaim(), chunk_size=2)

    assert result.row_count == 5
    rows, total = storage.get_data_rows(result.upload_id, 7)
    assert total == 5
    assert [r.row_index for r in rows] == [0, 1, 2, 3, 4]
    assert [r.data for r in rows] == parsed.rows
    assert list(rows[1].data) == ["symbol", "price", "note"]

    upload = storage.get_upload_metadata(result.upload_id, 7)
    assert upload.filename == "prices.csv"
    assert upload.row_count == 5
    assert upload.column_names == ["symbol", "price", "note"]
    assert upload.uploaded_at == result.uploaded_at


def test_store_uses_one_chunk_per_batch(storage) -> None:
    memory = _no_reclaim()
    storage.store_data(1, "p.csv", parse_file(CSV_TEXT.encode()), memory=memory, chunk_size=2)
    assert memory.chunks_processed == 3


def test_failed_chunk_rolls_back_the_whole_upload(storage, engine, monkeypatch) -> None:
    original = storage._insert_rows
    calls: list[int] = []

    def failing(cur, records):
        calls.append(len(records))
        if len(calls) == 2:
            raise RuntimeError("disk went away")
        original(cur, records)

    monkeypatch.setattr(storage, "_insert_rows", failing)

    with pytest.raises(StorageError) as exc_info:
        storage.store_data(3, "p.csv", parse_file(CSV_TEXT.encode()), memory=_no_reclaim(), chunk_size=2)

    assert "Failed to store CSV data" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert calls == [2, 2]
    assert storage.get_user_uploads(3) == []
    assert engine.fetch_one("SELECT COUNT(*) AS n FROM data_rows")["n"] == 0


def test_capacity_check_runs_before_any_write(storage, engine) -> None:
    with pytest.raises(CapacityError):
        storage.store_data(
            3, "p.csv", parse_file(CSV_TEXT.encode()), memory=_no_reclaim(max_rows=4)
        )
    assert engine.fetch_one("SELECT COUNT(*) AS n FROM uploads")["n"] == 0


def test_rows_with_unknown_columns_are_rejected(storage) -> None:
    parsed = parse_file(b"a,b\n1,2,3\n")
    with pytest.raises(StorageError):
        storage.store_data(1, "bad.csv", parsed, memory=_no_reclaim())
    assert storage.get_user_uploads(1) == []


def test_uncommitted_rows_are_invisible_to_other_cursors(engine) -> None:
    with engine.transaction() as cur:
        cur.execute(
            "INSERT INTO uploads VALUES (?, ?, ?, ?, ?, ?)",
            ["pending", 1, "p.csv", 0, "[]", utcnow()],
        )
        assert engine.fetch_one("SELECT id FROM uploads WHERE id = 'pending'") is None
    assert engine.fetch_one("SELECT id FROM uploads WHERE id = 'pending'") is not None


def test_metadata_lookup_is_ownership_scoped(storage, store_csv) -> None:
    upload_id = store_csv(1)
    assert storage.get_upload_metadata(upload_id, 1) is not None
    assert storage.get_upload_metadata(upload_id, 2) is None
    assert storage.get_upload_metadata(upload_id) is not None
    assert storage.get_upload_metadata("missing", 1) is None


def test_get_data_rows_requires_ownership(storage, store_csv) -> None:
    upload_id = store_csv(1)
    with pytest.raises(NotFoundError):
        storage.get_data_rows(upload_id, 2)


def test_get_data_rows_paginates_and_sorts_by_row_index(storage, store_csv) -> None:
    upload_id = store_csv(1, CSV_TEXT)
    rows, total = storage.get_data_rows(upload_id, 1, page=2, limit=2)
    assert total == 5
    assert [r.row_index for r in rows] == [2, 3]

    rows, _ = storage.get_data_rows(upload_id, 1, limit=2, sort_by="row_index", sort_order="desc")
    assert [r.row_index for r in rows] == [4, 3]


def test_user_uploads_are_newest_first(storage, store_csv) -> None:
    first = store_csv(1, filename="first.csv")
    second = store_csv(1, filename="second.csv")
    store_csv(2, filename="other.csv")

    uploads = storage.get_user_uploads(1)
    assert [u.id for u in uploads] == [second, first]
    assert len(storage.get_user_uploads(1, limit=1)) == 1


def test_delete_cascades_to_rows_and_scoped_columns(storage, engine, store_csv, calculations) -> None:
    upload_id = store_csv(1)
    keep_id = store_csv(1)
    calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)
    calculations.save_calculated_column(1, "half_price", "price / 2", keep_id)

    assert storage.delete_upload(upload_id, 1) is True

    assert storage.get_upload_metadata(upload_id) is None
    remaining = engine.fetch_all("SELECT DISTINCT upload_id FROM data_rows")
    assert remaining == [{"upload_id": keep_id}]
    names = [c.column_name for c in calculations.get_calculated_columns(1)]
    assert names == ["half_price"]


def test_delete_by_another_user_changes_nothing(storage, store_csv) -> None:
    upload_id = store_csv(1)
    assert storage.delete_upload(upload_id, 2) is False
    rows, total = storage.get_data_rows(upload_id, 1)
    assert total == 3


def test_storage_stats(storage, store_csv) -> None:
    assert storage.get_user_storage_stats(1).total_uploads == 0
    store_csv(1)
    store_csv(1, "a\n1\n")
    stats = storage.get_user_storage_stats(1)
    assert stats.total_uploads == 2
    assert stats.total_rows == 4
    assert stats.last_upload_date is not None


def test_upload_limits(storage, store_csv, monkeypatch) -> None:
    limits = storage.check_upload_limits(1)
    assert limits.can_upload is True
    assert limits.uploads_today == 0

    monkeypatch.setattr(settings, "MAX_UPLOADS_PER_DAY", 2)
    store_csv(1)
    store_csv(1)
    limits = storage.check_upload_limits(1)
    assert limits.can_upload is False
    assert limits.uploads_today == 2
    assert "Daily upload limit" in limits.reason

    monkeypatch.setattr(settings, "MAX_UPLOADS_PER_DAY", 10)
    monkeypatch.setattr(settings, "MAX_TOTAL_ROWS", 6)
    limits = storage.check_upload_limits(1)
    assert limits.can_upload is False
    assert "Total row limit" in limits.reason

from __future__ import annotations

import pytest

from errors import ColumnNotFoundError, FormulaError, NotFoundError
from models import QueryOptions


def test_save_and_list_columns_for_an_upload(calculations, store_csv) -> None:
    upload_id = store_csv(1)

    saved = calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)

    assert saved.id > 0
    assert saved.user_id == 1
    assert saved.upload_id == upload_id
    assert saved.column_name == "double_price"
    assert saved.formula == "price * 2"
    assert [c.id for c in calculations.get_calculated_columns(1, upload_id)] == [saved.id]


def test_upload_listing_includes_user_wide_columns_newest_first(calculations, store_csv) -> None:
    upload_id = store_csv(1)
    other_id = store_csv(1, "volume\n10\n")

    scoped = calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)
    store_wide = calculations.save_calculated_column(1, "price_plus_one", "price + 1")
    calculations.save_calculated_column(1, "half_volume", "volume / 2", other_id)

    names = [c.column_name for c in calculations.get_calculated_columns(1, upload_id)]
    assert names == [store_wide.column_name, scoped.column_name]
    assert len(calculations.get_calculated_columns(1)) == 3


def test_save_rejects_invalid_formula(calculations, store_csv) -> None:
    upload_id = store_csv(1)
    with pytest.raises(FormulaError) as exc_info:
        calculations.save_calculated_column(1, "bad", "volume * 2", upload_id)
    assert exc_info.value.details == ["Column 'volume' not found in dataset"]
    assert calculations.get_calculated_columns(1, upload_id) == []


def test_save_rejects_name_clash_and_blank_name(calculations, store_csv) -> None:
    upload_id = store_csv(1)
    with pytest.raises(FormulaError):
        calculations.save_calculated_column(1, "price", "price * 2", upload_id)
    with pytest.raises(FormulaError):
        calculations.save_calculated_column(1, "  ", "price * 2", upload_id)


def test_columns_are_ownership_scoped(calculations, store_csv) -> None:
    upload_id = store_csv(2)
    with pytest.raises(NotFoundError):
        calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)
    with pytest.raises(NotFoundError):
        calculations.get_calculated_columns(1, upload_id)


def test_delete_column(calculations, store_csv) -> None:
    upload_id = store_csv(1)
    saved = calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)

    with pytest.raises(ColumnNotFoundError):
        calculations.delete_calculated_column(2, saved.id)

    calculations.delete_calculated_column(1, saved.id)
    assert calculations.get_calculated_columns(1) == []

    with pytest.raises(ColumnNotFoundError):
        calculations.delete_calculated_column(1, saved.id)


def test_validate_and_preview_against_upload(calculations, store_csv) -> None:
    upload_id = store_csv(1)

    assert calculations.validate(1, "price * 2", upload_id).is_valid is True
    assert calculations.validate(1, "volume * 2", upload_id).is_valid is False

    preview = calculations.preview(1, "price / 10", upload_id)
    assert preview.preview_values == [15.0, 30.0, 14.0]


def test_apply_adds_calculated_values_without_touching_data(calculations, query, store_csv) -> None:
    upload_id = store_csv(1, "symbol,price\nAAPL,150\nTSLA,\n")
    calculations.save_calculated_column(1, "double_price", "price * 2", upload_id)
    calculations.save_calculated_column(1, "double_price", "price * 3", upload_id)

    result = query.get_upload_data(1, upload_id, QueryOptions())
    columns = calculations.get_calculated_columns(1, upload_id)
    rows = calculations.apply_calculated_columns(result.data, columns)

    assert [r.calculated for r in rows] == [{"double_price": 450.0}, {"double_price": None}]
    assert rows[0].data == {"symbol": "AAPL", "price": "150"}
    assert rows[0].flatten()["double_price"] == 450.0
    assert result.data[0].calculated is None


def test_apply_with_no_columns_returns_rows_unchanged(calculations, query, store_csv) -> None:
    upload_id = store_csv(1)
    result = query.get_upload_data(1, upload_id, QueryOptions())
    assert calculations.apply_calculated_columns(result.data, []) == result.data

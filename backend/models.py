"""
Pydantic models for data structures used throughout the service.

These models define the schema for:
- Parsed CSV content and structural validation results
- Persisted uploads, data rows and calculated columns
- Query options, filters and paginated results
- Derived column information and dashboard aggregates
- Formula parsing, validation and evaluation results

Every model serialises to camelCase (``model_dump(by_alias=True)``) for the
HTTP layer while keeping snake_case attributes in Python.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# One CSV cell after cleanup. Never a nested structure.
CellValue = Union[str, int, float, None]
RowData = dict[str, CellValue]

ColumnType = Literal["date", "integer", "decimal", "text"]
FilterOperator = Literal["eq", "gt", "lt", "contains"]
SortOrder = Literal["asc", "desc"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Ingestion
# ============================================================================

class ParsedData(ApiModel):
    headers: list[str] = Field(default_factory=list)
    rows: list[RowData] = Field(default_factory=list)


class ValidationResult(ApiModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class StorageResult(ApiModel):
    upload_id: str
    row_count: int
    uploaded_at: datetime


class IngestResult(ApiModel):
    upload_id: str
    filename: str
    row_count: int
    columns: list[str]
    column_types: dict[str, ColumnType]
    preview: list[RowData]
    uploaded_at: datetime


# ============================================================================
# Persisted records
# ============================================================================

class Upload(ApiModel):
    id: str
    user_id: int
    filename: str
    row_count: int
    column_names: list[str]
    uploaded_at: datetime


class DataRow(ApiModel):
    id: int | None = None
    user_id: int
    upload_id: str
    row_index: int
    data: RowData
    uploaded_at: datetime | None = None
    calculated: dict[str, float | None] | None = None

    def flatten(self) -> dict[str, Any]:
        """Row shape used by tables: metadata first, then the cells."""
        flat: dict[str, Any] = {
            "id": self.id,
            "uploadId": self.upload_id,
            "rowIndex": self.row_index,
        }
        flat.update(self.data)
        if self.calculated is not None:
            flat.update(self.calculated)
        return flat


class CalculatedColumn(ApiModel):
    id: int
    user_id: int
    upload_id: str | None = None
    column_name: str
    formula: str
    created_at: datetime


# ============================================================================
# Queries
# ============================================================================

class Filter(ApiModel):
    column: str = Field(min_length=1)
    operator: FilterOperator
    value: Any = None


class QueryOptions(ApiModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=100, ge=1)
    sort_by: str | None = None
    sort_order: SortOrder | None = None
    filters: list[Filter] = Field(default_factory=list)


class DataResult(ApiModel):
    data: list[DataRow]
    total_count: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
            "hasNext": self.page * self.limit < self.total_count,
            "hasPrev": self.page > 1,
        }


# ============================================================================
# Aggregates
# ============================================================================

class ColumnInfo(ApiModel):
    name: str
    type: ColumnType
    nullable: bool = True


class StorageStats(ApiModel):
    total_uploads: int
    total_rows: int
    last_upload_date: datetime | None = None


class DashboardStats(ApiModel):
    total_rows: int
    total_uploads: int
    last_upload_date: datetime | None = None
    unique_columns: int


class UploadLimits(ApiModel):
    can_upload: bool
    reason: str | None = None
    uploads_today: int
    max_uploads_per_day: int
    total_rows: int
    max_total_rows: int


# ============================================================================
# Calculated columns
# ============================================================================

class ParsedFormula(ApiModel):
    expression: str
    variables: list[str]


class FormulaValidation(ApiModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CalculationResult(ApiModel):
    values: list[float | None]
    errors: list[str] = Field(default_factory=list)


class FormulaPreview(ApiModel):
    column_name: str = ""
    formula: str
    preview_values: list[float | None] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

"""FastAPI app: upload, data and calculation routes + CORS."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, File, Header, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import settings
from aggregator import ColumnAggregator
from calculations import CalculationService
from engine import DuckDBEngine
from errors import (
    AppError,
    AuthenticationError,
    NotFoundError,
    UploadFileError,
    UploadLimitError,
)
from ingest import ingest_csv
from logger import get_logger
from query_service import DataQueryService, build_options
from storage import DataStorage

log = get_logger("api")

app = FastAPI(title="Upload Data Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = DuckDBEngine()
storage = DataStorage(engine)
query_service = DataQueryService(engine, storage)
aggregator = ColumnAggregator(engine, storage)
calculations = CalculationService(engine, storage)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Invalid request",
                "details": jsonable_encoder(exc.errors()),
            },
        },
    )


# ── Identity ──


def current_user_id(x_user_id: str | None = Header(None)) -> int:
    # Stand-in for the auth layer, which sets this header.
    if not x_user_id:
        raise AuthenticationError("Authentication required")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise AuthenticationError("Invalid user id")
    if user_id < 1:
        raise AuthenticationError("Invalid user id")
    return user_id


def _validate_csv_name(file: UploadFile) -> str:
    if not file.filename:
        raise UploadFileError("No file provided", code="NO_FILE")

    original_name = file.filename
    safe_name = Path(original_name).name
    if safe_name != original_name or safe_name in {"", ".", ".."}:
        raise UploadFileError("Invalid filename")

    suffix = Path(safe_name).suffix.lower()
    if suffix != ".csv":
        raise UploadFileError("Only CSV files are allowed")
    return safe_name


# ── Upload ──


@app.post("/api/upload/csv", status_code=201)
async def upload_csv(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
):
    safe_name = _validate_csv_name(file)

    limits = storage.check_upload_limits(user_id)
    if not limits.can_upload:
        raise UploadLimitError(limits.reason or "Upload limit reached", details=_dump(limits))

    content = await file.read()
    if len(content) > settings.MAX_UPLOAD_BYTES:
        max_mb = settings.MAX_UPLOAD_BYTES // (1024 * 1024)
        raise UploadFileError(
            f"File too large. Maximum size is {max_mb}MB", code="FILE_TOO_LARGE"
        )

    result = ingest_csv(storage, user_id, safe_name, content)
    return _ok(_dump(result))


@app.get("/api/upload/history")
async def upload_history(
    limit: int = Query(10, ge=1),
    user_id: int = Depends(current_user_id),
):
    uploads = storage.get_user_uploads(user_id, min(limit, settings.MAX_HISTORY_LIMIT))
    return _ok({"uploads": [_dump(u) for u in uploads], "count": len(uploads)})


@app.get("/api/upload/stats")
async def upload_stats(user_id: int = Depends(current_user_id)):
    stats = storage.get_user_storage_stats(user_id)
    limits = storage.check_upload_limits(user_id)
    return _ok({"storage": _dump(stats), "limits": _dump(limits)})


@app.get("/api/upload/data/{upload_id}")
async def upload_rows(
    upload_id: str,
    page: int = Query(1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT),
    sort_by: str | None = Query(None, alias="sortBy"),
    sort_order: str | None = Query(None, alias="sortOrder"),
    user_id: int = Depends(current_user_id),
):
    options = build_options(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    upload = storage.get_upload_metadata(upload_id, user_id)
    if upload is None:
        raise NotFoundError()

    rows, total_count = storage.get_data_rows(
        upload_id,
        user_id,
        page=options.page,
        limit=options.limit,
        sort_by=options.sort_by,
        sort_order=options.sort_order or "asc",
    )
    total_pages = -(-total_count // options.limit)
    return _ok(
        {
            "upload": {
                "id": upload.id,
                "filename": upload.filename,
                "rowCount": upload.row_count,
                "columns": upload.column_names,
                "uploadedAt": upload.uploaded_at.isoformat(),
            },
            "rows": [{"index": r.row_index, "data": r.data} for r in rows],
            "pagination": {
                "page": options.page,
                "limit": options.limit,
                "totalCount": total_count,
                "totalPages": total_pages,
                "hasNext": options.page * options.limit < total_count,
                "hasPrev": options.page > 1,
            },
        }
    )


@app.delete("/api/upload/{upload_id}")
async def delete_upload(upload_id: str, user_id: int = Depends(current_user_id)):
    if not storage.delete_upload(upload_id, user_id):
        raise NotFoundError()
    return {"success": True, "message": "Upload deleted successfully"}


# ── Data ──


@app.get("/api/data")
async def user_data(
    page: int = Query(1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT),
    sort_by: str | None = Query(None, alias="sortBy"),
    sort_order: str | None = Query(None, alias="sortOrder"),
    filters: str | None = Query(None),
    user_id: int = Depends(current_user_id),
):
    options = build_options(page, limit, sort_by, sort_order, filters)
    result = query_service.get_user_data(user_id, options)
    return _ok(
        {
            "rows": [row.flatten() for row in result.data],
            "pagination": result.pagination(),
        }
    )


@app.get("/api/data/upload/{upload_id}")
async def upload_data(
    upload_id: str,
    page: int = Query(1),
    limit: int = Query(settings.DEFAULT_PAGE_LIMIT),
    sort_by: str | None = Query(None, alias="sortBy"),
    sort_order: str | None = Query(None, alias="sortOrder"),
    filters: str | None = Query(None),
    user_id: int = Depends(current_user_id),
):
    options = build_options(page, limit, sort_by, sort_order, filters)
    result = query_service.get_upload_data(user_id, upload_id, options)
    columns = calculations.get_calculated_columns(user_id, upload_id)
    rows = calculations.apply_calculated_columns(result.data, columns)
    return _ok(
        {
            "rows": [row.flatten() for row in rows],
            "pagination": result.pagination(),
        }
    )


@app.get("/api/data/columns")
async def column_info(
    upload_id: str | None = Query(None, alias="uploadId"),
    user_id: int = Depends(current_user_id),
):
    columns = aggregator.get_column_info(user_id, upload_id)
    return _ok({"columns": [_dump(c) for c in columns]})


@app.get("/api/data/columns/calculated")
async def calculated_columns(
    upload_id: str | None = Query(None, alias="uploadId"),
    user_id: int = Depends(current_user_id),
):
    columns = calculations.get_calculated_columns(user_id, upload_id)
    return _ok({"calculatedColumns": [_dump(c) for c in columns]})


@app.get("/api/data/stats")
async def dashboard_stats(user_id: int = Depends(current_user_id)):
    stats = aggregator.get_dashboard_stats(user_id)
    return _ok({"stats": _dump(stats)})


# ── Calculations ──


class FormulaRequest(BaseModel):
    formula: str = Field(min_length=1)
    uploadId: str | None = None


class PreviewRequest(BaseModel):
    formula: str = Field(min_length=1)
    uploadId: str = Field(min_length=1)


class CalculatedColumnRequest(BaseModel):
    columnName: str = Field(min_length=1)
    formula: str = Field(min_length=1)
    uploadId: str | None = None


@app.post("/api/calculations/validate")
async def validate_formula(body: FormulaRequest, user_id: int = Depends(current_user_id)):
    validation = calculations.validate(user_id, body.formula, body.uploadId)
    return _dump(validation)


@app.post("/api/calculations/preview")
async def preview_formula(body: PreviewRequest, user_id: int = Depends(current_user_id)):
    preview = calculations.preview(user_id, body.formula, body.uploadId)
    return _dump(preview)


@app.post("/api/calculations/columns", status_code=201)
async def save_calculated_column(
    body: CalculatedColumnRequest, user_id: int = Depends(current_user_id)
):
    column = calculations.save_calculated_column(
        user_id, body.columnName, body.formula, body.uploadId
    )
    return _dump(column)


@app.get("/api/calculations/columns/{upload_id}")
async def upload_calculated_columns(upload_id: str, user_id: int = Depends(current_user_id)):
    return [_dump(c) for c in calculations.get_calculated_columns(user_id, upload_id)]


@app.delete("/api/calculations/columns/{column_id}", status_code=204)
async def delete_calculated_column(column_id: int, user_id: int = Depends(current_user_id)):
    calculations.delete_calculated_column(user_id, column_id)
    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=8000, reload=True)

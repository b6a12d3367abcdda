"""Error taxonomy shared by ingestion, storage and query code."""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ParseError(AppError):
    code = "CSV_PARSE_ERROR"
    status_code = 400


class StructuralValidationError(AppError):
    code = "CSV_VALIDATION_ERROR"
    status_code = 400

    def __init__(self, violations: list[str]) -> None:
        super().__init__("CSV file validation failed", details=list(violations))
        self.violations = list(violations)


class CapacityError(AppError):
    code = "CSV_TOO_LARGE"
    status_code = 400


class StorageError(AppError):
    code = "STORAGE_ERROR"
    status_code = 500


class NotFoundError(AppError):
    """Upload is missing or belongs to another user; callers can't tell which."""

    code = "UPLOAD_NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Upload not found or access denied") -> None:
        super().__init__(message)


class QueryError(AppError):
    code = "INVALID_QUERY"
    status_code = 400


class FormulaError(AppError):
    code = "INVALID_FORMULA"
    status_code = 400


class UploadLimitError(AppError):
    code = "UPLOAD_LIMIT_EXCEEDED"
    status_code = 429


class ColumnNotFoundError(NotFoundError):
    code = "CALCULATED_COLUMN_NOT_FOUND"

    def __init__(self, message: str = "Calculated column not found or access denied") -> None:
        super().__init__(message)


class AuthenticationError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401


class UploadFileError(AppError):
    """Rejected before parsing: missing file, unsafe name, wrong type or size."""

    status_code = 400

    def __init__(self, message: str, code: str = "INVALID_FILE_TYPE") -> None:
        super().__init__(message)
        self.code = code

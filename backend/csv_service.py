"""
CSV parsing, structural validation and column type detection.

Parsing keeps the raw shape of every record so that malformed lines are
reported by ``validate_structure`` instead of being silently padded.
"""
from __future__ import annotations

import csv
import io
import re
from datetime import datetime
from typing import Iterable

import settings
from errors import ParseError
from models import CellValue, ColumnType, ParsedData, RowData, ValidationResult

UNSAFE_HEADER_CHARS = re.compile(r"[;'\"\\]")

DATE_FORMATS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$"), "%Y-%m-%d"),
    (re.compile(r"^[0-9]{2}/[0-9]{2}/[0-9]{4}$"), "%m/%d/%Y"),
    (re.compile(r"^[0-9]{2}-[0-9]{2}-[0-9]{4}$"), "%m-%d-%Y"),
    (re.compile(r"^[0-9]{4}/[0-9]{2}/[0-9]{2}$"), "%Y/%m/%d"),
)
ISO_DATETIME = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}")
INTEGER = re.compile(r"^-?[0-9]+$")
DECIMAL = re.compile(r"^-?[0-9]*\.[0-9]+$")


def _clean(value: str) -> CellValue:
    trimmed = value.strip()
    return trimmed if trimmed else None


def parse_file(content: bytes) -> ParsedData:
    """Decode CSV bytes into headers plus one mapping per data record.

    - Headers come from the first record and are trimmed
    - Cell values are trimmed, empty strings become None
    - Cells past the header width are kept under ``_<position>`` keys
    - Short records only carry the keys they actually have
    - Blank lines are skipped
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError(f"CSV parsing failed: {exc}") from exc

    reader = csv.reader(io.StringIO(text, newline=""))
    headers: list[str] = []
    rows: list[RowData] = []
    try:
        for record in reader:
            if not record:
                continue
            if not headers:
                headers = [cell.strip() for cell in record]
                continue
            row: RowData = {}
            for position, cell in enumerate(record):
                key = headers[position] if position < len(headers) else f"_{position}"
                row[key] = _clean(cell)
            rows.append(row)
    except csv.Error as exc:
        raise ParseError(f"CSV parsing failed: {exc}") from exc

    return ParsedData(headers=headers, rows=rows)


def validate_structure(data: ParsedData) -> ValidationResult:
    if not data.headers:
        return ValidationResult(
            is_valid=False, errors=["CSV file must contain column headers"]
        )
    if not data.rows:
        return ValidationResult(
            is_valid=False, errors=["CSV file is empty or contains no data rows"]
        )

    errors: list[str] = []

    if len(set(data.headers)) != len(data.headers):
        errors.append("CSV file contains duplicate column headers")

    if any(not header.strip() for header in data.headers):
        errors.append("CSV file contains empty column headers")

    expected = len(data.headers)
    inconsistent = sum(1 for row in data.rows if len(row) != expected)
    if inconsistent:
        errors.append(f"{inconsistent} rows have inconsistent column counts")

    if len(data.rows) > settings.MAX_CSV_ROWS:
        errors.append(
            f"CSV file exceeds maximum of {settings.MAX_CSV_ROWS} rows"
        )

    invalid = [
        header
        for header in data.headers
        if UNSAFE_HEADER_CHARS.search(header)
        or len(header) > settings.MAX_HEADER_LENGTH
    ]
    if invalid:
        errors.append(f"Invalid column names detected: {', '.join(invalid)}")

    return ValidationResult(is_valid=not errors, errors=errors)


def is_valid_date(value: str) -> bool:
    candidate: datetime | None = None
    if ISO_DATETIME.match(value):
        try:
            candidate = datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return False
    else:
        for pattern, fmt in DATE_FORMATS:
            if pattern.match(value):
                try:
                    candidate = datetime.strptime(value, fmt)
                except ValueError:
                    return False
                break
    if candidate is None:
        return False
    return 1900 < candidate.year < 2100


def is_integer(value: str) -> bool:
    return INTEGER.match(value) is not None


def is_decimal(value: str) -> bool:
    return DECIMAL.match(value) is not None


def infer_type(values: Iterable[CellValue]) -> ColumnType:
    """Classify a column from its (already sampled) non-null values.

    Dates are checked before numbers so ``2024-01-01`` never reads as an integer.
    """
    samples = [str(v) for v in values if v is not None and v != ""]
    if not samples:
        return "text"
    if all(is_valid_date(v) for v in samples):
        return "date"
    if all(is_integer(v) for v in samples):
        return "integer"
    if all(is_decimal(v) for v in samples):
        return "decimal"
    return "text"


def sample_column(
    rows: Iterable[RowData], column: str, size: int | None = None
) -> list[CellValue]:
    limit = size if size is not None else settings.TYPE_SAMPLE_SIZE
    samples: list[CellValue] = []
    for row in rows:
        value = row.get(column)
        if value is None or value == "":
            continue
        samples.append(value)
        if len(samples) >= limit:
            break
    return samples


def detect_column_types(data: ParsedData) -> dict[str, ColumnType]:
    return {
        header: infer_type(sample_column(data.rows, header))
        for header in data.headers
    }

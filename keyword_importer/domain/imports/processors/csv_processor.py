import csv
import io
import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple

import pandas as pd

from keyword_importer.api.schemas.shared import (
    CsvParseError,
    CsvParseMeta,
    CsvParseResult,
    ParseErrorType,
    RawRow,
)
from keyword_importer.core.config import settings

logger = logging.getLogger(__name__)

CSV_MIME_TYPES = ("text/csv", "application/csv")
CSV_EXTENSIONS = (".csv", ".tsv")

FORMULA_PREFIXES = ("=", "+", "-", "@")
INJECTION_PATTERNS = (
    re.compile(r"^[=+\-@]"),        # Formula injection
    re.compile(r"cmd\s*\|", re.I),   # Command injection
    re.compile(r"powershell", re.I),
    re.compile(r"\|\s*curl", re.I),  # Command chaining
)
INJECTION_MESSAGE = "Potential CSV injection detected and sanitized"

ProgressCallback = Callable[[float], None]


class CsvImportError(Exception):
    """Base exception for CSV files that cannot be imported at all."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class FileTooLargeError(CsvImportError):
    """Raised before parsing when the upload exceeds the size ceiling."""

    def __init__(self, file_size: int, max_file_size: int, message: str = None):
        self.file_size = file_size
        self.max_file_size = max_file_size
        max_mb = max_file_size / 1024 / 1024
        super().__init__(message or f"File size exceeds maximum allowed size of {max_mb:g}MB")


class InvalidFileTypeError(CsvImportError):
    """Raised before parsing when the upload is not a CSV/TSV file."""

    def __init__(self, filename: str, content_type: Optional[str], message: str = None):
        self.filename = filename
        self.content_type = content_type
        super().__init__(message or "Invalid file type. Only CSV files are allowed.")


class CsvParseFailure(CsvImportError):
    """Raised when a file yields neither headers nor rows."""

    def __init__(self, errors: Sequence[CsvParseError], message: str = None):
        self.errors = list(errors)
        detail = self.errors[0].message if self.errors else "no headers or rows found"
        super().__init__(message or f"CSV parsing failed: {detail}")


def is_valid_csv_file(filename: str, content_type: Optional[str]) -> bool:
    """Accept a CSV extension OR a CSV MIME type; text/plain .txt files fail both."""
    has_csv_type = (content_type or "").split(";")[0].strip().lower() in CSV_MIME_TYPES
    has_csv_extension = (filename or "").lower().endswith(CSV_EXTENSIONS)
    return has_csv_extension or has_csv_type


def is_potential_csv_injection(value: str) -> bool:
    return any(pattern.search(value) for pattern in INJECTION_PATTERNS)


def sanitize_csv_value(value: str) -> str:
    """Prefix formula-like cells with a quote so spreadsheets treat them as text."""
    if value.startswith(FORMULA_PREFIXES):
        return f"'{value}"
    return value


def detect_encoding(file_content: bytes) -> Tuple[str, str]:
    """
    Decode the upload, trying UTF-8 first and falling back to ISO-8859-1.

    Returns:
        Tuple of (decoded_text, encoding_name)
    """
    try:
        return file_content.decode("utf-8-sig"), "UTF-8"
    except UnicodeDecodeError:
        logger.info("File is not valid UTF-8, decoding as ISO-8859-1")
        return file_content.decode("iso-8859-1"), "ISO-8859-1"


def _detect_delimiter(filename: str, text: str) -> str:
    if (filename or "").lower().endswith(".tsv"):
        return "\t"
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    if "\t" in first_line and "," not in first_line:
        return "\t"
    return ","


def _is_blank_record(record: List[str]) -> bool:
    return not record or (len(record) == 1 and not record[0].strip())


def _scan_records(
    text: str,
    delimiter: str,
    errors: List[CsvParseError],
) -> Tuple[List[str], str, List[int]]:
    """
    Read the header row and screen every data record before pandas sees it.

    Records with more non-empty fields than there are headers are reported and
    skipped. A quoting error stops the scan; the records before it are kept.

    Returns:
        Tuple of (trimmed_headers, accepted_data_text, file_row_numbers)
    """
    headers: List[str] = []
    row_numbers: List[int] = []
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    row_number = 0

    try:
        for record in csv.reader(io.StringIO(text), delimiter=delimiter, strict=True):
            if not headers:
                if record and any(cell.strip() for cell in record):
                    headers = [cell.strip() for cell in record]
                    row_number = 1  # Header is row 1
                continue

            if _is_blank_record(record):
                continue
            row_number += 1

            width = len(headers)
            if len(record) > width and any(cell.strip() for cell in record[width:]):
                errors.append(CsvParseError(
                    row=row_number,
                    message=f"Too many fields: expected {width}, found {len(record)}; row skipped",
                    type=ParseErrorType.PARSING,
                ))
                continue

            record = record[:width]
            if _is_blank_record(record):
                continue
            writer.writerow(record)
            row_numbers.append(row_number)
    except csv.Error as exc:
        logger.warning(f"CSV scan stopped at row {row_number + 1}: {exc}")
        errors.append(CsvParseError(
            row=row_number + 1,
            message=f"CSV parsing failed: {exc}",
            type=ParseErrorType.PARSING,
        ))

    return headers, buffer.getvalue(), row_numbers


def _process_chunk(
    chunk: pd.DataFrame,
    headers: List[str],
    row_numbers: Sequence[int],
    errors: List[CsvParseError],
) -> List[RawRow]:
    rows: List[RawRow] = []
    for row_number, values in zip(row_numbers, chunk.itertuples(index=False, name=None)):
        row: RawRow = {}
        for header, value in zip(headers, values):
            text = "" if value is None or pd.isna(value) else str(value)
            if text and is_potential_csv_injection(text):
                errors.append(CsvParseError(
                    row=row_number,
                    column=header,
                    message=INJECTION_MESSAGE,
                    type=ParseErrorType.VALIDATION,
                ))
            row[header] = sanitize_csv_value(text)
        rows.append(row)
    return rows


def _validate_structure(
    rows: List[RawRow],
    headers: List[str],
    row_numbers: Sequence[int],
    errors: List[CsvParseError],
) -> None:
    if not headers:
        errors.append(CsvParseError(row=0, message="No headers detected in CSV file", type=ParseErrorType.FORMAT))
        return

    duplicates: List[str] = []
    for index, header in enumerate(headers):
        if header in headers[:index] and header not in duplicates:
            duplicates.append(header)
    if duplicates:
        errors.append(CsvParseError(
            row=0,
            message=f"Duplicate headers detected: {', '.join(duplicates)}",
            type=ParseErrorType.FORMAT,
        ))

    if not rows:
        errors.append(CsvParseError(row=0, message="No data rows found in CSV file", type=ParseErrorType.FORMAT))
        return

    for row_number, row in zip(row_numbers, rows):
        if all(not value.strip() for value in row.values()):
            errors.append(CsvParseError(
                row=row_number,
                message="Empty row detected",
                type=ParseErrorType.VALIDATION,
            ))


def process_csv_file(
    file_content: bytes,
    filename: str,
    content_type: Optional[str] = None,
    *,
    max_file_size: Optional[int] = None,
    chunk_size: Optional[int] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> CsvParseResult:
    """
    Parse an uploaded keyword CSV into sanitised rows.

    The file is read in chunks so ``progress_callback`` can report completion
    (0-100) between chunks. Structural problems are collected in
    ``result.errors`` instead of being raised.

    Args:
        file_content: Raw upload bytes
        filename: Original filename, used for the type check and delimiter
        content_type: Declared MIME type
        max_file_size: Size ceiling in bytes (defaults to settings)
        chunk_size: Rows per chunk (defaults to settings)
        progress_callback: Called with a float percentage after every chunk

    Raises:
        FileTooLargeError: If the file exceeds the size ceiling
        InvalidFileTypeError: If neither the name nor the MIME type is CSV
    """
    max_size = max_file_size if max_file_size is not None else settings.upload_max_file_size_bytes
    file_size = len(file_content)
    if file_size > max_size:
        raise FileTooLargeError(file_size, max_size)
    if not is_valid_csv_file(filename, content_type):
        raise InvalidFileTypeError(filename, content_type)

    rows_per_chunk = max(1, chunk_size or settings.csv_chunk_size)
    errors: List[CsvParseError] = []
    rows: List[RawRow] = []

    text, encoding = detect_encoding(file_content)
    delimiter = _detect_delimiter(filename, text)

    headers, data_text, row_numbers = _scan_records(text, delimiter, errors)

    if row_numbers:
        total_rows = len(row_numbers)
        try:
            reader = pd.read_csv(
                io.StringIO(data_text),
                sep=delimiter,
                header=None,
                names=list(range(len(headers))),
                index_col=False,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                engine="python",
                chunksize=rows_per_chunk,
            )
            for chunk in reader:
                chunk_rows = row_numbers[len(rows):len(rows) + len(chunk)]
                rows.extend(_process_chunk(chunk, headers, chunk_rows, errors))
                if progress_callback:
                    progress_callback(min(len(rows) / total_rows * 100.0, 100.0))
        except pd.errors.ParserError as exc:
            logger.warning(f"CSV read of '{filename}' stopped after {len(rows)} rows: {exc}")
            failed_at = row_numbers[len(rows)] if len(rows) < total_rows else row_numbers[-1] + 1
            errors.append(CsvParseError(
                row=failed_at,
                message=f"CSV parsing failed: {exc}",
                type=ParseErrorType.PARSING,
            ))

    if progress_callback:
        progress_callback(100.0)

    _validate_structure(rows, headers, row_numbers[:len(rows)], errors)

    logger.info(
        f"Parsed '{filename}': {len(rows)} rows, {len(headers)} columns, "
        f"{len(errors)} issue(s), encoding {encoding}"
    )

    return CsvParseResult(
        rows=rows,
        headers=headers,
        errors=errors,
        meta=CsvParseMeta(
            row_count=len(rows),
            file_size=file_size,
            encoding=encoding,
            has_headers=bool(headers),
        ),
    )

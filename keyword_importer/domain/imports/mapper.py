from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from pydantic import ValidationError

from keyword_importer.api.schemas.shared import (
    ColumnMapping,
    MappedKeyword,
    MappingError,
    MappingErrorType,
    Number,
    RawRow,
    ToolSource,
)
from keyword_importer.utils.serialization import to_scalar
from .tool_schemas import ToolSchema, apply_transform, parse_numeric

logger = logging.getLogger(__name__)

KEYWORD_FIELD = "keyword"
# Target field -> MappedKeyword attribute for the numeric canonical fields
CANONICAL_NUMERIC_FIELDS = {
    "searchVolume": "search_volume",
    "search_volume": "search_volume",
    "difficulty": "difficulty",
}


def _as_number(value: Any) -> Optional[Number]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return parse_numeric(value)


def map_row(row: RawRow, mappings: Sequence[ColumnMapping]) -> Optional[MappedKeyword]:
    """
    Apply column mappings to a single CSV row.

    Canonical targets fill the keyword fields; every other target lands in
    ``extra_data`` under its field name. Returns None when the row has no
    keyword text, which callers count as attrition rather than an error.
    """
    keyword = ""
    canonical: Dict[str, Optional[Number]] = {}
    extra_data: Dict[str, Any] = {}

    for mapping in mappings:
        source_value = row.get(mapping.source_column)
        target_value = apply_transform(mapping.transform, source_value)

        if mapping.target_field == KEYWORD_FIELD:
            keyword = str(target_value).strip() if target_value is not None else ""
        elif mapping.target_field in CANONICAL_NUMERIC_FIELDS:
            canonical[CANONICAL_NUMERIC_FIELDS[mapping.target_field]] = _as_number(target_value)
        else:
            scalar = to_scalar(target_value)
            if scalar is not None and scalar != "":
                extra_data[mapping.target_field] = scalar

    if not keyword:
        return None

    return MappedKeyword(
        keyword=keyword,
        search_volume=canonical.get("search_volume"),
        difficulty=canonical.get("difficulty"),
        extra_data=extra_data,
        tool_source=ToolSource.UNKNOWN,
    )


def map_rows(
    rows: Sequence[RawRow],
    mappings: Sequence[ColumnMapping],
    tool_source: ToolSource,
) -> Tuple[List[MappedKeyword], int]:
    """
    Map every row and stamp the tool that produced the file.

    Returns:
        Tuple of (mapped_keywords, rows_dropped) where rows_dropped counts rows
        without keyword text.
    """
    mapped: List[MappedKeyword] = []
    dropped = 0
    for row in rows:
        keyword = map_row(row, mappings)
        if keyword is None:
            dropped += 1
            continue
        keyword.tool_source = tool_source
        mapped.append(keyword)

    if dropped:
        logger.warning(f"Dropped {dropped} row(s) without keyword text")
    logger.info(f"Mapped {len(mapped)} keyword(s) from {len(rows)} row(s) as {tool_source.value}")
    return mapped, dropped


def _field_value(record: MappedKeyword, field: str) -> Any:
    if field == KEYWORD_FIELD:
        return record.keyword
    if field in CANONICAL_NUMERIC_FIELDS:
        return getattr(record, CANONICAL_NUMERIC_FIELDS[field])
    return record.extra_data.get(field)


def validate_mapped_data(
    records: Sequence[MappedKeyword],
    schema: Optional[ToolSchema] = None,
) -> List[MappingError]:
    """
    Check mapped records against a tool schema's value validators.

    Problems are reported, never raised; the records are still imported.
    Row numbers are 1-based file positions (the header is row 1).
    """
    errors: List[MappingError] = []

    for index, record in enumerate(records):
        row_number = index + 2

        if not record.keyword.strip():
            errors.append(MappingError(
                column=KEYWORD_FIELD,
                row=row_number,
                message="Keyword is required and cannot be empty",
                type=MappingErrorType.VALIDATION_FAILED,
            ))

        if schema is None:
            continue

        for field, validator in schema.value_validators.items():
            try:
                validator.validate_python(_field_value(record, field))
            except ValidationError as exc:
                detail = exc.errors()[0].get("msg", "validation failed") if exc.errors() else "validation failed"
                errors.append(MappingError(
                    column=field,
                    row=row_number,
                    message=f"Invalid {field}: {detail}",
                    type=MappingErrorType.VALIDATION_FAILED,
                ))

    if errors:
        logger.warning(f"{len(errors)} mapped value(s) failed validation")
    return errors

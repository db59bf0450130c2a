"""
Recognise which SEO tool produced a CSV export from its header row.

Every catalog schema is scored against the headers; the best score above the
confidence floor wins and its column mappings are resolved against the
actual (original-case) header names.
"""
import logging
from typing import Dict, List, Optional, Sequence

from keyword_importer.api.schemas.shared import (
    ColumnMapping,
    MappingError,
    MappingErrorType,
    MappingResult,
    ToolSource,
)
from keyword_importer.core.config import settings
from .tool_schemas import TOOL_SCHEMAS, ToolSchema, get_tool_schema, transform_for_field

logger = logging.getLogger(__name__)

SIGNATURE_BONUS = 0.2
IGNORE_TARGET = "ignore"


def normalize_header(name: str) -> str:
    """Normalize a header for comparison: lowercase, surrounding whitespace removed."""
    if not name:
        return ""
    return str(name).strip().lower()


def _signature_bonus(normalized_headers: Sequence[str], schema: ToolSchema) -> float:
    for signature in schema.signature_columns:
        if any(signature in header for header in normalized_headers):
            return SIGNATURE_BONUS
    return 0.0


def calculate_confidence(normalized_headers: Sequence[str], schema: ToolSchema) -> float:
    """
    Score how well a header row matches one tool schema.

    Returns 0.0 unless every required column is present. Otherwise the share of
    the schema's columns that were found, plus a bonus when a column unique to
    the tool shows up, capped at 1.0.
    """
    header_set = set(normalized_headers)

    required_matches = sum(1 for column in schema.required_columns if column in header_set)
    if required_matches < len(schema.required_columns):
        return 0.0

    optional_matches = sum(1 for column in schema.optional_columns if column in header_set)
    column_score = (required_matches + optional_matches) / schema.total_columns

    return min(column_score + _signature_bonus(normalized_headers, schema), 1.0)


def _build_mapping(headers: List[str], schema: ToolSchema, confidence: float) -> MappingResult:
    normalized_headers = [normalize_header(h) for h in headers]
    mappings: List[ColumnMapping] = []
    errors: List[MappingError] = []

    for mapping in schema.column_mappings:
        try:
            source_index = normalized_headers.index(mapping.source_column)
        except ValueError:
            if mapping.required:
                errors.append(MappingError(
                    column=mapping.source_column,
                    message=f"Required column '{mapping.source_column}' not found",
                    type=MappingErrorType.MISSING_REQUIRED,
                ))
            continue
        # Keep the header exactly as the file spells it so rows can be read by key
        mappings.append(mapping.model_copy(update={"source_column": headers[source_index]}))

    mapped_sources = {normalize_header(m.source_column) for m in mappings}
    unmapped_columns = [h for h in headers if normalize_header(h) not in mapped_sources]

    return MappingResult(
        detected_tool=schema.tool,
        confidence=confidence,
        mappings=mappings,
        unmapped_columns=unmapped_columns,
        errors=errors,
    )


def detect_tool(headers: List[str], threshold: Optional[float] = None) -> MappingResult:
    """
    Detect the tool that produced a CSV from its headers.

    Args:
        headers: Header row as read from the file
        threshold: Minimum confidence to accept a match (defaults to settings)

    Returns:
        MappingResult for the best-scoring tool, or an ``unknown`` result with a
        single ``missing_required`` error when nothing scores high enough.
    """
    floor = settings.detection_confidence_threshold if threshold is None else threshold
    normalized_headers = [normalize_header(h) for h in headers]

    best_schema: Optional[ToolSchema] = None
    best_confidence = 0.0
    for schema in TOOL_SCHEMAS:
        confidence = calculate_confidence(normalized_headers, schema)
        logger.debug(f"Confidence for {schema.tool.value}: {confidence:.3f}")
        if confidence > best_confidence:
            best_confidence = confidence
            best_schema = schema

    if best_schema is None or best_confidence < floor:
        logger.info(f"No tool format matched headers {headers} (best confidence {best_confidence:.2f})")
        return MappingResult(
            detected_tool=ToolSource.UNKNOWN,
            confidence=best_confidence,
            mappings=[],
            unmapped_columns=list(headers),
            errors=[MappingError(
                column="general",
                message="Could not automatically detect external tool format. Manual mapping required.",
                type=MappingErrorType.MISSING_REQUIRED,
            )],
        )

    logger.info(f"Detected {best_schema.tool.value} export (confidence {best_confidence:.2f})")
    return _build_mapping(list(headers), best_schema, best_confidence)


def map_for_tool(headers: List[str], tool: ToolSource) -> MappingResult:
    """
    Resolve the mappings of a tool named by the caller, skipping detection.

    The confidence is still computed so callers can warn about a poor fit.
    """
    schema = get_tool_schema(tool)
    if schema is None:
        raise ValueError(f"No column schema registered for tool '{tool.value}'")

    normalized_headers = [normalize_header(h) for h in headers]
    confidence = calculate_confidence(normalized_headers, schema)
    return _build_mapping(list(headers), schema, confidence)


def create_manual_mapping(headers: List[str], column_mappings: Dict[str, str]) -> MappingResult:
    """
    Build a mapping from user-selected column targets.

    Args:
        headers: Header row as read from the file
        column_mappings: source header -> target field ("ignore" skips the column)

    Returns:
        MappingResult with confidence 1.0 and a ``missing_required`` error if no
        column was mapped to ``keyword``.
    """
    header_set = set(headers)
    mappings: List[ColumnMapping] = []
    errors: List[MappingError] = []

    for source_column, target_field in column_mappings.items():
        if source_column not in header_set or target_field == IGNORE_TARGET:
            continue
        mappings.append(ColumnMapping(
            source_column=source_column,
            target_field=target_field,
            required=target_field == "keyword",
            transform=transform_for_field(target_field),
        ))

    mapped_sources = {m.source_column for m in mappings}
    unmapped_columns = [h for h in headers if h not in mapped_sources]

    if not any(m.target_field == "keyword" for m in mappings):
        errors.append(MappingError(
            column="keyword",
            message="Keyword column mapping is required",
            type=MappingErrorType.MISSING_REQUIRED,
        ))

    return MappingResult(
        detected_tool=ToolSource.UNKNOWN,
        confidence=1.0,
        mappings=mappings,
        unmapped_columns=unmapped_columns,
        errors=errors,
    )

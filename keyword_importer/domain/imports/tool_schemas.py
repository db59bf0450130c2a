"""
Column-signature schemas for the SEO tools whose CSV exports we recognise.

Each schema lists the column names a tool writes, how each column maps onto
the canonical keyword fields, and the value validators used to flag
suspicious mapped values. The catalog is constant and built at import time.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, Optional, Tuple

from pydantic import Field, StringConstraints, TypeAdapter

from keyword_importer.api.schemas.shared import ColumnMapping, Number, ToolSource, TransformKind

_NUMERIC_NOISE_RE = re.compile(r"[,$%]")
_LEADING_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
# Prefix added by the CSV processor to neutralise formula cells
_SANITIZED_PREFIX_RE = re.compile(r"^'(?=[=+\-@])")


def _normalize_number(number: float) -> Optional[Number]:
    if math.isnan(number) or math.isinf(number):
        return None
    if number.is_integer():
        return int(number)
    return number


def _leading_number(text: str) -> Optional[Number]:
    """Parse the numeric prefix of a string, ignoring trailing text."""
    match = _LEADING_NUMBER_RE.match(text.strip())
    if not match:
        return None
    return _normalize_number(float(match.group(0)))


def parse_numeric(value: Any) -> Optional[Number]:
    """
    Normalise a formatted numeric cell such as "1,200", "$2.50" or "45%".

    Returns None for empty or unparseable values, never zero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _normalize_number(float(value))

    text = _SANITIZED_PREFIX_RE.sub("", str(value))
    text = _NUMERIC_NOISE_RE.sub("", text).strip()
    if not text:
        return None
    return _leading_number(text)


def _parse_volume_value(text: str) -> Optional[Number]:
    text = text.strip().lower()
    if not text:
        return None

    if text.endswith("k"):
        number = _leading_number(text[:-1])
        return None if number is None else _normalize_number(number * 1000.0)
    if text.endswith("m"):
        number = _leading_number(text[:-1])
        return None if number is None else _normalize_number(number * 1000000.0)

    return _leading_number(text.replace(",", "").replace("$", ""))


def parse_google_volume(value: Any) -> Optional[Number]:
    """
    Parse Google Keyword Planner volumes, including bucketed ranges.

    "1K - 10K" becomes the midpoint 5500 (rounded half up); plain values go
    through the same K/M suffix expansion.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _normalize_number(float(value))

    text = str(value).lower()
    if not text.strip():
        return None

    if " - " in text:
        low_text, high_text = text.split(" - ")[:2]
        low = _parse_volume_value(low_text)
        high = _parse_volume_value(high_text)
        if low is not None and high is not None:
            return int(math.floor((low + high) / 2 + 0.5))

    return _parse_volume_value(text)


_TRANSFORMS: Dict[TransformKind, Callable[[Any], Any]] = {
    TransformKind.IDENTITY: lambda value: value,
    TransformKind.NUMERIC: parse_numeric,
    TransformKind.GOOGLE_VOLUME_RANGE: parse_google_volume,
}


def apply_transform(kind: TransformKind, value: Any) -> Any:
    return _TRANSFORMS[kind](value)


# Target fields whose values are numeric whatever tool produced them.
NUMERIC_TARGET_FIELDS = frozenset({
    "searchVolume",
    "difficulty",
    "cpc",
    "position",
    "previousPosition",
    "results",
    "trafficPotential",
    "returnRate",
    "clicks",
    "competitionIndex",
    "topBidLow",
    "topBidHigh",
})


def transform_for_field(target_field: str) -> TransformKind:
    """Transform attached to a manually mapped column, chosen by target field."""
    if target_field in NUMERIC_TARGET_FIELDS:
        return TransformKind.NUMERIC
    return TransformKind.IDENTITY


# Value validators

KEYWORD_VALIDATOR = TypeAdapter(Annotated[str, StringConstraints(min_length=1, max_length=255)])
_NON_NEGATIVE = TypeAdapter(Optional[Annotated[float, Field(ge=0)]])
_PERCENTAGE = TypeAdapter(Optional[Annotated[float, Field(ge=0, le=100)]])
_COMPETITION_LEVEL = TypeAdapter(
    Optional[Annotated[str, StringConstraints(pattern=r"(?i)^(low|medium|high)$")]]
)

_COMMON_VALIDATORS: Dict[str, TypeAdapter] = {
    "keyword": KEYWORD_VALIDATOR,
    "searchVolume": _NON_NEGATIVE,
    "difficulty": _PERCENTAGE,
    "cpc": _NON_NEGATIVE,
}


@dataclass(frozen=True)
class ToolSchema:
    tool: ToolSource
    required_columns: Tuple[str, ...]
    optional_columns: Tuple[str, ...]
    column_mappings: Tuple[ColumnMapping, ...]
    value_validators: Dict[str, TypeAdapter] = field(default_factory=dict)
    # Columns that only this tool writes; matched as substrings of headers
    signature_columns: Tuple[str, ...] = ()

    @property
    def total_columns(self) -> int:
        return len(self.required_columns) + len(self.optional_columns)


def _mapping(source: str, target: str, transform: TransformKind = TransformKind.IDENTITY,
             required: bool = False) -> ColumnMapping:
    return ColumnMapping(source_column=source, target_field=target, required=required, transform=transform)


SEMRUSH_SCHEMA = ToolSchema(
    tool=ToolSource.SEMRUSH,
    required_columns=("keyword",),
    optional_columns=(
        "search volume", "kd", "cpc", "competition level", "results", "intent",
        "position", "previous position", "change", "serp features",
    ),
    column_mappings=(
        _mapping("keyword", "keyword", required=True),
        _mapping("search volume", "searchVolume", TransformKind.NUMERIC),
        _mapping("kd", "difficulty", TransformKind.NUMERIC),
        _mapping("cpc", "cpc", TransformKind.NUMERIC),
        _mapping("competition level", "competitionLevel"),
        _mapping("results", "results", TransformKind.NUMERIC),
        _mapping("intent", "intent"),
        _mapping("position", "position", TransformKind.NUMERIC),
        _mapping("previous position", "previousPosition", TransformKind.NUMERIC),
        _mapping("change", "change"),
        _mapping("serp features", "serpFeatures"),
    ),
    value_validators=dict(_COMMON_VALIDATORS),
    signature_columns=("kd", "serp features"),
)

AHREFS_SCHEMA = ToolSchema(
    tool=ToolSource.AHREFS,
    required_columns=("keyword",),
    optional_columns=(
        "search volume", "keyword difficulty", "cpc", "parent topic",
        "traffic potential", "return rate", "clicks",
    ),
    column_mappings=(
        _mapping("keyword", "keyword", required=True),
        _mapping("search volume", "searchVolume", TransformKind.NUMERIC),
        _mapping("keyword difficulty", "difficulty", TransformKind.NUMERIC),
        _mapping("cpc", "cpc", TransformKind.NUMERIC),
        _mapping("parent topic", "parentTopic"),
        _mapping("traffic potential", "trafficPotential", TransformKind.NUMERIC),
        _mapping("return rate", "returnRate", TransformKind.NUMERIC),
        _mapping("clicks", "clicks", TransformKind.NUMERIC),
    ),
    value_validators=dict(_COMMON_VALIDATORS),
    signature_columns=("parent topic", "traffic potential"),
)

GOOGLE_KEYWORD_PLANNER_SCHEMA = ToolSchema(
    tool=ToolSource.GOOGLE_KEYWORD_PLANNER,
    required_columns=("keyword",),
    optional_columns=(
        "avg. monthly searches", "competition", "competition (indexed value)",
        "top of page bid (low range)", "top of page bid (high range)",
    ),
    column_mappings=(
        _mapping("keyword", "keyword", required=True),
        _mapping("avg. monthly searches", "searchVolume", TransformKind.GOOGLE_VOLUME_RANGE),
        _mapping("competition", "competition"),
        _mapping("competition (indexed value)", "competitionIndex", TransformKind.NUMERIC),
        _mapping("top of page bid (low range)", "topBidLow", TransformKind.NUMERIC),
        _mapping("top of page bid (high range)", "topBidHigh", TransformKind.NUMERIC),
    ),
    value_validators={
        "keyword": KEYWORD_VALIDATOR,
        "searchVolume": _NON_NEGATIVE,
        "difficulty": _PERCENTAGE,
        "competition": _COMPETITION_LEVEL,
        "competitionIndex": _PERCENTAGE,
    },
    signature_columns=("avg. monthly searches", "indexed value"),
)

TOOL_SCHEMAS: Tuple[ToolSchema, ...] = (
    SEMRUSH_SCHEMA,
    AHREFS_SCHEMA,
    GOOGLE_KEYWORD_PLANNER_SCHEMA,
)


def get_tool_schema(tool: ToolSource) -> Optional[ToolSchema]:
    for schema in TOOL_SCHEMAS:
        if schema.tool == tool:
            return schema
    return None

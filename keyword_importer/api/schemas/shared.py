"""
Data types shared by the import pipeline stages and the API layer.

Every stage exchanges these pydantic models; the API layer serialises them
with ``model_dump(mode="json")``.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from keyword_importer.core.config import settings

# Closed scalar variant for extra-data bags. bool comes first so pydantic's
# smart union never turns True into 1.
Scalar = Union[bool, int, float, str]
Number = Union[int, float]

RawRow = Dict[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolSource(str, Enum):
    """External SEO tools whose CSV exports can be recognised."""
    SEMRUSH = "semrush"
    AHREFS = "ahrefs"
    GOOGLE_KEYWORD_PLANNER = "google_keyword_planner"
    UNKNOWN = "unknown"


class TransformKind(str, Enum):
    """Named value transforms that a column mapping can carry."""
    IDENTITY = "identity"
    NUMERIC = "numeric"
    GOOGLE_VOLUME_RANGE = "google_volume_range"


class ParseErrorType(str, Enum):
    VALIDATION = "validation"
    PARSING = "parsing"
    FORMAT = "format"


class MappingErrorType(str, Enum):
    MISSING_REQUIRED = "missing_required"
    INVALID_FORMAT = "invalid_format"
    VALIDATION_FAILED = "validation_failed"


class MergeErrorType(str, Enum):
    VALIDATION = "validation"
    REGION_MISMATCH = "region_mismatch"
    DUPLICATE = "duplicate"
    MERGE_FAILED = "merge_failed"


class ConflictResolution(str, Enum):
    """How a single field conflict was (or should be) settled."""
    KEEP_EXISTING = "keep_existing"
    USE_IMPORTED = "use_imported"
    MERGE = "merge"
    MANUAL = "manual"


class ResolutionStrategy(str, Enum):
    """Policy applied to every conflict when auto-resolution is enabled."""
    KEEP_EXISTING = "keep_existing"
    USE_IMPORTED = "use_imported"
    PREFER_NEWER = "prefer_newer"
    MANUAL = "manual"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


# CSV ingestion

class CsvParseError(BaseModel):
    row: int
    column: Optional[str] = None
    message: str
    type: ParseErrorType


class CsvParseMeta(BaseModel):
    row_count: int
    file_size: int
    encoding: Optional[str] = None
    has_headers: bool


class CsvParseResult(BaseModel):
    rows: List[RawRow] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)
    errors: List[CsvParseError] = Field(default_factory=list)
    meta: CsvParseMeta

    @property
    def is_total_failure(self) -> bool:
        """Nothing usable came out of the file: no headers and no rows."""
        return not self.headers and not self.rows


# Column mapping

class ColumnMapping(BaseModel):
    """Binds one CSV column to a canonical field or an extra-data key."""
    model_config = ConfigDict(frozen=True)

    source_column: str
    target_field: str
    required: bool = False
    transform: TransformKind = TransformKind.IDENTITY


class MappingError(BaseModel):
    column: str
    row: Optional[int] = None
    message: str
    type: MappingErrorType


class MappingResult(BaseModel):
    detected_tool: ToolSource
    confidence: float
    mappings: List[ColumnMapping] = Field(default_factory=list)
    unmapped_columns: List[str] = Field(default_factory=list)
    errors: List[MappingError] = Field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        return not any(e.type == MappingErrorType.MISSING_REQUIRED for e in self.errors)


class MappedKeyword(BaseModel):
    keyword: str = Field(..., min_length=1)
    search_volume: Optional[Number] = None
    difficulty: Optional[Number] = None
    region: Optional[str] = None
    extra_data: Dict[str, Scalar] = Field(default_factory=dict)
    tool_source: ToolSource = ToolSource.UNKNOWN


# Reconciliation

class ExistingKeyword(BaseModel):
    """A keyword owned by the storage collaborator; read-only to the reconciler."""
    id: str
    list_id: str
    text: str
    search_volume: Optional[Number] = None
    difficulty: Optional[Number] = None
    region: Optional[str] = None
    extra_data: Dict[str, Scalar] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class MergeOptions(BaseModel):
    project_region: str = Field(default_factory=lambda: settings.default_project_region)
    allow_region_mismatch: bool = False
    auto_resolve_conflicts: bool = False
    conflict_resolution_strategy: ResolutionStrategy = ResolutionStrategy.MANUAL
    preserve_existing_data: bool = True


class MergeConflict(BaseModel):
    keyword_text: str
    field: str
    existing_value: Scalar
    imported_value: Scalar
    existing_source: Optional[str] = None
    imported_source: ToolSource
    resolution: Optional[ConflictResolution] = None

    @property
    def resolution_key(self) -> str:
        return f"{self.keyword_text}_{self.field}"


class MergedKeyword(BaseModel):
    """Intended post-merge state of an existing keyword."""
    id: str
    list_id: str
    text: str
    search_volume: Optional[Number] = None
    difficulty: Optional[Number] = None
    region: Optional[str] = None
    extra_data: Dict[str, Scalar] = Field(default_factory=dict)
    changes: List[str] = Field(default_factory=list)
    conflicts_resolved: int = 0


class NewKeyword(BaseModel):
    text: str
    search_volume: Optional[Number] = None
    difficulty: Optional[Number] = None
    region: str
    extra_data: Dict[str, Scalar] = Field(default_factory=dict)
    tool_source: ToolSource


class MergeError(BaseModel):
    keyword_text: str
    message: str
    type: MergeErrorType


class MergeSummary(BaseModel):
    total_imported: int = 0
    total_matched: int = 0
    total_new: int = 0
    total_conflicts: int = 0
    total_errors: int = 0
    region_validated: bool = True


class MergeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: List[MergedKeyword] = Field(default_factory=list)
    new_keywords: List[NewKeyword] = Field(default_factory=list)
    conflicts: List[MergeConflict] = Field(default_factory=list)
    errors: List[MergeError] = Field(default_factory=list)
    summary: MergeSummary = Field(default_factory=MergeSummary)


class ManualResolution(BaseModel):
    field: str
    resolution: ConflictResolution


class AuditChange(BaseModel):
    keyword_id: str
    keyword_text: str
    changes: List[str]
    conflicts_resolved: int


class AuditNewKeyword(BaseModel):
    keyword_text: str
    tool_source: ToolSource


class AuditError(BaseModel):
    keyword_text: str
    error_type: MergeErrorType
    message: str


class AuditTrail(BaseModel):
    timestamp: datetime
    tool_source: ToolSource
    summary: MergeSummary
    changes: List[AuditChange] = Field(default_factory=list)
    new_keywords: List[AuditNewKeyword] = Field(default_factory=list)
    unresolved_conflicts: int = 0
    errors: List[AuditError] = Field(default_factory=list)


# Jobs

class ImportJob(BaseModel):
    id: str
    status: JobStatus = JobStatus.PROCESSING
    progress: int = Field(default=0, ge=0, le=100)
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# Storage-side records

class Project(BaseModel):
    id: str
    name: str
    default_region: str = Field(default_factory=lambda: settings.default_project_region)


class KeywordList(BaseModel):
    id: str
    project_id: str
    name: str
    created_at: datetime = Field(default_factory=_utcnow)

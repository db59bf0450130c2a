"""
Request and response models for the keyword import endpoints.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .shared import ImportJob, JobStatus, MergeOptions, ResolutionStrategy, ToolSource


class ImportRequest(BaseModel):
    """
    Options sent alongside an uploaded CSV.

    Accepts snake_case or camelCase keys (``keywordListId`` etc.).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    keyword_list_id: Optional[str] = None
    keyword_list_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    detect_tool: bool = True
    tool: Optional[ToolSource] = None
    column_mappings: Optional[Dict[str, str]] = None
    conflict_resolution: ResolutionStrategy = ResolutionStrategy.MANUAL
    allow_region_mismatch: bool = False

    @field_validator("tool")
    @classmethod
    def validate_tool(cls, v: Optional[ToolSource]) -> Optional[ToolSource]:
        if v == ToolSource.UNKNOWN:
            raise ValueError("tool must be one of: semrush, ahrefs, google_keyword_planner")
        return v

    @field_validator("column_mappings")
    @classmethod
    def validate_column_mappings(cls, v: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if v is not None and not v:
            return None
        return v

    @model_validator(mode="after")
    def require_mapping_source(self) -> "ImportRequest":
        if not self.detect_tool and self.tool is None and not self.column_mappings:
            raise ValueError("Either tool or column_mappings is required when detect_tool is false")
        return self

    def to_merge_options(self, project_region: str) -> MergeOptions:
        return MergeOptions(
            project_region=project_region,
            allow_region_mismatch=self.allow_region_mismatch,
            auto_resolve_conflicts=self.conflict_resolution != ResolutionStrategy.MANUAL,
            conflict_resolution_strategy=self.conflict_resolution,
        )


class ImportStartResponse(BaseModel):
    success: bool = True
    import_id: str
    message: str
    status_url: str


class ImportStatusResponse(BaseModel):
    success: bool = True
    import_id: str
    status: JobStatus
    progress: int
    message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: ImportJob) -> "ImportStatusResponse":
        return cls(
            import_id=job.id,
            status=job.status,
            progress=job.progress,
            message=job.message,
            result=job.result,
            error=job.error,
        )


class ClearImportResponse(BaseModel):
    success: bool = True
    message: str

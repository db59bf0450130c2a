"""
Keyword import pipeline.

Drives one uploaded CSV through parsing, tool detection, column mapping,
reconciliation and persistence, reporting progress to the job tracker at
fixed milestones. Runs synchronously; HTTP callers schedule ``run_import``
as a background task.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from keyword_importer.api.schemas.imports import ImportRequest
from keyword_importer.api.schemas.shared import (
    CsvParseError,
    ImportJob,
    JobStatus,
    MappingError,
    MappingResult,
    MergeResult,
    NewKeyword,
    Project,
    ToolSource,
)
from keyword_importer.core.config import Settings, settings as default_settings
from keyword_importer.core.logging_config import job_context
from keyword_importer.integrations.storage import KeywordStore, StorageError
from .format_detection import create_manual_mapping, detect_tool, map_for_tool
from .jobs import ImportJobTracker
from .mapper import map_rows, validate_mapped_data
from .processors.csv_processor import CsvImportError, CsvParseFailure, process_csv_file
from .reconciler import KeywordReconciler, normalize_keyword_text
from .tool_schemas import get_tool_schema

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEYWORD_LIST_NAME = "Imported Keywords"

# Progress milestones
PROGRESS_PARSING = 10
PROGRESS_DETECTING = 25
PROGRESS_MAPPING = 40
PROGRESS_LOADING = 55
PROGRESS_MERGING = 70
PROGRESS_SAVING = 85
PROGRESS_COMPLETE = 100


class KeywordImportPipeline:
    """
    Runs keyword CSV imports against a keyword store.

    Args:
        store: Storage collaborator for projects, lists and keywords
        tracker: Job tracker that receives progress updates
        settings: Limits, detection threshold and retry policy
        clock: Timestamp source handed to the reconciler
        sleep: Called between storage retries
    """

    def __init__(
        self,
        store: KeywordStore,
        tracker: ImportJobTracker,
        *,
        settings: Settings = default_settings,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.tracker = tracker
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    def start_import(self) -> str:
        """Register a job for an upload that is about to be processed."""
        return self.tracker.start(message="Starting CSV parsing...")

    def import_file(
        self,
        file_content: bytes,
        filename: str,
        content_type: Optional[str],
        project: Project,
        request: ImportRequest,
    ) -> ImportJob:
        """Start and run an import in the calling thread; returns the finished job."""
        job_id = self.start_import()
        return self.run_import(job_id, file_content, filename, content_type, project, request)

    def run_import(
        self,
        job_id: str,
        file_content: bytes,
        filename: str,
        content_type: Optional[str],
        project: Project,
        request: ImportRequest,
    ) -> ImportJob:
        """
        Execute every stage for an already registered job.

        Never raises for import problems: the job ends ``completed`` or
        ``failed`` and the final job state is returned.
        """
        with job_context(job_id):
            try:
                self._run(job_id, file_content, filename, content_type, project, request)
            except CsvImportError as exc:
                logger.warning(f"Import job {job_id} rejected '{filename}': {exc.message}")
                self._fail(job_id, exc.message)
            except StorageError as exc:
                logger.error(f"Import job {job_id} failed on storage: {exc.message}")
                self._fail(job_id, f"Storage error: {exc.message}")
            except Exception as exc:
                logger.exception(f"Import job {job_id} failed unexpectedly")
                self._fail(job_id, str(exc) or "Unknown error occurred")
        return self.tracker.get(job_id)

    def _run(
        self,
        job_id: str,
        file_content: bytes,
        filename: str,
        content_type: Optional[str],
        project: Project,
        request: ImportRequest,
    ) -> None:
        logger.info(f"Import job {job_id}: processing '{filename}' for project {project.id}")

        # Stage 1: parse
        self._progress(job_id, PROGRESS_PARSING, "Parsing CSV file...")
        span = PROGRESS_DETECTING - PROGRESS_PARSING
        parse_result = process_csv_file(
            file_content,
            filename,
            content_type,
            max_file_size=self.settings.upload_max_file_size_bytes,
            chunk_size=self.settings.csv_chunk_size,
            progress_callback=lambda pct: self._progress(
                job_id, PROGRESS_PARSING + pct / 100.0 * span, "Parsing CSV file..."
            ),
        )
        if parse_result.is_total_failure:
            raise CsvParseFailure(parse_result.errors)

        # Stage 2: detect
        self._progress(job_id, PROGRESS_DETECTING, "Detecting tool format...")
        mapping = self._resolve_mapping(parse_result.headers, request)
        tool_source = request.tool or mapping.detected_tool

        # Stage 3: map
        self._progress(job_id, PROGRESS_MAPPING, "Mapping columns...")
        reconciler = KeywordReconciler(
            request.to_merge_options(project.default_region),
            clock=self._clock,
        )
        if not mapping.is_usable:
            logger.warning(f"Import job {job_id}: column mapping unusable, nothing imported")
            merge_result = MergeResult()
            self._complete(
                job_id, reconciler, merge_result, mapping, tool_source,
                parse_errors=parse_result.errors,
                mapping_errors=mapping.errors,
                rows_dropped=0,
                keyword_list_id=request.keyword_list_id,
            )
            return

        mapped, rows_dropped = map_rows(parse_result.rows, mapping.mappings, tool_source)
        mapping_errors = list(mapping.errors) + validate_mapped_data(mapped, get_tool_schema(tool_source))

        # Stage 4: load
        self._progress(job_id, PROGRESS_LOADING, "Loading existing keywords...")
        existing = self._with_retry(
            "Loading existing keywords",
            lambda: self.store.list_existing_keywords(project.id),
        )

        # Stage 5: merge
        self._progress(job_id, PROGRESS_MERGING, "Merging keywords...")
        merge_result = reconciler.merge(existing, mapped, tool_source)

        # Stage 6: persist
        self._progress(job_id, PROGRESS_SAVING, "Saving keywords...")
        keyword_list_id = self._persist(project, request, merge_result)

        self._complete(
            job_id, reconciler, merge_result, mapping, tool_source,
            parse_errors=parse_result.errors,
            mapping_errors=mapping_errors,
            rows_dropped=rows_dropped,
            keyword_list_id=keyword_list_id,
        )

    def _resolve_mapping(self, headers: List[str], request: ImportRequest) -> MappingResult:
        if request.column_mappings:
            return create_manual_mapping(headers, request.column_mappings)
        if request.tool is not None:
            return map_for_tool(headers, request.tool)
        return detect_tool(headers, threshold=self.settings.detection_confidence_threshold)

    def _persist(self, project: Project, request: ImportRequest, merge_result: MergeResult) -> Optional[str]:
        for merged in merge_result.matched:
            fields = {
                "search_volume": merged.search_volume,
                "difficulty": merged.difficulty,
                "region": merged.region,
                "extra_data": dict(merged.extra_data),
            }
            self._with_retry(
                f"Updating keyword {merged.id}",
                lambda keyword_id=merged.id, values=fields: self.store.update_keyword(keyword_id, values),
            )

        keyword_list_id = request.keyword_list_id
        to_insert = _first_occurrences(merge_result.new_keywords)
        if to_insert:
            if keyword_list_id is None:
                keyword_list_id = self._resolve_keyword_list(project, request)
            self._with_retry(
                "Inserting new keywords",
                lambda: self.store.insert_keywords(keyword_list_id, to_insert),
            )

        logger.info(
            f"Saved {len(merge_result.matched)} updated and {len(to_insert)} new keyword(s) "
            f"for project {project.id}"
        )
        return keyword_list_id

    def _resolve_keyword_list(self, project: Project, request: ImportRequest) -> str:
        """Most recent list of the project, or a freshly created one."""
        latest = self._with_retry(
            "Finding latest keyword list",
            lambda: self.store.get_latest_keyword_list(project.id),
        )
        if latest is not None:
            return latest.id

        name = request.keyword_list_name or DEFAULT_KEYWORD_LIST_NAME
        created = self._with_retry(
            "Creating keyword list",
            lambda: self.store.create_keyword_list(project.id, name),
        )
        return created.id

    def _with_retry(self, description: str, operation: Callable[[], T]) -> T:
        """Run a storage call, retrying ``StorageError`` with exponential backoff."""
        attempts = max(1, self.settings.storage_max_retries)
        for attempt in range(attempts):
            try:
                return operation()
            except StorageError as exc:
                if attempt == attempts - 1:
                    logger.error(f"{description} failed after {attempts} attempt(s): {exc.message}")
                    raise
                delay = self.settings.storage_retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{attempts}): {exc.message}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
        raise StorageError(f"{description} was not attempted")

    def _complete(
        self,
        job_id: str,
        reconciler: KeywordReconciler,
        merge_result: MergeResult,
        mapping: MappingResult,
        tool_source: ToolSource,
        *,
        parse_errors: Sequence[CsvParseError],
        mapping_errors: Sequence[MappingError],
        rows_dropped: int,
        keyword_list_id: Optional[str],
    ) -> None:
        audit_trail = reconciler.generate_audit_trail(merge_result, tool_source)
        result: Dict[str, Any] = {
            "summary": merge_result.summary.model_dump(mode="json"),
            "conflicts": [c.model_dump(mode="json") for c in merge_result.conflicts],
            "errors": [e.model_dump(mode="json") for e in merge_result.errors],
            "audit_trail": audit_trail.model_dump(mode="json"),
            "keyword_list_id": keyword_list_id,
            "detected_tool": mapping.detected_tool.value,
            "tool_source": tool_source.value,
            "confidence": mapping.confidence,
            "parse_errors": [e.model_dump(mode="json") for e in parse_errors],
            "mapping_errors": [e.model_dump(mode="json") for e in mapping_errors],
            "rows_dropped": rows_dropped,
        }
        self.tracker.update(
            job_id,
            JobStatus.COMPLETED,
            PROGRESS_COMPLETE,
            message="Import completed successfully",
            result=result,
        )
        summary = merge_result.summary
        logger.info(
            f"Import job {job_id} completed: {summary.total_matched} matched, {summary.total_new} new, "
            f"{summary.total_conflicts} conflict(s), {summary.total_errors} error(s)"
        )

    def _progress(self, job_id: str, progress: float, message: str) -> None:
        self.tracker.update(job_id, JobStatus.PROCESSING, progress, message=message)

    def _fail(self, job_id: str, error: str) -> None:
        self.tracker.update(job_id, JobStatus.FAILED, 0, message="Import failed", error=error)


def _first_occurrences(keywords: Sequence[NewKeyword]) -> List[NewKeyword]:
    """Drop repeats of the same keyword text; they are reported as duplicates."""
    seen: Set[str] = set()
    unique: List[NewKeyword] = []
    for keyword in keywords:
        normalized = normalize_keyword_text(keyword.text)
        if normalized in seen:
            continue
        seen.add(normalized)
        unique.append(keyword)
    return unique

"""
Reconcile imported keyword records against a project's existing keywords.

Imported records are matched to existing keywords by case-insensitive,
trimmed text. Matches become update instructions (``MergedKeyword``) with
every field-level disagreement recorded as a ``MergeConflict``; everything
else becomes a ``NewKeyword``. Nothing here touches storage: the caller
persists the instructions.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from keyword_importer.api.schemas.shared import (
    AuditChange,
    AuditError,
    AuditNewKeyword,
    AuditTrail,
    ConflictResolution,
    ExistingKeyword,
    ManualResolution,
    MappedKeyword,
    MergeConflict,
    MergedKeyword,
    MergeError,
    MergeErrorType,
    MergeOptions,
    MergeResult,
    MergeSummary,
    NewKeyword,
    ResolutionStrategy,
    Scalar,
    ToolSource,
)

logger = logging.getLogger(__name__)

DEFAULT_EXISTING_SOURCE = "AI Generated"
LAST_IMPORT_SOURCE_KEY = "last_import_source"
LAST_IMPORT_TIMESTAMP_KEY = "last_import_timestamp"
IMPORT_SOURCE_KEY = "import_source"
IMPORT_TIMESTAMP_KEY = "import_timestamp"
EXTRA_DATA_FIELD = "extra_data"

# Conflict field name -> keyword attribute
CONFLICT_FIELDS = {
    "searchVolume": "search_volume",
    "difficulty": "difficulty",
    "region": "region",
}

_STRATEGY_RESOLUTIONS = {
    ResolutionStrategy.KEEP_EXISTING: ConflictResolution.KEEP_EXISTING,
    ResolutionStrategy.USE_IMPORTED: ConflictResolution.USE_IMPORTED,
    # Imported data is always the newer observation
    ResolutionStrategy.PREFER_NEWER: ConflictResolution.USE_IMPORTED,
    ResolutionStrategy.MANUAL: ConflictResolution.MANUAL,
}


def normalize_keyword_text(text: str) -> str:
    return text.strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _record_text(record: MappedKeyword) -> str:
    keyword = getattr(record, "keyword", None)
    return "" if keyword is None else str(keyword)


class KeywordReconciler:
    """
    Merge imported keywords into an existing keyword set.

    Args:
        options: Region and conflict-resolution policy for this merge
        clock: Returns the timestamp stamped on merged data; injectable so
            identical inputs reproduce identical output
    """

    def __init__(self, options: Optional[MergeOptions] = None, clock: Optional[Callable[[], datetime]] = None):
        self.options = options or MergeOptions()
        self._clock = clock or _utcnow

    def merge(
        self,
        existing: Sequence[ExistingKeyword],
        imported: Sequence[MappedKeyword],
        tool_source: Union[ToolSource, str],
    ) -> MergeResult:
        tool = ToolSource(tool_source)
        timestamp = self._clock().isoformat()

        matched: List[MergedKeyword] = []
        new_keywords: List[NewKeyword] = []
        conflicts: List[MergeConflict] = []
        errors: List[MergeError] = []

        existing_lookup: Dict[str, ExistingKeyword] = {}
        for keyword in existing:
            existing_lookup[normalize_keyword_text(keyword.text)] = keyword

        for record in imported:
            try:
                accepted, region = self._validate_region(record)
                if not accepted:
                    errors.append(MergeError(
                        keyword_text=_record_text(record),
                        message=(
                            "Region mismatch: imported keyword region does not match "
                            f"project region ({self.options.project_region})"
                        ),
                        type=MergeErrorType.REGION_MISMATCH,
                    ))
                    continue

                candidate = record.model_copy(update={"region": region})
                existing_keyword = existing_lookup.get(normalize_keyword_text(candidate.keyword))

                if existing_keyword is not None:
                    merged, record_conflicts = self._merge_existing(existing_keyword, candidate, tool, timestamp)
                    matched.append(merged)
                    conflicts.extend(record_conflicts)
                else:
                    new_keywords.append(self._create_new_keyword(candidate, tool, timestamp))
            except Exception as exc:
                logger.warning(f"Failed to merge keyword '{_record_text(record)}': {exc}")
                errors.append(MergeError(
                    keyword_text=_record_text(record),
                    message=str(exc) or "Unknown merge error",
                    type=MergeErrorType.MERGE_FAILED,
                ))

        errors.extend(self._find_duplicates(new_keywords))

        summary = MergeSummary(
            total_imported=len(imported),
            total_matched=len(matched),
            total_new=len(new_keywords),
            total_conflicts=len(conflicts),
            total_errors=len(errors),
            region_validated=not any(e.type == MergeErrorType.REGION_MISMATCH for e in errors),
        )
        logger.info(
            f"Merged {summary.total_imported} {tool.value} keyword(s): {summary.total_matched} matched, "
            f"{summary.total_new} new, {summary.total_conflicts} conflict(s), {summary.total_errors} error(s)"
        )

        return MergeResult(
            matched=matched,
            new_keywords=new_keywords,
            conflicts=conflicts,
            errors=errors,
            summary=summary,
        )

    def _validate_region(self, record: MappedKeyword) -> Tuple[bool, Optional[str]]:
        """Return (accepted, effective_region) without touching the record."""
        if self.options.allow_region_mismatch:
            return True, record.region
        if not record.region:
            return True, self.options.project_region
        return record.region == self.options.project_region, record.region

    def _merge_existing(
        self,
        existing: ExistingKeyword,
        imported: MappedKeyword,
        tool: ToolSource,
        timestamp: str,
    ) -> Tuple[MergedKeyword, List[MergeConflict]]:
        merged = MergedKeyword(
            id=existing.id,
            list_id=existing.list_id,
            text=existing.text,
            search_volume=existing.search_volume,
            difficulty=existing.difficulty,
            region=existing.region,
            extra_data=dict(existing.extra_data),
        )
        changes: List[str] = []

        conflicts = self._detect_conflicts(existing, imported, tool)
        for conflict in conflicts:
            conflict.resolution = self._resolve_conflict()
            if conflict.resolution == ConflictResolution.USE_IMPORTED:
                setattr(merged, CONFLICT_FIELDS[conflict.field], conflict.imported_value)
                changes.append(
                    f"Updated {conflict.field} from {conflict.existing_value} to {conflict.imported_value}"
                )
                merged.conflicts_resolved += 1

        # Backfill fields the stored keyword never had
        if merged.search_volume is None and imported.search_volume is not None:
            merged.search_volume = imported.search_volume
            changes.append(f"Set search volume to {imported.search_volume} from {tool.value}")
        if merged.difficulty is None and imported.difficulty is not None:
            merged.difficulty = imported.difficulty
            changes.append(f"Set difficulty to {imported.difficulty} from {tool.value}")
        if not merged.region:
            if imported.region:
                merged.region = imported.region
                changes.append(f"Set region to {imported.region} from {tool.value}")
            else:
                merged.region = self.options.project_region

        prefix = f"{tool.value}_"
        if not self.options.preserve_existing_data:
            merged.extra_data = {k: v for k, v in merged.extra_data.items() if not k.startswith(prefix)}

        # Per-tool snapshot, written whatever the conflict outcome
        merged.extra_data.update(self._tool_metrics(imported, tool))

        if not any(c.field == EXTRA_DATA_FIELD for c in conflicts) and imported.extra_data:
            for key, value in imported.extra_data.items():
                merged.extra_data[f"{prefix}{key}"] = value
            changes.append(f"Added {tool.value} data")

        merged.extra_data[LAST_IMPORT_SOURCE_KEY] = tool.value
        merged.extra_data[LAST_IMPORT_TIMESTAMP_KEY] = timestamp
        merged.changes = changes

        return merged, conflicts

    def _detect_conflicts(
        self,
        existing: ExistingKeyword,
        imported: MappedKeyword,
        tool: ToolSource,
    ) -> List[MergeConflict]:
        conflicts: List[MergeConflict] = []
        existing_source = self._existing_source(existing)

        for field, attribute in CONFLICT_FIELDS.items():
            existing_value = getattr(existing, attribute)
            imported_value = getattr(imported, attribute)
            if field == "region":
                has_both = bool(existing_value) and bool(imported_value)
            else:
                has_both = existing_value is not None and imported_value is not None
            if not has_both or existing_value == imported_value:
                continue
            conflicts.append(MergeConflict(
                keyword_text=existing.text,
                field=field,
                existing_value=existing_value,
                imported_value=imported_value,
                existing_source=existing_source,
                imported_source=tool,
            ))

        return conflicts

    def _resolve_conflict(self) -> ConflictResolution:
        if not self.options.auto_resolve_conflicts:
            return ConflictResolution.MANUAL
        return _STRATEGY_RESOLUTIONS.get(self.options.conflict_resolution_strategy, ConflictResolution.MANUAL)

    @staticmethod
    def _existing_source(existing: ExistingKeyword) -> str:
        source = existing.extra_data.get(LAST_IMPORT_SOURCE_KEY)
        if source is not None and source != "":
            return str(source)
        return DEFAULT_EXISTING_SOURCE

    @staticmethod
    def _tool_metrics(imported: MappedKeyword, tool: ToolSource) -> Dict[str, Scalar]:
        metrics: Dict[str, Scalar] = {}
        if imported.search_volume is not None:
            metrics[f"{tool.value}_searchVolume"] = imported.search_volume
        if imported.difficulty is not None:
            metrics[f"{tool.value}_difficulty"] = imported.difficulty
        return metrics

    def _create_new_keyword(self, imported: MappedKeyword, tool: ToolSource, timestamp: str) -> NewKeyword:
        extra_data: Dict[str, Scalar] = dict(imported.extra_data)
        extra_data[IMPORT_SOURCE_KEY] = tool.value
        extra_data[LAST_IMPORT_SOURCE_KEY] = tool.value
        extra_data[IMPORT_TIMESTAMP_KEY] = timestamp
        extra_data.update(self._tool_metrics(imported, tool))

        return NewKeyword(
            text=imported.keyword.strip(),
            search_volume=imported.search_volume,
            difficulty=imported.difficulty,
            region=imported.region or self.options.project_region,
            extra_data=extra_data,
            tool_source=tool,
        )

    @staticmethod
    def _find_duplicates(new_keywords: Sequence[NewKeyword]) -> List[MergeError]:
        """Flag every repeat of a keyword within the batch; first occurrences pass."""
        errors: List[MergeError] = []
        seen = set()
        for keyword in new_keywords:
            normalized = normalize_keyword_text(keyword.text)
            if normalized in seen:
                errors.append(MergeError(
                    keyword_text=keyword.text,
                    message="Duplicate keyword found in import data",
                    type=MergeErrorType.DUPLICATE,
                ))
            seen.add(normalized)
        return errors

    @staticmethod
    def apply_conflict_resolutions(
        conflicts: Sequence[MergeConflict],
        resolutions: Mapping[str, Union[ManualResolution, Mapping[str, str]]],
    ) -> List[MergeConflict]:
        """
        Overlay reviewed resolutions onto a conflict list.

        Keys are ``"<keyword_text>_<field>"``; an entry only applies when its
        ``field`` matches the conflict. Returns new conflict objects and does
        not re-run the merge.
        """
        resolved: List[MergeConflict] = []
        for conflict in conflicts:
            entry = resolutions.get(conflict.resolution_key)
            if entry is not None and not isinstance(entry, ManualResolution):
                entry = ManualResolution.model_validate(entry)
            if entry is not None and entry.field == conflict.field:
                resolved.append(conflict.model_copy(update={"resolution": entry.resolution}))
            else:
                resolved.append(conflict.model_copy())
        return resolved

    def generate_audit_trail(self, result: MergeResult, tool_source: Union[ToolSource, str]) -> AuditTrail:
        """Summarise what a merge changed, added and flagged. Read-only."""
        tool = ToolSource(tool_source)
        return AuditTrail(
            timestamp=self._clock(),
            tool_source=tool,
            summary=result.summary.model_copy(),
            changes=[
                AuditChange(
                    keyword_id=m.id,
                    keyword_text=m.text,
                    changes=list(m.changes),
                    conflicts_resolved=m.conflicts_resolved,
                )
                for m in result.matched
            ],
            new_keywords=[
                AuditNewKeyword(keyword_text=n.text, tool_source=n.tool_source)
                for n in result.new_keywords
            ],
            unresolved_conflicts=sum(
                1 for c in result.conflicts
                if c.resolution is None or c.resolution == ConflictResolution.MANUAL
            ),
            errors=[
                AuditError(keyword_text=e.keyword_text, error_type=e.type, message=e.message)
                for e in result.errors
            ],
        )

"""
Tests for reconciling imported keywords against existing project keywords.
"""
from keyword_importer.api.schemas.shared import (
    ConflictResolution,
    ExistingKeyword,
    MappedKeyword,
    MergeErrorType,
    MergeOptions,
    ResolutionStrategy,
    ToolSource,
)
from keyword_importer.domain.imports.format_detection import detect_tool
from keyword_importer.domain.imports.mapper import map_rows
from keyword_importer.domain.imports.reconciler import KeywordReconciler


def _existing(text="seo tips", **overrides):
    fields = dict(id="kw-1", list_id="list-1", text=text, search_volume=1000, difficulty=40, region="UK")
    fields.update(overrides)
    return ExistingKeyword(**fields)


def _imported(keyword="seo tips", **overrides):
    fields = dict(keyword=keyword, search_volume=1200, difficulty=45.5, tool_source=ToolSource.SEMRUSH)
    fields.update(overrides)
    return MappedKeyword(**fields)


def _reconciler(fixed_clock, **options):
    return KeywordReconciler(MergeOptions(project_region="UK", **options), clock=fixed_clock)


def _use_imported(fixed_clock, **options):
    return _reconciler(
        fixed_clock,
        auto_resolve_conflicts=True,
        conflict_resolution_strategy=ResolutionStrategy.USE_IMPORTED,
        **options,
    )


def test_end_to_end_semrush_import_updates_existing_keyword(fixed_clock):
    """Test detection, mapping and merge of a Semrush row together."""
    mapping = detect_tool(["keyword", "search volume", "kd", "cpc"], threshold=0.5)
    assert mapping.detected_tool == ToolSource.SEMRUSH
    assert mapping.confidence >= 0.5

    rows = [{"keyword": "seo tips", "search volume": "1,200", "kd": "45.5", "cpc": "$2.50"}]
    mapped, _ = map_rows(rows, mapping.mappings, ToolSource.SEMRUSH)
    assert mapped[0].search_volume == 1200
    assert mapped[0].difficulty == 45.5
    assert mapped[0].extra_data == {"cpc": 2.5}

    result = _use_imported(fixed_clock).merge([_existing()], mapped, ToolSource.SEMRUSH)

    assert len(result.matched) == 1
    merged = result.matched[0]
    assert merged.search_volume == 1200
    assert merged.difficulty == 45.5
    assert merged.conflicts_resolved == 2
    assert len(result.conflicts) == 2
    assert all(c.resolution == ConflictResolution.USE_IMPORTED for c in result.conflicts)
    assert merged.changes[:2] == [
        "Updated searchVolume from 1000 to 1200",
        "Updated difficulty from 40 to 45.5",
    ]


def test_matching_ignores_case_and_whitespace(fixed_clock):
    """Test matching against existing keywords ignores case and padding."""
    result = _reconciler(fixed_clock).merge(
        [_existing(text="Test Keyword")],
        [_imported(keyword="test keyword ")],
        ToolSource.SEMRUSH,
    )

    assert len(result.matched) == 1
    assert result.new_keywords == []
    assert result.matched[0].text == "Test Keyword"


def test_conflict_carries_both_values(fixed_clock):
    """A conflict records the stored and the imported value."""
    result = _reconciler(fixed_clock).merge(
        [_existing(search_volume=1000, difficulty=None)],
        [_imported(search_volume=1200, difficulty=None)],
        ToolSource.SEMRUSH,
    )

    volume_conflicts = [c for c in result.conflicts if c.field == "searchVolume"]
    assert len(volume_conflicts) == 1
    conflict = volume_conflicts[0]
    assert conflict.existing_value == 1000
    assert conflict.imported_value == 1200
    assert conflict.keyword_text == "seo tips"
    assert conflict.existing_source == "AI Generated"
    assert conflict.imported_source == ToolSource.SEMRUSH


def test_equal_values_do_not_conflict(fixed_clock):
    """Test identical values are not reported as conflicts."""
    result = _reconciler(fixed_clock).merge(
        [_existing(search_volume=1200, difficulty=45.5)],
        [_imported(search_volume=1200, difficulty=45.5)],
        ToolSource.SEMRUSH,
    )

    assert result.conflicts == []
    assert result.summary.total_conflicts == 0


def test_existing_source_comes_from_last_import(fixed_clock):
    """Test the existing side of a conflict names the last import source."""
    existing = _existing(extra_data={"last_import_source": "ahrefs"})

    result = _reconciler(fixed_clock).merge([existing], [_imported()], ToolSource.SEMRUSH)

    assert {c.existing_source for c in result.conflicts} == {"ahrefs"}


def test_manual_strategy_keeps_existing_values(fixed_clock):
    """Test manual resolution keeps stored values."""
    result = _reconciler(fixed_clock).merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    merged = result.matched[0]
    assert merged.search_volume == 1000
    assert merged.difficulty == 40
    assert merged.conflicts_resolved == 0
    assert len(result.conflicts) == 2
    assert all(c.resolution == ConflictResolution.MANUAL for c in result.conflicts)


def test_manual_strategy_with_auto_resolve_still_manual(fixed_clock):
    """Test auto resolve with the manual strategy leaves conflicts open."""
    reconciler = _reconciler(
        fixed_clock,
        auto_resolve_conflicts=True,
        conflict_resolution_strategy=ResolutionStrategy.MANUAL,
    )

    result = reconciler.merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    assert result.matched[0].search_volume == 1000
    assert all(c.resolution == ConflictResolution.MANUAL for c in result.conflicts)


def test_keep_existing_strategy(fixed_clock):
    """Test the keep_existing strategy."""
    reconciler = _reconciler(
        fixed_clock,
        auto_resolve_conflicts=True,
        conflict_resolution_strategy=ResolutionStrategy.KEEP_EXISTING,
    )

    result = reconciler.merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    assert result.matched[0].search_volume == 1000
    assert result.matched[0].conflicts_resolved == 0
    assert all(c.resolution == ConflictResolution.KEEP_EXISTING for c in result.conflicts)


def test_prefer_newer_uses_imported_values(fixed_clock):
    """prefer_newer treats imported data as the newer value."""
    reconciler = _reconciler(
        fixed_clock,
        auto_resolve_conflicts=True,
        conflict_resolution_strategy=ResolutionStrategy.PREFER_NEWER,
    )

    result = reconciler.merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    assert result.matched[0].search_volume == 1200
    assert all(c.resolution == ConflictResolution.USE_IMPORTED for c in result.conflicts)


def test_empty_fields_are_backfilled_without_conflict(fixed_clock):
    """Test empty stored fields are filled without a conflict."""
    existing = _existing(search_volume=None, difficulty=None)

    result = _reconciler(fixed_clock).merge([existing], [_imported()], ToolSource.SEMRUSH)

    merged = result.matched[0]
    assert result.conflicts == []
    assert merged.search_volume == 1200
    assert merged.difficulty == 45.5
    assert "Set search volume to 1200 from semrush" in merged.changes
    assert "Set difficulty to 45.5 from semrush" in merged.changes


def test_tool_namespaced_metrics_are_always_written(fixed_clock):
    """Test tool metrics are written even when conflicts stay open."""
    result = _reconciler(fixed_clock).merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    extra = result.matched[0].extra_data
    assert extra["semrush_searchVolume"] == 1200
    assert extra["semrush_difficulty"] == 45.5
    assert extra["last_import_source"] == "semrush"
    assert extra["last_import_timestamp"] == fixed_clock().isoformat()


def test_imported_extra_data_is_namespaced(fixed_clock):
    """Test extra data keys are prefixed with the tool name."""
    existing = _existing(extra_data={"notes": "seed"})
    imported = _imported(extra_data={"cpc": 2.5, "intent": "Commercial"})

    result = _reconciler(fixed_clock).merge([existing], [imported], ToolSource.SEMRUSH)

    merged = result.matched[0]
    assert merged.extra_data["notes"] == "seed"
    assert merged.extra_data["semrush_cpc"] == 2.5
    assert merged.extra_data["semrush_intent"] == "Commercial"
    assert "cpc" not in merged.extra_data
    assert "Added semrush data" in merged.changes


def test_preserve_existing_data_keeps_previous_tool_keys(fixed_clock):
    """Test earlier keys from the same tool survive when preserving data."""
    existing = _existing(extra_data={"semrush_cpc": 1.0, "ahrefs_cpc": 3.0})

    result = _reconciler(fixed_clock).merge([existing], [_imported()], ToolSource.SEMRUSH)

    extra = result.matched[0].extra_data
    assert extra["semrush_cpc"] == 1.0
    assert extra["ahrefs_cpc"] == 3.0


def test_replacing_tool_data_clears_previous_snapshot(fixed_clock):
    """Test that a fresh snapshot replaces the tool's old keys."""
    existing = _existing(extra_data={"semrush_cpc": 1.0, "ahrefs_cpc": 3.0})

    result = _reconciler(fixed_clock, preserve_existing_data=False).merge(
        [existing], [_imported()], ToolSource.SEMRUSH
    )

    extra = result.matched[0].extra_data
    assert "semrush_cpc" not in extra
    assert extra["ahrefs_cpc"] == 3.0
    assert extra["semrush_searchVolume"] == 1200


def test_region_mismatch_is_rejected(fixed_clock):
    """Test keywords from another region are rejected."""
    result = _reconciler(fixed_clock).merge([], [_imported(keyword="hose", region="US")], ToolSource.SEMRUSH)

    assert result.matched == []
    assert result.new_keywords == []
    assert len(result.errors) == 1
    assert result.errors[0].type == MergeErrorType.REGION_MISMATCH
    assert "(UK)" in result.errors[0].message
    assert result.summary.region_validated is False


def test_region_mismatch_allowed_keeps_imported_region(fixed_clock):
    """Test an allowed mismatch keeps the imported region."""
    reconciler = _reconciler(fixed_clock, allow_region_mismatch=True)

    result = reconciler.merge([], [_imported(keyword="hose", region="US")], ToolSource.SEMRUSH)

    assert len(result.new_keywords) == 1
    assert result.new_keywords[0].region == "US"
    assert result.errors == []
    assert result.summary.region_validated is True


def test_missing_region_inherits_project_region(fixed_clock):
    """Keywords without a region take the project region."""
    result = _reconciler(fixed_clock).merge([], [_imported(keyword="hose")], ToolSource.SEMRUSH)

    assert result.new_keywords[0].region == "UK"


def test_region_conflict_on_matched_keyword(fixed_clock):
    """Test a differing region on a matched keyword is a conflict."""
    reconciler = _use_imported(fixed_clock, allow_region_mismatch=True)

    result = reconciler.merge(
        [_existing(search_volume=None, difficulty=None)],
        [_imported(region="US")],
        ToolSource.SEMRUSH,
    )

    assert [c.field for c in result.conflicts] == ["region"]
    assert result.matched[0].region == "US"


def test_new_keyword_metadata(fixed_clock):
    """Test the metadata stamped on a new keyword."""
    result = _reconciler(fixed_clock).merge(
        [], [_imported(keyword="  hose reel ", extra_data={"cpc": 1.5})], ToolSource.AHREFS
    )

    new = result.new_keywords[0]
    assert new.text == "hose reel"
    assert new.tool_source == ToolSource.AHREFS
    assert new.extra_data == {
        "cpc": 1.5,
        "import_source": "ahrefs",
        "last_import_source": "ahrefs",
        "import_timestamp": fixed_clock().isoformat(),
        "ahrefs_searchVolume": 1200,
        "ahrefs_difficulty": 45.5,
    }


def test_duplicates_are_flagged_not_dropped(fixed_clock):
    """Test duplicate new keywords are reported but kept."""
    imported = [_imported(keyword="foo"), _imported(keyword="FOO"), _imported(keyword="bar")]

    result = _reconciler(fixed_clock).merge([], imported, ToolSource.SEMRUSH)

    assert len(result.new_keywords) == 3
    duplicates = [e for e in result.errors if e.type == MergeErrorType.DUPLICATE]
    assert len(duplicates) == 1
    assert duplicates[0].keyword_text == "FOO"
    assert result.summary.total_new == 3


def test_rows_matching_the_same_existing_keyword_are_not_duplicates(fixed_clock):
    """Two rows for one existing keyword both count as matches."""
    imported = [_imported(keyword="seo tips"), _imported(keyword="SEO Tips")]

    result = _reconciler(fixed_clock).merge([_existing()], imported, ToolSource.SEMRUSH)

    assert len(result.matched) == 2
    assert not any(e.type == MergeErrorType.DUPLICATE for e in result.errors)


def test_summary_counts(fixed_clock):
    """Test the merge summary totals."""
    imported = [_imported(), _imported(keyword="new one"), _imported(keyword="us one", region="US")]

    result = _reconciler(fixed_clock).merge([_existing()], imported, ToolSource.SEMRUSH)

    summary = result.summary
    assert summary.total_imported == 3
    assert summary.total_matched == 1
    assert summary.total_new == 1
    assert summary.total_conflicts == 2
    assert summary.total_errors == 1


def test_inputs_are_not_mutated(fixed_clock):
    """Test that merging leaves its inputs untouched."""
    existing = [_existing(extra_data={"notes": "seed"})]
    imported = [_imported(extra_data={"cpc": 2.5})]
    existing_before = [e.model_copy(deep=True) for e in existing]
    imported_before = [i.model_copy(deep=True) for i in imported]

    _use_imported(fixed_clock).merge(existing, imported, ToolSource.SEMRUSH)

    assert existing == existing_before
    assert imported == imported_before


def test_merge_is_deterministic(fixed_clock):
    """Test merging twice with a fixed clock gives equal results."""
    existing = [_existing(), _existing(id="kw-2", text="hose")]
    imported = [_imported(), _imported(keyword="hose", search_volume=5), _imported(keyword="reel")]

    first = _use_imported(fixed_clock).merge(existing, imported, ToolSource.SEMRUSH)
    second = _use_imported(fixed_clock).merge(existing, imported, ToolSource.SEMRUSH)

    assert first == second


def test_apply_conflict_resolutions_overlays_matching_field(fixed_clock):
    """Test applying resolutions only changes the conflicting field."""
    result = _reconciler(fixed_clock).merge([_existing()], [_imported()], ToolSource.SEMRUSH)

    resolved = KeywordReconciler.apply_conflict_resolutions(
        result.conflicts,
        {
            "seo tips_searchVolume": {"field": "searchVolume", "resolution": "use_imported"},
            "seo tips_difficulty": {"field": "region", "resolution": "keep_existing"},
        },
    )

    by_field = {c.field: c.resolution for c in resolved}
    assert by_field == {
        "searchVolume": ConflictResolution.USE_IMPORTED,
        "difficulty": ConflictResolution.MANUAL,
    }
    # Originals are untouched
    assert all(c.resolution == ConflictResolution.MANUAL for c in result.conflicts)


def test_audit_trail(fixed_clock):
    """Test the audit trail built from a merge result."""
    reconciler = _reconciler(fixed_clock)
    imported = [_imported(), _imported(keyword="reel"), _imported(keyword="us one", region="US")]
    result = reconciler.merge([_existing()], imported, ToolSource.SEMRUSH)

    trail = reconciler.generate_audit_trail(result, ToolSource.SEMRUSH)

    assert trail.timestamp == fixed_clock()
    assert trail.tool_source == ToolSource.SEMRUSH
    assert trail.summary == result.summary
    assert [c.keyword_id for c in trail.changes] == ["kw-1"]
    assert [n.keyword_text for n in trail.new_keywords] == ["reel"]
    assert trail.unresolved_conflicts == 2
    assert [(e.keyword_text, e.error_type) for e in trail.errors] == [
        ("us one", MergeErrorType.REGION_MISMATCH),
    ]


def test_failing_record_is_reported_and_the_rest_merged(fixed_clock):
    """Test that a record that cannot be merged becomes a merge_failed error."""
    broken = MappedKeyword.model_construct(keyword=None, tool_source=ToolSource.SEMRUSH)

    result = _reconciler(fixed_clock).merge([], [broken, _imported(keyword="ok")], ToolSource.SEMRUSH)

    assert [e.type for e in result.errors] == [MergeErrorType.MERGE_FAILED]
    assert result.errors[0].keyword_text == ""
    assert [k.text for k in result.new_keywords] == ["ok"]
    assert result.summary.total_imported == 2

"""
Pytest configuration and fixtures for keyword importer tests.

Provides a fixed clock, a job tracker, and an in-memory keyword store seeded
with one UK project holding a single keyword list.
"""
from datetime import datetime, timezone

import pytest

from keyword_importer.api.schemas.shared import ExistingKeyword, KeywordList, Project
from keyword_importer.core.config import Settings
from keyword_importer.domain.imports.jobs import ImportJobTracker
from keyword_importer.integrations.storage import InMemoryKeywordStore

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

PROJECT_ID = "project-1"
LIST_ID = "list-1"


@pytest.fixture
def fixed_clock():
    """Clock that always returns the same instant."""
    return lambda: FIXED_NOW


@pytest.fixture
def tracker():
    return ImportJobTracker()


@pytest.fixture
def test_settings():
    """Settings with retry delays removed."""
    return Settings(
        storage_max_retries=3,
        storage_retry_backoff_seconds=0.0,
        default_project_region="UK",
    )


@pytest.fixture
def project():
    return Project(id=PROJECT_ID, name="Garden Supplies", default_region="UK")


@pytest.fixture
def store(project):
    """In-memory store with one project, one list and two keywords."""
    store = InMemoryKeywordStore()
    store.add_project(project)
    store.add_keyword_list(KeywordList(id=LIST_ID, project_id=PROJECT_ID, name="Seed keywords", created_at=FIXED_NOW))
    store.add_keyword(ExistingKeyword(
        id="kw-1",
        list_id=LIST_ID,
        text="Garden Hose",
        search_volume=1000,
        difficulty=40,
        region="UK",
    ))
    store.add_keyword(ExistingKeyword(
        id="kw-2",
        list_id=LIST_ID,
        text="lawn mower",
        region="UK",
    ))
    return store

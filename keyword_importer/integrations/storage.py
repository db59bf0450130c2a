"""
Keyword storage collaborator.

The import pipeline only talks to storage through ``KeywordStore``.
``InMemoryKeywordStore`` backs local runs and tests.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from keyword_importer.api.schemas.shared import (
    ExistingKeyword,
    KeywordList,
    NewKeyword,
    Project,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the keyword store cannot complete an operation."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class KeywordStore(Protocol):
    def get_project(self, project_id: str) -> Optional[Project]:
        ...

    def list_existing_keywords(self, project_id: str) -> List[ExistingKeyword]:
        ...

    def update_keyword(self, keyword_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def insert_keywords(self, list_id: str, keywords: Sequence[NewKeyword]) -> List[str]:
        ...

    def get_latest_keyword_list(self, project_id: str) -> Optional[KeywordList]:
        ...

    def create_keyword_list(self, project_id: str, name: str) -> KeywordList:
        ...


# Fields update_keyword may change on a stored keyword
UPDATABLE_FIELDS = ("search_volume", "difficulty", "region", "extra_data")


class InMemoryKeywordStore:
    """Thread-safe dictionary-backed ``KeywordStore``."""

    def __init__(self):
        self._projects: Dict[str, Project] = {}
        self._lists: Dict[str, KeywordList] = {}
        self._keywords: Dict[str, ExistingKeyword] = {}
        self._lock = threading.Lock()

    def add_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = project
        return project

    def add_keyword(self, keyword: ExistingKeyword) -> ExistingKeyword:
        """Seed a stored keyword; its list must already exist."""
        with self._lock:
            if keyword.list_id not in self._lists:
                raise StorageError(f"Keyword list '{keyword.list_id}' does not exist")
            self._keywords[keyword.id] = keyword.model_copy(deep=True)
        return keyword

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            project = self._projects.get(project_id)
            return project.model_copy() if project else None

    def list_existing_keywords(self, project_id: str) -> List[ExistingKeyword]:
        with self._lock:
            list_ids = {l.id for l in self._lists.values() if l.project_id == project_id}
            return [
                keyword.model_copy(deep=True)
                for keyword in self._keywords.values()
                if keyword.list_id in list_ids
            ]

    def get_keyword(self, keyword_id: str) -> Optional[ExistingKeyword]:
        with self._lock:
            keyword = self._keywords.get(keyword_id)
            return keyword.model_copy(deep=True) if keyword else None

    def update_keyword(self, keyword_id: str, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise StorageError(f"Cannot update keyword fields: {', '.join(sorted(unknown))}")

        with self._lock:
            keyword = self._keywords.get(keyword_id)
            if keyword is None:
                raise StorageError(f"Keyword '{keyword_id}' does not exist")
            self._keywords[keyword_id] = keyword.model_copy(update=dict(fields), deep=True)

    def insert_keywords(self, list_id: str, keywords: Sequence[NewKeyword]) -> List[str]:
        with self._lock:
            if list_id not in self._lists:
                raise StorageError(f"Keyword list '{list_id}' does not exist")
            inserted: List[str] = []
            for keyword in keywords:
                keyword_id = str(uuid.uuid4())
                self._keywords[keyword_id] = ExistingKeyword(
                    id=keyword_id,
                    list_id=list_id,
                    text=keyword.text,
                    search_volume=keyword.search_volume,
                    difficulty=keyword.difficulty,
                    region=keyword.region,
                    extra_data=dict(keyword.extra_data),
                )
                inserted.append(keyword_id)
        logger.info(f"Inserted {len(inserted)} keyword(s) into list {list_id}")
        return inserted

    def get_latest_keyword_list(self, project_id: str) -> Optional[KeywordList]:
        with self._lock:
            lists = [l for l in self._lists.values() if l.project_id == project_id]
        if not lists:
            return None
        # Dict order breaks ties between lists created in the same instant
        return max(enumerate(lists), key=lambda item: (item[1].created_at, item[0]))[1].model_copy()

    def create_keyword_list(self, project_id: str, name: str) -> KeywordList:
        with self._lock:
            if project_id not in self._projects:
                raise StorageError(f"Project '{project_id}' does not exist")
            keyword_list = KeywordList(
                id=str(uuid.uuid4()),
                project_id=project_id,
                name=name,
                created_at=datetime.now(timezone.utc),
            )
            self._lists[keyword_list.id] = keyword_list
        logger.info(f"Created keyword list '{name}' ({keyword_list.id}) for project {project_id}")
        return keyword_list.model_copy()

    def add_keyword_list(self, keyword_list: KeywordList) -> KeywordList:
        with self._lock:
            self._lists[keyword_list.id] = keyword_list
        return keyword_list

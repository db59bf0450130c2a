"""
Request-scoped accessors for the services wired onto ``app.state``.
"""
from fastapi import Request

from keyword_importer.domain.imports.jobs import ImportJobTracker
from keyword_importer.domain.imports.orchestrator import KeywordImportPipeline
from keyword_importer.integrations.storage import KeywordStore


def get_tracker(request: Request) -> ImportJobTracker:
    return request.app.state.tracker


def get_store(request: Request) -> KeywordStore:
    return request.app.state.store


def get_pipeline(request: Request) -> KeywordImportPipeline:
    return request.app.state.pipeline

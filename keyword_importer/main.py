"""
FastAPI application entry point.

``create_app`` wires one job tracker, keyword store and import pipeline onto
``app.state``, configures middleware, and registers the routers.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.routers import imports
from .core.config import Settings, settings as default_settings
from .core.logging_config import configure_logging
from .domain.imports.jobs import ImportJobTracker
from .domain.imports.orchestrator import KeywordImportPipeline
from .integrations.storage import InMemoryKeywordStore, KeywordStore


def create_app(
    store: Optional[KeywordStore] = None,
    tracker: Optional[ImportJobTracker] = None,
    pipeline: Optional[KeywordImportPipeline] = None,
    settings: Settings = default_settings,
) -> FastAPI:
    """
    Build the API application.

    Args:
        store: Keyword storage; defaults to an empty in-memory store
        tracker: Job tracker; defaults to a fresh tracker
        pipeline: Import pipeline; defaults to one built over store and tracker
        settings: Application settings
    """
    configure_logging(settings.log_level)

    store = store if store is not None else InMemoryKeywordStore()
    tracker = tracker if tracker is not None else ImportJobTracker()
    if pipeline is None:
        pipeline = KeywordImportPipeline(store, tracker, settings=settings)

    app = FastAPI(
        title="Keyword Import API",
        version=__version__,
        description="Import SEO tool keyword exports and reconcile them with project keywords",
    )
    app.state.store = store
    app.state.tracker = tracker
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(imports.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "keyword-import-api",
        }

    return app


app = create_app()

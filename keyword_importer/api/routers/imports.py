"""
Keyword CSV import endpoints.

An upload is accepted immediately and processed in the background; clients
poll the status endpoint until the job is completed or failed.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from keyword_importer.api.dependencies import get_pipeline, get_store, get_tracker
from keyword_importer.api.schemas.imports import (
    ClearImportResponse,
    ImportRequest,
    ImportStartResponse,
    ImportStatusResponse,
)
from keyword_importer.domain.imports.jobs import ImportJobTracker
from keyword_importer.domain.imports.orchestrator import KeywordImportPipeline
from keyword_importer.integrations.storage import KeywordStore

router = APIRouter(prefix="/api/v1/projects/{project_id}/keywords/import", tags=["imports"])

logger = logging.getLogger(__name__)


def _status_url(project_id: str, import_id: str) -> str:
    return f"/api/v1/projects/{project_id}/keywords/import/status/{import_id}"


def _parse_options(data: Optional[str]) -> ImportRequest:
    if not data:
        return ImportRequest()
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid import options: {e.msg}")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid import options: expected a JSON object")
    try:
        return ImportRequest.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"message": "Invalid import options", "errors": e.errors(include_url=False, include_context=False)},
        )


@router.post("", response_model=ImportStartResponse)
async def start_keyword_import(
    project_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    data: Optional[str] = Form(None),
    store: KeywordStore = Depends(get_store),
    pipeline: KeywordImportPipeline = Depends(get_pipeline),
):
    """
    Upload a keyword CSV export and start importing it.

    Parameters:
    - file: CSV export from Semrush, Ahrefs or Google Keyword Planner (or any
      CSV when column mappings are supplied)
    - data: Optional JSON object of import options

    Returns:
    - import_id and the URL to poll for progress
    """
    project = store.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    options = _parse_options(data)
    file_content = await file.read()
    filename = file.filename or "upload.csv"

    import_id = pipeline.start_import()
    background_tasks.add_task(
        pipeline.run_import,
        import_id,
        file_content,
        filename,
        file.content_type,
        project,
        options,
    )
    logger.info(f"Queued import {import_id} of '{filename}' ({len(file_content)} bytes) for project {project_id}")

    return ImportStartResponse(
        import_id=import_id,
        message="Import started successfully",
        status_url=_status_url(project_id, import_id),
    )


@router.get("/status/{import_id}", response_model=ImportStatusResponse)
async def get_import_status(
    project_id: str,
    import_id: str,
    tracker: ImportJobTracker = Depends(get_tracker),
):
    job = tracker.get(import_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import not found")
    return ImportStatusResponse.from_job(job)


@router.delete("/status/{import_id}", response_model=ClearImportResponse)
async def clear_import_status(
    project_id: str,
    import_id: str,
    tracker: ImportJobTracker = Depends(get_tracker),
):
    """Forget a finished import. Running imports cannot be cleared."""
    job = tracker.get(import_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import not found")
    if not job.is_terminal:
        raise HTTPException(status_code=400, detail="Cannot clear an import that is still processing")

    tracker.clear(import_id)
    return ClearImportResponse(message="Import status cleared")

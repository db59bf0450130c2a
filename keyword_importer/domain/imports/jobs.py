"""
In-process tracking for running keyword imports.

Jobs live only as long as the process; callers poll them by id. A single
lock guards the job table so the background worker and HTTP handlers can
share one tracker.
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from keyword_importer.api.schemas.shared import ImportJob, JobStatus

logger = logging.getLogger(__name__)


def _clamp_progress(progress: float) -> int:
    return int(max(0, min(100, round(progress))))


class ImportJobTracker:
    """Lock-guarded table of import jobs keyed by uuid4 strings."""

    def __init__(self):
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = threading.Lock()

    def start(self, message: Optional[str] = None) -> str:
        """Register a new job in ``processing`` state at 0% and return its id."""
        job_id = str(uuid.uuid4())
        with self._lock:
            self._jobs[job_id] = ImportJob(id=job_id, message=message)
        logger.info(f"Started import job {job_id}")
        return job_id

    def update(
        self,
        job_id: str,
        status: JobStatus,
        progress: float,
        message: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[ImportJob]:
        """
        Record progress for a job.

        Progress is clamped to 0-100 and never moves backwards. Terminal jobs
        are left untouched.

        Returns:
            Copy of the stored job, or None for an unknown id
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning(f"Ignoring update for unknown import job {job_id}")
                return None
            if job.is_terminal:
                logger.warning(
                    f"Ignoring update for import job {job_id}: already {job.status.value}"
                )
                return job.model_copy(deep=True)

            job.status = JobStatus(status)
            job.progress = max(job.progress, _clamp_progress(progress))
            if message is not None:
                job.message = message
            if result is not None:
                job.result = result
            if error is not None:
                job.error = error
            job.updated_at = datetime.now(timezone.utc)
            snapshot = job.model_copy(deep=True)

        logger.debug(f"Import job {job_id}: {snapshot.status.value} {snapshot.progress}% {snapshot.message or ''}")
        return snapshot

    def get(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def clear(self, job_id: str) -> bool:
        """Remove a finished job. Unknown and still-running jobs are kept."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_terminal:
                return False
            del self._jobs[job_id]
        logger.info(f"Cleared import job {job_id}")
        return True

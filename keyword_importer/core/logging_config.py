"""
Logging setup shared by the API and the background import pipeline.

Import jobs run off the request path, so every line carries the id of the job
being processed (``-`` outside a job) to make it possible to follow a single
import through the stage modules.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.config import dictConfig
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(job_id)s | %(name)s | %(message)s"
NO_JOB = "-"

_is_configured = False
_current_job_id: ContextVar[str] = ContextVar("import_job_id", default=NO_JOB)

# Libraries that log every chunk or request at INFO.
_NOISY_LOGGERS = ("multipart", "python_multipart", "httpx")


class JobContextFilter(logging.Filter):
    """Stamp each record with the import job running in the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = _current_job_id.get()
        return True


def current_job_id() -> str:
    return _current_job_id.get()


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Attribute every log line emitted inside the block to ``job_id``."""
    token = _current_job_id.set(job_id)
    try:
        yield
    finally:
        _current_job_id.reset(token)


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "job_context": {"()": JobContextFilter},
            },
            "formatters": {
                "standard": {
                    "format": LOG_FORMAT,
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "filters": ["job_context"],
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("keyword_importer").setLevel(log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _is_configured = True

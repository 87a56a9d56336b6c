"""
Exceptions raised across the scrape pipeline, job queue and persistence layer.

Per-URL errors (FetchError, RenderError) are recovered into a failed UrlResult
and never abort a job. PersistenceError escapes job processing and sends the
job through the queue's retry path. QueueConnectionError is fatal to the
worker process. JobStoreError marks a transient job store failure that the
worker retries by reconnecting.
"""
from __future__ import annotations

from typing import Optional


class MediaScoutError(Exception):
    """Base exception for all mediascout errors."""


class FetchError(MediaScoutError):
    """Neither the static fetch nor the dynamic render produced usable HTML."""

    def __init__(self, url: str, message: Optional[str] = None, status_code: Optional[int] = None) -> None:
        self.url = url
        self.status_code = status_code
        super().__init__(message or f"Cannot load HTML from {url}")


class RenderError(MediaScoutError):
    """The headless browser failed during navigation or capture."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"Render failed for {url}: {message}")


class PersistenceError(MediaScoutError):
    """A storage write or read failed."""


class QueueConnectionError(MediaScoutError):
    """The job store stayed unreachable after all reconnect attempts."""


class JobNotFoundError(MediaScoutError):
    """No job exists with the requested id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidRequestError(MediaScoutError):
    """A scrape submission failed validation."""


class JobStoreError(MediaScoutError):
    """A job store operation failed; usually a transient connectivity problem."""


class JobLockLostError(MediaScoutError):
    """The worker no longer owns the job it is updating (lock expired or job recovered)."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Lock lost for job {job_id}")

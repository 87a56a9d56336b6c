from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///mediascout.db")
    queue_database_url: str = os.getenv("QUEUE_DATABASE_URL", "")
    worker_concurrency: int = int(os.getenv("WORKER_CONCURRENCY", "2"))
    chunk_size: int = int(os.getenv("CHUNK_SIZE", "2"))
    fetch_backend: str = os.getenv("FETCH_BACKEND", "requests")
    fetch_timeout: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", "10"))
    render_timeout: float = float(os.getenv("RENDER_TIMEOUT_SECONDS", "40"))
    render_settle: float = float(os.getenv("RENDER_SETTLE_SECONDS", "3"))
    min_html_length: int = int(os.getenv("MIN_HTML_LENGTH", "5000"))
    max_scroll_px: int = int(os.getenv("MAX_SCROLL_PX", "8000"))
    scroll_step_px: int = int(os.getenv("SCROLL_STEP_PX", "300"))
    job_attempts: int = int(os.getenv("JOB_ATTEMPTS", "3"))
    job_backoff_seconds: float = float(os.getenv("JOB_BACKOFF_SECONDS", "2.0"))
    job_lock_seconds: float = float(os.getenv("JOB_LOCK_SECONDS", "300"))
    poll_interval: float = float(os.getenv("POLL_INTERVAL_SECONDS", "1.0"))
    connect_max_attempts: int = int(os.getenv("CONNECT_MAX_ATTEMPTS", "10"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def job_store_url(self) -> str:
        return self.queue_database_url or self.database_url


settings = Settings()

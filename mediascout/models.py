from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Width of the url columns; longer page and media URLs are rejected or dropped.
MAX_URL_LENGTH = 2048


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


@dataclass(frozen=True)
class ScrapeRequest:
    urls: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"urls": list(self.urls)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapeRequest":
        return cls(urls=tuple(data.get("urls") or ()))


@dataclass(frozen=True)
class JobOptions:
    """Retry and retention policy attached to a job when it is enqueued."""

    attempts: int = 3
    backoff_delay: float = 2.0
    remove_on_complete_age: float = 3600.0
    remove_on_complete_count: int = 100
    remove_on_fail_age: float = 86400.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff_delay": self.backoff_delay,
            "remove_on_complete_age": self.remove_on_complete_age,
            "remove_on_complete_count": self.remove_on_complete_count,
            "remove_on_fail_age": self.remove_on_fail_age,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobOptions":
        if not data:
            return cls()
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class UrlResult:
    url: str
    images: int
    videos: int
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "images": self.images,
            "videos": self.videos,
            "success": self.success,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UrlResult":
        return cls(
            url=data["url"],
            images=int(data.get("images", 0)),
            videos=int(data.get("videos", 0)),
            success=bool(data.get("success", False)),
            error=data.get("error"),
        )


@dataclass
class Job:
    """A durable unit of work wrapping one ScrapeRequest.

    Lifecycle: waiting -> active -> completed | failed, with delayed as the
    holding state between a failed attempt and its retry."""

    id: str
    payload: ScrapeRequest
    options: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    progress: int = 0
    attempts_made: int = 0
    stalled_count: int = 0
    result: Optional[List[UrlResult]] = None
    partial_result: List[UrlResult] = field(default_factory=list)
    failed_reason: Optional[str] = None
    lock_token: Optional[str] = None
    locked_until: Optional[float] = None
    run_at: float = 0.0
    created_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_status(self) -> Dict[str, Any]:
        """Status view returned to API callers."""
        if self.result is not None:
            result: Optional[List[Dict[str, Any]]] = [r.to_dict() for r in self.result]
        elif self.partial_result:
            result = [r.to_dict() for r in self.partial_result]
        else:
            result = None
        status: Dict[str, Any] = {
            "id": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "result": result,
            "attemptsMade": self.attempts_made,
        }
        if self.failed_reason:
            status["failedReason"] = self.failed_reason
        return status


@dataclass
class MediaSet:
    """Ordered, deduplicated absolute media URLs found on one page."""

    images: List[str] = field(default_factory=list)
    videos: List[str] = field(default_factory=list)


@dataclass
class RenderResult:
    html: str
    video_urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScrapeOutcome:
    result: UrlResult
    media: Optional[MediaSet] = None
    rendered: bool = False


@dataclass(frozen=True)
class MediaRecord:
    type: MediaType
    url: str
    page_id: int


@dataclass(frozen=True)
class ScrapeEvent:
    url: str
    success: bool
    latency_ms: int
    rendered: bool
    error: Optional[str]


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_scrapes: int
    success_count: int
    failure_count: int
    dynamic_render_count: int
    avg_latency_ms: float
    request_count: int
    cpu_percent: float
    timestamp: float

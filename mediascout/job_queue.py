"""
Durable job queue for scrape batches.

Jobs move through an explicit state machine:

    waiting -> active -> completed
                      -> delayed -> active ...   (attempt failed, retry scheduled)
                      -> failed                  (attempts exhausted, or stalled twice)

A JobStore persists jobs and applies every transition atomically; a job is
owned by at most one worker at a time through its lock token, which expires
unless renewed by progress updates. JobQueue is the asyncio-facing facade the
worker and the CLI talk to; stores are synchronous and thread-safe and are
called from worker threads.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urlsplit

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .backoff import BackoffStrategy
from .db import create_db_engine, init_db, make_session_factory
from .db import ping as db_ping
from .entities import ScrapeJobRecord
from .exceptions import InvalidRequestError, JobLockLostError, JobNotFoundError, JobStoreError
from .metrics import MetricsCollector, log_event
from .models import MAX_URL_LENGTH, Job, JobOptions, JobState, ScrapeRequest, UrlResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_URLS_PER_JOB = 10
MAX_STALLED_COUNT = 1
STALLED_REASON = "job stalled more than allowable limit"
READY_STATES = (JobState.WAITING, JobState.DELAYED)


def validate_urls(urls: Any, max_urls: int = MAX_URLS_PER_JOB) -> Tuple[str, ...]:
    """Validate a submission and return its distinct URLs in first-seen order."""
    if not isinstance(urls, (list, tuple)):
        raise InvalidRequestError("urls must be a list of URLs")
    if not urls:
        raise InvalidRequestError("urls must contain at least one URL")
    if len(urls) > max_urls:
        raise InvalidRequestError(f"urls must contain at most {max_urls} URLs")

    cleaned = []
    for raw in urls:
        url = raw.strip() if isinstance(raw, str) else ""
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidRequestError(f"Invalid URL: {raw!r}")
        if len(url) > MAX_URL_LENGTH:
            raise InvalidRequestError(f"URL longer than {MAX_URL_LENGTH} characters: {url[:80]}...")
        cleaned.append(url)
    return tuple(dict.fromkeys(cleaned))


def retry_delay(job: Job) -> float:
    """Exponential delay before the next attempt: base * 2^(attempts_made - 1)."""
    backoff = BackoffStrategy(base_seconds=job.options.backoff_delay, max_seconds=float("inf"))
    return backoff.get_sleep(job.attempts_made)


class JobStore(ABC):
    """Persistence backend for jobs.

    Subclasses provide storage primitives (add, get, claim_next, _update,
    list_jobs, delete, counts); the transitions themselves are implemented
    here once so that every backend behaves the same.
    """

    @abstractmethod
    def add(self, job: Job) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def claim_next(self, now: float, lock_seconds: float) -> Optional[Job]:
        """Atomically move the oldest ready job to active under a fresh lock token."""

    @abstractmethod
    def _update(self, job_id: str, fn: Callable[[Job], T]) -> T:
        """Apply `fn` to the job and persist the result atomically."""

    @abstractmethod
    def list_jobs(self, state: JobState) -> List[Job]:
        ...

    @abstractmethod
    def delete(self, job_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        ...

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def update_progress(
        self,
        job_id: str,
        token: str,
        progress: int,
        partial: Sequence[UrlResult],
        now: float,
        lock_seconds: float,
    ) -> int:
        def apply(job: Job) -> int:
            _check_owner(job, token)
            job.progress = max(job.progress, max(0, min(100, int(progress))))
            job.partial_result = list(partial)
            job.locked_until = now + lock_seconds
            return job.progress

        return self._update(job_id, apply)

    def complete(self, job_id: str, token: str, result: Sequence[UrlResult], now: float) -> None:
        def apply(job: Job) -> None:
            _check_owner(job, token)
            job.state = JobState.COMPLETED
            job.progress = 100
            job.result = list(result)
            job.partial_result = []
            job.attempts_made += 1
            job.finished_at = now
            _release(job)

        self._update(job_id, apply)

    def fail(self, job_id: str, token: str, reason: str, now: float) -> Job:
        """Record a failed attempt; schedules a retry while attempts remain."""

        def apply(job: Job) -> Job:
            _check_owner(job, token)
            job.attempts_made += 1
            job.failed_reason = reason
            _release(job)
            if job.attempts_made < job.options.attempts:
                job.state = JobState.DELAYED
                job.run_at = now + retry_delay(job)
            else:
                job.state = JobState.FAILED
                job.finished_at = now
            return copy.deepcopy(job)

        return self._update(job_id, apply)

    def recover_stalled(self, now: float, max_stalled: int = MAX_STALLED_COUNT) -> List[Tuple[str, JobState]]:
        """Return active jobs with an expired lock to waiting, or fail them if stalled too often."""

        def apply(job: Job) -> Optional[JobState]:
            if job.state != JobState.ACTIVE or job.locked_until is None or job.locked_until >= now:
                return None
            job.stalled_count += 1
            _release(job)
            if job.stalled_count > max_stalled:
                job.state = JobState.FAILED
                job.failed_reason = STALLED_REASON
                job.finished_at = now
            else:
                job.state = JobState.WAITING
                job.run_at = now
            return job.state

        recovered = []
        for job in self.list_jobs(JobState.ACTIVE):
            if job.locked_until is not None and job.locked_until < now:
                state = self._update(job.id, apply)
                if state is not None:
                    recovered.append((job.id, state))
        return recovered

    def purge(self, now: float) -> int:
        """Delete terminal jobs that fall outside their retention window."""
        expired = []
        completed = sorted(self.list_jobs(JobState.COMPLETED), key=lambda j: j.finished_at or 0.0, reverse=True)
        for rank, job in enumerate(completed):
            age = now - (job.finished_at or now)
            if rank >= job.options.remove_on_complete_count or age > job.options.remove_on_complete_age:
                expired.append(job.id)
        for job in self.list_jobs(JobState.FAILED):
            if now - (job.finished_at or now) > job.options.remove_on_fail_age:
                expired.append(job.id)
        if expired:
            self.delete(expired)
        return len(expired)


def _check_owner(job: Job, token: str) -> None:
    if job.state != JobState.ACTIVE or job.lock_token != token:
        raise JobLockLostError(job.id)


def _release(job: Job) -> None:
    job.lock_token = None
    job.locked_until = None


def _empty_counts() -> Dict[str, int]:
    return {state.value: 0 for state in JobState}


class MemoryJobStore(JobStore):
    """In-process store; jobs do not survive a restart. Used by tests and the inline CLI."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    def add(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def claim_next(self, now: float, lock_seconds: float) -> Optional[Job]:
        with self._lock:
            ready = [j for j in self._jobs.values() if j.state in READY_STATES and j.run_at <= now]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.run_at, j.created_at))
            _activate(job, now, lock_seconds)
            return copy.deepcopy(job)

    def _update(self, job_id: str, fn: Callable[[Job], T]) -> T:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return fn(job)

    def list_jobs(self, state: JobState) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._jobs.values() if j.state == state]

    def delete(self, job_ids: Sequence[str]) -> None:
        with self._lock:
            for job_id in job_ids:
                self._jobs.pop(job_id, None)

    def counts(self) -> Dict[str, int]:
        counts = _empty_counts()
        with self._lock:
            for job in self._jobs.values():
                counts[job.state.value] += 1
        return counts


def _activate(job: Job, now: float, lock_seconds: float) -> None:
    job.state = JobState.ACTIVE
    job.lock_token = uuid.uuid4().hex
    job.locked_until = now + lock_seconds
    job.processed_at = now


def _job_from_record(rec: ScrapeJobRecord) -> Job:
    return Job(
        id=rec.id,
        payload=ScrapeRequest.from_dict(rec.payload),
        options=JobOptions.from_dict(rec.options),
        state=JobState(rec.state),
        progress=rec.progress,
        attempts_made=rec.attempts_made,
        stalled_count=rec.stalled_count,
        result=[UrlResult.from_dict(r) for r in rec.result] if rec.result is not None else None,
        partial_result=[UrlResult.from_dict(r) for r in rec.partial_result or []],
        failed_reason=rec.failed_reason,
        lock_token=rec.lock_token,
        locked_until=rec.locked_until,
        run_at=rec.run_at,
        created_at=rec.created_at,
        processed_at=rec.processed_at,
        finished_at=rec.finished_at,
    )


def _copy_into_record(job: Job, rec: ScrapeJobRecord) -> None:
    rec.payload = job.payload.to_dict()
    rec.options = job.options.to_dict()
    rec.state = job.state.value
    rec.progress = job.progress
    rec.attempts_made = job.attempts_made
    rec.stalled_count = job.stalled_count
    rec.result = [r.to_dict() for r in job.result] if job.result is not None else None
    rec.partial_result = [r.to_dict() for r in job.partial_result]
    rec.failed_reason = job.failed_reason
    rec.lock_token = job.lock_token
    rec.locked_until = job.locked_until
    rec.run_at = job.run_at
    rec.created_at = job.created_at
    rec.processed_at = job.processed_at
    rec.finished_at = job.finished_at


class SqlJobStore(JobStore):
    """Job store on a relational database through SQLAlchemy.

    Claims use a conditional UPDATE on (id, state) and check the row count,
    so two workers polling the same table never both activate one job.
    Every SQLAlchemyError surfaces as JobStoreError.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = make_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlJobStore":
        engine = create_db_engine(url)
        init_db(engine)
        return cls(engine)

    def add(self, job: Job) -> None:
        rec = ScrapeJobRecord(id=job.id)
        _copy_into_record(job, rec)
        with self._transaction() as session:
            session.add(rec)

    def get(self, job_id: str) -> Optional[Job]:
        with self._transaction() as session:
            rec = session.get(ScrapeJobRecord, job_id)
            return _job_from_record(rec) if rec else None

    def claim_next(self, now: float, lock_seconds: float) -> Optional[Job]:
        ready = [s.value for s in READY_STATES]
        with self._transaction() as session:
            candidates = session.scalars(
                select(ScrapeJobRecord.id)
                .where(ScrapeJobRecord.state.in_(ready), ScrapeJobRecord.run_at <= now)
                .order_by(ScrapeJobRecord.run_at, ScrapeJobRecord.created_at)
                .limit(10)
            ).all()
            for job_id in candidates:
                token = uuid.uuid4().hex
                claimed = session.execute(
                    update(ScrapeJobRecord)
                    .where(ScrapeJobRecord.id == job_id, ScrapeJobRecord.state.in_(ready))
                    .values(
                        state=JobState.ACTIVE.value,
                        lock_token=token,
                        locked_until=now + lock_seconds,
                        processed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    rec = session.get(ScrapeJobRecord, job_id, populate_existing=True)
                    return _job_from_record(rec)
        return None

    def _update(self, job_id: str, fn: Callable[[Job], T]) -> T:
        with self._transaction() as session:
            rec = session.get(ScrapeJobRecord, job_id, with_for_update=True)
            if rec is None:
                raise JobNotFoundError(job_id)
            job = _job_from_record(rec)
            out = fn(job)
            _copy_into_record(job, rec)
            return out

    def list_jobs(self, state: JobState) -> List[Job]:
        with self._transaction() as session:
            recs = session.scalars(select(ScrapeJobRecord).where(ScrapeJobRecord.state == state.value)).all()
            return [_job_from_record(r) for r in recs]

    def delete(self, job_ids: Sequence[str]) -> None:
        with self._transaction() as session:
            session.execute(delete(ScrapeJobRecord).where(ScrapeJobRecord.id.in_(list(job_ids))))

    def counts(self) -> Dict[str, int]:
        counts = _empty_counts()
        with self._transaction() as session:
            rows = session.execute(
                select(ScrapeJobRecord.state, func.count()).group_by(ScrapeJobRecord.state)
            ).all()
        for state, n in rows:
            counts[state] = n
        return counts

    def ping(self) -> bool:
        return db_ping(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Job store operation failed: {exc}") from exc


class JobQueue:
    """Async facade over a JobStore with the default retry and retention policy."""

    def __init__(
        self,
        store: JobStore,
        options: Optional[JobOptions] = None,
        lock_seconds: float = 300.0,
        max_urls: int = MAX_URLS_PER_JOB,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._options = options or JobOptions()
        self._lock_seconds = lock_seconds
        self._max_urls = max_urls
        self._clock = clock

    @property
    def store(self) -> JobStore:
        return self._store

    async def submit(self, urls: Any) -> Dict[str, str]:
        """Validate, deduplicate and enqueue a batch; returns {"jobId", "status": "queued"}."""
        self._record_request()
        request = ScrapeRequest(urls=validate_urls(urls, self._max_urls))
        job = await self.add(request)
        return {"jobId": job.id, "status": "queued"}

    async def add(self, request: ScrapeRequest, options: Optional[JobOptions] = None) -> Job:
        now = self._clock()
        job = Job(
            id=uuid.uuid4().hex,
            payload=request,
            options=options or self._options,
            run_at=now,
            created_at=now,
        )
        await asyncio.to_thread(self._store.add, job)
        log_event(logger, "job_queued", job_id=job.id, urls=len(request.urls))
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await asyncio.to_thread(self._store.get, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        self._record_request()
        return (await self.get_job(job_id)).to_status()

    async def claim_next(self) -> Optional[Job]:
        return await asyncio.to_thread(self._store.claim_next, self._clock(), self._lock_seconds)

    async def update_progress(self, job: Job, progress: int, partial: Sequence[UrlResult]) -> int:
        stored = await asyncio.to_thread(
            self._store.update_progress,
            job.id,
            job.lock_token,
            progress,
            list(partial),
            self._clock(),
            self._lock_seconds,
        )
        job.progress = stored
        return stored

    async def complete(self, job: Job, result: Sequence[UrlResult]) -> None:
        await asyncio.to_thread(self._store.complete, job.id, job.lock_token, list(result), self._clock())
        log_event(logger, "job_completed", job_id=job.id, urls=len(result))

    async def fail(self, job: Job, reason: str) -> Job:
        updated = await asyncio.to_thread(self._store.fail, job.id, job.lock_token, reason, self._clock())
        if updated.state == JobState.DELAYED:
            log_event(
                logger,
                "job_retry_scheduled",
                logging.WARNING,
                job_id=job.id,
                attempts_made=updated.attempts_made,
                run_at=round(updated.run_at, 3),
                reason=reason,
            )
        else:
            log_event(
                logger, "job_failed", logging.ERROR, job_id=job.id, attempts_made=updated.attempts_made, reason=reason
            )
        return updated

    async def recover_stalled(self) -> List[Tuple[str, JobState]]:
        recovered = await asyncio.to_thread(self._store.recover_stalled, self._clock())
        for job_id, state in recovered:
            log_event(logger, "job_stalled", logging.WARNING, job_id=job_id, state=state.value)
        return recovered

    async def purge(self) -> int:
        removed = await asyncio.to_thread(self._store.purge, self._clock())
        if removed:
            log_event(logger, "jobs_purged", removed=removed)
        return removed

    async def counts(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._store.counts)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._store.ping)

    async def close(self) -> None:
        await asyncio.to_thread(self._store.close)

    def _record_request(self) -> None:
        if self._metrics:
            self._metrics.record_request()

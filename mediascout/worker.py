"""
Job processing loop.

A ScrapeWorker claims jobs from the queue while its pool has a free slot and
processes each job chunk by chunk: URLs inside a chunk are scraped
concurrently, chunks run strictly in order, and after every chunk the new
pages and media are persisted and the job's progress is reported.

Per-URL failures are part of the result. Anything else that escapes job
processing (a storage outage, for instance) fails the attempt, and the queue
decides whether to retry.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import List, Optional, Sequence

from .backoff import BackoffStrategy
from .base import BaseScraper
from .controller import WorkerPool
from .exceptions import JobLockLostError, JobNotFoundError, JobStoreError, QueueConnectionError
from .job_queue import JobQueue
from .metrics import MetricsCollector, log_event
from .models import Job, ScrapeOutcome, UrlResult
from .storage import StorageBase

logger = logging.getLogger(__name__)


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    size = max(1, size)
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def percent_done(done: int, total: int) -> int:
    """Rounded completion percentage, halves rounded up, capped at 100."""
    if total <= 0:
        return 100
    return int(min(100.0, done / total * 100) + 0.5)


class ScrapeWorker:
    def __init__(
        self,
        queue: JobQueue,
        scraper: BaseScraper,
        storage: StorageBase,
        concurrency: int = 2,
        chunk_size: int = 2,
        poll_interval: float = 1.0,
        maintenance_interval: float = 30.0,
        connect_max_attempts: int = 10,
        backoff: Optional[BackoffStrategy] = None,
        metrics: Optional[MetricsCollector] = None,
        metrics_window: int = 60,
    ) -> None:
        self._queue = queue
        self._scraper = scraper
        self._storage = storage
        self._pool = WorkerPool(concurrency)
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._maintenance_interval = maintenance_interval
        self._connect_max_attempts = connect_max_attempts
        self._backoff = backoff or BackoffStrategy(base_seconds=0.5, max_seconds=5.0, jitter=0.1)
        self._metrics = metrics
        self._metrics_window = metrics_window
        self._stopping = asyncio.Event()

    async def process_job(self, job: Job) -> List[UrlResult]:
        """Scrape every URL of the job and return one UrlResult per URL, in input order."""
        urls = list(job.payload.urls)
        results: List[UrlResult] = []
        for chunk in chunked(urls, self._chunk_size):
            outcomes = await asyncio.gather(*(self._scraper.run(url) for url in chunk))
            await asyncio.to_thread(self._persist, outcomes)
            results.extend(outcome.result for outcome in outcomes)
            await self._queue.update_progress(job, percent_done(len(results), len(urls)), results)
        return results

    def _persist(self, outcomes: Sequence[ScrapeOutcome]) -> None:
        for outcome in outcomes:
            if outcome.result.success and outcome.media is not None:
                self._storage.save_media(outcome.result.url, outcome.media)

    async def handle(self, job: Job) -> None:
        """Process one claimed job and record its outcome in the queue."""
        log_event(logger, "job_started", job_id=job.id, urls=len(job.payload.urls), attempt=job.attempts_made + 1)
        try:
            try:
                result = await self.process_job(job)
            except asyncio.CancelledError:
                log_event(logger, "job_interrupted", logging.WARNING, job_id=job.id, progress=job.progress)
                raise
            except (JobLockLostError, JobNotFoundError, JobStoreError):
                raise
            except Exception as exc:  # noqa: BLE001
                await self._queue.fail(job, str(exc) or type(exc).__name__)
                return
            await self._queue.complete(job, result)
        except (JobLockLostError, JobNotFoundError, JobStoreError) as exc:
            # A locked job comes back through stall recovery; a deleted one is gone.
            log_event(logger, "job_abandoned", logging.WARNING, job_id=job.id, error=str(exc))

    async def run(self) -> None:
        """Claim and process jobs until stop() is called.

        Raises QueueConnectionError when the job store stays unreachable."""
        self._pool.start()
        await self._ensure_connected()
        loop = asyncio.get_running_loop()
        last_maintenance = float("-inf")
        log_event(logger, "worker_started", concurrency=self._pool.limit, chunk_size=self._chunk_size)

        try:
            while not self._stopping.is_set():
                if not await self._pool.wait_for_slot():
                    break
                try:
                    if loop.time() - last_maintenance >= self._maintenance_interval:
                        await self.maintenance()
                        last_maintenance = loop.time()
                    job = await self._queue.claim_next()
                except JobStoreError as exc:
                    await self._reconnect(exc)
                    continue
                if job is None:
                    await self._sleep(self._poll_interval)
                    continue
                await self._pool.submit(self.handle, job)
        finally:
            await self._pool.stop()
            log_event(logger, "worker_stopped")

    async def maintenance(self) -> None:
        await self._queue.recover_stalled()
        await self._queue.purge()
        if self._metrics:
            log_event(logger, "metrics", **asdict(self._metrics.snapshot(self._metrics_window)))

    async def stop(self) -> None:
        self._stopping.set()
        await self._pool.stop()

    async def _ensure_connected(self) -> None:
        if not await self._queue.ping():
            await self._reconnect(JobStoreError("Job store unreachable"))

    async def _reconnect(self, error: Exception) -> None:
        for attempt in range(1, self._connect_max_attempts + 1):
            delay = self._backoff.get_sleep(attempt)
            log_event(
                logger, "queue_reconnect", logging.WARNING,
                attempt=attempt, delay_s=round(delay, 2), error=str(error),
            )
            await self._sleep(delay)
            if self._stopping.is_set():
                return
            if await self._queue.ping():
                log_event(logger, "queue_reconnected", attempt=attempt)
                return
        raise QueueConnectionError(
            f"Job store unreachable after {self._connect_max_attempts} attempts"
        ) from error

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

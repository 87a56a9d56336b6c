"""Tests for the job queue state machine and its stores."""

import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from mediascout.db import create_db_engine, init_db
from mediascout.exceptions import InvalidRequestError, JobLockLostError, JobNotFoundError, JobStoreError
from mediascout.job_queue import STALLED_REASON, JobQueue, MemoryJobStore, SqlJobStore, validate_urls
from mediascout.metrics import MetricsCollector
from mediascout.models import JobOptions, JobState, ScrapeRequest, UrlResult


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _result(url: str, success: bool = True) -> UrlResult:
    return UrlResult(url=url, images=1 if success else 0, videos=0, success=success,
                     error=None if success else "Cannot load HTML from " + url)


class TestValidateUrls(unittest.TestCase):
    """Verify submission validation."""

    def test_dedup_preserves_first_occurrence(self):
        """Duplicates are removed in first-seen order."""
        urls = ["https://b.test", "https://a.test", "https://b.test", " https://a.test "]
        self.assertEqual(validate_urls(urls), ("https://b.test", "https://a.test"))

    def test_rejects_bad_input(self):
        """Non-lists, empty lists, too many URLs, malformed and over-long URLs are rejected."""
        too_long = ["https://a.test/" + "x" * 2048]
        for bad in ("https://a.test", [], [f"https://{i}.test" for i in range(11)], ["ftp://a.test"], ["/relative"], [42], too_long):
            with self.assertRaises(InvalidRequestError, msg=repr(bad)):
                validate_urls(bad)

    def test_ten_urls_allowed(self):
        """Exactly ten URLs is accepted."""
        self.assertEqual(len(validate_urls([f"https://{i}.test" for i in range(10)])), 10)


class QueueContractMixin:
    """State machine behaviour shared by every JobStore."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.clock = FakeClock()
        self.store = self.make_store()
        self.metrics = MetricsCollector()
        self.queue = JobQueue(self.store, lock_seconds=60, clock=self.clock, metrics=self.metrics)

    async def asyncTearDown(self):
        await self.queue.close()

    async def _submit_and_claim(self, urls=("https://a.test",)):
        submitted = await self.queue.submit(list(urls))
        job = await self.queue.claim_next()
        self.assertEqual(job.id, submitted["jobId"])
        return job

    async def test_submit_returns_queued_job(self):
        """submit() enqueues a waiting job with deduplicated URLs."""
        submitted = await self.queue.submit(["https://a.test", "https://a.test", "https://b.test"])
        self.assertEqual(submitted["status"], "queued")
        job = await self.queue.get_job(submitted["jobId"])
        self.assertEqual(job.state, JobState.WAITING)
        self.assertEqual(job.payload.urls, ("https://a.test", "https://b.test"))
        self.assertEqual(job.options, JobOptions())
        self.assertEqual(self.metrics.snapshot().request_count, 1)

    async def test_unknown_job(self):
        """Unknown ids raise JobNotFoundError."""
        with self.assertRaises(JobNotFoundError):
            await self.queue.get_status("missing")

    async def test_claim_is_exclusive_and_fifo(self):
        """Jobs are claimed oldest first and only once."""
        first = await self.queue.submit(["https://a.test"])
        self.clock.advance(1)
        second = await self.queue.submit(["https://b.test"])
        job1 = await self.queue.claim_next()
        job2 = await self.queue.claim_next()
        self.assertEqual((job1.id, job2.id), (first["jobId"], second["jobId"]))
        self.assertIsNone(await self.queue.claim_next())
        self.assertEqual(job1.state, JobState.ACTIVE)
        self.assertIsNotNone(job1.lock_token)

    async def test_progress_and_completion(self):
        """Progress never decreases, partial results are visible, completion sets 100."""
        job = await self._submit_and_claim(["https://a.test", "https://b.test"])
        partial = [_result("https://a.test")]
        self.assertEqual(await self.queue.update_progress(job, 50, partial), 50)
        self.assertEqual(await self.queue.update_progress(job, 20, partial), 50)

        status = await self.queue.get_status(job.id)
        self.assertEqual(status["progress"], 50)
        self.assertEqual(status["result"], [partial[0].to_dict()])

        final = partial + [_result("https://b.test", success=False)]
        await self.queue.complete(job, final)
        status = await self.queue.get_status(job.id)
        self.assertEqual(status["state"], "completed")
        self.assertEqual(status["progress"], 100)
        self.assertEqual(status["attemptsMade"], 1)
        self.assertEqual([r["url"] for r in status["result"]], ["https://a.test", "https://b.test"])
        self.assertFalse(status["result"][1]["success"])

    async def test_retry_with_exponential_backoff_then_failed(self):
        """Failures are retried after 2s then 4s, and the third failure is terminal."""
        job = await self._submit_and_claim()

        updated = await self.queue.fail(job, "persistence outage")
        self.assertEqual(updated.state, JobState.DELAYED)
        self.assertEqual(updated.run_at, self.clock.now + 2.0)
        self.assertIsNone(await self.queue.claim_next())

        self.clock.advance(2.0)
        job = await self.queue.claim_next()
        self.assertEqual(job.state, JobState.ACTIVE)
        updated = await self.queue.fail(job, "persistence outage")
        self.assertEqual(updated.run_at, self.clock.now + 4.0)

        self.clock.advance(4.0)
        job = await self.queue.claim_next()
        updated = await self.queue.fail(job, "still down")
        self.assertEqual(updated.state, JobState.FAILED)

        status = await self.queue.get_status(job.id)
        self.assertEqual(status["state"], "failed")
        self.assertEqual(status["attemptsMade"], 3)
        self.assertEqual(status["failedReason"], "still down")
        self.clock.advance(60)
        self.assertIsNone(await self.queue.claim_next())

    async def test_stale_token_rejected(self):
        """Updates from a worker that lost its lock are refused."""
        job = await self._submit_and_claim()
        self.clock.advance(61)
        await self.queue.recover_stalled()
        with self.assertRaises(JobLockLostError):
            await self.queue.update_progress(job, 50, [])
        with self.assertRaises(JobLockLostError):
            await self.queue.complete(job, [])

    async def test_stalled_job_requeued_then_failed(self):
        """An expired lock requeues the job once; a second stall fails it."""
        job = await self._submit_and_claim()
        self.clock.advance(30)
        self.assertEqual(await self.queue.recover_stalled(), [])

        self.clock.advance(31)
        self.assertEqual(await self.queue.recover_stalled(), [(job.id, JobState.WAITING)])
        job = await self.queue.claim_next()
        self.assertEqual(job.stalled_count, 1)

        self.clock.advance(61)
        self.assertEqual(await self.queue.recover_stalled(), [(job.id, JobState.FAILED)])
        status = await self.queue.get_status(job.id)
        self.assertEqual(status["failedReason"], STALLED_REASON)

    async def test_progress_renews_lock(self):
        """A progress update pushes the lock expiry forward."""
        job = await self._submit_and_claim()
        self.clock.advance(50)
        await self.queue.update_progress(job, 10, [])
        self.clock.advance(50)
        self.assertEqual(await self.queue.recover_stalled(), [])

    async def test_purge_retention(self):
        """Completed jobs expire after 1h, failed jobs after 24h."""
        done = await self._submit_and_claim()
        await self.queue.complete(done, [_result("https://a.test")])
        failing = await self.queue.add(ScrapeRequest(urls=("https://b.test",)), JobOptions(attempts=1))
        failing = await self.queue.claim_next()
        await self.queue.fail(failing, "boom")

        self.clock.advance(3601)
        self.assertEqual(await self.queue.purge(), 1)
        with self.assertRaises(JobNotFoundError):
            await self.queue.get_job(done.id)
        await self.queue.get_job(failing.id)

        self.clock.advance(86400)
        self.assertEqual(await self.queue.purge(), 1)
        self.assertEqual(sum((await self.queue.counts()).values()), 0)

    async def test_purge_keeps_newest_completed(self):
        """Only the newest remove_on_complete_count completed jobs are kept."""
        options = JobOptions(remove_on_complete_count=2)
        ids = []
        for i in range(3):
            await self.queue.add(ScrapeRequest(urls=(f"https://{i}.test",)), options)
            job = await self.queue.claim_next()
            await self.queue.complete(job, [])
            ids.append(job.id)
            self.clock.advance(1)
        self.assertEqual(await self.queue.purge(), 1)
        with self.assertRaises(JobNotFoundError):
            await self.queue.get_job(ids[0])

    async def test_counts(self):
        """counts() reports every state."""
        await self.queue.submit(["https://a.test"])
        await self.queue.submit(["https://b.test"])
        await self.queue.claim_next()
        counts = await self.queue.counts()
        self.assertEqual(counts, {"waiting": 1, "active": 1, "completed": 0, "failed": 0, "delayed": 0})


class TestMemoryJobQueue(QueueContractMixin, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        return MemoryJobStore()


class TestSqlJobQueue(QueueContractMixin, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        engine = create_db_engine("sqlite:///:memory:")
        init_db(engine)
        return SqlJobStore(engine)

    async def test_store_errors_become_job_store_error(self):
        """SQLAlchemy failures surface as JobStoreError."""
        failing = mock.patch.object(
            Session, "scalars", side_effect=OperationalError("SELECT", {}, Exception("connection refused"))
        )
        with failing, self.assertRaises(JobStoreError):
            await self.queue.claim_next()

    async def test_ping(self):
        """ping() reports a live engine."""
        self.assertTrue(await self.queue.ping())


if __name__ == "__main__":
    unittest.main()

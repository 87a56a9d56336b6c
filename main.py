from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from typing import Any, Optional

from mediascout.config import settings
from mediascout.db import connect_with_retry, create_db_engine, init_db
from mediascout.decision import RenderDecisionEngine
from mediascout.exceptions import (
    InvalidRequestError,
    JobNotFoundError,
    MediaScoutError,
    PersistenceError,
    QueueConnectionError,
)
from mediascout.factory import BACKENDS, ScraperFactory
from mediascout.job_queue import JobQueue, SqlJobStore, validate_urls
from mediascout.metrics import MetricsCollector
from mediascout.models import JobOptions
from mediascout.renderer import BrowserManager, DynamicRenderer
from mediascout.storage import JsonlStorage, SqlStorage
from mediascout.worker import ScrapeWorker, chunked

logger = logging.getLogger("mediascout")


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _open_storage(url: str) -> SqlStorage:
    engine = create_db_engine(url)
    connect_with_retry(engine, max_attempts=settings.connect_max_attempts, error_cls=PersistenceError)
    init_db(engine)
    return SqlStorage(engine)


def _open_queue(url: str, metrics: Optional[MetricsCollector] = None) -> JobQueue:
    engine = create_db_engine(url)
    connect_with_retry(engine, max_attempts=settings.connect_max_attempts, error_cls=QueueConnectionError)
    init_db(engine)
    options = JobOptions(attempts=settings.job_attempts, backoff_delay=settings.job_backoff_seconds)
    return JobQueue(SqlJobStore(engine), options=options, lock_seconds=settings.job_lock_seconds, metrics=metrics)


def _build_pipeline(args: argparse.Namespace, metrics: MetricsCollector):
    browser = BrowserManager()
    renderer = None
    if not getattr(args, "no_render", False):
        renderer = DynamicRenderer(
            browser,
            timeout=settings.render_timeout,
            settle=settings.render_settle,
            max_scroll=settings.max_scroll_px,
            scroll_step=settings.scroll_step_px,
        )
    factory = ScraperFactory(
        metrics=metrics,
        renderer=renderer,
        decision=RenderDecisionEngine(min_length=settings.min_html_length),
        timeout=settings.fetch_timeout,
    )
    return browser, factory.create_scraper(args.backend)


async def run_worker(args: argparse.Namespace) -> int:
    metrics = MetricsCollector()
    storage = await asyncio.to_thread(_open_storage, args.database_url)
    queue = await asyncio.to_thread(_open_queue, args.queue_url, metrics)
    browser, scraper = _build_pipeline(args, metrics)
    worker = ScrapeWorker(
        queue,
        scraper,
        storage,
        concurrency=args.concurrency,
        chunk_size=args.chunk_size,
        poll_interval=settings.poll_interval,
        connect_max_attempts=settings.connect_max_attempts,
        metrics=metrics,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
        except NotImplementedError:
            pass

    try:
        await worker.run()
    except QueueConnectionError as exc:
        logger.critical("Worker exiting: %s", exc)
        return 1
    finally:
        await browser.close()
        await queue.close()
        storage.close()
    return 0


async def run_submit(args: argparse.Namespace) -> int:
    queue = await asyncio.to_thread(_open_queue, args.queue_url)
    try:
        _print_json(await queue.submit(args.urls))
    except InvalidRequestError as exc:
        _print_json({"error": str(exc)})
        return 2
    finally:
        await queue.close()
    return 0


async def run_status(args: argparse.Namespace) -> int:
    queue = await asyncio.to_thread(_open_queue, args.queue_url)
    try:
        _print_json(await queue.get_status(args.job_id))
    except JobNotFoundError as exc:
        _print_json({"error": str(exc)})
        return 1
    finally:
        await queue.close()
    return 0


async def run_scrape(args: argparse.Namespace) -> int:
    """Scrape URLs in this process, without a queue or worker."""
    try:
        urls = validate_urls(args.urls)
    except InvalidRequestError as exc:
        _print_json({"error": str(exc)})
        return 2

    metrics = MetricsCollector()
    browser, scraper = _build_pipeline(args, metrics)
    sink = JsonlStorage(args.results) if args.results else None
    storage = await asyncio.to_thread(_open_storage, args.database_url) if args.persist else None
    results = []
    try:
        for chunk in chunked(list(urls), args.chunk_size):
            outcomes = await asyncio.gather(*(scraper.run(url) for url in chunk))
            for outcome in outcomes:
                results.append(outcome.result.to_dict())
                if sink:
                    sink.write(outcome.result, outcome.media)
                if storage and outcome.result.success and outcome.media is not None:
                    await asyncio.to_thread(storage.save_media, outcome.result.url, outcome.media)
    finally:
        await browser.close()
        if sink:
            sink.close()
        if storage:
            storage.close()

    _print_json({"result": results, "metrics": asdict(metrics.snapshot(window_secs=3600))})
    return 0


def run_media(args: argparse.Namespace) -> int:
    storage = _open_storage(args.database_url)
    try:
        _print_json(storage.list_media(page=args.page, limit=args.limit, media_type=args.type, search=args.search))
    except InvalidRequestError as exc:
        _print_json({"error": str(exc)})
        return 2
    finally:
        storage.close()
    return 0


async def run_metrics(args: argparse.Namespace) -> int:
    queue = await asyncio.to_thread(_open_queue, args.queue_url)
    try:
        _print_json({"queue": await queue.counts()})
    finally:
        await queue.close()
    return 0


async def run_health(args: argparse.Namespace) -> int:
    storage = SqlStorage(create_db_engine(args.database_url))
    store = SqlJobStore(create_db_engine(args.queue_url))
    status = {
        "database": await asyncio.to_thread(storage.ping),
        "queue": await asyncio.to_thread(store.ping),
    }
    storage.close()
    store.close()
    _print_json({"status": "ok" if all(status.values()) else "degraded", **status})
    return 0 if all(status.values()) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediascout", description="Discover images and videos on web pages")
    parser.add_argument("--database-url", default=settings.database_url, help="Page/media database URL")
    parser.add_argument("--queue-url", default=settings.job_store_url, help="Job store database URL")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_pipeline_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--backend", choices=sorted(BACKENDS), default=settings.fetch_backend, help="Static fetch backend")
        p.add_argument("--chunk-size", type=int, default=settings.chunk_size, help="URLs scraped concurrently per job")
        p.add_argument("--no-render", action="store_true", help="Never launch the headless browser")

    p_worker = sub.add_parser("worker", help="Process queued scrape jobs")
    add_pipeline_args(p_worker)
    p_worker.add_argument("--concurrency", type=int, default=settings.worker_concurrency, help="Jobs processed at once")

    p_submit = sub.add_parser("submit", help="Queue a batch of up to 10 URLs")
    p_submit.add_argument("urls", nargs="+")

    p_status = sub.add_parser("status", help="Show a job's state, progress and result")
    p_status.add_argument("job_id")

    p_scrape = sub.add_parser("scrape", help="Scrape URLs inline, without the queue")
    add_pipeline_args(p_scrape)
    p_scrape.add_argument("urls", nargs="+")
    p_scrape.add_argument("--results", help="Append results to this JSONL file")
    p_scrape.add_argument("--persist", action="store_true", help="Store pages and media in the database")

    p_media = sub.add_parser("media", help="List stored media, newest first")
    p_media.add_argument("--type", choices=["image", "video"])
    p_media.add_argument("--search")
    p_media.add_argument("--page", type=int, default=1)
    p_media.add_argument("--limit", type=int, default=20)

    sub.add_parser("metrics", help="Show job counts per state")
    sub.add_parser("health", help="Check database and job store connectivity")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "worker":
            return asyncio.run(run_worker(args))
        if args.command == "submit":
            return asyncio.run(run_submit(args))
        if args.command == "status":
            return asyncio.run(run_status(args))
        if args.command == "scrape":
            return asyncio.run(run_scrape(args))
        if args.command == "media":
            return run_media(args)
        if args.command == "metrics":
            return asyncio.run(run_metrics(args))
        if args.command == "health":
            return asyncio.run(run_health(args))
    except MediaScoutError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

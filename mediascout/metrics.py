from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import asdict
from threading import Lock
from typing import Any, Deque, Dict, List, Tuple

from .models import MetricsSnapshot, ScrapeEvent


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Log a lifecycle event as one JSON line."""
    logger.log(level, json.dumps({"event": event, **fields}, ensure_ascii=False, default=str))


class MetricsCollector:
    """Thread-safe observability context for one worker or CLI process.

    Records per-URL ScrapeEvent entries and a request counter, and produces
    MetricsSnapshot objects over sliding time windows. CPU usage is measured
    between consecutive snapshots; reset() clears everything."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[Tuple[float, ScrapeEvent]] = deque(maxlen=maxlen)
        self._request_count = 0
        self._cpu_mark = (time.process_time(), time.perf_counter())

    def record_result(self, event: ScrapeEvent) -> None:
        """Record a scrape event with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), event))

    def record_request(self) -> None:
        with self._lock:
            self._request_count += 1

    def snapshot(self, window_secs: int = 60) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        with self._lock:
            events: List[ScrapeEvent] = [e for ts, e in self._events if ts >= cutoff]
            request_count = self._request_count
            cpu_percent = self._cpu_since_mark()

        total = len(events)
        success_count = sum(1 for e in events if e.success)
        avg_latency_ms = (sum(e.latency_ms for e in events) / total) if total else 0.0

        return MetricsSnapshot(
            window_secs=window_secs,
            total_scrapes=total,
            success_count=success_count,
            failure_count=total - success_count,
            dynamic_render_count=sum(1 for e in events if e.rendered),
            avg_latency_ms=avg_latency_ms,
            request_count=request_count,
            cpu_percent=cpu_percent,
            timestamp=now,
        )

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._request_count = 0
            self._cpu_mark = (time.process_time(), time.perf_counter())

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **asdict(e)} for ts, e in self._events]

    def _cpu_since_mark(self) -> float:
        # Caller holds the lock.
        cpu_now, wall_now = time.process_time(), time.perf_counter()
        cpu_prev, wall_prev = self._cpu_mark
        self._cpu_mark = (cpu_now, wall_now)
        wall = wall_now - wall_prev
        if wall <= 0:
            return 0.0
        return round((cpu_now - cpu_prev) / wall * 100, 2)

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from .decision import RenderDecisionEngine
from .exceptions import FetchError
from .extractor import extract_media
from .metrics import MetricsCollector
from .models import MediaSet, RenderResult, ScrapeEvent, ScrapeOutcome, UrlResult
from .renderer import DynamicRenderer

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; MediaScout/1.0)"


class BaseScraper(ABC):
    """Abstract base class defining the per-URL scrape pipeline.

    Static fetch -> render decision -> optional dynamic render -> extraction.
    Subclasses only supply the static fetch backend.

    - A failed static fetch (network error, non-2xx) yields None, not an error.
    - Once a render runs its HTML is authoritative; an empty render fails the URL.
    - run() never raises: any per-URL error becomes a failed UrlResult.
    """

    def __init__(
        self,
        renderer: Optional[DynamicRenderer] = None,
        decision: Optional[RenderDecisionEngine] = None,
        metrics: Optional[MetricsCollector] = None,
        timeout: float = 10.0,
        user_agent: str = USER_AGENT,
    ) -> None:
        self._renderer = renderer
        self._decision = decision or RenderDecisionEngine()
        self._metrics = metrics
        self._timeout = timeout
        self._user_agent = user_agent

    async def run(self, url: str) -> ScrapeOutcome:
        start_ms = self._now_ms()
        render: Optional[RenderResult] = None

        try:
            self.validate(url)
            html, render = await self._load_html(url)
            media = self._extract(url, html, render)
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or type(exc).__name__
            logger.error("Failed %s: %s", url, error)
            outcome = ScrapeOutcome(
                result=UrlResult(url=url, images=0, videos=0, success=False, error=error),
                rendered=render is not None,
            )
            self._record(outcome, start_ms)
            return outcome

        logger.info("Scraped %s (%d img / %d vid)", url, len(media.images), len(media.videos))
        outcome = ScrapeOutcome(
            result=UrlResult(url=url, images=len(media.images), videos=len(media.videos), success=True),
            media=media,
            rendered=render is not None,
        )
        self._record(outcome, start_ms)
        return outcome

    async def scrape(self, url: str) -> MediaSet:
        """Return the media found on `url`; raises FetchError when no HTML could be obtained."""
        self.validate(url)
        html, render = await self._load_html(url)
        return self._extract(url, html, render)

    def validate(self, url: str) -> None:
        if not url:
            raise ValueError("url is required")

    @abstractmethod
    async def fetch(self, url: str) -> Optional[str]:
        """Static GET of `url`; None on network failure or non-2xx status."""

    async def _load_html(self, url: str) -> Tuple[Optional[str], Optional[RenderResult]]:
        static_html = await self.fetch(url)
        reason = self._decision.reason(static_html)
        if reason is None or self._renderer is None:
            return static_html, None

        logger.info("Dynamic render for %s (%s)", url, reason)
        render = await self._renderer.render(url)
        # Once rendered, static HTML is discarded.
        return render.html, render

    @staticmethod
    def _extract(url: str, html: Optional[str], render: Optional[RenderResult]) -> MediaSet:
        if not html:
            raise FetchError(url)
        return extract_media(html, url, render.video_urls if render else ())

    def _record(self, outcome: ScrapeOutcome, start_ms: int) -> None:
        if not self._metrics:
            return
        self._metrics.record_result(
            ScrapeEvent(
                url=outcome.result.url,
                success=outcome.result.success,
                latency_ms=self._now_ms() - start_ms,
                rendered=outcome.rendered,
                error=outcome.result.error,
            )
        )

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

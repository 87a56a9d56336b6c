from __future__ import annotations

from typing import Dict, Optional

from .base import BaseScraper
from .decision import RenderDecisionEngine
from .metrics import MetricsCollector
from .renderer import DynamicRenderer
from .scrapers import CurlCffiScraper, RequestsScraper

BACKENDS = {
    "requests": RequestsScraper,
    "curl_cffi": CurlCffiScraper,
}


class ScraperFactory:
    """Factory for scrapers keyed by static fetch backend.

    Scrapers hold no per-URL state, so one instance per backend is cached and
    shared by every concurrent scrape; all of them share one renderer and thus
    one browser.
    """

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        renderer: Optional[DynamicRenderer] = None,
        decision: Optional[RenderDecisionEngine] = None,
        timeout: float = 10.0,
    ) -> None:
        self._metrics = metrics
        self._renderer = renderer
        self._decision = decision or RenderDecisionEngine()
        self._timeout = timeout
        self._cache: Dict[str, BaseScraper] = {}

    def create_scraper(self, backend: str = "requests") -> BaseScraper:
        if backend in self._cache:
            return self._cache[backend]

        scraper_cls = BACKENDS.get(backend)
        if scraper_cls is None:
            raise ValueError(f"Unknown fetch backend: {backend}")

        scraper = scraper_cls(
            renderer=self._renderer,
            decision=self._decision,
            metrics=self._metrics,
            timeout=self._timeout,
        )
        self._cache[backend] = scraper
        return scraper

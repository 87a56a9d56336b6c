"""
Dynamic rendering with a shared headless Chromium instance.

BrowserManager owns the process-wide browser: it is launched lazily on the
first render and reused afterwards, and each render leases its own browser
context and page, which are always closed on exit. DynamicRenderer drives a
page through navigation, scrolling and a settle window while collecting video
URLs seen in network responses and on <video>/<audio> elements.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from playwright.async_api import Browser, Page, Playwright, Request, Response, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .exceptions import RenderError
from .extractor import absolutify, is_video_response, is_video_url
from .models import RenderResult

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
REPORT_BINDING = "__mediascoutReport"

AUTO_SCROLL_SCRIPT = """
async ({ maxScroll, step, interval }) => {
  await new Promise((resolve) => {
    let total = 0;
    const timer = setInterval(() => {
      window.scrollBy(0, step);
      total += step;
      const height = document.body ? document.body.scrollHeight : 0;
      if (total >= height || total >= maxScroll) {
        clearInterval(timer);
        resolve();
      }
    }, interval);
  });
}
"""

MEDIA_OBSERVER_SCRIPT = """
(binding) => {
  const report = (el) => {
    const src = el.currentSrc || el.src;
    if (src) window[binding](src);
  };
  const watch = (el) => {
    if (el.__mediascoutWatched) return;
    el.__mediascoutWatched = true;
    report(el);
    new MutationObserver(() => report(el)).observe(el, { attributes: true, attributeFilter: ["src"] });
    el.addEventListener("loadedmetadata", () => report(el));
  };
  document.querySelectorAll("video, audio").forEach(watch);
  new MutationObserver((mutations) => {
    for (const m of mutations) {
      m.addedNodes.forEach((node) => {
        if (node.nodeType !== 1) return;
        if (node.matches("video, audio")) watch(node);
        node.querySelectorAll("video, audio").forEach(watch);
      });
    }
  }).observe(document.documentElement, { childList: true, subtree: true });
}
"""

DOM_SCAN_SCRIPT = """
() => {
  const found = [];
  const attrs = ["src", "href", "data-src", "data-video-url", "data-stream-url"];
  document.querySelectorAll(attrs.map((a) => `[${a}]`).join(",")).forEach((el) => {
    for (const a of attrs) {
      const v = el.getAttribute(a);
      if (v) found.push(v);
    }
  });
  const pattern = /https?:\\/\\/[^\\s"'<>\\\\]+?\\.(?:mp4|webm|ogg|mov|avi|m3u8|mpd)(?:\\?[^\\s"'<>\\\\]*)?/gi;
  document.querySelectorAll("script").forEach((s) => {
    const m = (s.textContent || "").match(pattern);
    if (m) found.push(...m);
  });
  return found;
}
"""

SERIALIZE_SCRIPT = "() => document.documentElement.outerHTML"

_TORN_DOWN_MARKERS = ("detached", "context was destroyed", "target closed")


class BrowserManager:
    """Process-wide headless browser with lazy one-time launch and scoped pages."""

    def __init__(
        self,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        viewport: Optional[Dict[str, int]] = None,
    ) -> None:
        self._headless = headless
        self._user_agent = user_agent
        self._viewport = dict(viewport or DEFAULT_VIEWPORT)
        self._lock = asyncio.Lock()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def get_browser(self) -> Browser:
        """Return the shared browser, launching it (again) if needed."""
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._headless,
                    args=["--no-sandbox", "--disable-dev-shm-usage"],
                )
                logger.info("Launched headless browser")
            return self._browser

    @asynccontextmanager
    async def new_page(self) -> AsyncIterator[Page]:
        """Lease a fresh page in its own browser context; closed on every exit path."""
        browser = await self.get_browser()
        context = await browser.new_context(viewport=self._viewport, user_agent=self._user_agent)
        try:
            yield await context.new_page()
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                logger.warning("Failed to close browser context: %s", exc)

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as exc:
                    logger.warning("Failed to close browser: %s", exc)
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
                logger.info("Browser shut down")


class DynamicRenderer:
    """Renders a URL in the shared browser and observes runtime video URLs.

    `render()` never raises: on any failure it logs the cause and returns an
    empty html together with whatever video URLs were collected so far."""

    def __init__(
        self,
        browser: BrowserManager,
        timeout: float = 40.0,
        settle: float = 3.0,
        max_scroll: int = 8000,
        scroll_step: int = 300,
        scroll_interval_ms: int = 100,
        body_timeout: float = 10.0,
        click_timeout: float = 1.0,
        deadline: Optional[float] = None,
    ) -> None:
        self._browser = browser
        self._timeout = timeout
        self._settle = settle
        self._max_scroll = max_scroll
        self._scroll_step = scroll_step
        self._scroll_interval_ms = scroll_interval_ms
        self._body_timeout = body_timeout
        self._click_timeout = click_timeout
        self._deadline = deadline if deadline is not None else timeout * 2

    async def render(self, url: str) -> RenderResult:
        found: Dict[str, None] = {}
        try:
            html = await asyncio.wait_for(self._render(url, found), timeout=self._deadline)
        except asyncio.TimeoutError:
            logger.error("Render exceeded %.0fs for %s", self._deadline, url)
            return RenderResult(html="", video_urls=list(found))
        except RenderError as exc:
            logger.error("%s", exc)
            return RenderResult(html="", video_urls=list(found))
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected render failure for %s", url)
            return RenderResult(html="", video_urls=list(found))
        return RenderResult(html=html, video_urls=list(found))

    async def _render(self, url: str, found: Dict[str, None]) -> str:
        def add(candidate: str) -> None:
            if isinstance(candidate, str) and candidate.startswith(("http://", "https://")):
                found.setdefault(candidate, None)

        try:
            async with self._browser.new_page() as page:
                await page.expose_function(REPORT_BINDING, add)
                await page.route("**/*", _pass_through)
                page.on("response", lambda response: _observe_response(response, add))

                await page.goto(url, wait_until="networkidle", timeout=self._timeout * 1000)
                await self._wait_for_body(page, url)
                await self._auto_scroll(page)
                await self._nudge_play(page)
                await page.evaluate(MEDIA_OBSERVER_SCRIPT, REPORT_BINDING)
                await asyncio.sleep(self._settle)

                for candidate in await self._scan_dom(page, url):
                    add(candidate)
                return await self._capture(page, url)
        except PlaywrightError as exc:
            raise RenderError(url, str(exc)) from exc

    async def _wait_for_body(self, page: Page, url: str) -> None:
        try:
            await page.wait_for_selector("body", state="visible", timeout=self._body_timeout * 1000)
        except PlaywrightTimeoutError:
            logger.debug("Body not visible after %.0fs on %s", self._body_timeout, url)

    async def _auto_scroll(self, page: Page) -> None:
        await page.evaluate(
            AUTO_SCROLL_SCRIPT,
            {"maxScroll": self._max_scroll, "step": self._scroll_step, "interval": self._scroll_interval_ms},
        )

    async def _nudge_play(self, page: Page) -> None:
        try:
            await page.click("button.play", timeout=self._click_timeout * 1000)
        except PlaywrightError:
            logger.debug("No clickable play button")

    async def _scan_dom(self, page: Page, url: str) -> List[str]:
        base = page.url or url
        candidates = []
        for raw in await page.evaluate(DOM_SCAN_SCRIPT) or []:
            abs_url = absolutify(raw, base)
            if abs_url and is_video_url(abs_url):
                candidates.append(abs_url)
        return candidates

    async def _capture(self, page: Page, url: str) -> str:
        try:
            return await page.content()
        except PlaywrightError as exc:
            message = str(exc).lower()
            if not any(marker in message for marker in _TORN_DOWN_MARKERS):
                raise
            logger.warning("Page context torn down while capturing %s, serializing DOM instead", url)

        try:
            await page.wait_for_selector("body", timeout=5000)
            return await page.evaluate(SERIALIZE_SCRIPT) or ""
        except PlaywrightError as exc:
            logger.error("DOM serialization fallback failed for %s: %s", url, exc)
            return ""


async def _pass_through(route: Route, request: Request) -> None:
    await route.continue_()


def _observe_response(response: Response, add: Callable[[str], None]) -> None:
    content_type = response.headers.get("content-type", "")
    if is_video_response(response.url, content_type):
        add(response.url)

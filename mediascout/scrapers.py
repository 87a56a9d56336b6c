from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests
from curl_cffi import requests as curl_requests

from .base import BaseScraper

logger = logging.getLogger(__name__)


def _is_success(status_code: Optional[int]) -> bool:
    return status_code is not None and 200 <= int(status_code) < 300


class RequestsScraper(BaseScraper):
    """Static fetch with a plain `requests` GET, run in a worker thread."""

    async def fetch(self, url: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, url)

    def _get(self, url: str) -> Optional[str]:
        try:
            resp = requests.get(url, headers={"User-Agent": self._user_agent}, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning("Static fetch failed for %s: %s", url, exc)
            return None
        if not _is_success(resp.status_code):
            logger.warning("Static fetch for %s returned HTTP %s", url, resp.status_code)
            return None
        return resp.text


class CurlCffiScraper(BaseScraper):
    """Static fetch through curl_cffi with a Chrome TLS fingerprint.

    Gets past CDNs that reject non-browser TLS handshakes with a 403 before
    any HTML is served."""

    def __init__(self, *args, impersonate: str = "chrome", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._impersonate = impersonate

    async def fetch(self, url: str) -> Optional[str]:
        try:
            async with curl_requests.AsyncSession() as session:
                resp = await session.get(
                    url,
                    headers={"User-Agent": self._user_agent},
                    impersonate=self._impersonate,
                    timeout=self._timeout,
                )
        except curl_requests.RequestsError as exc:
            logger.warning("Static fetch failed for %s: %s", url, exc)
            return None
        if not _is_success(resp.status_code):
            logger.warning("Static fetch for %s returned HTTP %s", url, resp.status_code)
            return None
        return resp.text

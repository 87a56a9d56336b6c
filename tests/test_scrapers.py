"""Tests for the static fetch backends."""

import unittest
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import requests
from curl_cffi import requests as curl_requests

from mediascout.base import USER_AGENT
from mediascout.scrapers import CurlCffiScraper, RequestsScraper


def _response(status_code: int, text: str = "<html></html>") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


class TestRequestsScraper(unittest.IsolatedAsyncioTestCase):
    """Verify the requests backend treats failures as absent HTML."""

    async def test_returns_body_on_2xx(self):
        """A 2xx response yields its body, fetched with our UA and timeout."""
        with mock.patch("mediascout.scrapers.requests.get", return_value=_response(200, "<p>ok</p>")) as get:
            html = await RequestsScraper(timeout=10.0).fetch("https://a.test")
        self.assertEqual(html, "<p>ok</p>")
        get.assert_called_once_with("https://a.test", headers={"User-Agent": USER_AGENT}, timeout=10.0)

    async def test_non_2xx_is_absent(self):
        """Non-2xx responses yield None."""
        with mock.patch("mediascout.scrapers.requests.get", return_value=_response(503)):
            self.assertIsNone(await RequestsScraper().fetch("https://a.test"))

    async def test_network_error_is_absent(self):
        """Timeouts and connection errors yield None instead of raising."""
        with mock.patch("mediascout.scrapers.requests.get", side_effect=requests.Timeout("slow")):
            self.assertIsNone(await RequestsScraper().fetch("https://a.test"))


class TestCurlCffiScraper(unittest.IsolatedAsyncioTestCase):
    """Verify the curl_cffi backend."""

    def _patch_session(self, get: AsyncMock):
        session = MagicMock()
        session.get = get
        session_cls = MagicMock()
        session_cls.return_value.__aenter__.return_value = session
        return mock.patch("mediascout.scrapers.curl_requests.AsyncSession", session_cls)

    async def test_returns_body_with_impersonation(self):
        """The request impersonates Chrome and returns the body on 2xx."""
        get = AsyncMock(return_value=_response(200, "<p>curl</p>"))
        with self._patch_session(get):
            html = await CurlCffiScraper(timeout=5.0).fetch("https://a.test")
        self.assertEqual(html, "<p>curl</p>")
        self.assertEqual(get.await_args.kwargs["impersonate"], "chrome")
        self.assertEqual(get.await_args.kwargs["timeout"], 5.0)

    async def test_forbidden_is_absent(self):
        """A 403 yields None."""
        with self._patch_session(AsyncMock(return_value=_response(403))):
            self.assertIsNone(await CurlCffiScraper().fetch("https://a.test"))

    async def test_request_error_is_absent(self):
        """curl errors yield None."""
        with self._patch_session(AsyncMock(side_effect=curl_requests.RequestsError("timed out"))):
            self.assertIsNone(await CurlCffiScraper().fetch("https://a.test"))


if __name__ == "__main__":
    unittest.main()

"""
Media extraction from static or rendered HTML.

Finds image and video references, resolves them against the page URL and
returns them deduplicated in document order. The URL classification helpers
here are shared with the dynamic renderer so that static markup and runtime
network traffic are judged by the same rules.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .models import MAX_URL_LENGTH, MediaSet

IMAGE_ATTRS = ("src", "data-src", "data-lazy-src", "data-original")
VIDEO_ATTRS = ("src", "href", "data-src", "data-lazy-src", "data-video-url")
VIDEO_CANDIDATE_TAGS = ["video", "source", "a", "iframe"]

VIDEO_EXTENSION_RE = re.compile(r"\.(mp4|webm|ogg|mov|avi|m3u8|mpd)(\?|#|$)", re.IGNORECASE)
IMAGE_EXTENSION_RE = re.compile(r"\.(jpe?g|png|gif|webp|svg|ico|bmp|avif)(\?|#|$)", re.IGNORECASE)

# Path fragments that mark a link as a video page or stream.
VIDEO_PATH_FRAGMENTS = ("/video/", "/embed/", "/stream/", "/media/")
# Network responses are matched without /embed/: embed pages are HTML documents.
NETWORK_PATH_FRAGMENTS = ("/video/", "/stream/", "/media/")
PLATFORM_VIDEO_FRAGMENTS = (
    "googlevideo.com/videoplayback",
    "video.twimg.com",
    "v.redd.it",
    "vod-progressive.akamaized.net",
    "cdninstagram.com/o1/v/",
)

VIDEO_CONTENT_TYPES = (
    "video/",
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "application/dash+xml",
)
NON_VIDEO_CONTENT_TYPES = ("image/", "text/css", "javascript", "font/", "text/html")


def absolutify(src: Optional[str], base_url: str) -> Optional[str]:
    """Resolve `src` against `base_url`; None for empty, malformed, over-long or non-http(s) values."""
    if not src:
        return None
    src = src.strip()
    if not src:
        return None
    try:
        resolved = urljoin(base_url, src)
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    if len(resolved) > MAX_URL_LENGTH:
        return None
    return resolved


def is_video_url(url: str, fragments: Sequence[str] = VIDEO_PATH_FRAGMENTS) -> bool:
    lower = url.lower()
    if VIDEO_EXTENSION_RE.search(lower):
        return True
    if any(p in lower for p in PLATFORM_VIDEO_FRAGMENTS):
        return True
    if IMAGE_EXTENSION_RE.search(lower):
        return False
    return any(f in lower for f in fragments)


def is_video_response(url: str, content_type: str = "") -> bool:
    """Classify an intercepted network response as a candidate video URL."""
    ct = (content_type or "").lower()
    if any(t in ct for t in VIDEO_CONTENT_TYPES):
        return True
    if ct and any(t in ct for t in NON_VIDEO_CONTENT_TYPES):
        return False
    return is_video_url(url, NETWORK_PATH_FRAGMENTS)


def _first_present(tag: Tag, attrs: Sequence[str]) -> Optional[str]:
    for attr in attrs:
        value = tag.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        if value and value.strip():
            return value
    return None


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


def extract_images(soup: BeautifulSoup, base_url: str) -> list[str]:
    images = []
    for img in soup.find_all("img"):
        abs_url = absolutify(_first_present(img, IMAGE_ATTRS), base_url)
        if abs_url:
            images.append(abs_url)
    return _unique(images)


def extract_videos(soup: BeautifulSoup, base_url: str) -> list[str]:
    videos = []
    for el in soup.find_all(VIDEO_CANDIDATE_TAGS):
        abs_url = absolutify(_first_present(el, VIDEO_ATTRS), base_url)
        if abs_url and is_video_url(abs_url):
            videos.append(abs_url)
    return _unique(videos)


def extract_media(html: str, base_url: str, extra_videos: Iterable[str] = ()) -> MediaSet:
    """Parse `html` and return its images and videos, merged with `extra_videos`.

    `extra_videos` carries URLs observed at runtime by the dynamic renderer;
    a URL found both in markup and at runtime is kept once."""
    soup = BeautifulSoup(html, "lxml")
    images = extract_images(soup, base_url)
    videos = extract_videos(soup, base_url)
    runtime = [u for u in (absolutify(v, base_url) for v in extra_videos) if u]
    return MediaSet(images=images, videos=_unique([*videos, *runtime]))

#!/usr/bin/env python3
"""
Utility classes and functions shared by the parser and the orchestrator.

Holds the text normalizer (HTML stripping, sanitizing, truncation, slugs)
and the per-key token bucket used to throttle refresh-all requests.
"""

from asyncio import Lock
from collections import defaultdict
from html import unescape
from time import monotonic
from typing import Callable, Dict, Hashable, Optional
import re
import unicodedata

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

ELLIPSIS = "…"

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^\w\-]+")
_DASHES_RE = re.compile(r"-{2,}")


def strip_html(html_content: Optional[str]) -> str:
    """Reduce an HTML fragment to a single line of plain text.

    Entities are decoded before tags are removed so that escaped markup
    (``&lt;a href=...&gt;``, common in Google News descriptions) is stripped
    as well. Runs of whitespace collapse to one space.
    """
    if not html_content:
        return ""
    decoded = unescape(html_content)
    text = BeautifulSoup(decoded, "html.parser").get_text()
    return _WHITESPACE_RE.sub(" ", text).strip()


def sanitize_html(html_content: Optional[str]) -> str:
    """Remove active content from an HTML fragment.

    - ``<script>`` and ``<style>`` elements are dropped entirely
    - ``on*`` event handler attributes are removed
    - ``javascript:`` links become ``#``
    - inline ``data:`` image sources are blanked
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith("on"):
                del tag[attr]
        if tag.has_attr("href") and str(tag["href"]).strip().lower().startswith("javascript:"):
            tag["href"] = "#"
        if tag.has_attr("src") and str(tag["src"]).strip().lower().startswith("data:"):
            tag["src"] = ""

    return str(soup)


def truncate_text(text: Optional[str], max_length: int = 300, suffix: str = ELLIPSIS) -> str:
    """Shorten plain text to at most ``max_length`` characters plus ``suffix``.

    Text within the limit is returned unchanged. Longer text is cut at the
    last word boundary inside the limit (or hard-cut when the first word is
    already too long) and the suffix is appended. Callers pass text that has
    already been through ``strip_html`` so a cut never lands inside a tag.
    """
    if not text or len(text) <= max_length:
        return text or ""

    cut = text[:max_length]
    boundary = cut.rfind(" ")
    if boundary > 0 and not text[max_length].isspace():
        cut = cut[:boundary]
    return cut.rstrip() + suffix


def slugify(text: Optional[str], fallback: str = "untitled") -> str:
    """Convert a title to a lowercase, hyphen-separated URL-safe slug.

    Accents are folded to their base letters. Titles with no usable
    characters produce ``fallback`` so every row still gets a slug.

    Examples:
        slugify("Hello World!") -> "hello-world"
        slugify("Café Münchën") -> "cafe-munchen"
    """
    if not text:
        return fallback
    normalized = unicodedata.normalize("NFKD", text)
    folded = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = folded.lower().strip()
    slug = _WHITESPACE_RE.sub("-", slug)
    slug = _NON_WORD_RE.sub("", slug)
    slug = slug.replace("_", "-")
    slug = _DASHES_RE.sub("-", slug).strip("-")
    return slug or fallback


def validate_url(url: str) -> bool:
    """Return True if ``url`` looks like an absolute http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    return url.startswith(('http://', 'https://')) and '.' in url


class _Bucket:
    __slots__ = ("count", "refilled_at")

    def __init__(self, count: int, refilled_at: float):
        self.count = count
        self.refilled_at = refilled_at


class TokenBucket:
    """Keyed token bucket limiter.

    Each key owns a bucket of ``max_tokens`` permits. One permit is refilled
    every ``refill_interval_seconds`` (whole intervals only), capped at the
    capacity. A key seen for the first time starts full.

    Operations on the same key are serialized through a per-key asyncio lock
    so concurrent consumers never both spend the last permit.
    """

    def __init__(self, max_tokens: int, refill_interval_seconds: float,
                 clock: Callable[[], float] = monotonic):
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        if refill_interval_seconds <= 0:
            raise ValueError("refill_interval_seconds must be positive")
        self.max_tokens = max_tokens
        self.refill_interval_seconds = refill_interval_seconds
        self._clock = clock
        self._buckets: Dict[Hashable, _Bucket] = {}
        self._locks: Dict[Hashable, Lock] = defaultdict(Lock)

    def _refill(self, bucket: _Bucket, now: float) -> None:
        refill = int((now - bucket.refilled_at) // self.refill_interval_seconds)
        if refill > 0:
            bucket.count = min(bucket.count + refill, self.max_tokens)
            bucket.refilled_at = now

    async def consume(self, key: Hashable, cost: int = 1) -> bool:
        """Spend ``cost`` permits for ``key``; return False when not enough remain."""
        async with self._locks[key]:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if cost > self.max_tokens:
                    return False
                self._buckets[key] = _Bucket(self.max_tokens - cost, now)
                return True

            self._refill(bucket, now)
            if bucket.count < cost:
                logger.debug(f"Token bucket denied key={key!r} cost={cost} available={bucket.count}")
                return False
            bucket.count -= cost
            return True

    def check(self, key: Hashable, cost: int = 1) -> bool:
        """Report whether ``consume`` would currently succeed, without spending."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return cost <= self.max_tokens
        refill = int((self._clock() - bucket.refilled_at) // self.refill_interval_seconds)
        return min(bucket.count + max(refill, 0), self.max_tokens) >= cost

    def reset(self, key: Hashable) -> None:
        self._buckets.pop(key, None)

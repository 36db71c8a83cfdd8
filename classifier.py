#!/usr/bin/env python3
"""
Source classification for subscription URLs.

Decides whether a URL is a Reddit subreddit, a Google News RSS feed or a
plain RSS/Atom feed, canonicalizes subreddit URLs and derives display
titles for Google News feeds. Pure functions; nothing here raises.
"""

from typing import Optional, Tuple
from urllib.parse import urlparse, parse_qs, quote_plus
import re

FEED_TYPE_RSS = "rss"
FEED_TYPE_REDDIT = "reddit"
FEED_TYPE_GOOGLE_NEWS = "google_news"

FEED_TYPES = (FEED_TYPE_RSS, FEED_TYPE_REDDIT, FEED_TYPE_GOOGLE_NEWS)

_REDDIT_RE = re.compile(r"^(https?://)?(www\.)?reddit\.com/r/([a-zA-Z0-9_]+)", re.IGNORECASE)
_GOOGLE_NEWS_MARKER = "news.google.com/rss"
_WHEN_RE = re.compile(r"\bwhen:\d+[hdwmy]\b", re.IGNORECASE)
_ALLINURL_RE = re.compile(r"allinurl:\s*([^\s]+)", re.IGNORECASE)

GOOGLE_NEWS_DEFAULT_TITLE = "Google News"
GOOGLE_NEWS_TOP_STORIES_TITLE = "Google News - Top Stories"

# Topic ids used by the US-English Google News section feeds
GOOGLE_NEWS_TOPICS = {
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNRGx1YlY4U0FtVnVHZ0pWVXlnQVAB": "World",
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNRGRqTVhZU0FtVnVHZ0pWVXlnQVAB": "Technology",
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNRGx6TVdZU0FtVnVHZ0pWVXlnQVAB": "Business",
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNRFp0Y1RjU0FtVnVHZ0pWVXlnQVAB": "Science",
    "CAAqIQgKIhtDQkFTRGdvSUwyMHZNR3QwTlRFU0FtVnVLQUFQAQ": "Health",
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNREpxYW5RU0FtVnVHZ0pWVXlnQVAB": "Entertainment",
    "CAAqJggKIiBDQkFTRWdvSUwyMHZNRFp1ZEdvU0FtVnVHZ0pWVXlnQVAB": "Sports",
}


def is_reddit_url(url: str) -> bool:
    return bool(url) and _REDDIT_RE.match(url.strip()) is not None


def is_google_news_url(url: str) -> bool:
    return bool(url) and _GOOGLE_NEWS_MARKER in url


def extract_subreddit_name(url: str) -> Optional[str]:
    """Return the subreddit name from a Reddit URL, or None."""
    if not url:
        return None
    match = _REDDIT_RE.match(url.strip())
    return match.group(3) if match else None


def normalize_reddit_url(url: str) -> str:
    """Canonical form ``https://www.reddit.com/r/<name>``; other URLs pass through."""
    name = extract_subreddit_name(url)
    if not name:
        return url
    return f"https://www.reddit.com/r/{name}"


def generate_google_news_title(url: str) -> str:
    """Derive a readable title from a Google News RSS URL.

    Returns "Google News" for anything it cannot interpret, malformed URLs
    included.
    """
    try:
        parsed = urlparse(url)
        path = parsed.path.rstrip("/")

        if path == "/rss":
            return GOOGLE_NEWS_TOP_STORIES_TITLE

        if path.startswith("/rss/topics/"):
            topic_id = path[len("/rss/topics/"):].split("/")[0]
            topic = GOOGLE_NEWS_TOPICS.get(topic_id)
            return f"Google News - {topic}" if topic else GOOGLE_NEWS_DEFAULT_TITLE

        if path.startswith("/rss/search"):
            # parse_qs decodes both %XX escapes and '+' as space
            query = (parse_qs(parsed.query).get("q") or [""])[0]
            if not query:
                return GOOGLE_NEWS_DEFAULT_TITLE

            domain_match = _ALLINURL_RE.search(query)
            if domain_match:
                domain = domain_match.group(1).lower()
                if domain.startswith("www."):
                    domain = domain[4:]
                label = domain.split(".")[0]
                return f"Google News - {label.upper()}" if label else GOOGLE_NEWS_DEFAULT_TITLE

            cleaned = " ".join(_WHEN_RE.sub(" ", query).split())
            return f"Google News - {cleaned}" if cleaned else GOOGLE_NEWS_DEFAULT_TITLE
    except ValueError:
        return GOOGLE_NEWS_DEFAULT_TITLE

    return GOOGLE_NEWS_DEFAULT_TITLE


def build_google_news_search_url(query: str) -> str:
    """Build a US-English Google News search feed URL for ``query``."""
    return (
        "https://news.google.com/rss/search?q="
        f"{quote_plus(query.strip())}&hl=en&gl=US&ceid=US:en"
    )


def classify_url(url: str) -> Tuple[str, str]:
    """Return ``(feed_type, canonical_url)`` for a subscription URL."""
    cleaned = (url or "").strip()
    if is_reddit_url(cleaned):
        return FEED_TYPE_REDDIT, normalize_reddit_url(cleaned)
    if is_google_news_url(cleaned):
        return FEED_TYPE_GOOGLE_NEWS, cleaned
    return FEED_TYPE_RSS, cleaned

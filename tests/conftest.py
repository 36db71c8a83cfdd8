import asyncio
import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio

from cache import MemoryCache
from config import config
from errors import FetchError
from ingestion import FeedIngestor
from models import DatabaseQueue
from utils import TokenBucket


def rss_document(title="Example Feed", items=(), description="An example feed"):
    """Build an RSS 2.0 document from ``(title, link)`` pairs or dicts."""
    rendered = []
    for item in items:
        if isinstance(item, tuple):
            item = {"title": item[0], "link": item[1]}
        parts = []
        if item.get("title") is not None:
            parts.append(f"<title>{item['title']}</title>")
        if item.get("link") is not None:
            parts.append(f"<link>{item['link']}</link>")
        parts.append(f"<description>{item.get('description', 'Body of ' + str(item.get('title')))}</description>")
        parts.append(f"<pubDate>{item.get('pub_date', 'Mon, 06 Jan 2025 10:00:00 GMT')}</pubDate>")
        parts.append(item.get("extra", ""))
        rendered.append(f"<item>{''.join(parts)}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link>"
        f"<description>{description}</description>"
        f"{''.join(rendered)}"
        "</channel></rss>"
    ).encode("utf-8")


def reddit_post(post_id, title, is_self=True, selftext="", url=None, subreddit="python", **extra):
    data = {
        "id": post_id,
        "title": title,
        "is_self": is_self,
        "selftext": selftext,
        "permalink": f"/r/{subreddit}/comments/{post_id}/{title.lower().replace(' ', '_')}/",
        "url": url or f"https://www.reddit.com/r/{subreddit}/comments/{post_id}/",
        "author": "alice",
        "created_utc": 1736157600.0,
        "subreddit": subreddit,
        "thumbnail": "self",
    }
    data.update(extra)
    return {"kind": "t3", "data": data}


def reddit_listing(*posts):
    return {"kind": "Listing", "data": {"children": list(posts)}}


class FakeFetcher:
    """Stands in for ``FeedFetcher``; payloads are looked up by URL or subreddit.

    A stored exception is raised instead of returned; ``delay`` makes every
    call sleep first so timeouts can be exercised.
    """

    def __init__(self):
        self.feeds = {}
        self.listings = {}
        self.delay = 0
        self.calls = []
        self.closed = False

    async def _answer(self, table, key):
        self.calls.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key not in table:
            raise FetchError("HTTP 404", details={"url": key})
        payload = table[key]
        if isinstance(payload, Exception):
            raise payload
        return payload

    async def fetch_feed_xml(self, url):
        return await self._answer(self.feeds, url)

    async def fetch_reddit_listing(self, subreddit):
        return await self._answer(self.listings, subreddit)

    async def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "feeds.db"))
    queue = DatabaseQueue(config.DATABASE_PATH)
    await queue.start()
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def ingestor(db, fetcher, cache, clock):
    limiter = TokenBucket(1, 300, clock=clock)
    engine = FeedIngestor(db=db, fetcher=fetcher, cache=cache, refresh_limiter=limiter, clock=clock)
    await engine.initialize()
    yield engine
    engine.executor.shutdown(wait=False)

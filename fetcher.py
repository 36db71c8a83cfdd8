#!/usr/bin/env python3
"""
HTTP retrieval of feed sources.

Two paths are supported:

- RSS/Atom (and Google News) documents are fetched directly first. Any
  network error or non-success status falls back to a public CORS relay,
  which gets past hosts that block unknown clients.
- Reddit listings come from the subreddit ``.json`` endpoint with no
  fallback; Reddit's status codes map to distinct errors.

Both return raw payloads; parsing lives in ``feed_parser``.
"""

from asyncio import TimeoutError
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from aiohttp import ClientSession, ClientError, ClientTimeout, ContentTypeError

from config import config, get_logger
from errors import (
    FetchError,
    SourceRateLimitedError,
    SubredditNotFoundError,
    SubredditForbiddenError,
)
from telemetry import trace_span

logger = get_logger("fetcher")

HTTP_OK = 200
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429

FEED_ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.7"


class FeedFetcher:
    """Fetches raw feed payloads over a shared aiohttp session.

    A session passed in by the caller is used as-is and left open; otherwise
    one is created lazily and closed by ``close()``.
    """

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            logger.debug("HTTP session closed")

    def _request_kwargs(self, accept: str, allow_redirects: bool = True) -> Dict[str, Any]:
        return {
            'headers': {
                'User-Agent': config.USER_AGENT,
                'Accept': accept,
            },
            'timeout': ClientTimeout(total=config.HTTP_TIMEOUT),
            'allow_redirects': allow_redirects,
            'max_redirects': config.MAX_REDIRECTS,
        }

    def _proxy_url(self, url: str) -> str:
        return config.PROXY_FALLBACK_URL.format(url=quote(url, safe=""))

    @trace_span(
        "fetch_feed_xml",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def fetch_feed_xml(self, url: str) -> bytes:
        """Fetch an RSS/Atom document, falling back to the relay on failure.

        Raises:
            FetchError: Both the direct request and the relay failed.
        """
        session = await self._get_session()
        try:
            return await self._get_bytes(session, url)
        except (ClientError, TimeoutError, FetchError) as e:
            logger.warning("Direct fetch failed for %s (%s); retrying through proxy relay", url, self._describe(e))

        proxy_url = self._proxy_url(url)
        try:
            return await self._get_bytes(session, proxy_url)
        except (ClientError, TimeoutError, FetchError) as e:
            detail = self._describe(e)
            logger.error("Proxy relay fetch failed for %s: %s", url, detail)
            raise FetchError(f"Failed to fetch feed: {detail}", details={"url": url}) from e

    async def _get_bytes(self, session: ClientSession, url: str) -> bytes:
        async with session.get(url, **self._request_kwargs(FEED_ACCEPT_HEADER)) as response:
            if response.status != HTTP_OK:
                raise FetchError(f"HTTP {response.status}", details={"status": response.status, "url": url})
            return await response.read()

    @trace_span(
        "fetch_reddit_listing",
        tracer_name="fetcher",
        attr_from_args=lambda self, subreddit: {"reddit.subreddit": subreddit},
    )
    async def fetch_reddit_listing(self, subreddit: str) -> Dict[str, Any]:
        """Fetch the JSON listing for ``subreddit``.

        Raises:
            SourceRateLimitedError: Reddit answered 429.
            SubredditNotFoundError: Reddit answered 404.
            SubredditForbiddenError: Reddit answered 403.
            FetchError: Any other failure.
        """
        session = await self._get_session()
        url = f"{config.REDDIT_BASE_URL}/r/{subreddit}.json"
        try:
            async with session.get(url, **self._request_kwargs("application/json")) as response:
                status = response.status
                if status == HTTP_TOO_MANY_REQUESTS:
                    logger.warning("Reddit rate limited request for r/%s", subreddit)
                    raise SourceRateLimitedError(details={"subreddit": subreddit})
                if status == HTTP_NOT_FOUND:
                    raise SubredditNotFoundError(subreddit)
                if status == HTTP_FORBIDDEN:
                    raise SubredditForbiddenError(subreddit)
                if status != HTTP_OK:
                    raise FetchError(
                        f"Failed to fetch subreddit: HTTP {status}",
                        details={"status": status, "subreddit": subreddit},
                    )
                payload = await response.json(content_type=None)
        except (ClientError, TimeoutError, ValueError) as e:
            if isinstance(e, (ContentTypeError, ValueError)):
                raise FetchError("Reddit returned an invalid response.", details={"subreddit": subreddit}) from e
            detail = self._describe(e)
            logger.error("Error fetching r/%s: %s", subreddit, detail)
            raise FetchError(f"Failed to fetch subreddit: {detail}", details={"subreddit": subreddit}) from e

        if not isinstance(payload, dict):
            raise FetchError("Reddit returned an invalid response.", details={"subreddit": subreddit})
        return payload

    def _describe(self, error: Exception) -> str:
        """Describe an error with any available status/errno for logs."""
        if isinstance(error, FetchError):
            return error.message
        if isinstance(error, TimeoutError):
            return f"timed out after {config.HTTP_TIMEOUT}s"
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None and getattr(os_error, 'strerror', None):
            parts.append(str(os_error.strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

#!/usr/bin/env python3
"""
Feed ingestion orchestrator.

``FeedIngestor`` ties classification, fetching, parsing, deduplication,
storage and cache invalidation together behind the operations callers use:

- ``create_feed``: subscribe a user to a URL (classify, fetch, parse, persist)
- ``refresh_feed``: merge new articles of one existing feed
- ``refresh_all_feeds``: refresh every feed of a user, rate limited
- ``auto_refresh_stale_feeds``: refresh a user's feeds older than their interval
- ``cron_sweep``: the multi-tenant staleness sweep run by an external timer

plus feed management (update, delete, tags), memoized reads and the
retention pass. Batch operations never let one feed's failure abort the
rest; single-feed operations surface errors to the caller.
"""

from asyncio import Semaphore, gather, get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from hmac import compare_digest
from time import time
from typing import Any, Callable, Dict, List, Optional

from cache import (
    create_cache,
    article_pattern,
    feed_list_key,
    feed_list_pattern,
    feed_pattern,
    statistics_key,
)
from classifier import (
    FEED_TYPE_GOOGLE_NEWS,
    FEED_TYPE_REDDIT,
    classify_url,
    extract_subreddit_name,
    generate_google_news_title,
)
from config import config, get_logger
from dedup import filter_new_candidates
from errors import (
    CronAuthError,
    DuplicateFeedError,
    FeedNotFoundError,
    FeedReaderError,
    FetchTimeoutError,
    InvalidUrlError,
    RateLimitExceededError,
    TagNotFoundError,
    ValidationError,
)
from feed_parser import parse_feed
from fetcher import FeedFetcher
from models import DatabaseQueue
from telemetry import trace_span
from utils import TokenBucket, validate_url

logger = get_logger("ingestion")

SECONDS_PER_HOUR = 3600


class RefreshOutcome:
    """Aggregate result of a batch refresh.

    Attributes:
        attempted: Feeds a refresh was tried for.
        succeeded: Feeds refreshed without error (zero new articles included).
        failed: Feeds whose refresh raised.
        new_articles: Articles inserted across all feeds.
        skipped: Feeds not attempted because they were still fresh.
        users_processed / users_failed: Per-user counters for sweeps.
        errors: ``[{'feed_id', 'user_id', 'error'}]`` for failed feeds.
    """

    def __init__(self) -> None:
        self.attempted = 0
        self.succeeded = 0
        self.failed = 0
        self.new_articles = 0
        self.skipped = 0
        self.users_processed = 0
        self.users_failed = 0
        self.errors: List[Dict[str, Any]] = []

    def record_success(self, new_articles: int) -> None:
        self.attempted += 1
        self.succeeded += 1
        self.new_articles += new_articles

    def record_failure(self, feed: Dict[str, Any], error: BaseException) -> None:
        self.attempted += 1
        self.failed += 1
        message = error.message if isinstance(error, FeedReaderError) else str(error)
        self.errors.append({"feed_id": feed.get("id"), "user_id": feed.get("user_id"), "error": message})

    def merge(self, other: "RefreshOutcome") -> None:
        self.attempted += other.attempted
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.new_articles += other.new_articles
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "new_articles": self.new_articles,
            "skipped": self.skipped,
            "users_processed": self.users_processed,
            "users_failed": self.users_failed,
            "errors": list(self.errors),
        }

    def __repr__(self) -> str:
        return (
            f"RefreshOutcome(attempted={self.attempted}, succeeded={self.succeeded}, "
            f"failed={self.failed}, new_articles={self.new_articles}, skipped={self.skipped})"
        )


class FeedIngestor:
    """Coordinates subscription and refresh of user feeds.

    Collaborators can be injected (tests do); anything left out is built
    from configuration by ``initialize()``.
    """

    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        fetcher: Optional[FeedFetcher] = None,
        cache=None,
        refresh_limiter: Optional[TokenBucket] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        self.cache = cache
        self.refresh_limiter = refresh_limiter or TokenBucket(
            config.REFRESH_ALL_BUCKET_SIZE, config.REFRESH_ALL_REFILL_SECONDS
        )
        self.clock = clock
        self.executor = ThreadPoolExecutor(thread_name_prefix="feed-parse")

    async def initialize(self) -> None:
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        if self.fetcher is None:
            self.fetcher = FeedFetcher()
        if self.cache is None:
            self.cache = create_cache()
        logger.info("FeedIngestor initialized")

    async def close(self) -> None:
        if self.fetcher:
            await self.fetcher.close()
        if self.cache:
            await self.cache.close()
        if self.db:
            await self.db.stop()
        self.executor.shutdown(wait=False)
        logger.info("FeedIngestor closed")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function (XML parsing) in the thread pool."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    def _now(self) -> int:
        return int(self.clock())

    # ------------------------------------------------------------------
    # Fetch + parse
    # ------------------------------------------------------------------
    async def _fetch_and_parse(self, feed_type: str, url: str) -> Dict[str, Any]:
        if feed_type == FEED_TYPE_REDDIT:
            subreddit = extract_subreddit_name(url)
            if not subreddit:
                raise InvalidUrlError("Invalid Reddit URL format. Expected: https://reddit.com/r/subreddit")
            listing = await self.fetcher.fetch_reddit_listing(subreddit)
            return parse_feed(feed_type, listing, subreddit=subreddit)
        raw = await self.fetcher.fetch_feed_xml(url)
        return await self.run_in_executor(parse_feed, feed_type, raw)

    async def fetch_and_parse(self, feed_type: str, url: str) -> Dict[str, Any]:
        """Fetch and parse a source within ``FETCH_TIMEOUT_SECONDS``.

        Raises:
            FetchTimeoutError: The deadline passed first; the fetch is cancelled.
        """
        try:
            return await wait_for(self._fetch_and_parse(feed_type, url), timeout=config.FETCH_TIMEOUT_SECONDS)
        except TimeoutError as e:
            logger.warning(f"Fetch+parse of {url} exceeded {config.FETCH_TIMEOUT_SECONDS}s")
            raise FetchTimeoutError(details={"url": url}) from e

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------
    async def _invalidate_feed_caches(self, user_id: str) -> None:
        await self.cache.invalidate_pattern(feed_pattern(user_id))

    async def _invalidate_feed_lists(self, user_id: str) -> None:
        await self.cache.invalidate_pattern(feed_list_pattern(user_id))

    async def _invalidate_content_caches(self, user_id: str) -> None:
        await self.cache.invalidate_pattern(feed_pattern(user_id))
        await self.cache.invalidate_pattern(article_pattern(user_id))
        await self.cache.delete(statistics_key(user_id))

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------
    @trace_span(
        "ingestion.create_feed",
        tracer_name="ingestion",
        attr_from_args=lambda self, user_id, url: {"user.id": str(user_id), "feed.url": url or ""},
    )
    async def create_feed(self, user_id: str, url: str) -> Dict[str, Any]:
        """Subscribe ``user_id`` to ``url``.

        Nothing is stored unless fetch and parse succeed; the feed row and
        all its articles are written in one transaction.

        Returns:
            The stored feed row with ``article_count``.

        Raises:
            InvalidUrlError, DuplicateFeedError, FetchError subclasses, ParseError subclasses.
        """
        cleaned = (url or "").strip()
        if not cleaned:
            raise InvalidUrlError()

        feed_type, canonical_url = classify_url(cleaned)
        if feed_type != FEED_TYPE_REDDIT and not validate_url(canonical_url):
            raise InvalidUrlError("Please provide a valid URL.")

        if await self.db.execute('find_feed_by_url', user_id=user_id, url=canonical_url):
            raise DuplicateFeedError()

        logger.info(f"Subscribing user {user_id} to {canonical_url} ({feed_type})")
        parsed = await self.fetch_and_parse(feed_type, canonical_url)

        title = parsed["title"]
        if feed_type == FEED_TYPE_GOOGLE_NEWS:
            title = generate_google_news_title(canonical_url)

        feed = await self.db.execute(
            'create_feed_with_articles',
            user_id=user_id,
            url=canonical_url,
            feed_type=feed_type,
            title=title,
            description=parsed.get("description") or None,
            image_url=parsed.get("image_url"),
            articles=parsed["articles"],
            now=self._now(),
        )
        await self._invalidate_feed_caches(user_id)
        if parsed.get("skipped"):
            logger.info(f"Skipped {parsed['skipped']} invalid entries while subscribing to {canonical_url}")
        return feed

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def _refresh_one(self, feed: Dict[str, Any]) -> int:
        """Fetch one feed and insert its new articles; returns the count inserted.

        ``last_refreshed_at`` is stamped whether or not the fetch succeeds.
        """
        feed_id = feed["id"]
        try:
            parsed = await self.fetch_and_parse(feed["feed_type"], feed["url"])
        finally:
            await self.db.execute('touch_feed_refreshed', feed_id=feed_id, refreshed_at=self._now())

        existing_keys = await self.db.execute('get_existing_identity_keys', feed_id=feed_id)
        fresh = filter_new_candidates(parsed["articles"], existing_keys)
        if not fresh:
            logger.debug(f"Feed {feed_id} has no new articles")
            return 0

        inserted = await self.db.execute(
            'insert_articles',
            feed_id=feed_id,
            user_id=feed["user_id"],
            articles=fresh,
            now=self._now(),
        )
        logger.info(f"Feed {feed_id} ('{feed['title']}'): {inserted} new articles")
        return inserted

    @trace_span(
        "ingestion.refresh_feed",
        tracer_name="ingestion",
        attr_from_args=lambda self, user_id, feed_id: {"user.id": str(user_id), "feed.id": int(feed_id)},
    )
    async def refresh_feed(self, user_id: str, feed_id: int) -> Dict[str, int]:
        """Refresh one feed owned by ``user_id``.

        Returns:
            ``{"new_articles": n}``

        Raises:
            FeedNotFoundError: Missing, deleted or owned by someone else.
        """
        feed = await self.db.execute('get_feed', user_id=user_id, feed_id=feed_id)
        if not feed:
            raise FeedNotFoundError()

        try:
            new_articles = await self._refresh_one(feed)
        finally:
            # last_refreshed_at changed even when the fetch failed
            await self._invalidate_feed_lists(user_id)
        if new_articles:
            await self._invalidate_content_caches(user_id)
        return {"new_articles": new_articles}

    async def _refresh_batch(self, feeds: List[Dict[str, Any]]) -> RefreshOutcome:
        """Refresh feeds with at most ``REFRESH_CONCURRENCY`` in flight.

        Each feed's result is returned from its own task and tallied after
        ``gather``, so one failure never cancels or corrupts the others.
        """
        outcome = RefreshOutcome()
        if not feeds:
            return outcome

        semaphore = Semaphore(config.REFRESH_CONCURRENCY)

        async def refresh_with_semaphore(feed):
            async with semaphore:
                return await self._refresh_one(feed)

        results = await gather(*(refresh_with_semaphore(feed) for feed in feeds), return_exceptions=True)
        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                if isinstance(result, FeedReaderError):
                    logger.error(f"Failed to refresh feed {feed['id']} ({feed['url']}): {result.message}")
                else:
                    logger.error(
                        f"Unexpected error refreshing feed {feed['id']} ({feed['url']}): {result!r}",
                        exc_info=result,
                    )
                outcome.record_failure(feed, result)
            else:
                outcome.record_success(result)
        return outcome

    @trace_span(
        "ingestion.refresh_all_feeds",
        tracer_name="ingestion",
        attr_from_args=lambda self, user_id: {"user.id": str(user_id)},
    )
    async def refresh_all_feeds(self, user_id: str) -> RefreshOutcome:
        """Refresh every live feed of ``user_id``.

        Raises:
            RateLimitExceededError: The user's refresh-all bucket is empty;
                nothing is fetched or written.
        """
        if not await self.refresh_limiter.consume(user_id, 1):
            logger.info(f"Refresh-all rate limited for user {user_id}")
            raise RateLimitExceededError()

        feeds = await self.db.execute('list_user_feeds', user_id=user_id)
        outcome = await self._refresh_batch(feeds)
        await self._invalidate_feed_lists(user_id)
        if outcome.new_articles:
            await self._invalidate_content_caches(user_id)
        logger.info(f"Refresh-all for user {user_id}: {outcome}")
        return outcome

    def _is_stale(self, feed: Dict[str, Any], interval_hours: int, now: int) -> bool:
        last = feed.get("last_refreshed_at")
        if last is None:
            return True
        return now - int(last) >= interval_hours * SECONDS_PER_HOUR

    async def _refresh_stale_for_user(self, user_id: str, interval_hours: int) -> RefreshOutcome:
        now = self._now()
        feeds = await self.db.execute('list_user_feeds', user_id=user_id)
        stale = [feed for feed in feeds if self._is_stale(feed, interval_hours, now)]

        outcome = await self._refresh_batch(stale)
        outcome.skipped = len(feeds) - len(stale)
        if outcome.new_articles:
            await self._invalidate_content_caches(user_id)
        return outcome

    async def auto_refresh_stale_feeds(self, user_id: str) -> RefreshOutcome:
        """Refresh the user's feeds that are older than their refresh interval.

        Does nothing when the user has switched auto refresh off.
        """
        settings = await self.db.execute('get_user_settings', user_id=user_id)
        if not settings["auto_refresh_enabled"]:
            return RefreshOutcome()
        outcome = await self._refresh_stale_for_user(user_id, settings["refresh_interval_hours"])
        outcome.users_processed = 1
        return outcome

    def verify_cron_secret(self, secret: Optional[str]) -> None:
        """Check a presented cron secret (raw or ``Bearer <secret>``).

        Raises:
            CronAuthError: The server has no secret configured, or it does not match.
        """
        expected = config.CRON_SECRET
        if not expected:
            raise CronAuthError("Cron secret is not configured on the server.")
        presented = (secret or "").strip()
        if presented.startswith("Bearer "):
            presented = presented[len("Bearer "):].strip()
        if not presented or not compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
            raise CronAuthError()

    @trace_span("ingestion.cron_sweep", tracer_name="ingestion")
    async def cron_sweep(self, secret: Optional[str]) -> RefreshOutcome:
        """Refresh stale feeds of every user with auto refresh enabled.

        Failures are isolated per feed and per user. Caches are only
        invalidated for users that received new articles.
        """
        self.verify_cron_secret(secret)

        users = await self.db.execute('list_auto_refresh_users')
        logger.info(f"Cron sweep starting for {len(users)} users")
        outcome = RefreshOutcome()
        for user in users:
            user_id = user["user_id"]
            try:
                user_outcome = await self._refresh_stale_for_user(user_id, user["refresh_interval_hours"])
            except FeedReaderError as e:
                logger.error(f"Cron sweep failed for user {user_id}: {e.message}")
                outcome.users_failed += 1
                continue
            except Exception as e:
                logger.error(f"Unexpected error in cron sweep for user {user_id}: {e!r}", exc_info=e)
                outcome.users_failed += 1
                continue
            outcome.merge(user_outcome)
            outcome.users_processed += 1

        logger.info(
            f"Cron sweep finished: users={outcome.users_processed} user_failures={outcome.users_failed} "
            f"feeds={outcome.attempted} failed={outcome.failed} skipped={outcome.skipped} "
            f"new_articles={outcome.new_articles}"
        )
        return outcome

    # ------------------------------------------------------------------
    # Feed management
    # ------------------------------------------------------------------
    async def _require_feed(self, user_id: str, feed_id: int) -> Dict[str, Any]:
        feed = await self.db.execute('get_feed', user_id=user_id, feed_id=feed_id)
        if not feed:
            raise FeedNotFoundError()
        return feed

    async def update_feed(
        self,
        user_id: str,
        feed_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Edit a feed's title and/or description."""
        if title is not None:
            title = title.strip()
            if not title:
                raise ValidationError("Feed title cannot be empty.")
        await self._require_feed(user_id, feed_id)
        await self.db.execute(
            'update_feed_metadata',
            user_id=user_id,
            feed_id=feed_id,
            title=title,
            description=description,
            now=self._now(),
        )
        await self._invalidate_feed_caches(user_id)
        return await self._require_feed(user_id, feed_id)

    async def delete_feed(self, user_id: str, feed_id: int) -> None:
        """Soft-delete a feed together with its articles and tag links."""
        if not await self.db.execute('soft_delete_feed', user_id=user_id, feed_id=feed_id, now=self._now()):
            raise FeedNotFoundError()
        await self._invalidate_content_caches(user_id)

    async def assign_tags(self, user_id: str, feed_id: int, tag_ids: List[int]) -> List[int]:
        """Replace the feed's tags with ``tag_ids``; every tag must belong to the user."""
        await self._require_feed(user_id, feed_id)
        wanted = sorted(set(tag_ids))
        if wanted:
            owned = await self.db.execute('count_owned_tags', user_id=user_id, tag_ids=wanted)
            if owned != len(wanted):
                raise TagNotFoundError()
        await self.db.execute('replace_feed_tags', feed_id=feed_id, tag_ids=wanted)
        await self._invalidate_feed_caches(user_id)
        return wanted

    async def unassign_tag(self, user_id: str, feed_id: int, tag_id: int) -> bool:
        await self._require_feed(user_id, feed_id)
        removed = await self.db.execute('remove_feed_tag', feed_id=feed_id, tag_id=tag_id)
        if removed:
            await self._invalidate_feed_caches(user_id)
        return removed

    # ------------------------------------------------------------------
    # Memoized reads
    # ------------------------------------------------------------------
    async def list_feeds(self, user_id: str, page: int = 1, per_page: int = 50) -> List[Dict[str, Any]]:
        """Page through a user's feeds, cached for ``CACHE_TTL_SECONDS``."""
        page = max(int(page), 1)
        per_page = max(int(per_page), 1)
        key = feed_list_key(user_id, page, per_page)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        feeds = await self.db.execute(
            'list_user_feeds', user_id=user_id, limit=per_page, offset=(page - 1) * per_page
        )
        await self.cache.set(key, feeds, ttl=config.CACHE_TTL_SECONDS)
        return feeds

    async def feed_statistics(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-feed article counters, cached for ``CACHE_TTL_SECONDS``."""
        key = statistics_key(user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        stats = await self.db.execute('feed_statistics', user_id=user_id)
        await self.cache.set(key, stats, ttl=config.CACHE_TTL_SECONDS)
        return stats

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    async def expire_old_articles(self) -> int:
        """Mark articles past each user's retention window as expired."""
        expired = await self.db.execute('expire_old_articles', now=self._now())
        if expired:
            await self.cache.invalidate_pattern("article:*")
            await self.cache.invalidate_pattern("feed:statistics:user:*")
        return expired

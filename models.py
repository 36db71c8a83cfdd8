#!/usr/bin/env python3
"""
Database models and operations for the feed reader.

All SQLite access goes through ``DatabaseQueue``: a single worker task owns
the connection and runs operations one at a time, so multi-statement
writes (subscribe, bulk insert, soft delete) are atomic with respect to
each other. Callers invoke operations by name::

    feed = await db.execute('get_feed', user_id='u1', feed_id=3)
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any, Tuple

from config import config, get_logger
from dedup import assign_slugs, filter_new_candidates, unique_slug, IDENTITY_LINK, IDENTITY_REDDIT
from errors import DuplicateFeedError, FeedReaderError, StorageError, ValidationError
from telemetry import trace_span
from utils import slugify

logger = get_logger("models")

FEED_COLUMNS = (
    "id, user_id, title, url, slug, description, image_url, feed_type, status, "
    "last_refreshed_at, created_at, updated_at"
)

ARTICLE_COLUMNS = (
    "id, user_id, feed_id, title, slug, description, content, link, image_url, source, "
    "pub_date, is_read, is_starred, is_read_later, status, reddit_post_id, "
    "reddit_permalink, reddit_subreddit, created_at"
)


def initialize_database(conn) -> None:
    """Create the schema from schema.sql (statements are idempotent)."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


def _row_to_dict(row: Optional[Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class DatabaseQueue:
    """Serializes database operations through one worker coroutine."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the worker and wait until the schema is in place."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            # Worker died during startup; surface its exception
            await self.worker_task
        logger.info("Database worker started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            conn = connect(self.db_path)
            conn.row_factory = Row
            conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(conn)
            self.conn = conn
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        raise StorageError(f"Unknown operation: {operation_name}")
                    self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    if not isinstance(e, FeedReaderError):
                        logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Run a named operation on the worker and return its result.

        Raises:
            FeedReaderError: Domain errors raised by the operation, unchanged.
            StorageError: Any other failure (sqlite errors included).
        """
        if not self.running:
            raise StorageError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError("Database worker stopped before completing the operation")
            if "error" in result:
                error = result["error"]
                if isinstance(error, FeedReaderError):
                    raise error
                raise StorageError(f"{operation_name} failed: {error}") from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Feed operations
    # ------------------------------------------------------------------
    def find_feed_by_url(self, user_id: str, url: str) -> Optional[Dict[str, Any]]:
        """Return the user's live feed with this canonical URL, if any."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT {FEED_COLUMNS} FROM feeds WHERE user_id = ? AND url = ? AND status != 'deleted'",
                (user_id, url),
            )
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def get_feed(self, user_id: str, feed_id: int) -> Optional[Dict[str, Any]]:
        """Return a live feed only if it belongs to ``user_id``."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT {FEED_COLUMNS} FROM feeds WHERE id = ? AND user_id = ? AND status != 'deleted'",
                (feed_id, user_id),
            )
            return _row_to_dict(cursor.fetchone())
        finally:
            cursor.close()

    def list_user_feeds(self, user_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        """List a user's live feeds, oldest subscription first, with tag ids."""
        cursor = self.conn.cursor()
        try:
            query = f"SELECT {FEED_COLUMNS} FROM feeds WHERE user_id = ? AND status != 'deleted' ORDER BY created_at, id"
            params: List[Any] = [user_id]
            if limit is not None:
                query += " LIMIT ? OFFSET ?"
                params.extend([limit, offset])
            cursor.execute(query, params)
            feeds = [dict(row) for row in cursor.fetchall()]
            for feed in feeds:
                cursor.execute("SELECT tag_id FROM feed_tags WHERE feed_id = ? ORDER BY tag_id", (feed["id"],))
                feed["tag_ids"] = [row[0] for row in cursor.fetchall()]
            return feeds
        finally:
            cursor.close()

    def _taken_feed_slugs(self, cursor, user_id: str) -> Set[str]:
        cursor.execute("SELECT slug FROM feeds WHERE user_id = ? AND status != 'deleted'", (user_id,))
        return {row[0] for row in cursor.fetchall()}

    def create_feed_with_articles(
        self,
        user_id: str,
        url: str,
        feed_type: str,
        title: str,
        description: Optional[str],
        image_url: Optional[str],
        articles: List[Dict[str, Any]],
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Insert a feed and its first batch of articles in one transaction.

        The URL conflict check and the feed slug probe run inside the same
        transaction as the inserts.

        Returns:
            The new feed row plus ``article_count``.
        """
        now = int(now if now is not None else time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id FROM feeds WHERE user_id = ? AND url = ? AND status != 'deleted'",
                (user_id, url),
            )
            if cursor.fetchone() is not None:
                raise DuplicateFeedError()

            slug = unique_slug(slugify(title, fallback="feed"), self._taken_feed_slugs(cursor, user_id))
            cursor.execute(
                """
                INSERT INTO feeds (user_id, title, url, slug, description, image_url, feed_type,
                                   status, last_refreshed_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'published', ?, ?, ?)
                """,
                (user_id, title, url, slug, description, image_url, feed_type, now, now, now),
            )
            feed_id = cursor.lastrowid
            inserted = self._insert_article_rows(cursor, feed_id, user_id, articles, set(), set(), now)
            self.conn.commit()
        except IntegrityError as e:
            self.conn.rollback()
            if "feeds.url" in str(e) or "idx_feeds_user_url_live" in str(e):
                raise DuplicateFeedError() from e
            raise
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

        feed = self.get_feed(user_id, feed_id)
        feed["article_count"] = inserted
        logger.info(f"Created feed {feed_id} ('{title}') for user {user_id} with {inserted} articles")
        return feed

    def update_feed_metadata(
        self,
        user_id: str,
        feed_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[int] = None,
    ) -> bool:
        now = int(now if now is not None else time())
        assignments = ["updated_at = ?"]
        params: List[Any] = [now]
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        params.extend([feed_id, user_id])

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"UPDATE feeds SET {', '.join(assignments)} WHERE id = ? AND user_id = ? AND status != 'deleted'",
                params,
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def touch_feed_refreshed(self, feed_id: int, refreshed_at: Optional[int] = None) -> None:
        """Stamp ``last_refreshed_at``; called on every refresh attempt."""
        refreshed_at = int(refreshed_at if refreshed_at is not None else time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET last_refreshed_at = ?, updated_at = ? WHERE id = ?",
                (refreshed_at, refreshed_at, feed_id),
            )
            self.conn.commit()
        finally:
            cursor.close()

    def soft_delete_feed(self, user_id: str, feed_id: int, now: Optional[int] = None) -> bool:
        """Mark a feed and its articles deleted and drop its tag links."""
        now = int(now if now is not None else time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE feeds SET status = 'deleted', updated_at = ? WHERE id = ? AND user_id = ? AND status != 'deleted'",
                (now, feed_id, user_id),
            )
            if cursor.rowcount == 0:
                self.conn.rollback()
                return False
            cursor.execute(
                "UPDATE articles SET status = 'deleted', updated_at = ? WHERE feed_id = ?",
                (now, feed_id),
            )
            articles_deleted = cursor.rowcount
            cursor.execute("DELETE FROM feed_tags WHERE feed_id = ?", (feed_id,))
            self.conn.commit()
            logger.info(f"Soft-deleted feed {feed_id} and {articles_deleted} articles for user {user_id}")
            return True
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # Article operations
    # ------------------------------------------------------------------
    def _identity_keys(self, cursor, feed_id: int) -> Set[Tuple[str, str]]:
        cursor.execute("SELECT reddit_post_id, link FROM articles WHERE feed_id = ?", (feed_id,))
        keys: Set[Tuple[str, str]] = set()
        for post_id, link in cursor.fetchall():
            if post_id:
                keys.add((IDENTITY_REDDIT, post_id))
            elif link:
                keys.add((IDENTITY_LINK, link))
        return keys

    def get_existing_identity_keys(self, feed_id: int) -> Set[Tuple[str, str]]:
        """Identity keys of every stored article of the feed, any status.

        Expired and deleted articles count so they are never re-ingested.
        """
        cursor = self.conn.cursor()
        try:
            return self._identity_keys(cursor, feed_id)
        finally:
            cursor.close()

    def _insert_article_rows(
        self,
        cursor,
        feed_id: int,
        user_id: str,
        candidates: List[Dict[str, Any]],
        existing_keys: Set[Tuple[str, str]],
        taken_slugs: Set[str],
        now: int,
    ) -> int:
        fresh = assign_slugs(filter_new_candidates(candidates, existing_keys), taken_slugs)
        if not fresh:
            return 0
        cursor.executemany(
            """
            INSERT INTO articles (user_id, feed_id, title, slug, description, content, link, image_url,
                                  source, pub_date, status, reddit_post_id, reddit_permalink,
                                  reddit_subreddit, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'published', ?, ?, ?, ?, ?)
            """,
            [
                (
                    user_id,
                    feed_id,
                    a["title"],
                    a["slug"],
                    a.get("description"),
                    a.get("content"),
                    a["link"],
                    a.get("image_url"),
                    a.get("source"),
                    int(a.get("pub_date") or now),
                    a.get("reddit_post_id"),
                    a.get("reddit_permalink"),
                    a.get("reddit_subreddit"),
                    now,
                    now,
                )
                for a in fresh
            ],
        )
        return len(fresh)

    def insert_articles(
        self,
        feed_id: int,
        user_id: str,
        articles: List[Dict[str, Any]],
        now: Optional[int] = None,
    ) -> int:
        """Atomically insert the genuinely new articles of a batch.

        Identity and slug checks are repeated against storage inside the
        transaction, so two overlapping refreshes of one feed cannot both
        insert the same article.

        Returns:
            Number of articles inserted.
        """
        now = int(now if now is not None else time())
        cursor = self.conn.cursor()
        try:
            existing = self._identity_keys(cursor, feed_id)
            cursor.execute("SELECT slug FROM articles WHERE feed_id = ?", (feed_id,))
            taken = {row[0] for row in cursor.fetchall()}
            inserted = self._insert_article_rows(cursor, feed_id, user_id, articles, existing, taken, now)
            self.conn.commit()
            return inserted
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def list_articles(self, feed_id: int, status: Optional[str] = None) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            query = f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE feed_id = ?"
            params: List[Any] = [feed_id]
            if status:
                query += " AND status = ?"
                params.append(status)
            cursor.execute(query + " ORDER BY id", params)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_articles(self, feed_id: Optional[int] = None, status: Optional[str] = None) -> int:
        """Count article rows (optionally per feed and status)."""
        clauses, params = [], []
        if feed_id is not None:
            clauses.append("feed_id = ?")
            params.append(feed_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.cursor()
        try:
            cursor.execute(f"SELECT COUNT(*) FROM articles{where}", params)
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    def feed_statistics(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-feed article counters over published articles."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT f.id AS feed_id, f.title AS title,
                       COUNT(a.id) AS total,
                       COALESCE(SUM(CASE WHEN a.is_read = 0 THEN 1 ELSE 0 END), 0) AS unread,
                       COALESCE(SUM(a.is_starred), 0) AS starred,
                       COALESCE(SUM(a.is_read_later), 0) AS read_later
                FROM feeds f
                LEFT JOIN articles a ON a.feed_id = f.id AND a.status = 'published'
                WHERE f.user_id = ? AND f.status != 'deleted'
                GROUP BY f.id, f.title
                ORDER BY f.created_at, f.id
                """,
                (user_id,),
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def expire_old_articles(self, now: Optional[int] = None) -> int:
        """Mark published articles older than each owner's retention window as expired.

        Users without a settings row get ``DEFAULT_RETENTION_DAYS``.

        Returns:
            Number of articles expired.
        """
        now = int(now if now is not None else time())
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                UPDATE articles SET status = 'expired', updated_at = ?
                WHERE status = 'published'
                  AND created_at < ? - 86400 * COALESCE(
                      (SELECT s.article_retention_days FROM user_settings s WHERE s.user_id = articles.user_id),
                      ?)
                """,
                (now, now, config.DEFAULT_RETENTION_DAYS),
            )
            expired = cursor.rowcount
            self.conn.commit()
            if expired:
                logger.info(f"Expired {expired} articles past their retention window")
            return expired
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------
    def _default_settings(self, user_id: str) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "auto_refresh_enabled": True,
            "refresh_interval_hours": config.DEFAULT_REFRESH_INTERVAL_HOURS,
            "article_retention_days": config.DEFAULT_RETENTION_DAYS,
        }

    def get_user_settings(self, user_id: str) -> Dict[str, Any]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT user_id, auto_refresh_enabled, refresh_interval_hours, article_retention_days "
                "FROM user_settings WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        finally:
            cursor.close()
        if row is None:
            return self._default_settings(user_id)
        settings = dict(row)
        settings["auto_refresh_enabled"] = bool(settings["auto_refresh_enabled"])
        return settings

    def save_user_settings(
        self,
        user_id: str,
        auto_refresh_enabled: Optional[bool] = None,
        refresh_interval_hours: Optional[int] = None,
        article_retention_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Upsert the given settings, keeping current values for omitted ones."""
        settings = self.get_user_settings(user_id)
        if auto_refresh_enabled is not None:
            settings["auto_refresh_enabled"] = bool(auto_refresh_enabled)
        if refresh_interval_hours is not None:
            if refresh_interval_hours < 1:
                raise ValidationError("Refresh interval must be at least 1 hour.")
            settings["refresh_interval_hours"] = int(refresh_interval_hours)
        if article_retention_days is not None:
            if article_retention_days < 1:
                raise ValidationError("Article retention must be at least 1 day.")
            settings["article_retention_days"] = int(article_retention_days)

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO user_settings (user_id, auto_refresh_enabled, refresh_interval_hours,
                                           article_retention_days, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    auto_refresh_enabled = excluded.auto_refresh_enabled,
                    refresh_interval_hours = excluded.refresh_interval_hours,
                    article_retention_days = excluded.article_retention_days,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    int(settings["auto_refresh_enabled"]),
                    settings["refresh_interval_hours"],
                    settings["article_retention_days"],
                    int(time()),
                ),
            )
            self.conn.commit()
        finally:
            cursor.close()
        return settings

    def list_auto_refresh_users(self) -> List[Dict[str, Any]]:
        """Users owning live feeds whose auto refresh is on (default on).

        Returns:
            ``[{'user_id': str, 'refresh_interval_hours': int}, ...]``
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT f.user_id AS user_id,
                       COALESCE(s.refresh_interval_hours, ?) AS refresh_interval_hours
                FROM (SELECT DISTINCT user_id FROM feeds WHERE status != 'deleted') f
                LEFT JOIN user_settings s ON s.user_id = f.user_id
                WHERE COALESCE(s.auto_refresh_enabled, 1) = 1
                ORDER BY f.user_id
                """,
                (config.DEFAULT_REFRESH_INTERVAL_HOURS,),
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------
    def create_tag(self, user_id: str, name: str) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT INTO tags (user_id, name, created_at) VALUES (?, ?, ?)",
                (user_id, name, int(time())),
            )
            self.conn.commit()
            return cursor.lastrowid
        finally:
            cursor.close()

    def count_owned_tags(self, user_id: str, tag_ids: List[int]) -> int:
        """How many of ``tag_ids`` (deduplicated) belong to ``user_id``."""
        unique_ids = sorted(set(tag_ids))
        if not unique_ids:
            return 0
        placeholders = ",".join("?" for _ in unique_ids)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"SELECT COUNT(*) FROM tags WHERE user_id = ? AND id IN ({placeholders})",
                [user_id] + unique_ids,
            )
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    def replace_feed_tags(self, feed_id: int, tag_ids: List[int]) -> None:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM feed_tags WHERE feed_id = ?", (feed_id,))
            cursor.executemany(
                "INSERT INTO feed_tags (feed_id, tag_id) VALUES (?, ?)",
                [(feed_id, tag_id) for tag_id in sorted(set(tag_ids))],
            )
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def remove_feed_tag(self, feed_id: int, tag_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM feed_tags WHERE feed_id = ? AND tag_id = ?", (feed_id, tag_id))
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def get_feed_tag_ids(self, feed_id: int) -> List[int]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT tag_id FROM feed_tags WHERE feed_id = ? ORDER BY tag_id", (feed_id,))
            return [row[0] for row in cursor.fetchall()]
        finally:
            cursor.close()

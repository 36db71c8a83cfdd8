#!/usr/bin/env python3
"""
Normalization of fetched payloads into article candidates.

``parse_feed(kind, raw)`` is the single entry point. XML documents go
through feedparser and are handled by the Atom or RSS branch depending on
the detected version; Reddit listings are handled from their decoded JSON.
Every branch produces the same shape::

    {
        "title": str, "description": str, "image_url": str | None,
        "articles": [candidate, ...], "skipped": int,
    }

where each candidate is a dict with title, description, content, link,
image_url, pub_date (epoch seconds), source and, for Reddit posts,
reddit_post_id / reddit_permalink / reddit_subreddit.

Entries missing a title or link are skipped and counted; a feed whose
entries are all skipped is an error.
"""

from calendar import timegm
from html import escape, unescape
from time import time
from typing import Any, Dict, List, Optional
import re

import feedparser

from classifier import FEED_TYPE_REDDIT, FEED_TYPE_RSS, FEED_TYPE_GOOGLE_NEWS
from config import config, get_logger
from errors import (
    EmptySubredditError,
    InvalidFeedError,
    MissingTitleError,
    NoArticlesError,
)
from telemetry import trace_span
from utils import sanitize_html, strip_html, truncate_text

logger = get_logger("feed_parser")

_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)

REDDIT_SELF_PLACEHOLDER = "Discussion post on Reddit"
_REDDIT_IGNORED_THUMBNAILS = {"self", "default", "nsfw", "spoiler", "image"}


def _first_url(items: Any, key: str) -> Optional[str]:
    if not items:
        return None
    if isinstance(items, dict):
        items = [items]
    for item in items:
        value = item.get(key) if hasattr(item, "get") else None
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_image_url(entry) -> Optional[str]:
    """Pick an image for a feedparser entry.

    Search order: image enclosure, media:thumbnail, media:content, item
    image / itunes:image, then the first ``<img src>`` in the summary or
    content markup.
    """
    enclosures = [
        e for e in (entry.get("enclosures") or [])
        if not e.get("type") or str(e.get("type")).startswith("image/")
    ]
    image_field = entry.get("image")
    if isinstance(image_field, str):
        image_field = {"href": image_field}

    for candidate in (
        _first_url(enclosures, "href"),
        _first_url(entry.get("media_thumbnail"), "url"),
        _first_url(entry.get("media_content"), "url"),
        _first_url(image_field, "href"),
    ):
        if candidate:
            return candidate

    markup = " ".join(
        [entry.get("summary") or ""] + [c.get("value") or "" for c in (entry.get("content") or [])]
    )
    match = _IMG_SRC_RE.search(markup)
    return match.group(1) if match else None


def _entry_timestamp(entry) -> int:
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        value = entry.get(field)
        if value:
            try:
                return timegm(value)
            except (TypeError, ValueError, OverflowError):
                continue
    return int(time())


def _entry_link(entry) -> str:
    link = (entry.get("link") or "").strip()
    if link:
        return link
    return _first_url(entry.get("links"), "href") or ""


def _entry_candidate(entry, source: str, max_length: int) -> Optional[Dict[str, Any]]:
    title = strip_html(entry.get("title"))
    link = _entry_link(entry)
    if not title or not link:
        return None

    contents = entry.get("content") or []
    body = contents[0].get("value") if contents else None
    raw_description = entry.get("summary") or body or ""

    content = sanitize_html(body) if body else sanitize_html(raw_description)
    return {
        "title": title,
        "description": truncate_text(strip_html(raw_description), max_length),
        "content": content or None,
        "link": link,
        "image_url": extract_image_url(entry),
        "pub_date": _entry_timestamp(entry),
        "source": source,
    }


def _fold_entries(entries: List[Any], source: str, max_length: int) -> Dict[str, Any]:
    if not entries:
        raise NoArticlesError("No articles found in the feed.")

    articles: List[Dict[str, Any]] = []
    skipped = 0
    for idx, entry in enumerate(entries):
        candidate = _entry_candidate(entry, source, max_length)
        if candidate is None:
            skipped += 1
            logger.warning(f"Skipping entry {idx} of '{source}': missing title or link")
            continue
        articles.append(candidate)

    if not articles:
        raise NoArticlesError()
    return {"articles": articles, "skipped": skipped}


def _parse_atom(parsed, max_length: int) -> Dict[str, Any]:
    feed = parsed.feed
    title = (feed.get("title") or "").strip()
    if not title:
        raise MissingTitleError("Invalid Atom feed: missing or empty title.")
    image = feed.get("icon") or feed.get("logo") or (feed.get("image") or {}).get("href")
    result = {
        "title": title,
        "description": strip_html(feed.get("subtitle")),
        "image_url": image or None,
    }
    result.update(_fold_entries(parsed.entries, title, max_length))
    return result


def _parse_rss(parsed, max_length: int) -> Dict[str, Any]:
    feed = parsed.feed
    title = (feed.get("title") or "").strip()
    if not title:
        raise MissingTitleError("Invalid RSS feed: missing or empty title.")
    # feedparser folds <image><url> and itunes:image into feed.image.href
    image = (feed.get("image") or {}).get("href")
    result = {
        "title": title,
        "description": strip_html(feed.get("subtitle")),
        "image_url": image or None,
    }
    result.update(_fold_entries(parsed.entries, title, max_length))
    return result


@trace_span("parse_xml_feed", tracer_name="parser")
def parse_xml_feed(content: bytes | str, max_length: Optional[int] = None) -> Dict[str, Any]:
    """Parse an RSS or Atom document.

    Raises:
        InvalidFeedError: The document is neither RSS nor Atom.
        MissingTitleError: The feed has no usable title.
        NoArticlesError: No entry has both a title and a link.
    """
    max_length = max_length or config.DESCRIPTION_MAX_LENGTH
    parsed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)
    version = parsed.get("version") or ""

    if parsed.bozo and parsed.get("bozo_exception") is not None:
        logger.debug(f"Feed parsed with warnings ({version or 'unknown'}): {parsed.bozo_exception}")

    if version.startswith("atom"):
        return _parse_atom(parsed, max_length)
    if version.startswith("rss"):
        return _parse_rss(parsed, max_length)
    raise InvalidFeedError()


def _reddit_content(selftext: str, is_self: bool, link: str) -> Optional[str]:
    if selftext:
        paragraphs = selftext.split("\n\n")
        return "".join(
            f"<p>{escape(para, quote=False).replace(chr(10), '<br>')}</p>" for para in paragraphs
        )
    if is_self:
        return None
    href = escape(link)
    return (
        "<p>This is a link post to an external resource.</p>"
        f'<p><a href="{href}" target="_blank" rel="noopener noreferrer">Open external link: {href}</a></p>'
    )


def _reddit_thumbnail(thumbnail: Any) -> Optional[str]:
    if not isinstance(thumbnail, str) or thumbnail in _REDDIT_IGNORED_THUMBNAILS:
        return None
    if thumbnail.startswith(("http://", "https://")):
        return thumbnail
    return None


def _reddit_candidate(post: Dict[str, Any], base_url: str, max_length: int) -> Optional[Dict[str, Any]]:
    data = post.get("data") or {}
    title = unescape((data.get("title") or "").strip())
    permalink = data.get("permalink") or ""
    is_self = bool(data.get("is_self"))
    link = f"{base_url}{permalink}" if is_self and permalink else (data.get("url") or "").strip()
    if not title or not link:
        return None

    selftext = data.get("selftext") or ""
    if selftext:
        description = truncate_text(selftext.strip(), max_length)
    elif is_self:
        description = REDDIT_SELF_PLACEHOLDER
    else:
        description = f"External link: {link}"

    created = data.get("created_utc")
    return {
        "title": title,
        "description": description,
        "content": _reddit_content(selftext, is_self, link),
        "link": link,
        "image_url": _reddit_thumbnail(data.get("thumbnail")),
        "pub_date": int(created) if isinstance(created, (int, float)) else int(time()),
        "source": f"u/{data.get('author') or '[deleted]'}",
        "reddit_post_id": data.get("id") or None,
        "reddit_permalink": permalink or None,
        "reddit_subreddit": data.get("subreddit") or None,
    }


@trace_span(
    "parse_reddit_listing",
    tracer_name="parser",
    attr_from_args=lambda listing, subreddit, max_length=None: {"reddit.subreddit": subreddit},
)
def parse_reddit_listing(listing: Dict[str, Any], subreddit: str, max_length: Optional[int] = None) -> Dict[str, Any]:
    """Parse a decoded subreddit ``.json`` listing.

    Raises:
        EmptySubredditError: The listing has no posts.
        NoArticlesError: No post has both a title and a link.
    """
    max_length = max_length or config.DESCRIPTION_MAX_LENGTH
    children = ((listing or {}).get("data") or {}).get("children") or []
    if not children:
        raise EmptySubredditError(
            f'No posts found in subreddit "{subreddit}". The subreddit might be empty or restricted.'
        )

    articles: List[Dict[str, Any]] = []
    skipped = 0
    for idx, post in enumerate(children):
        candidate = _reddit_candidate(post, config.REDDIT_BASE_URL, max_length)
        if candidate is None:
            skipped += 1
            logger.warning(f"Skipping Reddit post {idx} in r/{subreddit}: missing title or link")
            continue
        articles.append(candidate)

    if not articles:
        raise NoArticlesError(f'No valid posts found in subreddit "{subreddit}".')

    return {
        "title": f"r/{subreddit}",
        "description": f"Posts from the {subreddit} subreddit",
        "image_url": None,
        "articles": articles,
        "skipped": skipped,
    }


def parse_feed(kind: str, raw: Any, subreddit: Optional[str] = None) -> Dict[str, Any]:
    """Dispatch a fetched payload to the parser for its source kind.

    Args:
        kind: One of the classifier feed types.
        raw: XML bytes for rss/google_news, the decoded listing for reddit.
        subreddit: Subreddit name, required for reddit.
    """
    if kind == FEED_TYPE_REDDIT:
        if not subreddit:
            raise ValueError("subreddit is required for reddit feeds")
        return parse_reddit_listing(raw, subreddit)
    if kind in (FEED_TYPE_RSS, FEED_TYPE_GOOGLE_NEWS):
        return parse_xml_feed(raw)
    raise ValueError(f"Unknown feed kind: {kind}")

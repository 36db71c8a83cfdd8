#!/usr/bin/env python3
"""
Article identity and slug assignment.

A Reddit candidate is identified by its post id; any other candidate by
its link. Candidates whose identity is already stored for the feed, or
that repeat an identity seen earlier in the same batch, are dropped.
Surviving candidates get slugs that are unique within the feed, with
numeric suffixes (``-2``, ``-3``, ...) handed out in first-seen order.
"""

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from config import get_logger
from utils import slugify

logger = get_logger("dedup")

IDENTITY_REDDIT = "reddit"
IDENTITY_LINK = "link"


def identity_key(candidate: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """Return the ``(kind, value)`` identity of a candidate, or None if it has none."""
    post_id = candidate.get("reddit_post_id")
    if post_id:
        return (IDENTITY_REDDIT, str(post_id))
    link = candidate.get("link")
    if link:
        return (IDENTITY_LINK, str(link))
    return None


def filter_new_candidates(
    candidates: Iterable[Dict[str, Any]],
    existing_keys: Set[Tuple[str, str]],
) -> List[Dict[str, Any]]:
    """Keep candidates whose identity is neither stored nor repeated in the batch.

    Order is preserved; the first occurrence of a repeated identity wins.
    """
    seen = set(existing_keys)
    fresh: List[Dict[str, Any]] = []
    dropped = 0
    for candidate in candidates:
        key = identity_key(candidate)
        if key is None or key in seen:
            dropped += 1
            continue
        seen.add(key)
        fresh.append(candidate)
    if dropped:
        logger.debug(f"Dropped {dropped} already-known or repeated candidates")
    return fresh


def unique_slug(base: str, taken: Set[str]) -> str:
    """Return ``base`` or the first of ``base-2``, ``base-3``, ... not in ``taken``."""
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def assign_slugs(
    candidates: List[Dict[str, Any]],
    taken: Optional[Set[str]] = None,
    fallback: str = "article",
) -> List[Dict[str, Any]]:
    """Return copies of ``candidates`` with a feed-unique ``slug`` set on each.

    Args:
        candidates: New candidates in batch order.
        taken: Slugs already stored for the feed.
        fallback: Base slug for titles that slugify to nothing.
    """
    used = set(taken or ())
    assigned: List[Dict[str, Any]] = []
    for candidate in candidates:
        slug = unique_slug(slugify(candidate.get("title"), fallback=fallback), used)
        used.add(slug)
        assigned.append({**candidate, "slug": slug})
    return assigned

#!/usr/bin/env python3
"""Error types shared across the ingestion engine.

Kept in a leaf module so fetcher, parser, storage and orchestrator can all
raise and catch them without circular imports. Every error carries a
user-facing message and a stable machine-readable ``code``.
"""

from typing import Dict, Any, Optional


class FeedReaderError(Exception):
    """Base class for every error surfaced by the engine.

    Attributes:
        message: Human readable message, safe to show to the user.
        code: Stable identifier callers can branch on.
        details: Optional diagnostic payload (never shown to users).
    """

    code = "internal_error"
    default_message = "Something went wrong while processing the feed."

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.details = details or {}


# Fetch errors

class FetchError(FeedReaderError):
    """Network failure or non-success response from the remote source."""

    code = "fetch_failed"
    default_message = "Failed to fetch the feed."


class SourceRateLimitedError(FetchError):
    code = "source_rate_limited"
    default_message = "Reddit rate limit exceeded. Please try again in a few minutes."


class SubredditNotFoundError(FetchError):
    code = "subreddit_not_found"

    def __init__(self, subreddit: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f'Subreddit "{subreddit}" not found. Please check the name and try again.',
            details,
        )
        self.subreddit = subreddit


class SubredditForbiddenError(FetchError):
    code = "subreddit_forbidden"

    def __init__(self, subreddit: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f'Subreddit "{subreddit}" is private, banned, or quarantined.',
            details,
        )
        self.subreddit = subreddit


class FetchTimeoutError(FetchError):
    code = "fetch_timeout"
    default_message = "Feed parsing timed out. The feed may be too slow to respond."


# Parse errors

class ParseError(FeedReaderError):
    code = "parse_failed"
    default_message = "Failed to parse the feed."


class MissingTitleError(ParseError):
    code = "missing_title"
    default_message = "Feed is missing a title."


class NoArticlesError(ParseError):
    code = "no_articles"
    default_message = "No valid articles found in the feed."


class InvalidFeedError(ParseError):
    code = "invalid_feed"
    default_message = "This URL does not contain a valid RSS or Atom feed."


class EmptySubredditError(ParseError):
    code = "empty_subreddit"
    default_message = "No posts found in subreddit."


# Orchestration errors

class ValidationError(FeedReaderError):
    code = "bad_request"
    default_message = "Invalid input."


class InvalidUrlError(ValidationError):
    default_message = "Feed URL cannot be empty."


class DuplicateFeedError(FeedReaderError):
    code = "conflict"
    default_message = "You have already subscribed to this feed."


class FeedNotFoundError(FeedReaderError):
    code = "not_found"
    default_message = "Feed not found."


class TagNotFoundError(FeedReaderError):
    code = "not_found"
    default_message = "One or more tags not found."


class RateLimitExceededError(FeedReaderError):
    code = "too_many_requests"
    default_message = "You are refreshing too often. Please wait a few minutes and try again."


class CronAuthError(FeedReaderError):
    code = "unauthorized"
    default_message = "Unauthorized"


class StorageError(FeedReaderError):
    code = "storage_error"
    default_message = "A storage error occurred."


__all__ = [
    "FeedReaderError",
    "FetchError",
    "SourceRateLimitedError",
    "SubredditNotFoundError",
    "SubredditForbiddenError",
    "FetchTimeoutError",
    "ParseError",
    "MissingTitleError",
    "NoArticlesError",
    "InvalidFeedError",
    "EmptySubredditError",
    "ValidationError",
    "InvalidUrlError",
    "DuplicateFeedError",
    "FeedNotFoundError",
    "TagNotFoundError",
    "RateLimitExceededError",
    "CronAuthError",
    "StorageError",
]

#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""


class FetchError(PipelineError):
    """Raised when an HTTP fetch ultimately fails.

    Attributes:
        status: Last HTTP status seen, or None for network-level failures.
        attempts: Number of attempts made before giving up.
    """

    def __init__(self, message: str, status: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class BlockedBySite(FetchError):
    """The origin refused the request (401/403/429)."""

    BLOCKING_STATUSES = frozenset({401, 403, 429})


class ParseError(PipelineError):
    """Raised when a feed document cannot be parsed."""


class ContentTooShort(PipelineError):
    """Raised when extracted article text is below the minimum length."""

    def __init__(self, length: int):
        super().__init__("Content too short")
        self.length = length


class FeedNotFound(PipelineError):
    def __init__(self, feed_id: str):
        super().__init__(f"Feed not found: {feed_id}")
        self.feed_id = feed_id


class ArticleNotFound(PipelineError):
    def __init__(self, article_id: str):
        super().__init__(f"Article not found: {article_id}")
        self.article_id = article_id


class FeedDisabled(PipelineError):
    """Raised when a sweep is requested for a circuit-broken feed."""

    def __init__(self, feed_id: str, consecutive_failures: int = 0):
        super().__init__(
            f"Feed {feed_id} is disabled after {consecutive_failures} consecutive failures; re-enable it manually"
        )
        self.feed_id = feed_id
        self.consecutive_failures = consecutive_failures


class LoggingFailure(PipelineError):
    """Raised internally when an activity log entry cannot be persisted."""


__all__ = [
    "PipelineError",
    "FetchError",
    "BlockedBySite",
    "ParseError",
    "ContentTooShort",
    "FeedNotFound",
    "FeedDisabled",
    "ArticleNotFound",
    "LoggingFailure",
]

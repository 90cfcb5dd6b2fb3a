#!/usr/bin/env python3
"""
Utility classes and functions for the feed sweeping system.

This module contains shared utilities used by the sweeper and the article
processor, including pacing, retry backoff and HTML-to-text helpers.
"""

from asyncio import Lock, sleep
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from random import uniform
from time import monotonic
from typing import Optional
import re

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """Pacing limiter that enforces a minimum interval between requests.

    Used for the fixed inter-feed and inter-article delays; a zero interval
    disables pacing entirely.
    """

    def __init__(self, requests_per_minute: int = 0, min_interval: Optional[float] = None):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
            min_interval: Explicit minimum spacing in seconds (overrides requests_per_minute).
        """
        if min_interval is not None:
            self.min_interval = max(0.0, min_interval)
        else:
            self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = None
        self._lock = Lock()

    async def acquire(self):
        """Wait, if necessary, so that calls are at least min_interval apart.

        The first call never waits.
        """
        if self.min_interval <= 0:
            return

        async with self._lock:
            if self.last_request_time is not None:
                time_since_last = monotonic() - self.last_request_time
                if time_since_last < self.min_interval:
                    wait_time = self.min_interval - time_since_last
                    logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                    await sleep(wait_time)
            self.last_request_time = monotonic()


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff and jitter."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 10.0,
                 jitter_ratio: float = 0.3):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
            jitter_ratio: Upper bound of the random jitter, as a fraction of the exponential delay
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds: base * 2^attempt plus up to jitter_ratio of that, capped at max_delay
        """
        exponential = self.base_delay * (2 ** attempt)
        jitter = uniform(0, exponential * self.jitter_ratio) if exponential > 0 else 0
        return min(exponential + jitter, self.max_delay)

    def parse_retry_after(self, value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
        """Interpret a Retry-After header (delta-seconds or HTTP-date), capped at max_delay."""
        if not value:
            return None
        value = value.strip()
        if value.isdigit():
            return min(float(value), self.max_delay)
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return min(max(0.0, (when - now).total_seconds()), self.max_delay)

    async def sleep_for_attempt(self, attempt: int, override: Optional[float] = None, sleeper=sleep) -> float:
        """Sleep for the calculated (or overridden) delay and return the delay used."""
        delay = override if override is not None else self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleeper(delay)
        return delay


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


_WHITESPACE_RE = re.compile(r'\s+')


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(' ', text or '').strip()


def html_to_text(html_content: Optional[str], max_length: Optional[int] = None) -> str:
    """Strip markup from an HTML fragment and return collapsed plain text.

    Script/style/nav/footer elements are dropped entirely. Non-HTML input is
    returned with whitespace collapsed.
    """
    if not html_content:
        return ""
    if '<' not in html_content:
        text = collapse_whitespace(html_content)
    else:
        soup = BeautifulSoup(html_content, 'html.parser')
        for tag in soup(["script", "style", "nav", "footer", "noscript", "iframe"]):
            tag.decompose()
        text = collapse_whitespace(soup.get_text(' '))
    if max_length is not None and len(text) > max_length:
        text = text[:max_length]
    return text

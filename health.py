#!/usr/bin/env python3
"""
Feed health state machine (circuit breaker).

A failed sweep moves a feed to error, and MAX_CONSECUTIVE_FAILURES failures in
a row trip the breaker to disabled. A successful sweep that yields nothing
usable is a warning. Only an explicit re-enable brings a disabled feed back.
"""

from datetime import datetime, timedelta
from typing import Optional

from config import config
from entities import (
    Feed,
    FeedHealth,
    HEALTH_DISABLED,
    HEALTH_ERROR,
    HEALTH_HEALTHY,
    HEALTH_WARNING,
    utcnow,
)

FAILURE_PENALTY = 10
SUCCESS_BONUS = 5
REENABLE_SCORE = 50
ERROR_WINDOW = timedelta(hours=24)
MAX_ERROR_LENGTH = 500


def record_failure(health: FeedHealth, error: str, now: Optional[datetime] = None,
                   max_failures: Optional[int] = None) -> FeedHealth:
    now = now or utcnow()
    max_failures = max_failures or config.MAX_CONSECUTIVE_FAILURES
    # errorCount24h restarts once the previous check falls out of the window
    if health.last_check is None or now - health.last_check > ERROR_WINDOW:
        error_count = 1
    else:
        error_count = health.error_count_24h + 1
    failures = health.consecutive_failures + 1
    return FeedHealth(
        status=HEALTH_DISABLED if failures >= max_failures else HEALTH_ERROR,
        reliability_score=max(0, health.reliability_score - FAILURE_PENALTY),
        last_check=now,
        last_success=health.last_success,
        error_count_24h=error_count,
        consecutive_failures=failures,
        last_error=(error or "Unknown error")[:MAX_ERROR_LENGTH],
    )


def record_success(health: FeedHealth, now: Optional[datetime] = None, warning: Optional[str] = None) -> FeedHealth:
    """Reset the failure streak; ``warning`` marks a fetch that worked but yielded nothing usable."""
    now = now or utcnow()
    error_count = health.error_count_24h
    if health.last_check is not None and now - health.last_check > ERROR_WINDOW:
        error_count = 0
    return FeedHealth(
        status=HEALTH_WARNING if warning else HEALTH_HEALTHY,
        reliability_score=min(100, health.reliability_score + SUCCESS_BONUS),
        last_check=now,
        last_success=now,
        error_count_24h=error_count,
        consecutive_failures=0,
        last_error=warning,
    )


def reenable(health: FeedHealth, now: Optional[datetime] = None) -> FeedHealth:
    return FeedHealth(
        status=HEALTH_HEALTHY,
        reliability_score=REENABLE_SCORE,
        last_check=now or utcnow(),
        last_success=health.last_success,
        error_count_24h=0,
        consecutive_failures=0,
        last_error=None,
    )


def effective_interval(feed: Feed) -> int:
    return feed.fetch_interval_minutes or config.FETCH_INTERVAL_MINUTES


def minutes_until_due(feed: Feed, now: Optional[datetime] = None) -> float:
    """0 when the feed is due (or has never been fetched)."""
    if feed.last_fetched_at is None:
        return 0.0
    now = now or utcnow()
    elapsed = (now - feed.last_fetched_at).total_seconds() / 60.0
    return max(0.0, effective_interval(feed) - elapsed)


def is_due(feed: Feed, now: Optional[datetime] = None) -> bool:
    return minutes_until_due(feed, now) <= 0

from datetime import datetime, timezone

import pytest

from config import config
from http_client import fetch_with_retry
from utils import RetryHelper


class RecordingSleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_retry_after_is_honoured(origin, session):
    origin.set_sequence("/busy", [
        (429, "slow down", {"Retry-After": "2"}),
        (200, "<rss/>", None),
    ])

    result = await fetch_with_retry(session, origin.url("/busy"), max_retries=3, base_delay=0.01)

    assert result.ok
    assert result.attempts == 2
    assert result.body == b"<rss/>"
    first, second = origin.requests[0][2], origin.requests[1][2]
    assert second - first >= 2.0


@pytest.mark.asyncio
async def test_404_returns_after_one_attempt(origin, session):
    sleeper = RecordingSleeper()

    result = await fetch_with_retry(session, origin.url("/missing"), max_retries=3, sleeper=sleeper)

    assert result.attempts == 1
    assert result.status == 404
    assert result.error == "HTTP 404"
    assert origin.hits("/missing") == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_server_errors_retry_until_exhausted(origin, session):
    origin.set("/down", "oops", status=503)
    sleeper = RecordingSleeper()

    result = await fetch_with_retry(session, origin.url("/down"), max_retries=2, base_delay=1.0,
                                    max_delay=10.0, sleeper=sleeper)

    assert result.attempts == 3
    assert result.error == "HTTP 503"
    assert origin.hits("/down") == 3
    assert len(sleeper.delays) == 2
    assert 1.0 <= sleeper.delays[0] <= 1.3
    assert 2.0 <= sleeper.delays[1] <= 2.6


@pytest.mark.asyncio
async def test_not_modified_is_not_an_error(origin, session):
    origin.set("/feed", "<rss/>", etag="v1")

    result = await fetch_with_retry(session, origin.url("/feed"), headers={"If-None-Match": '"v1"'})

    assert result.not_modified
    assert result.error is None
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_unexpected_status_is_terminal(origin, session):
    origin.set("/teapot", "no", status=418)

    result = await fetch_with_retry(session, origin.url("/teapot"), max_retries=3)

    assert result.attempts == 1
    assert result.error == "HTTP 418"


@pytest.mark.asyncio
async def test_network_errors_are_retried(session):
    sleeper = RecordingSleeper()

    result = await fetch_with_retry(session, "http://127.0.0.1:9/feed", max_retries=1,
                                    base_delay=0.5, sleeper=sleeper, timeout=2)

    assert result.status is None
    assert result.attempts == 2
    assert result.error
    assert len(sleeper.delays) == 1


@pytest.mark.asyncio
async def test_default_user_agent_is_added(origin, session, monkeypatch):
    monkeypatch.setattr(config, "USER_AGENT", "")
    origin.set("/feed", "<rss/>")

    await fetch_with_retry(session, origin.url("/feed"))

    headers = origin.requests[0][1]
    assert headers.get("User-Agent", "").startswith("Mozilla/5.0")


def test_backoff_is_capped_and_jittered():
    helper = RetryHelper(max_retries=5, base_delay=1.0, max_delay=10.0)
    for attempt in range(5):
        delay = helper.calculate_delay(attempt)
        assert 2 ** attempt <= delay or delay == 10.0
        assert delay <= min(10.0, (2 ** attempt) * 1.3)


def test_retry_after_accepts_seconds_and_http_dates():
    helper = RetryHelper(max_delay=30.0)
    now = datetime(2026, 2, 2, 12, 0, 0, tzinfo=timezone.utc)

    assert helper.parse_retry_after("2") == 2.0
    assert helper.parse_retry_after("120") == 30.0
    assert helper.parse_retry_after("Mon, 02 Feb 2026 12:00:05 GMT", now=now) == 5.0
    assert helper.parse_retry_after("Mon, 02 Feb 2026 11:00:00 GMT", now=now) == 0.0
    assert helper.parse_retry_after("garbage") is None
    assert helper.parse_retry_after(None) is None

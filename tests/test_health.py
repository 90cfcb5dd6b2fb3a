from datetime import datetime, timedelta, timezone

from config import config
from entities import Feed, FeedHealth, HEALTH_DISABLED, HEALTH_ERROR, HEALTH_HEALTHY, HEALTH_WARNING
from health import effective_interval, is_due, minutes_until_due, reenable, record_failure, record_success

NOW = datetime(2026, 2, 2, 12, 0, tzinfo=timezone.utc)


def test_five_consecutive_failures_disable_the_feed():
    health = FeedHealth()
    for i in range(4):
        health = record_failure(health, "HTTP 500", now=NOW + timedelta(minutes=i))
        assert health.status == HEALTH_ERROR

    health = record_failure(health, "HTTP 500", now=NOW + timedelta(minutes=5))

    assert health.status == HEALTH_DISABLED
    assert health.consecutive_failures == 5
    assert health.reliability_score == 50
    assert health.error_count_24h == 5
    assert health.last_error == "HTTP 500"


def test_error_count_restarts_outside_24h_window():
    health = FeedHealth(last_check=NOW - timedelta(hours=25), error_count_24h=7, consecutive_failures=1)
    health = record_failure(health, "timeout", now=NOW)
    assert health.error_count_24h == 1
    assert health.consecutive_failures == 2


def test_reliability_score_has_a_floor():
    health = FeedHealth(reliability_score=5)
    assert record_failure(health, "boom", now=NOW, max_failures=99).reliability_score == 0


def test_success_resets_streak_and_caps_score():
    health = FeedHealth(status=HEALTH_ERROR, reliability_score=98, consecutive_failures=3,
                        error_count_24h=3, last_check=NOW - timedelta(minutes=10), last_error="HTTP 500")

    health = record_success(health, now=NOW)

    assert health.status == HEALTH_HEALTHY
    assert health.reliability_score == 100
    assert health.consecutive_failures == 0
    assert health.error_count_24h == 3
    assert health.last_success == NOW
    assert health.last_error is None


def test_success_with_warning():
    health = record_success(FeedHealth(), now=NOW, warning="Feed returned no parseable items")
    assert health.status == HEALTH_WARNING
    assert health.last_error == "Feed returned no parseable items"


def test_reenable_resets_to_probation_score():
    health = FeedHealth(status=HEALTH_DISABLED, reliability_score=0, consecutive_failures=6, last_error="x")
    health = reenable(health, now=NOW)
    assert health.status == HEALTH_HEALTHY
    assert health.reliability_score == 50
    assert health.consecutive_failures == 0
    assert health.last_error is None


def test_interval_eligibility(monkeypatch):
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 30)
    never = Feed(id="f", source_id="s", url="https://x.com/rss")
    recent = Feed(id="f", source_id="s", url="https://x.com/rss", last_fetched_at=NOW - timedelta(minutes=10))
    override = Feed(id="f", source_id="s", url="https://x.com/rss", fetch_interval_minutes=5,
                    last_fetched_at=NOW - timedelta(minutes=10))

    assert is_due(never, NOW)
    assert not is_due(recent, NOW)
    assert minutes_until_due(recent, NOW) == 20
    assert effective_interval(override) == 5
    assert is_due(override, NOW)

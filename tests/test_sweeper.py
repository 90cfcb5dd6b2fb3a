import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from config import config
from conftest import build_rss
from entities import Article, Feed, HEALTH_DISABLED, HEALTH_WARNING, to_iso
from errors import FeedNotFound
from models import StorageError
from sweeper import MSG_HASH_MATCH, MSG_NOT_MODIFIED, FeedSweeper
from urls import article_id_for


class CountingDb:
    """Wraps a DatabaseQueue and counts operations by name."""

    def __init__(self, db):
        self.db = db
        self.calls = Counter()

    async def execute(self, operation_name, **params):
        self.calls[operation_name] += 1
        return await self.db.execute(operation_name, **params)


class FailingUpsertDb(CountingDb):
    """Fails the first upsert of one article, like a locked database would."""

    def __init__(self, db, article_id):
        super().__init__(db)
        self.article_id = article_id

    async def execute(self, operation_name, **params):
        if operation_name == "upsert_article" and self.article_id and params["article"]["id"] == self.article_id:
            self.article_id = None
            raise StorageError("upsert_article: database is locked")
        return await super().execute(operation_name, **params)


def _now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture(autouse=True)
def fast_config(monkeypatch):
    monkeypatch.setattr(config, 'MAX_RETRIES', 0)
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 30)
    monkeypatch.setattr(config, 'USER_AGENT', "")


async def _seed(db, origin, path="/feed.xml", feed_id="f1", source_id="src"):
    await db.execute('seed_feed', feed_id=feed_id, source_id=source_id, url=origin.url(path))


@pytest.mark.asyncio
async def test_new_items_are_queued(db, origin, session):
    now = _now()
    origin.set("/feed.xml", build_rss([
        ("First", "https://news.example.com/first?utm_source=rss", now - timedelta(hours=1)),
        ("Second", "https://news.example.com/second", now - timedelta(hours=2)),
    ]))
    await _seed(db, origin)

    outcome = await FeedSweeper(db, session).sweep("f1")

    assert outcome.ok
    assert outcome.status_code == 200
    assert outcome.to_dict() == {
        "ok": True, "created": 2, "updated": 0, "skipped": 0, "total": 2, "nextFetchInMinutes": 30,
    }
    stored = Article.from_row(await db.execute('get_article', article_id=article_id_for("https://news.example.com/first")))
    assert stored.url == "https://news.example.com/first"
    assert stored.original_url == "https://news.example.com/first?utm_source=rss"
    assert stored.lifecycle == "queued"
    assert stored.summary == "Summary for First"
    assert stored.published_at == now - timedelta(hours=1)

    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.last_seen_article_date == now - timedelta(hours=1)
    assert len(feed.recent_hashes) == 2
    assert feed.last_content_hash
    assert feed.last_fetched_at is not None


@pytest.mark.asyncio
async def test_unchanged_feed_is_skipped_on_repeat_sweeps(db, origin, session, monkeypatch):
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 0)
    now = _now()
    origin.set("/feed.xml", build_rss([("Only", "https://news.example.com/only", now - timedelta(hours=1))]))
    await _seed(db, origin)
    sweeper = FeedSweeper(db, session)

    first = await sweeper.sweep("f1")
    second = await sweeper.sweep("f1")
    third = await sweeper.sweep("f1")

    assert first.created == 1
    for outcome in (second, third):
        assert outcome.to_dict()["skipped"] is True
        assert outcome.message == MSG_HASH_MATCH
        assert outcome.created == 0
    assert await db.execute('count_articles') == 1


@pytest.mark.asyncio
async def test_protocol_cache_sends_validators_and_honours_304(db, origin, session, monkeypatch):
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 0)
    origin.set("/feed.xml", build_rss([("Only", "https://news.example.com/only", None)]), etag="rev-1")
    await _seed(db, origin)
    sweeper = FeedSweeper(db, session)

    await sweeper.sweep("f1")
    outcome = await sweeper.sweep("f1")

    assert outcome.message == MSG_NOT_MODIFIED
    assert outcome.to_dict()["skipped"] is True
    assert origin.requests[-1][1].get("If-None-Match") == '"rev-1"'


@pytest.mark.asyncio
async def test_interval_skip_makes_no_request(db, origin, session):
    origin.set("/feed.xml", build_rss([("Only", "https://news.example.com/only", None)]))
    await _seed(db, origin)
    sweeper = FeedSweeper(db, session)

    await sweeper.sweep("f1")
    outcome = await sweeper.sweep("f1")

    assert outcome.interval_skip
    assert outcome.to_dict()["skipped"] is True
    assert outcome.message.startswith("Skipped: Interval 30m not passed")
    assert origin.hits("/feed.xml") == 1


@pytest.mark.asyncio
async def test_items_at_or_before_high_water_mark_never_touch_articles(db, origin, session):
    now = _now()
    threshold = now - timedelta(hours=1)
    origin.set("/feed.xml", build_rss([
        ("Old 1", "https://news.example.com/old-1", threshold),
        ("Old 2", "https://news.example.com/old-2", threshold - timedelta(hours=3)),
        ("Old 3", "https://news.example.com/old-3", threshold - timedelta(days=2)),
    ]))
    await _seed(db, origin)
    await db.execute('update_feed', feed_id='f1', fields={'last_seen_article_date': to_iso(threshold)})
    counting = CountingDb(db)

    outcome = await FeedSweeper(counting, session).sweep("f1")

    assert outcome.ok
    assert outcome.created == 0
    assert outcome.skipped == 3
    assert counting.calls['get_article'] == 0
    assert counting.calls['upsert_article'] == 0
    assert counting.calls['update_article'] == 0


@pytest.mark.asyncio
async def test_end_to_end_two_newer_items_then_skip(db, origin, session):
    now = _now()
    threshold = now - timedelta(hours=3)
    origin.set("/feed.xml", build_rss([
        ("Newest", "https://news.example.com/newest", now - timedelta(minutes=30)),
        ("Newer", "https://news.example.com/newer", now - timedelta(hours=1)),
        ("Older", "https://news.example.com/older", now - timedelta(hours=5)),
    ]))
    await _seed(db, origin)
    await db.execute('update_feed', feed_id='f1', fields={'last_seen_article_date': to_iso(threshold)})
    sweeper = FeedSweeper(db, session)

    first = await sweeper.sweep("f1")
    second = await sweeper.sweep("f1")

    assert first.created == 2
    assert first.total == 3
    assert second.to_dict()["skipped"] is True
    assert await db.execute('count_articles') == 2
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.last_seen_article_date == now - timedelta(minutes=30)


@pytest.mark.asyncio
async def test_forced_sweep_ignores_threshold_but_keeps_recent_hashes(db, origin, session):
    now = _now()
    origin.set("/feed.xml", build_rss([
        ("Seen", "https://news.example.com/seen", now - timedelta(hours=4)),
        ("Backfill", "https://news.example.com/backfill", now - timedelta(hours=5)),
    ]))
    await _seed(db, origin)
    await db.execute('update_feed', feed_id='f1', fields={
        'last_seen_article_date': to_iso(now - timedelta(hours=1)),
        'recent_hashes': f'["{article_id_for("https://news.example.com/seen")}"]',
    })

    outcome = await FeedSweeper(db, session).sweep("f1", force=True)

    assert outcome.created == 1
    assert await db.execute('get_article', article_id=article_id_for("https://news.example.com/backfill"))
    assert await db.execute('get_article', article_id=article_id_for("https://news.example.com/seen")) is None


@pytest.mark.asyncio
async def test_tracking_variants_collapse_to_one_article(db, origin, session):
    origin.set("/feed.xml", build_rss([
        ("Story", "http://news.example.com/story/?utm_source=twitter", None),
        ("Story again", "https://news.example.com/story", None),
    ]))
    await _seed(db, origin)

    outcome = await FeedSweeper(db, session).sweep("f1")

    assert outcome.created == 1
    assert await db.execute('count_articles') == 1


@pytest.mark.asyncio
async def test_undated_items_store_ingestion_time_and_leave_high_water_mark(db, origin, session):
    origin.set("/feed.xml", build_rss([("Undated", "https://news.example.com/undated", None)]))
    await _seed(db, origin)
    before = datetime.now(timezone.utc)

    await FeedSweeper(db, session).sweep("f1")

    stored = Article.from_row(await db.execute('get_article', article_id=article_id_for("https://news.example.com/undated")))
    assert stored.published_at >= before - timedelta(seconds=1)
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.last_seen_article_date is None


@pytest.mark.asyncio
async def test_existing_article_is_backfilled_not_duplicated(db, origin, session, monkeypatch):
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 0)
    url = "https://news.example.com/evolving"
    origin.set("/feed.xml", build_rss([("Draft title", url, None)]))
    await _seed(db, origin)
    sweeper = FeedSweeper(db, session)
    await sweeper.sweep("f1")
    # Another feed instance that never saw the article
    await _seed(db, origin, feed_id="f2")
    origin.set("/feed.xml", build_rss([("Final title", url, None)]))

    outcome = await sweeper.sweep("f2")

    assert outcome.created == 0
    assert outcome.updated == 1
    stored = Article.from_row(await db.execute('get_article', article_id=article_id_for(url)))
    assert stored.title == "Final title"
    assert await db.execute('count_articles') == 1


@pytest.mark.asyncio
async def test_empty_feed_is_recorded_as_warning(db, origin, session):
    origin.set("/feed.xml", "this is { not a feed")
    await _seed(db, origin)

    outcome = await FeedSweeper(db, session).sweep("f1")

    assert outcome.ok
    assert outcome.total == 0
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.health.status == HEALTH_WARNING


@pytest.mark.asyncio
async def test_five_failures_disable_feed_and_sixth_attempt_makes_no_request(db, origin, session):
    origin.set("/feed.xml", "upstream broke", status=500)
    await _seed(db, origin)
    sweeper = FeedSweeper(db, session)

    for attempt in range(5):
        outcome = await sweeper.sweep("f1")
        assert not outcome.ok
        assert outcome.status_code == 500
        assert "HTTP 500" in outcome.error

    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.health.status == HEALTH_DISABLED
    assert feed.health.consecutive_failures == 5
    assert feed.last_fetched_at is None
    assert origin.hits("/feed.xml") == 5

    sixth = await sweeper.sweep("f1")
    forced = await sweeper.sweep("f1", force=True)

    for outcome in (sixth, forced):
        assert outcome.status_code == 422
        assert outcome.to_dict()["disabled"] is True
        assert outcome.to_dict()["ok"] is False
    assert origin.hits("/feed.xml") == 5


@pytest.mark.asyncio
async def test_enable_restores_a_disabled_feed(db, origin, session):
    origin.set("/feed.xml", build_rss([("Back", "https://news.example.com/back", None)]))
    await _seed(db, origin)
    await db.execute('update_feed', feed_id='f1', fields={
        'health_status': HEALTH_DISABLED, 'health_consecutive_failures': 5, 'health_reliability_score': 0,
    })
    sweeper = FeedSweeper(db, session)

    feed = await sweeper.enable("f1")
    outcome = await sweeper.sweep("f1")

    assert feed.health.reliability_score == 50
    assert outcome.ok
    assert outcome.created == 1


@pytest.mark.asyncio
async def test_unknown_feed_raises(db, session):
    with pytest.raises(FeedNotFound):
        await FeedSweeper(db, session).sweep("nope")


@pytest.mark.asyncio
async def test_concurrent_duplicate_sweeps_converge(db, origin, session):
    now = _now()
    links = [f"https://news.example.com/item-{i}" for i in range(3)]
    origin.set("/feed.xml", build_rss([
        (f"Item {i}", link, now - timedelta(minutes=10 * (i + 1))) for i, link in enumerate(links)
    ]))
    await _seed(db, origin)

    results = await asyncio.gather(
        FeedSweeper(db, session).sweep("f1"),
        FeedSweeper(db, session).sweep("f1"),
    )

    assert all(outcome.ok for outcome in results)
    assert await db.execute('count_articles') == 3
    for link in links:
        assert await db.execute('get_article', article_id=article_id_for(link))
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert set(feed.recent_hashes) == {article_id_for(link) for link in links}
    assert feed.last_seen_article_date == now - timedelta(minutes=10)


@pytest.mark.asyncio
async def test_failed_store_does_not_advance_high_water_mark(db, origin, session):
    now = _now()
    origin.set("/feed.xml", build_rss([
        ("Newest", "https://news.example.com/newest", now - timedelta(minutes=30)),
        ("Newer", "https://news.example.com/newer", now - timedelta(hours=1)),
    ]))
    await _seed(db, origin)
    flaky = FailingUpsertDb(db, article_id_for("https://news.example.com/newest"))

    first = await FeedSweeper(flaky, session).sweep("f1")

    assert first.ok
    assert first.created == 1
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.last_seen_article_date is None
    assert feed.last_content_hash is None

    await db.execute('update_feed', feed_id='f1', fields={'last_fetched_at': to_iso(now - timedelta(hours=2))})
    second = await FeedSweeper(db, session).sweep("f1")

    assert second.created == 1
    assert await db.execute('get_article', article_id=article_id_for("https://news.example.com/newest"))
    assert await db.execute('count_articles') == 2
    feed = Feed.from_row(await db.execute('get_feed', feed_id='f1'))
    assert feed.last_seen_article_date == now - timedelta(minutes=30)

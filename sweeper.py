#!/usr/bin/env python3
"""
Feed sweeper: one fetch -> parse -> dedup -> persist cycle per feed.

Duplicate work is cut at four levels, cheapest first, before any article
is read from storage:

- L3 protocol cache: conditional GET with the stored ETag / Last-Modified
- L2 content hash: SHA-256 of the body against the previous sweep
- L1 date threshold: items not newer than the feed's high-water mark
- L0 recent hashes: the feed's bounded set of recently seen article ids

Items that survive are looked up by id and either backfilled or inserted as
queued articles. Failures feed the health state machine in health.py.
"""

from asyncio import TimeoutError, get_event_loop
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime, format_datetime
from functools import partial
from typing import Any, Callable, Dict, Optional

from aiohttp import ClientError, ClientSession

from activity import ActivityLog
from config import config, get_logger
from dates import DateResolver
from dedup import RecentHashes, advance_high_water_mark, content_hash, is_at_or_before_threshold
from entities import Article, Feed, LIFECYCLE_QUEUED, to_iso, utcnow
from errors import FeedDisabled, FeedNotFound, FetchError, PipelineError
from feed_parser import parse_document
from health import effective_interval, is_due, minutes_until_due, reenable, record_failure, record_success
from http_client import FEED_ACCEPT, fetch_with_retry, pick_user_agent
from telemetry import init_telemetry, trace_span
from urls import normalize_url, url_hash
from utils import validate_url

# Module-specific logger
logger = get_logger("sweeper")
init_telemetry("feed-sweeper")

SWEEP_FAILURES = (PipelineError, ClientError, TimeoutError, OSError, ValueError, TypeError, KeyError)

MSG_NOT_MODIFIED = "Skipped: 304 Not Modified (Protocol Cache)"
MSG_HASH_MATCH = "Skipped: Content Unchanged (Hash Match)"
MSG_DISABLED = "Feed is disabled. Re-enable manually."


@dataclass
class SweepOutcome:
    """Result of a single-feed sweep; ``to_dict`` gives the HTTP payload."""
    feed_id: str
    source_id: str = ""
    ok: bool = True
    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    cache_hit: bool = False
    interval_skip: bool = False
    disabled: bool = False
    message: Optional[str] = None
    error: Optional[str] = None
    next_fetch_in_minutes: Optional[int] = None

    @property
    def was_skipped(self) -> bool:
        return self.cache_hit or self.interval_skip

    @property
    def status_code(self) -> int:
        if self.disabled:
            return 422
        return 200 if self.ok else 500

    def to_dict(self) -> Dict[str, Any]:
        if self.disabled:
            return {"ok": False, "error": self.error or MSG_DISABLED, "disabled": True}
        if not self.ok:
            return {"ok": False, "error": self.error}
        if self.interval_skip:
            return {"ok": True, "skipped": True, "message": self.message}
        if self.cache_hit:
            return {
                "ok": True,
                "skipped": True,
                "message": self.message,
                "nextFetchInMinutes": self.next_fetch_in_minutes,
            }
        return {
            "ok": True,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "total": self.total,
            "nextFetchInMinutes": self.next_fetch_in_minutes,
        }


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def conditional_headers(feed: Feed) -> Dict[str, str]:
    """If-None-Match / If-Modified-Since from the stored cache validators."""
    headers = {}
    etag = feed.last_etag
    if etag:
        # Quote unquoted ETags; weak validators pass through untouched
        if not (etag.startswith('"') or etag.startswith('W/"')):
            etag = f'"{etag}"'
        headers['If-None-Match'] = etag
    if feed.last_modified:
        normalized = normalize_http_date(feed.last_modified)
        if normalized:
            headers['If-Modified-Since'] = normalized
        else:
            logger.warning(f"Invalid Last-Modified stored for {feed.id}, not sending header ({feed.last_modified})")
    return headers


def _health_fields(feed: Feed) -> Dict[str, Any]:
    row = feed.to_row()
    return {k: v for k, v in row.items() if k.startswith("health_")}


class FeedSweeper:
    """Sweep feeds stored in a DatabaseQueue.

    Collaborators are injected so tests can substitute any of them.
    """

    def __init__(
        self,
        db,
        session: ClientSession,
        resolver: Optional[DateResolver] = None,
        activity: Optional[ActivityLog] = None,
        fetcher: Callable = fetch_with_retry,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.session = session
        self.resolver = resolver or DateResolver()
        self.activity = activity or ActivityLog(db)
        self.fetcher = fetcher
        self.clock = clock

    async def load_feed(self, feed_id: str) -> Feed:
        row = await self.db.execute('get_feed', feed_id=feed_id)
        if not row:
            raise FeedNotFound(feed_id)
        return Feed.from_row(row)

    @trace_span(
        "sweep_feed",
        tracer_name="sweeper",
        attr_from_args=lambda self, feed_id, force=False: {"feed.id": str(feed_id), "sweep.force": bool(force)},
    )
    async def sweep(self, feed_id: str, force: bool = False) -> SweepOutcome:
        """Sweep one feed.

        Raises FeedNotFound for unknown ids. Every other problem is reported
        through the returned SweepOutcome.
        """
        feed = await self.load_feed(feed_id)
        now = self.clock()
        interval = effective_interval(feed)

        # The breaker holds even for forced sweeps; nothing touches the network
        if feed.is_disabled:
            await self.activity.warn("Sweep skipped - feed disabled", {
                "feedId": feed.id,
                "consecutiveFailures": feed.health.consecutive_failures,
            })
            error = FeedDisabled(feed.id, feed.health.consecutive_failures)
            return SweepOutcome(feed_id=feed.id, source_id=feed.source_id, ok=False, disabled=True, error=str(error))

        if not force and not is_due(feed, now):
            remaining = minutes_until_due(feed, now)
            return SweepOutcome(
                feed_id=feed.id,
                source_id=feed.source_id,
                interval_skip=True,
                message=f"Skipped: Interval {interval}m not passed. Next fetch in {round(remaining)}m.",
            )

        await self.activity.info("Sweep start", {"feedId": feed.id, "url": feed.url, "force": force})
        try:
            return await self._sweep_feed(feed, force)
        except SWEEP_FAILURES as e:
            return await self._record_sweep_failure(feed, e)

    async def _record_sweep_failure(self, feed: Feed, error: Exception) -> SweepOutcome:
        message = str(error) or error.__class__.__name__
        feed.health = record_failure(feed.health, message, now=self.clock())
        try:
            await self.db.execute('update_feed', feed_id=feed.id, fields=_health_fields(feed))
        except PipelineError as e:
            logger.error(f"Could not record failure for feed {feed.id}: {e}")
        context = {
            "feedId": feed.id,
            "error": message,
            "consecutiveFailures": feed.health.consecutive_failures,
            "status": feed.health.status,
        }
        if feed.is_disabled:
            await self.activity.error("Feed disabled after consecutive failures", context)
        else:
            await self.activity.error("Sweep failed", context)
        return SweepOutcome(feed_id=feed.id, source_id=feed.source_id, ok=False, error=f"Sweep failed: {message}")

    async def _mark_cache_hit(self, feed: Feed, message: str, extra: Optional[Dict[str, Any]] = None) -> SweepOutcome:
        now = self.clock()
        feed.last_fetched_at = now
        feed.health = record_success(feed.health, now=now)
        fields = {"last_fetched_at": to_iso(now), **_health_fields(feed)}
        if extra:
            fields.update(extra)
        await self.db.execute('update_feed', feed_id=feed.id, fields=fields)
        await self.activity.info(message, {"feedId": feed.id})
        return SweepOutcome(
            feed_id=feed.id,
            source_id=feed.source_id,
            cache_hit=True,
            message=message,
            next_fetch_in_minutes=effective_interval(feed),
        )

    async def _sweep_feed(self, feed: Feed, force: bool) -> SweepOutcome:
        headers = {'User-Agent': pick_user_agent(), 'Accept': FEED_ACCEPT}
        if not force:
            headers.update(conditional_headers(feed))

        result = await self.fetcher(self.session, feed.url, headers=headers, timeout=config.HTTP_TIMEOUT)
        if result.error:
            raise FetchError(f"Feed fetch failed: {result.error}", status=result.status, attempts=result.attempts)

        # L3
        if result.not_modified:
            return await self._mark_cache_hit(feed, MSG_NOT_MODIFIED)

        new_etag = result.header('ETag')
        new_last_modified = normalize_http_date(result.header('Last-Modified'))
        body_hash = content_hash(result.body)

        # L2
        if not force and feed.last_content_hash == body_hash:
            validators = {}
            if new_etag:
                validators["last_etag"] = new_etag
            if new_last_modified:
                validators["last_modified"] = new_last_modified
            return await self._mark_cache_hit(feed, MSG_HASH_MATCH, validators)

        loop = get_event_loop()
        parsed = await loop.run_in_executor(
            None, partial(parse_document, result.body, self.resolver, feed.source_id)
        )
        items = parsed.items

        created = updated = store_failures = 0
        threshold = None if force else feed.last_seen_article_date
        high_water = feed.last_seen_article_date
        recent = RecentHashes(feed.recent_hashes, limit=config.RECENT_HASHES_LIMIT)
        now = self.clock()

        for item in items:
            try:
                normalized = normalize_url(item.url)
                if not validate_url(normalized):
                    continue

                # L1
                if is_at_or_before_threshold(item.published_at, threshold):
                    continue

                # L0
                article_id = url_hash(normalized)
                if article_id in recent:
                    recent.touch(article_id)
                    high_water = advance_high_water_mark(high_water, item.published_at)
                    continue

                outcome = await self._store_item(feed, item, article_id, normalized, force, now)
                # Only stored items move the mark, so a failed write is retried next sweep
                high_water = advance_high_water_mark(high_water, item.published_at)
                recent.touch(article_id)
                if outcome == "created":
                    created += 1
                elif outcome == "updated":
                    updated += 1
            except PipelineError as e:
                store_failures += 1
                logger.error(f"Failed to store item {item.url} from {feed.id}: {e}")
                await self.activity.error("Sweep item failed", {"feedId": feed.id, "url": item.url, "error": str(e)})

        if store_failures:
            # Keep the old mark and validators so the next sweep sees the failed items again
            high_water = feed.last_seen_article_date
            body_hash = feed.last_content_hash
            new_etag = feed.last_etag
            new_last_modified = feed.last_modified

        warning = None
        if not items and result.body.strip():
            warning = "Feed returned no parseable items"

        feed.last_fetched_at = now
        feed.last_seen_article_date = high_water
        feed.last_content_hash = body_hash
        feed.last_etag = new_etag
        feed.last_modified = new_last_modified
        feed.recent_hashes = recent.to_list()
        feed.health = record_success(feed.health, now=now, warning=warning)

        fields = {
            "last_fetched_at": to_iso(feed.last_fetched_at),
            "last_seen_article_date": to_iso(feed.last_seen_article_date),
            "last_content_hash": feed.last_content_hash,
            "last_etag": feed.last_etag,
            "last_modified": feed.last_modified,
            "recent_hashes": feed.to_row()["recent_hashes"],
            **_health_fields(feed),
        }
        await self.db.execute('update_feed', feed_id=feed.id, fields=fields)

        outcome = SweepOutcome(
            feed_id=feed.id,
            source_id=feed.source_id,
            created=created,
            updated=updated,
            skipped=len(items) - (created + updated),
            total=len(items),
            next_fetch_in_minutes=effective_interval(feed),
        )
        await self.activity.info("Sweep complete", {
            "feedId": feed.id,
            "kind": parsed.kind,
            "created": created,
            "updated": updated,
            "total": len(items),
        })
        return outcome

    async def _store_item(self, feed: Feed, item, article_id: str, normalized: str, force: bool,
                          now: datetime) -> Optional[str]:
        """Backfill an existing article or insert a queued one.

        Returns "created", "updated" or None when nothing needed writing.
        """
        existing_row = await self.db.execute('get_article', article_id=article_id)
        if existing_row:
            existing = Article.from_row(existing_row)
            changes: Dict[str, Any] = {}
            if item.title and item.title != existing.title:
                changes["title"] = item.title
            if item.summary and not existing.summary:
                changes["summary"] = item.summary
            if item.image and not existing.image:
                changes["image"] = item.image
            if not changes:
                return None
            await self.db.execute('update_article', article_id=article_id, fields=changes)
            return "updated"

        article = Article(
            id=article_id,
            url=normalized,
            original_url=item.url,
            source_id=feed.source_id,
            title=item.title,
            summary=item.summary or "",
            image=item.image or "",
            content="",
            lifecycle=LIFECYCLE_QUEUED,
            quality_score=0,
            published_at=item.published_at or now,
            guid=item.guid or None,
            lang="en",
        )
        return await self.db.execute('upsert_article', article=article.to_row())

    async def enable(self, feed_id: str) -> Feed:
        """Manual re-enable of a circuit-broken feed."""
        feed = await self.load_feed(feed_id)
        feed.health = reenable(feed.health, now=self.clock())
        feed.active = True
        await self.db.execute('update_feed', feed_id=feed.id, fields={"active": 1, **_health_fields(feed)})
        await self.activity.info("Feed re-enabled", {"feedId": feed.id})
        return feed

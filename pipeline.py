#!/usr/bin/env python3
"""
Service wiring shared by the HTTP server and the CLI.

FeedPipeline owns the database worker and the HTTP session and builds the
sweeper, processor and cron orchestrator on top of them. Collaborators can
be passed in, which is how the tests substitute their own.
"""

from typing import Any, Dict, Optional

from aiohttp import ClientSession

from activity import ActivityLog
from config import config, get_logger
from cron import CronOrchestrator
from dates import DateResolver
from entities import HEALTH_DISABLED, LIFECYCLE_QUEUED, Feed, to_iso, utcnow
from models import DatabaseQueue
from processor import ArticleProcessor
from sweeper import FeedSweeper

logger = get_logger("pipeline")


class FeedPipeline:
    def __init__(self, db: Optional[DatabaseQueue] = None, session: Optional[ClientSession] = None,
                 resolver: Optional[DateResolver] = None) -> None:
        self.db = db
        self.session = session
        self.resolver = resolver
        self._owns_db = db is None
        self._owns_session = session is None
        self.activity: Optional[ActivityLog] = None
        self.sweeper: Optional[FeedSweeper] = None
        self.processor: Optional[ArticleProcessor] = None
        self.cron: Optional[CronOrchestrator] = None

    async def initialize(self) -> None:
        """Start the database worker and open the HTTP session."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        if self.session is None:
            self.session = ClientSession()
        self.activity = ActivityLog(self.db)
        self.sweeper = FeedSweeper(self.db, self.session, resolver=self.resolver, activity=self.activity)
        self.processor = ArticleProcessor(self.db, self.session, activity=self.activity)
        self.cron = CronOrchestrator(self.db, self.sweeper, self.processor, activity=self.activity)
        logger.info("FeedPipeline initialized")

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
        if self._owns_db and self.db is not None:
            await self.db.stop()
        logger.info("FeedPipeline closed")

    async def __aenter__(self) -> "FeedPipeline":
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def seed_feeds(self) -> Dict[str, int]:
        """Register every feed from feeds.yaml; existing rows keep their state."""
        created = updated = 0
        for feed_id, source in config.FEED_SOURCES.items():
            was_created = await self.db.execute(
                'seed_feed',
                feed_id=feed_id,
                source_id=source['source_id'],
                url=source['url'],
                type=source.get('type', 'rss'),
                active=source.get('active', True),
                fetch_interval_minutes=source.get('interval_minutes'),
            )
            if was_created:
                created += 1
            else:
                updated += 1
        await self.activity.info("Feeds seeded", {"created": created, "updated": updated})
        return {"created": created, "updated": updated}

    async def reset_feeds(self) -> int:
        reset = await self.db.execute('reset_feeds')
        await self.activity.info("Feed health reset", {"reset": reset})
        return reset

    async def cleanup_orphans(self) -> int:
        """Delete articles whose source has no active feed."""
        rows = await self.db.execute('list_feeds', active_only=True)
        source_ids = sorted({row['source_id'] for row in rows if row.get('source_id')})
        deleted = await self.db.execute('delete_orphaned_articles', source_ids=source_ids)
        await self.activity.info("Orphaned articles cleaned up", {"deleted": deleted})
        return deleted

    async def health(self) -> Dict[str, Any]:
        db_ready = await self.db.execute('ping')
        rows = await self.db.execute('list_feeds')
        return {
            "ok": bool(db_ready),
            "timestamp": to_iso(utcnow()),
            "services": {"database": "connected" if db_ready else "disconnected"},
            "feeds": len(rows),
            "disabled": sum(1 for row in rows if row.get('health_status') == HEALTH_DISABLED),
            "queued": await self.db.execute('count_articles', lifecycle=LIFECYCLE_QUEUED),
        }

    async def status(self) -> Dict[str, Any]:
        """Per-feed health plus article counts by lifecycle."""
        rows = await self.db.execute('list_feeds')
        return {
            "timestamp": to_iso(utcnow()),
            "feeds": [Feed.from_row(row).to_dict() for row in rows],
            "articles": await self.db.execute('lifecycle_counts'),
        }

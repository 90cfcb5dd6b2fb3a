#!/usr/bin/env python3
"""
Sweep-all orchestrator.

Sweeps every due feed one at a time, then drains the article queue in small
batches. The whole run is bounded by CRON_TIME_BUDGET_SECONDS; when the
budget runs out the results gathered so far are returned and every write
already committed stays in place.
"""

from asyncio import TimeoutError, wait_for
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, Dict, List, Optional, Tuple

from activity import ActivityLog
from config import config, get_logger
from entities import Feed, utcnow
from errors import FeedNotFound, PipelineError
from health import is_due
from processor import ArticleProcessor
from sweeper import FeedSweeper
from telemetry import trace_span
from utils import RateLimiter

logger = get_logger("cron")


@dataclass
class SweepAllResult:
    """Totals for one sweep-all run.

    ``feeds`` counts the feeds that were due and swept; ``feeds_scanned``
    counts every active feed that was considered.
    """
    feeds: int = 0
    feeds_scanned: int = 0
    total_created: int = 0
    total_processed: int = 0
    failed: int = 0
    duration_ms: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    ok: bool = True
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "ok": self.ok,
            "feeds": self.feeds,
            "feedsScanned": self.feeds_scanned,
            "totalCreated": self.total_created,
            "totalProcessed": self.total_processed,
            "failed": self.failed,
            "durationMs": self.duration_ms,
            "results": self.results,
        }
        if self.error:
            data["error"] = self.error
        if self.message:
            data["message"] = self.message
        return data


class CronOrchestrator:
    def __init__(
        self,
        db,
        sweeper: FeedSweeper,
        processor: ArticleProcessor,
        activity: Optional[ActivityLog] = None,
        pacing: Optional[RateLimiter] = None,
        time_budget: Optional[float] = None,
    ) -> None:
        self.db = db
        self.sweeper = sweeper
        self.processor = processor
        self.activity = activity or ActivityLog(db)
        self.pacing = pacing or RateLimiter(min_interval=config.FEED_SWEEP_DELAY)
        self.time_budget = config.CRON_TIME_BUDGET_SECONDS if time_budget is None else time_budget

    async def scan_feeds(self, force: bool = False) -> Tuple[List[Feed], int]:
        """Due feeds (every non-disabled one when forced) and the number of active feeds scanned."""
        rows = await self.db.execute('list_feeds', active_only=True)
        now = utcnow()
        feeds = []
        for row in rows:
            feed = Feed.from_row(row)
            if feed.is_disabled:
                continue
            if force or is_due(feed, now):
                feeds.append(feed)
        return feeds, len(rows)

    @trace_span(
        "sweep_all",
        tracer_name="cron",
        attr_from_args=lambda self, force=False: {"sweep.force": bool(force)},
    )
    async def sweep_all(self, force: bool = False) -> SweepAllResult:
        started = monotonic()
        result = SweepAllResult()
        await self.activity.info("Cron sweep-all started", {"force": force})

        try:
            await wait_for(self._run(result, force), timeout=self.time_budget)
        except TimeoutError:
            result.ok = False
            result.error = f"Time budget of {self.time_budget}s exceeded; returning partial results"
            await self.activity.warn("Cron sweep-all timed out", {"results": len(result.results)})
        except PipelineError as e:
            result.ok = False
            result.error = str(e)
            await self.activity.error("Cron sweep-all failed", {"error": str(e)})

        result.duration_ms = int((monotonic() - started) * 1000)
        if result.ok:
            await self.activity.info("Cron sweep-all completed", {
                "feeds": result.feeds,
                "feedsScanned": result.feeds_scanned,
                "totalCreated": result.total_created,
                "totalProcessed": result.total_processed,
                "failed": result.failed,
                "durationMs": result.duration_ms,
            })
        return result

    async def _run(self, result: SweepAllResult, force: bool) -> None:
        feeds, result.feeds_scanned = await self.scan_feeds(force)
        result.feeds = len(feeds)
        if not feeds:
            result.message = "No feeds due"

        for feed in feeds:
            await self.pacing.acquire()
            try:
                outcome = await self.sweeper.sweep(feed.id, force=force)
            except FeedNotFound as e:
                # Removed between listing and sweeping
                logger.warning(str(e))
                continue
            if outcome.was_skipped:
                continue
            entry = {"feedId": feed.id, "sourceId": feed.source_id, "created": outcome.created}
            if not outcome.ok:
                entry["error"] = outcome.error
                result.failed += 1
            result.total_created += outcome.created
            result.results.append(entry)

        await self._drain_queue(result)

    async def _drain_queue(self, result: SweepAllResult) -> None:
        for _ in range(config.QUEUE_DRAIN_ITERATIONS):
            batch = await self.processor.process_queue(config.QUEUE_DRAIN_BATCH)
            if not batch.ok:
                logger.warning(f"Queue drain stopped: {batch.error}")
                break
            result.total_processed += batch.processed
            if batch.processed == 0:
                break

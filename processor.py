#!/usr/bin/env python3
"""
Article content processor.

Drains queued articles: fetches each page, extracts the main text with
readability (falling back to <article>/<main>), scores it with the quality
filters, enriches it and moves the article to published, blocked or error.
"""

from asyncio import TimeoutError, get_event_loop
from dataclasses import dataclass
from functools import partial
from time import monotonic
from typing import Any, Callable, Dict, Optional, Tuple

from aiohttp import ClientError, ClientSession
from bs4 import BeautifulSoup
from readability import Document

from activity import ActivityLog
from config import config, get_logger
from enrichment import enrich_content
from entities import (
    Article,
    LIFECYCLE_ERROR,
    LIFECYCLE_PUBLISHED,
    LIFECYCLE_QUEUED,
    to_iso,
    utcnow,
)
from errors import ArticleNotFound, BlockedBySite, ContentTooShort, FetchError, PipelineError
from http_client import fetch_with_retry
from quality import QualityFilters, assess_quality
from telemetry import trace_span
from utils import RateLimiter, html_to_text

logger = get_logger("processor")

ARTICLE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
# Articles with more stored text than this are not refetched unless forced
EXISTING_CONTENT_CHARS = 100


@dataclass
class QueueRunResult:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0
    ok: bool = True
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "error": self.error}
        data = {
            "ok": True,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "durationMs": self.duration_ms,
        }
        if self.message:
            data["message"] = self.message
        return data


@dataclass
class ArticleFetchResult:
    """Outcome of fetching a single article on demand."""
    article: Article
    outcome: str
    message: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 422 if self.outcome == "failed" else 200

    def to_dict(self) -> Dict[str, Any]:
        article = self.article
        if self.outcome == "failed":
            return {"ok": False, "articleId": article.id, "error": article.fetch_error or "Fetch failed"}
        data = {
            "ok": True,
            "articleId": article.id,
            "outcome": self.outcome,
            "lifecycle": article.lifecycle,
            "qualityScore": article.quality_score,
            "contentLength": len(article.content or ""),
            "hasImage": bool(article.image),
        }
        if self.message:
            data["skipped"] = True
            data["message"] = self.message
        elif article.fetch_error:
            data["error"] = article.fetch_error
        return data


def extract_image(soup: BeautifulSoup) -> Optional[str]:
    """og:image, then twitter:image."""
    for attrs in ({"property": "og:image"}, {"name": "og:image"}, {"name": "twitter:image"}, {"property": "twitter:image"}):
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def _fallback_text(soup: BeautifulSoup, max_chars: int) -> str:
    for tag in soup(["script", "style", "nav", "footer"]):
        tag.decompose()
    target = soup.find("article") or soup.find("main") or soup.body or soup
    return html_to_text(str(target), max_chars)


def extract_article(html: str, url: str = "", min_chars: Optional[int] = None,
                    max_chars: Optional[int] = None) -> Tuple[str, Optional[str]]:
    """Return (plain text, image url) for an article page.

    Raises ContentTooShort when fewer than ``min_chars`` characters survive.
    """
    min_chars = config.MIN_CONTENT_CHARS if min_chars is None else min_chars
    max_chars = config.MAX_CONTENT_CHARS if max_chars is None else max_chars
    soup = BeautifulSoup(html, "html.parser")
    image = extract_image(soup)

    text = ""
    try:
        text = html_to_text(Document(html).summary(html_partial=True), max_chars)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Readability failed for {url}: {e}")
    if len(text) < min_chars:
        text = _fallback_text(soup, max_chars)
    if len(text) < min_chars:
        raise ContentTooShort(len(text))
    return text, image


class ArticleProcessor:
    """Process queued articles, one page fetch at a time."""

    def __init__(
        self,
        db,
        session: ClientSession,
        activity: Optional[ActivityLog] = None,
        filters=QualityFilters,
        enricher: Callable = enrich_content,
        fetcher: Callable = fetch_with_retry,
        pacing: Optional[RateLimiter] = None,
    ) -> None:
        self.db = db
        self.session = session
        self.activity = activity or ActivityLog(db)
        self.filters = filters
        self.enricher = enricher
        self.fetcher = fetcher
        self.pacing = pacing or RateLimiter(min_interval=config.ARTICLE_FETCH_DELAY)

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit or limit < 1:
            limit = config.PROCESS_QUEUE_DEFAULT_LIMIT
        return min(limit, config.PROCESS_QUEUE_MAX_LIMIT)

    async def fetch_content(self, article: Article) -> Tuple[str, Optional[str]]:
        result = await self.fetcher(
            self.session,
            article.url,
            headers={"User-Agent": config.ARTICLE_USER_AGENT, "Accept": ARTICLE_ACCEPT},
            timeout=config.ARTICLE_HTTP_TIMEOUT,
        )
        if result.error:
            if result.status in BlockedBySite.BLOCKING_STATUSES:
                raise BlockedBySite(f"Blocked by source (HTTP {result.status})", status=result.status,
                                    attempts=result.attempts)
            raise FetchError(result.error, status=result.status, attempts=result.attempts)
        if not result.ok:
            raise FetchError(f"HTTP {result.status}", status=result.status, attempts=result.attempts)
        loop = get_event_loop()
        return await loop.run_in_executor(None, partial(extract_article, result.text(), article.url))

    @trace_span(
        "process_article",
        tracer_name="processor",
        attr_from_args=lambda self, article: {"article.id": article.id, "article.source": article.source_id},
    )
    async def process_article(self, article: Article) -> str:
        """Fetch, score and enrich one article; returns "processed", "skipped" or "failed"."""
        now = to_iso(utcnow())
        try:
            content, image = await self.fetch_content(article)
        except BlockedBySite as e:
            # Unverifiable rather than low quality: publish what the feed gave us
            await self.db.execute('update_article', article_id=article.id, fields={
                "lifecycle": LIFECYCLE_PUBLISHED,
                "fetch_error": str(e),
                "last_fetched_at": now,
            })
            await self.activity.warn("Article blocked by source", {"articleId": article.id, "status": e.status})
            return "skipped"
        except (PipelineError, ClientError, TimeoutError) as e:
            await self.db.execute('update_article', article_id=article.id, fields={
                "lifecycle": LIFECYCLE_ERROR,
                "fetch_error": str(e) or e.__class__.__name__,
                "last_fetched_at": now,
            })
            return "failed"

        assessment = assess_quality(article.title, content, filters=self.filters)
        enriched = self.enricher(content, article.summary or "", article.title or "")
        await self.db.execute('update_article', article_id=article.id, fields={
            "content": content,
            "image": image or article.image or "",
            "quality_score": assessment.score,
            "lifecycle": assessment.lifecycle,
            "fetch_error": None,
            "last_fetched_at": now,
            "reading_time": enriched.reading_time,
            "keywords": enriched.keywords,
            "summary": enriched.summary or article.summary or "",
            "category": enriched.category or article.category,
        })
        return "processed"

    @trace_span(
        "fetch_one",
        tracer_name="processor",
        attr_from_args=lambda self, article_id, force=False: {"article.id": article_id, "force": force},
    )
    async def fetch_one(self, article_id: str, force: bool = False) -> ArticleFetchResult:
        """Fetch a single article regardless of its lifecycle.

        Articles that already hold real content are left alone unless
        ``force`` is set. Raises ArticleNotFound for an unknown id.
        """
        row = await self.db.execute('get_article', article_id=article_id)
        if not row:
            raise ArticleNotFound(article_id)
        article = Article.from_row(row)

        if not force and len(article.content or "") > EXISTING_CONTENT_CHARS:
            await self.activity.info("Fetch skipped (content exists)", {"articleId": article_id})
            return ArticleFetchResult(article=article, outcome="skipped", message="Content already exists")

        await self.activity.info("Fetching article content", {"articleId": article_id, "url": article.url})
        outcome = await self.process_article(article)
        updated = Article.from_row(await self.db.execute('get_article', article_id=article_id))
        if outcome == "failed":
            await self.activity.error("Fetch failed", {"articleId": article_id, "error": updated.fetch_error})
        return ArticleFetchResult(article=updated, outcome=outcome)

    @trace_span("process_queue", tracer_name="processor")
    async def process_queue(self, limit: Optional[int] = None) -> QueueRunResult:
        started = monotonic()
        limit = self.clamp_limit(limit)
        result = QueueRunResult()

        try:
            rows = await self.db.execute('find_articles_by_lifecycle', lifecycle=LIFECYCLE_QUEUED, limit=limit)
        except PipelineError as e:
            await self.activity.error("Queue processor failed", {"error": str(e)})
            return QueueRunResult(ok=False, error=str(e))

        if not rows:
            result.message = "Queue empty"
            result.duration_ms = int((monotonic() - started) * 1000)
            return result

        await self.activity.info("Queue processor started", {"limit": limit, "queued": len(rows)})
        for row in rows:
            article = Article.from_row(row)
            await self.pacing.acquire()
            try:
                outcome = await self.process_article(article)
            except PipelineError as e:
                # Storage trouble for this article only; the next one may still work
                logger.error(f"Could not update article {article.id}: {e}")
                outcome = "failed"
            if outcome == "processed":
                result.processed += 1
            elif outcome == "skipped":
                result.skipped += 1
            else:
                result.failed += 1

        result.duration_ms = int((monotonic() - started) * 1000)
        await self.activity.info("Queue processor completed", {
            "processed": result.processed,
            "skipped": result.skipped,
            "failed": result.failed,
            "durationMs": result.duration_ms,
        })
        return result

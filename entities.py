#!/usr/bin/env python3
"""
Domain records for feeds and articles.

Rows are stored in sqlite with timestamps as ISO-8601 strings and list fields
as JSON arrays; the from_row/to_row helpers convert between the two shapes.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_ERROR = "error"
HEALTH_DISABLED = "disabled"
HEALTH_STATES = (HEALTH_HEALTHY, HEALTH_WARNING, HEALTH_ERROR, HEALTH_DISABLED)

LIFECYCLE_QUEUED = "queued"
LIFECYCLE_PROCESSED = "processed"
LIFECYCLE_CLUSTERED = "clustered"
LIFECYCLE_PUBLISHED = "published"
LIFECYCLE_ARCHIVED = "archived"
LIFECYCLE_BLOCKED = "blocked"
LIFECYCLE_ERROR = "error"
LIFECYCLES = (
    LIFECYCLE_QUEUED,
    LIFECYCLE_PROCESSED,
    LIFECYCLE_CLUSTERED,
    LIFECYCLE_PUBLISHED,
    LIFECYCLE_ARCHIVED,
    LIFECYCLE_BLOCKED,
    LIFECYCLE_ERROR,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in data] if isinstance(data, list) else []


@dataclass
class FeedHealth:
    status: str = HEALTH_HEALTHY
    reliability_score: int = 100
    last_check: Optional[datetime] = None
    last_success: Optional[datetime] = None
    error_count_24h: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reliabilityScore": self.reliability_score,
            "lastCheck": to_iso(self.last_check),
            "lastSuccess": to_iso(self.last_success),
            "errorCount24h": self.error_count_24h,
            "consecutiveFailures": self.consecutive_failures,
            "lastError": self.last_error,
        }


@dataclass
class Feed:
    id: str
    source_id: str
    url: str
    type: str = "rss"
    active: bool = True
    health: FeedHealth = field(default_factory=FeedHealth)
    fetch_interval_minutes: Optional[int] = None
    last_fetched_at: Optional[datetime] = None
    last_seen_article_date: Optional[datetime] = None
    last_content_hash: Optional[str] = None
    last_etag: Optional[str] = None
    last_modified: Optional[str] = None
    recent_hashes: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_disabled(self) -> bool:
        return self.health.status == HEALTH_DISABLED

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Feed":
        health = FeedHealth(
            status=row.get("health_status") or HEALTH_HEALTHY,
            reliability_score=int(row.get("health_reliability_score") if row.get("health_reliability_score") is not None else 100),
            last_check=from_iso(row.get("health_last_check")),
            last_success=from_iso(row.get("health_last_success")),
            error_count_24h=int(row.get("health_error_count_24h") or 0),
            consecutive_failures=int(row.get("health_consecutive_failures") or 0),
            last_error=row.get("health_last_error"),
        )
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            url=row["url"],
            type=row.get("type") or "rss",
            active=bool(row.get("active", 1)),
            health=health,
            fetch_interval_minutes=row.get("fetch_interval_minutes"),
            last_fetched_at=from_iso(row.get("last_fetched_at")),
            last_seen_article_date=from_iso(row.get("last_seen_article_date")),
            last_content_hash=row.get("last_content_hash"),
            last_etag=row.get("last_etag"),
            last_modified=row.get("last_modified"),
            recent_hashes=_load_json_list(row.get("recent_hashes")),
            created_at=from_iso(row.get("created_at")),
            updated_at=from_iso(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "url": self.url,
            "type": self.type,
            "active": 1 if self.active else 0,
            "health_status": self.health.status,
            "health_reliability_score": self.health.reliability_score,
            "health_last_check": to_iso(self.health.last_check),
            "health_last_success": to_iso(self.health.last_success),
            "health_error_count_24h": self.health.error_count_24h,
            "health_consecutive_failures": self.health.consecutive_failures,
            "health_last_error": self.health.last_error,
            "fetch_interval_minutes": self.fetch_interval_minutes,
            "last_fetched_at": to_iso(self.last_fetched_at),
            "last_seen_article_date": to_iso(self.last_seen_article_date),
            "last_content_hash": self.last_content_hash,
            "last_etag": self.last_etag,
            "last_modified": self.last_modified,
            "recent_hashes": json.dumps(list(self.recent_hashes)),
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view used by the HTTP surface."""
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "url": self.url,
            "type": self.type,
            "active": self.active,
            "health": self.health.to_dict(),
            "fetchIntervalMinutes": self.fetch_interval_minutes,
            "lastFetchedAt": to_iso(self.last_fetched_at),
            "lastSeenArticleDate": to_iso(self.last_seen_article_date),
            "recentHashes": len(self.recent_hashes),
        }


@dataclass
class Article:
    id: str
    url: str
    source_id: str
    title: str = ""
    original_url: Optional[str] = None
    content: str = ""
    image: str = ""
    summary: str = ""
    lifecycle: str = LIFECYCLE_QUEUED
    quality_score: int = 0
    published_at: Optional[datetime] = None
    guid: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    category: Optional[str] = None
    reading_time: Optional[int] = None
    fetch_error: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    lang: str = "en"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Article":
        return cls(
            id=row["id"],
            url=row["url"],
            source_id=row["source_id"],
            title=row.get("title") or "",
            original_url=row.get("original_url"),
            content=row.get("content") or "",
            image=row.get("image") or "",
            summary=row.get("summary") or "",
            lifecycle=row.get("lifecycle") or LIFECYCLE_QUEUED,
            quality_score=int(row.get("quality_score") or 0),
            published_at=from_iso(row.get("published_at")),
            guid=row.get("guid"),
            keywords=_load_json_list(row.get("keywords")),
            category=row.get("category"),
            reading_time=row.get("reading_time"),
            fetch_error=row.get("fetch_error"),
            last_fetched_at=from_iso(row.get("last_fetched_at")),
            lang=row.get("lang") or "en",
            created_at=from_iso(row.get("created_at")),
            updated_at=from_iso(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "original_url": self.original_url,
            "source_id": self.source_id,
            "content": self.content,
            "image": self.image,
            "summary": self.summary,
            "lifecycle": self.lifecycle,
            "quality_score": self.quality_score,
            "published_at": to_iso(self.published_at),
            "guid": self.guid,
            "keywords": json.dumps(list(self.keywords)),
            "category": self.category,
            "reading_time": self.reading_time,
            "fetch_error": self.fetch_error,
            "last_fetched_at": to_iso(self.last_fetched_at),
            "lang": self.lang,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("published_at", "last_fetched_at", "created_at", "updated_at"):
            data[key] = to_iso(getattr(self, key))
        return data


@dataclass
class ParsedItem:
    """One entry extracted from a feed document, before any dedup."""
    title: str
    url: str
    published_at: Optional[datetime] = None
    summary: str = ""
    image: str = ""
    guid: str = ""


@dataclass
class ParsedFeed:
    kind: str
    items: List[ParsedItem] = field(default_factory=list)

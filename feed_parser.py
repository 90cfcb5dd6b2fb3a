#!/usr/bin/env python3
"""
Feed document parsing.

RSS and Atom documents go through feedparser; sitemaps (``urlset``) are read
with BeautifulSoup's XML parser. Every shape is reduced to ParsedItem records.
Malformed input never raises: it simply yields no items.
"""

from typing import Any, List, Optional
import re

import feedparser
from bs4 import BeautifulSoup

from config import get_logger
from dates import DateResolver, extract_date_from_url
from entities import ParsedFeed, ParsedItem
from errors import ParseError
from utils import html_to_text

logger = get_logger("feed_parser")

SUMMARY_MAX_CHARS = 300

KIND_RSS = "rss"
KIND_ATOM = "atom"
KIND_SITEMAP = "sitemap"
KIND_UNKNOWN = "unknown"

_IMG_SRC_RE = re.compile(r'src=["\'](https?://[^"\']+\.(?:jpg|jpeg|png|webp|gif))["\']', re.I)
_URLSET_RE = re.compile(rb'<(?:\w+:)?urlset[\s>]', re.I)

# feedparser key -> resolver field name
_DATE_KEYS = (
    ("published", "pubDate"),
    ("dc_date", "dc:date"),
    ("date", "date"),
    ("updated", "updated"),
)


def _entry_value(entry, key: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(key)
    return getattr(entry, key, None)


def _raw_body(entry) -> str:
    """content:encoded / content when present, else description / summary."""
    for content_item in _entry_value(entry, 'content') or []:
        value = content_item.get('value') if hasattr(content_item, 'get') else None
        if value:
            return value
    return _entry_value(entry, 'summary') or _entry_value(entry, 'description') or ""


def extract_summary(entry) -> str:
    return html_to_text(_raw_body(entry))[:SUMMARY_MAX_CHARS].strip()


def extract_image(entry, image_field: str = "") -> str:
    """media:content, then image enclosures, then an image field, then an <img> in the body.

    ``image_field`` is the item's raw <image> value; feedparser drops it.
    """
    for media in _entry_value(entry, 'media_content') or []:
        url = media.get('url') if hasattr(media, 'get') else None
        if url:
            return url

    for enclosure in _entry_value(entry, 'enclosures') or []:
        mime = (enclosure.get('type') or '').lower()
        href = enclosure.get('href') or enclosure.get('url')
        if mime.startswith('image') and href:
            return href

    image = _entry_value(entry, 'image')
    if isinstance(image, str) and image:
        return image
    if hasattr(image, 'get'):
        href = image.get('href') or image.get('url')
        if href:
            return href

    if image_field:
        return image_field

    for html in (_entry_value(entry, 'summary'), _raw_body(entry)):
        if isinstance(html, str):
            match = _IMG_SRC_RE.search(html)
            if match:
                return match.group(1)
    return ""


def extract_link(entry) -> str:
    """Prefer the alternate link; Atom entries otherwise use the first non-self link."""
    links = _entry_value(entry, 'links') or []
    for link in links:
        if link.get('rel') == 'alternate' and link.get('href'):
            return link['href'].strip()
    for link in links:
        if link.get('rel') not in ('self', 'enclosure') and link.get('href'):
            return link['href'].strip()
    href = _entry_value(entry, 'link')
    if href:
        return str(href).strip()
    if links and links[0].get('href'):
        return links[0]['href'].strip()
    return ""


def _item_image_fields(content: bytes, expected: int) -> List[str]:
    """Raw <image> value of each RSS <item>, as text or a nested <url>.

    Returns an empty list when the document has no item images or the item
    count does not line up with feedparser's entries.
    """
    if b'<image' not in content:
        return []
    soup = BeautifulSoup(content, 'xml')
    nodes = soup.find_all('item')
    if len(nodes) != expected:
        return []
    images = []
    for node in nodes:
        image = node.find('image', recursive=False)
        if image is None:
            images.append("")
            continue
        nested = image.find('url')
        images.append((nested or image).get_text(strip=True))
    return images


def _date_fields(entry) -> dict:
    fields = {}
    for key, name in _DATE_KEYS:
        value = _entry_value(entry, key)
        if value:
            fields[name] = value
    return fields


def _parse_syndication(content: bytes, resolver: DateResolver, source_id: Optional[str]) -> ParsedFeed:
    parsed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)
    version = getattr(parsed, 'version', '') or ''
    if parsed.bozo and not parsed.entries:
        raise ParseError(f"Malformed feed document: {getattr(parsed, 'bozo_exception', 'unknown error')}")
    if parsed.bozo:
        logger.warning(f"Feed parsing warning for {source_id}: {getattr(parsed, 'bozo_exception', '')}")

    kind = KIND_ATOM if version.startswith('atom') else KIND_RSS if version else KIND_UNKNOWN
    items: List[ParsedItem] = []
    item_images = _item_image_fields(content, len(parsed.entries))
    for index, entry in enumerate(parsed.entries):
        url = extract_link(entry)
        if not url:
            continue
        guid = str(_entry_value(entry, 'id') or "").strip()
        description = html_to_text(_entry_value(entry, 'summary') or "")
        items.append(ParsedItem(
            title=html_to_text(_entry_value(entry, 'title') or ""),
            url=url,
            published_at=resolver.resolve(
                fields=_date_fields(entry),
                url=url,
                guid=guid,
                description=description,
                source_id=source_id,
            ),
            summary=extract_summary(entry),
            image=extract_image(entry, item_images[index] if item_images else ""),
            guid=guid,
        ))
    return ParsedFeed(kind=kind, items=items)


def _parse_sitemap(content: bytes, resolver: DateResolver) -> ParsedFeed:
    soup = BeautifulSoup(content, 'xml')
    items: List[ParsedItem] = []
    for node in soup.find_all('url'):
        loc = node.find('loc')
        url = loc.get_text(strip=True) if loc else ""
        if not url:
            continue
        lastmod = node.find('lastmod')
        published_at = resolver.parse_timestamp(lastmod.get_text(strip=True)) if lastmod else None
        if published_at is None:
            published_at = extract_date_from_url(url)
        # Google News sitemaps carry a <news:title>
        title = node.find('title')
        items.append(ParsedItem(
            title=title.get_text(strip=True) if title else "",
            url=url,
            published_at=published_at,
        ))
    return ParsedFeed(kind=KIND_SITEMAP, items=items)


def parse_document(content: bytes, resolver: Optional[DateResolver] = None,
                   source_id: Optional[str] = None) -> ParsedFeed:
    """Parse a fetched feed body into items.

    Never raises: a ParseError (or any parser failure) is logged and an empty
    item list is returned.
    """
    if isinstance(content, str):
        content = content.encode('utf-8')
    resolver = resolver or DateResolver()
    if not content or not content.strip():
        return ParsedFeed(kind=KIND_UNKNOWN)
    try:
        if _URLSET_RE.search(content[:2048]):
            return _parse_sitemap(content, resolver)
        return _parse_syndication(content, resolver, source_id)
    except ParseError as e:
        logger.warning(f"Could not parse feed for {source_id}: {e}")
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Unexpected parser failure for {source_id}: {e}")
    return ParsedFeed(kind=KIND_UNKNOWN)

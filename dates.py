#!/usr/bin/env python3
"""
Publish-date resolution for feed items.

Feeds disagree wildly on how (and whether) they carry a publish date, so the
resolver walks a fixed priority chain and returns the first plausible hit:

1. Standard date fields (pubDate, published, dc:date, date, updated)
2. A calendar date embedded in the item URL
3. A Unix timestamp embedded in the item URL
4. A YYYYMMDD run inside the guid
5. A relative phrase ("3 hours ago") at the start of the description

Strings without a timezone marker are interpreted in the configured
DEFAULT_TIMEZONE_OFFSET. A result of None means "not comparable".
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional
import re

from dateutil import parser as dateutil_parser
from dateutil.relativedelta import relativedelta

from config import config, get_logger

logger = get_logger("dates")

DATE_FIELDS = ("pubDate", "published", "dc:date", "date", "updated")

MAX_AGE = timedelta(days=20 * 365)
FUTURE_SKEW = timedelta(hours=24)
URL_RSS_DISAGREEMENT = timedelta(hours=12)

_URL_COMPACT_RE = re.compile(r'/(\d{4})(0[1-9]|1[0-2])(0[1-9]|[12]\d|3[01])/')
_URL_SLASH_RE = re.compile(r'/(\d{4})/(0[1-9]|1[0-2])/(0[1-9]|[12]\d|3[01])/')
_URL_DASH_RE = re.compile(r'/(\d{4})-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])/')
_GUID_DATE_RE = re.compile(r'(\d{4})(0[1-9]|1[0-2])(0[1-9]|[12]\d|3[01])')
_UNIX_TS_RE = re.compile(r'/(\d{10,13})(?:/|$|\?)')
_OFFSET_RE = re.compile(r'^([+-])(\d{2}):?(\d{2})$')

# Abbreviations dateutil does not know on its own
_TZ_ABBREVIATIONS = {
    "UTC": 0,
    "GMT": 0,
    "UT": 0,
    "Z": 0,
    "IST": 5 * 3600 + 1800,
    "EST": -5 * 3600,
    "EDT": -4 * 3600,
    "CST": -6 * 3600,
    "CDT": -5 * 3600,
    "MST": -7 * 3600,
    "MDT": -6 * 3600,
    "PST": -8 * 3600,
    "PDT": -7 * 3600,
    "BST": 3600,
    "CET": 3600,
    "CEST": 2 * 3600,
    "EET": 2 * 3600,
    "EEST": 3 * 3600,
    "MSK": 3 * 3600,
    "PKT": 5 * 3600,
    "SGT": 8 * 3600,
    "HKT": 8 * 3600,
    "JST": 9 * 3600,
    "KST": 9 * 3600,
    "AEST": 10 * 3600,
    "AEDT": 11 * 3600,
    "NZST": 12 * 3600,
    "NZDT": 13 * 3600,
}

# A trailing zone abbreviation; unknown ones make the timestamp not comparable
_TRAILING_ZONE_RE = re.compile(r"\b([A-Z]{3,5})\s*$")


def parse_offset(value: str) -> timezone:
    """Turn "+05:30" / "-0800" into a fixed-offset tzinfo."""
    match = _OFFSET_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid UTC offset: {value!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def _utc_midnight(year: str, month: str, day: str) -> Optional[datetime]:
    try:
        return datetime(int(year), int(month), int(day), tzinfo=timezone.utc)
    except ValueError:
        return None


def extract_date_from_url(url: str) -> Optional[datetime]:
    """Find /YYYYMMDD/, /YYYY/MM/DD/ or /YYYY-MM-DD/ in a URL (UTC midnight)."""
    if not url:
        return None
    for pattern in (_URL_COMPACT_RE, _URL_SLASH_RE, _URL_DASH_RE):
        match = pattern.search(url)
        if match:
            found = _utc_midnight(*match.groups())
            if found:
                return found
    return None


def extract_date_from_guid(guid: Optional[str]) -> Optional[datetime]:
    if not guid:
        return None
    match = _GUID_DATE_RE.search(guid)
    if match and 2000 <= int(match.group(1)) <= 2100:
        return _utc_midnight(*match.groups())
    return None


def extract_unix_timestamp_from_url(url: str) -> Optional[datetime]:
    """10 digits are seconds, 13 digits milliseconds; years outside 2000-2100 are ignored."""
    if not url:
        return None
    match = _UNIX_TS_RE.search(url)
    if not match:
        return None
    value = int(match.group(1))
    seconds = value / 1000 if value > 1e12 else value
    try:
        found = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    if 2000 <= found.year <= 2100:
        return found
    return None


_RELATIVE_PATTERNS = (
    (re.compile(r'(\d+)\s*(?:minute|min)s?\s*ago'), lambda n: timedelta(minutes=n)),
    (re.compile(r'(\d+)\s*hours?\s*ago'), lambda n: timedelta(hours=n)),
    (re.compile(r'(\d+)\s*days?\s*ago'), lambda n: timedelta(days=n)),
)
_WEEKS_RE = re.compile(r'(\d+)\s*weeks?\s*ago')
_MONTHS_RE = re.compile(r'(\d+)\s*months?\s*ago')


def parse_relative_date(text: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse phrases like "5 minutes ago", "yesterday" or "2 months ago"."""
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    lower = text.lower().strip()

    for pattern, to_delta in _RELATIVE_PATTERNS:
        match = pattern.search(lower)
        if match:
            return now - to_delta(int(match.group(1)))
    if "yesterday" in lower:
        return now - timedelta(days=1)
    if "today" in lower:
        return now
    match = _WEEKS_RE.search(lower)
    if match:
        return now - timedelta(weeks=int(match.group(1)))
    match = _MONTHS_RE.search(lower)
    if match:
        return now - relativedelta(months=int(match.group(1)))
    return None


class DateResolver:
    """Resolve an item's publish moment using the priority chain above.

    Args:
        default_offset: UTC offset assumed for timestamps without a zone marker.
        unreliable_sources: source ids whose RSS dates are ignored in favour of
            the URL date merged with the RSS time-of-day.
        clock: callable returning "now" (UTC-aware), injectable for tests.
    """

    def __init__(self, default_offset: Optional[str] = None,
                 unreliable_sources: Optional[Iterable[str]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.default_offset = default_offset or config.DEFAULT_TIMEZONE_OFFSET
        self.default_tz = parse_offset(self.default_offset)
        if unreliable_sources is None:
            unreliable_sources = config.UNRELIABLE_DATE_SOURCES
        self.unreliable_sources = frozenset(unreliable_sources)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse_timestamp(self, raw: Any) -> Optional[datetime]:
        """Parse a single date string, applying the default offset when zoneless."""
        if raw is None:
            return None
        if isinstance(raw, datetime):
            parsed = raw
        else:
            text = str(raw).strip()
            if not text:
                return None
            try:
                parsed = dateutil_parser.parse(text, tzinfos=_TZ_ABBREVIATIONS)
            except (ValueError, OverflowError, TypeError) as e:
                logger.debug(f"Unparseable date '{text}': {e}")
                return None
            zone = _TRAILING_ZONE_RE.search(text)
            if parsed.tzinfo is None and zone and zone.group(1) not in _TZ_ABBREVIATIONS:
                logger.debug(f"Unknown timezone '{zone.group(1)}' in '{text}'; ignoring date")
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self.default_tz)
        return parsed

    def _plausible(self, when: Optional[datetime], now: datetime) -> bool:
        return when is not None and (now - MAX_AGE) < when < (now + FUTURE_SKEW)

    def _before_horizon(self, when: Optional[datetime], now: datetime) -> bool:
        return when is not None and when < now + FUTURE_SKEW

    def _standard_field_date(self, fields: Dict[str, Any], now: datetime) -> Optional[datetime]:
        for name in DATE_FIELDS:
            raw = fields.get(name)
            if not raw:
                continue
            parsed = self.parse_timestamp(raw)
            if self._plausible(parsed, now):
                return parsed
        return None

    @staticmethod
    def merge_date_and_time(url_date: datetime, rss_date: datetime) -> datetime:
        """URL calendar date combined with the RSS time-of-day (and its offset)."""
        return datetime.combine(url_date.date(), rss_date.timetz())

    def resolve(self, fields: Optional[Dict[str, Any]] = None, url: str = "",
                guid: Optional[str] = None, description: Optional[str] = None,
                source_id: Optional[str] = None) -> Optional[datetime]:
        """Return the best publish moment for an item, or None.

        Args:
            fields: raw date fields keyed by DATE_FIELDS names
            url: item link
            guid: item guid/id
            description: raw description text
            source_id: owning source, checked against the unreliable list
        """
        fields = fields or {}
        now = self._clock()
        url_date = extract_date_from_url(url)

        if source_id and source_id in self.unreliable_sources and url_date is not None:
            rss_date = self._standard_field_date(fields, now)
            candidate = self.merge_date_and_time(url_date, rss_date) if rss_date else url_date
            if self._before_horizon(candidate, now):
                return candidate

        rss_date = self._standard_field_date(fields, now)
        if rss_date is not None:
            if url_date is not None and abs(rss_date - url_date) > URL_RSS_DISAGREEMENT:
                merged = self.merge_date_and_time(url_date, rss_date)
                if self._before_horizon(merged, now):
                    return merged
            return rss_date

        if self._before_horizon(url_date, now):
            return url_date

        unix_date = extract_unix_timestamp_from_url(url)
        if self._before_horizon(unix_date, now):
            return unix_date

        guid_date = extract_date_from_guid(guid)
        if self._before_horizon(guid_date, now):
            return guid_date

        if description:
            relative = parse_relative_date(description.strip()[:100], now)
            if self._before_horizon(relative, now):
                return relative

        return None

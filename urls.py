#!/usr/bin/env python3
"""URL canonicalisation and article identity."""

import hashlib
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
    "ref",
    "source",
})


def normalize_url(url: str) -> str:
    """Canonicalise an article URL.

    Drops tracking parameters and the fragment, upgrades http to https and
    strips a single trailing slash. Unparseable input is returned trimmed.
    """
    raw = (url or "").strip()
    try:
        parts = urlsplit(raw)
        if not parts.scheme or not parts.netloc:
            return raw
        scheme = "https" if parts.scheme.lower() == "http" else parts.scheme.lower()
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in TRACKING_PARAMS]
        normalized = urlunsplit((scheme, parts.netloc, parts.path, urlencode(query), ""))
    except ValueError:
        return raw
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def url_hash(normalized_url: str) -> str:
    """Stable article id: sha1 hex digest of the normalized URL."""
    return hashlib.sha1(normalized_url.encode("utf-8")).hexdigest()


def article_id_for(url: str) -> str:
    return url_hash(normalize_url(url))

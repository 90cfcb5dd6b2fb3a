#!/usr/bin/env python3
"""
Cheap duplicate checks that run before any storage access.

L2 compares a SHA-256 of the whole response body, L1 compares item dates
against the feed's high-water mark and L0 keeps a bounded, ordered set of
recently seen article ids on the feed record itself.
"""

from datetime import datetime
from hashlib import sha256
from typing import Iterable, List, Optional, Union


def content_hash(body: Union[bytes, str]) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return sha256(body).hexdigest()


def is_at_or_before_threshold(published_at: Optional[datetime], threshold: Optional[datetime]) -> bool:
    """True when an item is not newer than the high-water mark.

    Unresolved dates and a missing threshold are never filtered.
    """
    if published_at is None or threshold is None:
        return False
    return published_at <= threshold


def advance_high_water_mark(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


class RecentHashes:
    """Fixed-capacity ordered set; oldest entries fall off the front.

    ``touch`` moves an existing hash to the newest position, so the set
    behaves like an LRU of article ids.
    """

    def __init__(self, hashes: Iterable[str] = (), limit: int = 200):
        self.limit = limit
        self._items: dict = {}
        for value in hashes:
            self.touch(value)

    def __contains__(self, value: str) -> bool:
        return value in self._items

    def __len__(self) -> int:
        return len(self._items)

    def touch(self, value: str) -> None:
        self._items.pop(value, None)
        self._items[value] = None
        while len(self._items) > self.limit:
            del self._items[next(iter(self._items))]

    def to_list(self) -> List[str]:
        return list(self._items)

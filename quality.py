#!/usr/bin/env python3
"""
Article quality heuristics.

Clickbait phrases in the title, wire-service boilerplate and very short
bodies each cost points. Any one of them blocks the article from publication.
"""

from dataclasses import dataclass
from typing import Optional
import re

from config import config
from entities import LIFECYCLE_BLOCKED, LIFECYCLE_PUBLISHED

CLICKBAIT_POINTS = 20
CLICKBAIT_THRESHOLD = 40
PRESS_RELEASE_PENALTY = 50
SHORT_CONTENT_PENALTY = 30


class QualityFilters:
    CLICKBAIT_PATTERNS = (
        re.compile(r"you won['’]t believe", re.I),
        re.compile(r"can['’]t miss", re.I),
        re.compile(r"shocking truth", re.I),
        re.compile(r"top \d+ (reasons|things)", re.I),
        re.compile(r"mind-blowing", re.I),
    )

    PRESS_RELEASE_PATTERNS = (
        re.compile(r"press release", re.I),
        re.compile(r"business ?wire", re.I),
        re.compile(r"prnewswire", re.I),
    )

    @classmethod
    def clickbait_score(cls, title: str) -> int:
        score = sum(CLICKBAIT_POINTS for pattern in cls.CLICKBAIT_PATTERNS if pattern.search(title or ""))
        return min(score, 100)

    @classmethod
    def is_clickbait(cls, title: str) -> bool:
        return cls.clickbait_score(title) >= CLICKBAIT_THRESHOLD

    @staticmethod
    def has_min_word_count(content: str, min_words: Optional[int] = None) -> bool:
        if not content or not content.strip():
            return False
        min_words = config.MIN_WORD_COUNT if min_words is None else min_words
        return len(content.split()) >= min_words

    @classmethod
    def is_press_release(cls, title: str, content: str) -> bool:
        return any(p.search(title or "") or p.search(content or "") for p in cls.PRESS_RELEASE_PATTERNS)


@dataclass
class QualityAssessment:
    score: int
    clickbait_score: int
    is_clickbait: bool
    is_press_release: bool
    too_short: bool

    @property
    def lifecycle(self) -> str:
        if self.is_clickbait or self.is_press_release or self.too_short:
            return LIFECYCLE_BLOCKED
        return LIFECYCLE_PUBLISHED


def assess_quality(title: str, content: str, filters=QualityFilters,
                   min_words: Optional[int] = None) -> QualityAssessment:
    """Composite score: 100 minus clickbait points and the press-release/short penalties."""
    clickbait = filters.clickbait_score(title)
    press_release = filters.is_press_release(title, content)
    too_short = not filters.has_min_word_count(content, min_words)
    score = 100 - clickbait - (PRESS_RELEASE_PENALTY if press_release else 0) - (SHORT_CONTENT_PENALTY if too_short else 0)
    return QualityAssessment(
        score=max(0, score),
        clickbait_score=clickbait,
        is_clickbait=clickbait >= CLICKBAIT_THRESHOLD,
        is_press_release=press_release,
        too_short=too_short,
    )

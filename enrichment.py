#!/usr/bin/env python3
"""Reading time, keywords, summary and category for processed articles."""

from collections import Counter
from dataclasses import dataclass, field
from math import ceil
from typing import List, Optional
import re

WORDS_PER_MINUTE = 200
SUMMARY_MAX_CHARS = 300
MAX_KEYWORDS = 5

STOPWORDS = frozenset("""
a an the and or but in on at to for of with by from as is was are were been be
have has had do does did will would could should may might must shall can need
dare ought used it its this that these those i you he she we they what which who
whom whose where when why how all each every both few more most other some such
no nor not only own same so than too very just also now here there then once if
up out about into over after before between under again further while during
through above below any said says new one two first last many much get got make
made even still since back going know time year years day days today week month
""".split())

VIRAL_KEYWORDS = (
    "netizens", "viral video", "twitter erupts", "internet reacts",
    "twitter reacts", "video goes viral", "shocking video",
    "breaks internet", "trolls", "memes", "instagram reel",
    "caught on cam", "caught on camera", "watch:",
    "trending now", "social media", "users react",
)

_TAG_RE = re.compile(r'<[^>]*>')
_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+')
_NON_ALPHA_RE = re.compile(r'[^a-z\s]')


@dataclass
class Enrichment:
    reading_time: int
    summary: str
    keywords: List[str] = field(default_factory=list)
    category: Optional[str] = None


def _strip_tags(text: str) -> str:
    return _TAG_RE.sub(' ', text or '')


def estimate_reading_time(content: str) -> int:
    words = _strip_tags(content).split()
    return max(1, ceil(len(words) / WORDS_PER_MINUTE))


def generate_summary(content: str, description: Optional[str] = None) -> str:
    """First two sentences of the description (if substantial) or the content."""
    source = description if description and len(description.strip()) > 20 else content
    if not source:
        return ""
    text = _strip_tags(source).strip()
    sentences = _SENTENCE_SPLIT_RE.split(text)
    summary = " ".join(sentences[:2]).strip()
    if len(summary) > SUMMARY_MAX_CHARS:
        return summary[:SUMMARY_MAX_CHARS - 3] + "..."
    return summary


def extract_keywords(content: str, max_keywords: int = MAX_KEYWORDS) -> List[str]:
    if not content:
        return []
    text = _NON_ALPHA_RE.sub(' ', _strip_tags(content).lower())
    counts = Counter(w for w in text.split() if len(w) > 3 and w not in STOPWORDS)
    return [word for word, _ in counts.most_common(max_keywords)]


def detect_viral_intent(title: str, summary: str) -> bool:
    text = f"{title or ''} {summary or ''}".lower()
    return any(keyword in text for keyword in VIRAL_KEYWORDS)


def enrich_content(content: str, existing_summary: Optional[str] = None, title: str = "") -> Enrichment:
    summary = generate_summary(content, existing_summary)
    return Enrichment(
        reading_time=estimate_reading_time(content),
        summary=summary,
        keywords=extract_keywords(content),
        category="viral" if detect_viral_intent(title, summary) else None,
    )

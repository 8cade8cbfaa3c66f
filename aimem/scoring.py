"""
Relevance Scoring

Combines three signals into one ranking score::

    final = relevance x recency x priority

relevance   1.0 exact match, 0.8 query contained in content, otherwise the
            Jaccard overlap of stopword-filtered word sets (0.0 when
            disjoint).  A blank query scores 1.0 so ranking falls back to
            recency and priority.
recency     1.0 within the grace window, then exponential decay by
            half-life, never below the floor.  Unparsable timestamps get a
            low finite score instead of failing.
priority    per-type multiplier (BRIEF > PATTERN > CONTEXT > DECISION >
            PROGRESS by default).

Pure functions of (entry, query, now, config): identical inputs always give
identical scores.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Iterable, List, Optional, Set, Union

from aimem.config import ScoringConfig
from aimem.types import Entry, parse_timestamp

# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "a", "an", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall",
    "it", "its", "this", "that", "these", "those",
    "i", "me", "my", "we", "our", "you", "your", "he", "him", "his",
    "she", "her", "they", "them", "their",
    "not", "no", "nor", "so", "but", "or", "and", "if", "then",
    "about", "up", "out", "into", "over", "after", "before",
    "as", "what", "which", "who", "when", "where", "why", "how",
})

_WORD_RE = re.compile(r"[a-z0-9]+")


def keyword_set(text: str) -> Set[str]:
    """Lowercased alphanumeric words of *text*, minus stop words."""
    return {w for w in _WORD_RE.findall(text.lower()) if w not in STOP_WORDS}


def jaccard(a: Set[str], b: Set[str]) -> float:
    """|A n B| / |A u B|; 0.0 when either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass
class ScoredEntry:
    """An entry with its score breakdown."""

    entry: Entry
    relevance_score: float
    recency_score: float
    priority_multiplier: float
    final_score: float
    reason: str = ""


class RelevanceScorer:
    """Deterministic keyword, recency and priority scorer."""

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    # -- components ----------------------------------------------------------

    def relevance(self, content: str, query: Optional[str]) -> float:
        if not query or not query.strip():
            return 1.0
        q = query.strip().lower()
        c = content.strip().lower()
        if c == q:
            return self.config.exact_match_score
        if q in c:
            return self.config.substring_match_score
        return jaccard(keyword_set(q), keyword_set(c))

    def recency(self, timestamp: str, now: Optional[datetime] = None) -> float:
        ts = parse_timestamp(timestamp)
        if ts is None:
            return self.config.invalid_timestamp_score
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        age_days = (now - ts).total_seconds() / 86400.0
        excess = age_days - self.config.recency_grace_days
        if excess <= 0:
            return 1.0
        decayed = 0.5 ** (excess / self.config.recency_half_life_days)
        return max(self.config.recency_floor, decayed)

    def priority(self, file_type: str) -> float:
        return self.config.priorities.get(file_type, 1.0)

    # -- scoring -------------------------------------------------------------

    def score_entry(
        self,
        entry: Entry,
        query: Optional[str] = None,
        *,
        include_recency: bool = True,
        include_priority: bool = True,
        now: Optional[datetime] = None,
    ) -> ScoredEntry:
        rel = self.relevance(entry.content, query)
        rec = self.recency(entry.timestamp, now) if include_recency else 1.0
        pri = self.priority(entry.file_type) if include_priority else 1.0
        final = rel * rec * pri
        return ScoredEntry(
            entry=entry,
            relevance_score=rel,
            recency_score=rec,
            priority_multiplier=pri,
            final_score=final,
            reason=self._reason(rel, rec, pri, entry, query,
                                include_recency, include_priority),
        )

    def _reason(self, rel, rec, pri, entry, query, include_recency, include_priority) -> str:
        parts = []
        if not query or not query.strip():
            parts.append("no query")
        elif rel == self.config.exact_match_score:
            parts.append("exact match")
        elif rel == self.config.substring_match_score:
            parts.append("contains query")
        elif rel > 0:
            parts.append(f"keyword overlap {rel:.2f}")
        else:
            parts.append("no keyword overlap")
        if include_recency:
            if rec == 1.0:
                parts.append("recent")
            elif rec == self.config.invalid_timestamp_score and \
                    parse_timestamp(entry.timestamp) is None:
                parts.append("invalid timestamp")
            else:
                parts.append(f"recency {rec:.2f}")
        if include_priority and pri != 1.0:
            parts.append(f"{entry.file_type} priority x{pri:g}")
        return ", ".join(parts)

    def score_entries(
        self,
        entries: Iterable[Entry],
        query: Optional[str] = None,
        **kwargs,
    ) -> List[ScoredEntry]:
        return [self.score_entry(e, query, **kwargs) for e in entries]

    def rank_entries(
        self,
        entries: Iterable[Union[Entry, ScoredEntry]],
        query: Optional[str] = None,
        **kwargs,
    ) -> List[ScoredEntry]:
        """Score (if needed) and sort by final score, descending, stable."""
        scored = [
            e if isinstance(e, ScoredEntry) else self.score_entry(e, query, **kwargs)
            for e in entries
        ]
        return sorted(scored, key=lambda s: -s.final_score)

    def filter_by_threshold(
        self, scored: Iterable[ScoredEntry], threshold: Optional[float] = None,
    ) -> List[ScoredEntry]:
        cut = self.config.default_threshold if threshold is None else threshold
        return [s for s in scored if s.final_score >= cut]

    def get_top_entries(
        self,
        entries: Iterable[Union[Entry, ScoredEntry]],
        query: Optional[str] = None,
        n: Optional[int] = None,
        threshold: Optional[float] = None,
        **kwargs,
    ) -> List[ScoredEntry]:
        """Rank, drop entries under the threshold, keep the best *n*."""
        n = self.config.default_top_n if n is None else n
        ranked = self.rank_entries(entries, query, **kwargs)
        return self.filter_by_threshold(ranked, threshold)[:n]

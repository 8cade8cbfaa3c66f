"""
Context Selection and Formatting

select_context_for_budget() picks entries for a prompt under a hard token
budget.  Candidates arrive ranked (best first); each is accepted while the
running total stays within budget, otherwise skipped (never aborting the
pass).  Afterwards, if enough budget remains, the best skipped entry is
truncated to fit.  At most one entry is ever truncated, and the selected
total never exceeds the budget.

ContextFormatter renders entries as::

    [TYPE:YYYY-MM-DD] title

    content

    ---
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import yaml

from aimem.config import SelectorConfig
from aimem.errors import BudgetOverflow
from aimem.scoring import ScoredEntry
from aimem.tokens import estimate_tokens
from aimem.types import FILE_TYPE_TITLES, FILE_TYPES, Entry

logger = logging.getLogger(__name__)

Candidate = Union[Entry, ScoredEntry]


def _as_entry(c: Candidate) -> Entry:
    return c.entry if isinstance(c, ScoredEntry) else c


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass
class ContextSelection:
    """Entries chosen for a budget, in rank order."""

    entries: List[Entry] = field(default_factory=list)
    total_tokens: int = 0
    selected_count: int = 0
    total_count: int = 0
    skipped_ids: List[Optional[int]] = field(default_factory=list)
    truncated_id: Optional[int] = None
    budget: int = 0

    @property
    def coverage(self) -> float:
        """Fraction of candidates that made it in (truncated counts)."""
        return self.selected_count / self.total_count if self.total_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "total_tokens": self.total_tokens,
            "selected_count": self.selected_count,
            "total_count": self.total_count,
            "skipped_ids": list(self.skipped_ids),
            "truncated_id": self.truncated_id,
            "budget": self.budget,
            "coverage": self.coverage,
        }


def _reserve(needed: int, remaining: int) -> int:
    if needed > remaining:
        raise BudgetOverflow(needed, remaining)
    return remaining - needed


def truncate_to_tokens(
    text: str, max_tokens: int, config: Optional[SelectorConfig] = None,
) -> str:
    """Cut *text* so that it plus the truncation marker fits *max_tokens*."""
    cfg = config or SelectorConfig()
    if estimate_tokens(text, cfg.chars_per_token) <= max_tokens:
        return text
    marker = cfg.truncation_marker
    keep = max_tokens * cfg.chars_per_token - len(marker)
    if keep <= 0:
        return text[:max(0, max_tokens * cfg.chars_per_token)]
    cut = text[:keep]
    # Prefer a word boundary when one is close
    space = cut.rfind(" ")
    if space > keep * 0.8:
        cut = cut[:space]
    return cut.rstrip() + marker


def select_context_for_budget(
    candidates: Sequence[Candidate],
    budget: int,
    *,
    allow_truncation: bool = True,
    config: Optional[SelectorConfig] = None,
) -> ContextSelection:
    """Greedy token-budgeted selection over pre-ranked candidates.

    Args:
        candidates: Entries or ScoredEntries, best first.
        budget: Maximum total estimated tokens.
        allow_truncation: Let one skipped entry be shortened to fit.

    Raises:
        ValueError: if *budget* is negative.
    """
    if budget < 0:
        raise ValueError(f"budget must be >= 0, got {budget}")
    cfg = config or SelectorConfig()
    entries = [_as_entry(c) for c in candidates]
    remaining = budget
    chosen: Dict[int, Entry] = {}
    skipped: List[int] = []

    for pos, entry in enumerate(entries):
        tokens = estimate_tokens(entry.content, cfg.chars_per_token)
        try:
            remaining = _reserve(tokens, remaining)
        except BudgetOverflow as exc:
            logger.debug(f"Skipping entry {entry.id}: {exc}")
            skipped.append(pos)
            continue
        chosen[pos] = entry

    truncated_id = None
    if allow_truncation and skipped and remaining >= cfg.min_truncation_tokens:
        pos = skipped.pop(0)
        original = entries[pos]
        cut = truncate_to_tokens(original.content, remaining, cfg)
        tokens = estimate_tokens(cut, cfg.chars_per_token)
        if cut and tokens <= remaining:
            chosen[pos] = replace(original, content=cut)
            remaining -= tokens
            truncated_id = original.id
        else:
            skipped.insert(0, pos)

    selected = [chosen[p] for p in sorted(chosen)]
    return ContextSelection(
        entries=selected,
        total_tokens=budget - remaining,
        selected_count=len(selected),
        total_count=len(entries),
        skipped_ids=[entries[p].id for p in skipped],
        truncated_id=truncated_id,
        budget=budget,
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

_STRUCTURED_LINE_RE = re.compile(r"^\s*([-*+#>|`]|\d+[.)]\s)")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def strip_whitespace(text: str) -> str:
    """Tidy whitespace without flattening structure.

    Prose lines are trimmed; list, heading, quote, table and code lines keep
    their leading indentation (trailing whitespace is always removed);
    fenced code blocks are kept verbatim apart from trailing whitespace.
    Runs of blank lines collapse to one, leading/trailing blanks are dropped.
    """
    out: List[str] = []
    in_fence = False
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            out.append(line.rstrip())
        elif in_fence or _STRUCTURED_LINE_RE.match(line) or line.startswith(("    ", "\t")):
            out.append(line.rstrip())
        else:
            out.append(line.strip())
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(out)).strip("\n")


@dataclass
class FormattedEntry:
    tag: str
    type: str
    title: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    formatted: str = ""


class ContextFormatter:
    """Render entries for prompt injection or as a markdown document."""

    def __init__(self, config: Optional[SelectorConfig] = None):
        self.config = config or SelectorConfig()

    def title_of(self, content: str) -> str:
        for line in content.split("\n"):
            text = line.strip().lstrip("#").strip()
            if text:
                limit = self.config.title_length
                return text if len(text) <= limit else text[:limit - 3].rstrip() + "..."
        return ""

    def format_entry(self, entry: Entry, include_metadata: bool = True) -> FormattedEntry:
        content = strip_whitespace(entry.content)
        title = self.title_of(content)
        meta = entry.metadata.to_dict() if include_metadata else {}
        if include_metadata:
            meta.update({"id": entry.id, "timestamp": entry.timestamp})
        return FormattedEntry(
            tag=entry.tag,
            type=entry.file_type,
            title=title,
            content=content,
            metadata=meta,
            formatted=f"{entry.tag} {title}\n\n{content}\n\n---\n",
        )

    def format_entries(
        self, entries: Iterable[Candidate], include_metadata: bool = True,
    ) -> List[FormattedEntry]:
        return [self.format_entry(_as_entry(e), include_metadata) for e in entries]

    def format_as_document(
        self, entries: Iterable[Candidate], sort_by_type: bool = True,
    ) -> str:
        """One markdown document; grouped by type in canonical order if asked."""
        items = [_as_entry(e) for e in entries]
        if not sort_by_type:
            return "\n".join(self.format_entry(e, False).formatted for e in items)
        sections: List[str] = []
        for file_type in FILE_TYPES:
            group = [e for e in items if e.file_type == file_type]
            if not group:
                continue
            group.sort(key=lambda e: (e.timestamp, e.id or 0), reverse=True)
            body = "\n".join(self.format_entry(e, False).formatted for e in group)
            sections.append(f"## {FILE_TYPE_TITLES[file_type]}\n\n{body}")
        return "\n".join(sections)

    def serialize_metadata_yaml(self, formatted: FormattedEntry) -> str:
        """YAML front-matter block for a formatted entry."""
        data = {"tag": formatted.tag, "type": formatted.type}
        data.update({k: v for k, v in formatted.metadata.items() if v is not None})
        body = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        return f"---\n{body}---\n"

    @staticmethod
    def estimate_token_reduction(original: str, formatted: str) -> Dict[str, Any]:
        """Token savings of *formatted* over *original*."""
        before = estimate_tokens(original)
        after = estimate_tokens(formatted)
        saved = before - after
        return {
            "original_tokens": before,
            "formatted_tokens": after,
            "saved_tokens": saved,
            "percent_saved": round(saved / before * 100.0, 2) if before else 0.0,
        }

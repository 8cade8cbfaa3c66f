"""
Report Synthesis — Phase Reports from Stored Entries

Builds report content from what is already in the store, without a model
call.  Each standard report reads the newest entries of a few types and
lays them out as markdown sections:

    research    DECISION + CONTEXT      key findings and insights
    plan        PROGRESS + DECISION     in-progress work, next steps, strategy
    execution   PROGRESS + DECISION     completed work, resolved issues,
                + CONTEXT               state changes, counts

Any other report type lists the newest entries of the requested types
(DECISION, PROGRESS and CONTEXT by default).

Output is deterministic for a given store and clock.  A synthesized report
can be stored as a RESEARCH_REPORT, PLAN_REPORT or EXECUTION_REPORT entry
with :meth:`SynthesizedReport.to_entry`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from aimem.errors import ValidationError
from aimem.types import Entry, EntryMetadata, file_type_from_name, format_timestamp

logger = logging.getLogger(__name__)

# report kind -> (entry type it is stored as, phase recorded in metadata)
REPORT_KINDS: Dict[str, tuple] = {
    "research": ("RESEARCH_REPORT", "research"),
    "plan": ("PLAN_REPORT", "planning"),
    "execution": ("EXECUTION_REPORT", "execution"),
}

DEFAULT_CUSTOM_TYPES = ("DECISION", "PROGRESS", "CONTEXT")

_PREVIEW_CHARS = 80

_NEXT_WORDS = ("next", "todo")
_DOING_WORDS = ("doing", "in-progress", "in progress")
_DONE_WORDS = ("done",)
_ISSUE_WORDS = ("fix", "issue", "bug")


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class SynthesizedReport:
    """Report content plus what it was built from."""

    report_type: str
    title: str
    content: str
    source_count: int
    generated_at: str

    @property
    def file_type(self) -> Optional[str]:
        """Entry type this report is stored as (None for custom reports)."""
        kind = REPORT_KINDS.get(self.report_type)
        return kind[0] if kind else None

    def to_entry(self) -> Entry:
        """Entry holding this report.

        Raises:
            ValidationError: custom reports have no entry type.
        """
        kind = REPORT_KINDS.get(self.report_type)
        if kind is None:
            raise ValidationError(
                f"report type {self.report_type!r} cannot be stored; "
                f"expected one of {sorted(REPORT_KINDS)}"
            )
        file_type, phase = kind
        return Entry(
            file_type=file_type,
            content=self.content,
            timestamp=self.generated_at,
            metadata=EntryMetadata(phase=phase, extra={"synthesized": True,
                                                       "source_count": self.source_count}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_type": self.report_type,
            "title": self.title,
            "content": self.content,
            "source_count": self.source_count,
            "generated_at": self.generated_at,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now(clock: Optional[Callable[[], datetime]]) -> str:
    return format_timestamp(clock() if clock else datetime.now(timezone.utc))


def _first_line(entry: Entry, fallback: str) -> str:
    for line in entry.content.splitlines():
        if line.strip():
            return line.strip()
    return fallback


def _bullet(entry: Entry, fallback: str, default_tag: str = "") -> str:
    tag = entry.tag or default_tag
    text = _first_line(entry, fallback)
    return f"- {tag} {text}" if tag else f"- {text}"


def _mentions(entry: Entry, words: Sequence[str]) -> bool:
    text = entry.content.lower()
    return any(w in text for w in words)


def _report(report_type: str, title: str, lines: List[str], sources: int,
            generated_at: str) -> SynthesizedReport:
    logger.debug(f"Synthesized {report_type} report from {sources} entries")
    return SynthesizedReport(
        report_type=report_type,
        title=title,
        content="\n".join(lines).rstrip() + "\n",
        source_count=sources,
        generated_at=generated_at,
    )


# ---------------------------------------------------------------------------
# Standard reports
# ---------------------------------------------------------------------------


def synthesize_research_report(
    store, recent: int = 20, *, clock: Optional[Callable[[], datetime]] = None,
) -> SynthesizedReport:
    """Key decisions and context insights (five of each, newest first)."""
    generated_at = _now(clock)
    decisions = store.query_by_type("DECISION", recent)
    contexts = store.query_by_type("CONTEXT", recent)

    lines = ["## Key Findings & Decisions", ""]
    if decisions:
        lines.append("### Decisions Made:")
        lines.extend(_bullet(d, "Decision") for d in decisions[:5])
        lines.append("")
    if contexts:
        lines.append("### Context Insights:")
        lines.extend(_bullet(c, "Context") for c in contexts[:5])
        lines.append("")
    total = len(decisions) + len(contexts)
    lines += [
        "### Summary",
        f"Analyzed {len(decisions)} decisions and {len(contexts)} context entries.",
        f"Total sources reviewed: {total}",
    ]
    return _report("research", "Research Report", lines, total, generated_at)


def synthesize_plan_report(
    store, recent: int = 20, *, clock: Optional[Callable[[], datetime]] = None,
) -> SynthesizedReport:
    """In-progress tasks, next steps and recent strategic decisions."""
    generated_at = _now(clock)
    progress = store.query_by_type("PROGRESS", recent)
    decisions = store.query_by_type("DECISION", 10)

    lines = ["## Implementation Plan", ""]
    if progress:
        lines.append("### Planned Tasks:")
        doing = [p for p in progress
                 if p.metadata.progress == "in-progress" or _mentions(p, _DOING_WORDS)]
        upcoming = [p for p in progress if _mentions(p, _NEXT_WORDS)]
        if doing:
            lines.append("**In Progress:**")
            lines.extend(f"- {_first_line(t, 'Task')}" for t in doing[:3])
            lines.append("")
        if upcoming:
            lines.append("**Next Steps:**")
            lines.extend(f"- {_first_line(t, 'Task')}" for t in upcoming[:5])
            lines.append("")
    if decisions:
        lines.append("### Strategic Decisions:")
        lines.extend(_bullet(d, "Decision") for d in decisions[:3])
        lines.append("")
    lines += [
        "### Metrics",
        f"- Total planned items: {len(progress)}",
        f"- Strategic decisions: {len(decisions)}",
    ]
    return _report("plan", "Plan Report", lines, len(progress) + len(decisions),
                   generated_at)


def synthesize_execution_report(
    store, recent: int = 30, *, clock: Optional[Callable[[], datetime]] = None,
) -> SynthesizedReport:
    """Completed work, resolved issues, state changes and counts."""
    generated_at = _now(clock)
    progress = store.query_by_type("PROGRESS", recent)
    decisions = store.query_by_type("DECISION", 15)
    contexts = store.query_by_type("CONTEXT", 10)

    completed = [p for p in progress
                 if p.metadata.progress == "done" or _mentions(p, _DONE_WORDS)]
    fixes = [d for d in decisions if _mentions(d, _ISSUE_WORDS)]

    lines = ["## Execution Summary", "", "### Work Completed:"]
    if completed:
        lines.extend(_bullet(p, "Completed task", "[DONE]") for p in completed[:8])
    else:
        lines.append("- (Review progress log for details)")
    lines += ["", "### Issues Resolved:"]
    if fixes:
        lines.extend(_bullet(d, "Issue resolved", "[FIX]") for d in fixes[:4])
    elif decisions:
        lines.append(f"- Applied {len(decisions)} strategic decisions")
    else:
        lines.append("- (No issues recorded)")
    lines.append("")
    if contexts:
        lines.append("### State Changes:")
        lines.extend(_bullet(c, "State updated", "[STATE]") for c in contexts[:3])
        lines.append("")
    lines += [
        "### Execution Metrics",
        f"- Tasks completed: {len(completed)}",
        f"- Issues resolved: {len(fixes)}",
        f"- Total progress items: {len(progress)}",
        f"- Total decisions applied: {len(decisions)}",
        f"- Generated: {generated_at[:10]}",
    ]
    total = len(progress) + len(decisions) + len(contexts)
    return _report("execution", "Execution Report", lines, total, generated_at)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

_STANDARD = {
    "research": synthesize_research_report,
    "plan": synthesize_plan_report,
    "execution": synthesize_execution_report,
}


def synthesize_report(
    store,
    report_type: str,
    recent: Optional[int] = None,
    *,
    file_types: Optional[Iterable[str]] = None,
    title: Optional[str] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SynthesizedReport:
    """Build a report of *report_type*.

    "research", "plan" and "execution" use their dedicated layouts.  Any
    other type lists the newest entries of *file_types*, splitting the
    *recent* limit (default 20) evenly between them.

    Raises:
        ValidationError: blank report type or unknown entry type.
    """
    kind = (report_type or "").strip().lower()
    if not kind:
        raise ValidationError("report type is required")
    if kind in _STANDARD:
        if recent is None:
            return _STANDARD[kind](store, clock=clock)
        return _STANDARD[kind](store, recent, clock=clock)

    generated_at = _now(clock)
    limit = recent or 20
    types = [file_type_from_name(t) for t in (file_types or DEFAULT_CUSTOM_TYPES)]
    per_type = max(1, limit // len(types))
    entries: List[Entry] = []
    for file_type in types:
        entries.extend(store.query_by_type(file_type, per_type))
    entries.sort(key=lambda e: (e.timestamp, e.id or 0), reverse=True)
    entries = entries[:limit]

    heading = title or f"{report_type.strip()} Report"
    lines = [f"## {heading}", "", "### Entries:", ""]
    for e in entries:
        text = _first_line(e, "")
        preview = text[:_PREVIEW_CHARS] + ("..." if len(text) > _PREVIEW_CHARS else "")
        lines.append(f"- {e.tag or '[' + e.file_type + ']'} {preview}")
    lines += [
        "",
        "### Metadata",
        f"- Report type: {report_type.strip()}",
        f"- Entries analyzed: {len(entries)}",
        f"- Generated: {generated_at}",
    ]
    return _report(kind, heading, lines, len(entries), generated_at)

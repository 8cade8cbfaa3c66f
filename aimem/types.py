"""
Memory Data Model

Defines the entry schema (typed, tagged, timestamped knowledge units), the
metadata bag attached to each entry, and the telemetry rows recorded by the
store.  Entries get their integer id from the store and never change it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from aimem.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

FileType = Literal[
    "CONTEXT", "DECISION", "PROGRESS", "PATTERN", "BRIEF",
    "RESEARCH_REPORT", "PLAN_REPORT", "EXECUTION_REPORT",
]
EmbeddingState = Literal["pending", "ready", "failed", "skipped"]
ProgressStatus = Literal["done", "in-progress", "draft", "deprecated"]
Phase = Literal["research", "planning", "execution", "checkpoint"]
ContextStatus = Literal["healthy", "warning", "critical"]

# Canonical order, also used when rendering documents
FILE_TYPES = (
    "BRIEF", "CONTEXT", "PATTERN", "DECISION", "PROGRESS",
    "RESEARCH_REPORT", "PLAN_REPORT", "EXECUTION_REPORT",
)

# Valid values for runtime checks
VALID_FILE_TYPES: set = set(FILE_TYPES)
VALID_TAG_TYPES: set = VALID_FILE_TYPES | {"DEPRECATED", "SUPERSEDED"}
VALID_EMBEDDING_STATES: set = {"pending", "ready", "failed", "skipped"}
VALID_PROGRESS: set = {"done", "in-progress", "draft", "deprecated"}
VALID_TARGETS: set = {
    "ui", "db", "refactor", "tests", "docs", "perf", "integration", "infra",
}
VALID_PHASES: set = {"research", "planning", "execution", "checkpoint"}
VALID_CONTEXT_STATUSES: set = {"healthy", "warning", "critical"}

FILE_TYPE_TO_FILENAME: Dict[str, str] = {
    "CONTEXT": "activeContext.md",
    "DECISION": "decisionLog.md",
    "PROGRESS": "progress.md",
    "PATTERN": "systemPatterns.md",
    "BRIEF": "projectBrief.md",
    "RESEARCH_REPORT": "researchReport.md",
    "PLAN_REPORT": "planReport.md",
    "EXECUTION_REPORT": "executionReport.md",
}

FILE_TYPE_TITLES: Dict[str, str] = {
    "CONTEXT": "Active Context",
    "DECISION": "Decision Log",
    "PROGRESS": "Progress",
    "PATTERN": "System Patterns",
    "BRIEF": "Project Brief",
    "RESEARCH_REPORT": "Research Reports",
    "PLAN_REPORT": "Plan Reports",
    "EXECUTION_REPORT": "Execution Reports",
}

_FILENAME_TO_FILE_TYPE = {v.lower(): k for k, v in FILE_TYPE_TO_FILENAME.items()}


def file_type_from_name(name: str) -> str:
    """Resolve a file type from an alias, a lowercase name or a legacy filename.

    >>> file_type_from_name("decisionLog.md")
    'DECISION'
    >>> file_type_from_name("research-report")
    'RESEARCH_REPORT'
    """
    key = name.strip()
    upper = key.upper().replace("-", "_")
    if upper in VALID_FILE_TYPES:
        return upper
    mapped = _FILENAME_TO_FILE_TYPE.get(key.lower())
    if mapped is None and not key.lower().endswith(".md"):
        mapped = _FILENAME_TO_FILE_TYPE.get(key.lower() + ".md")
    if mapped is None:
        raise ValidationError(f"unknown file type: {name!r}")
    return mapped


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(dt: datetime) -> str:
    """Canonical UTC form: ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    A single fixed-width format keeps lexical order equal to time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _now_iso() -> str:
    """Current UTC time as canonical ISO-8601 string."""
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or bare date) to an aware UTC datetime.

    Returns None when the value does not denote a valid instant.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamp(value: Any, *, end_of_day: bool = False) -> str:
    """Parse and re-emit a timestamp in canonical form.

    A bare date (``YYYY-MM-DD``) denotes midnight, or the last millisecond
    of that day when *end_of_day* is set (inclusive range ends).

    Raises:
        ValidationError: if the value is not a valid instant.
    """
    dt = parse_timestamp(value)
    if dt is None:
        raise ValidationError(f"invalid timestamp: {value!r}")
    if end_of_day and isinstance(value, str) and len(value.strip()) == 10:
        dt = dt + timedelta(days=1) - timedelta(milliseconds=1)
    return format_timestamp(dt)


def make_tag(file_type: str, timestamp: Optional[str] = None) -> str:
    """Build the canonical ``[TYPE:YYYY-MM-DD]`` tag for a type and instant."""
    dt = parse_timestamp(timestamp) if timestamp else datetime.now(timezone.utc)
    if dt is None:
        raise ValidationError(f"invalid timestamp: {timestamp!r}")
    return f"[{file_type}:{dt.strftime('%Y-%m-%d')}]"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@dataclass
class EntryMetadata:
    """Metadata bag: known dimensions plus passthrough keys.

    Values are checked by :func:`aimem.tagging.validate_metadata` at the
    store boundary, not here, so legacy rows can still be loaded.
    """

    progress: Optional[str] = None
    targets: List[str] = field(default_factory=list)
    phase: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a JSON-safe dict (passthrough keys at top level)."""
        d: Dict[str, Any] = dict(self.extra)
        if self.progress is not None:
            d["progress"] = self.progress
        if self.targets:
            d["targets"] = list(self.targets)
        if self.phase is not None:
            d["phase"] = self.phase
        return d

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> EntryMetadata:
        """Build from a flat dict; unknown keys land in ``extra``."""
        if not d:
            return cls()
        data = dict(d)
        targets = data.pop("targets", None) or []
        if isinstance(targets, str):
            targets = [t.strip() for t in targets.split(",") if t.strip()]
        return cls(
            progress=data.pop("progress", None),
            targets=list(targets),
            phase=data.pop("phase", None),
            extra=data,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    def is_empty(self) -> bool:
        return not self.to_dict()


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

@dataclass
class Entry:
    """
    A typed, timestamped, tagged unit of memory.

    ``id`` is None until the store assigns one.  ``tag`` may be left empty;
    the store derives it from ``file_type`` and ``timestamp``.
    """

    file_type: FileType = "CONTEXT"
    content: str = ""
    tag: str = ""
    timestamp: str = field(default_factory=_now_iso)
    metadata: EntryMetadata = field(default_factory=EntryMetadata)
    id: Optional[int] = None
    embedding: Optional[bytes] = None
    embedding_state: EmbeddingState = "pending"

    def __post_init__(self):
        """Normalize file type and coerce dict metadata."""
        if isinstance(self.file_type, str):
            self.file_type = self.file_type.strip().upper()
        if self.file_type not in VALID_FILE_TYPES:
            raise ValidationError(f"invalid file_type: {self.file_type!r}")
        if isinstance(self.metadata, dict):
            self.metadata = EntryMetadata.from_dict(self.metadata)
        elif self.metadata is None:
            self.metadata = EntryMetadata()
        if self.embedding_state not in VALID_EMBEDDING_STATES:
            raise ValidationError(
                f"invalid embedding_state: {self.embedding_state!r}"
            )

    @property
    def phase(self) -> Optional[str]:
        return self.metadata.phase

    @property
    def progress_status(self) -> Optional[str]:
        return self.metadata.progress

    @property
    def date(self) -> str:
        """``YYYY-MM-DD`` part of the tag, or of the timestamp as fallback."""
        inner = self.tag.strip("[]")
        if ":" in inner:
            return inner.split(":", 1)[1]
        return self.timestamp[:10]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe; embedding as hex)."""
        d = asdict(self)
        d["metadata"] = self.metadata.to_dict()
        d["embedding"] = self.embedding.hex() if self.embedding else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Entry:
        """Deserialize from dict."""
        known = set(cls.__dataclass_fields__.keys())
        data = {k: v for k, v in d.items() if k in known}
        emb = data.get("embedding")
        if isinstance(emb, str):
            data["embedding"] = bytes.fromhex(emb)
        if "metadata" in data and isinstance(data["metadata"], str):
            data["metadata"] = json.loads(data["metadata"] or "{}")
        return cls(**data)

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


# ---------------------------------------------------------------------------
# Telemetry rows (append-only)
# ---------------------------------------------------------------------------

@dataclass
class TokenMetric:
    """One token accounting record."""

    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    context_status: ContextStatus = "healthy"
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self):
        if self.context_status not in VALID_CONTEXT_STATUSES:
            raise ValidationError(
                f"invalid context_status: {self.context_status!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> TokenMetric:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class QueryMetric:
    """One query timing record."""

    operation: str = ""
    elapsed_ms: float = 0.0
    result_count: int = 0
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> QueryMetric:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class QueryResult:
    """Non-raising query envelope: entries plus an optional error message."""

    entries: List[Entry] = field(default_factory=list)
    count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

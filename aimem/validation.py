"""
Entry Validation and Sanitization

Boundary checks applied before anything reaches the store:

- content: non-empty UTF-8, at most ``max_content_bytes`` encoded bytes
- tag: ``[TYPE:YYYY-MM-DD]`` with an uppercase known type and a real
  calendar date (2025-13-04 and 2025-02-30 are rejected)
- timestamp: ISO-8601 that parses to a valid instant
- metadata: known dimensions drawn from their closed vocabularies

Sanitizers normalize untrusted text (null bytes, CRLF, runs of blank lines,
bracket-less legacy tags, path traversal).  BatchProcessor runs a callable
over large inputs in chunks and checks a cancellation token between chunks.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from aimem.config import ValidationConfig
from aimem.errors import OperationCancelled, ValidationError
from aimem.tagging import validate_metadata
from aimem.types import (
    VALID_FILE_TYPES,
    VALID_TAG_TYPES,
    Entry,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"^\[([A-Z_]+):(\d{4})-(\d{2})-(\d{2})\]$")
_LEGACY_TAG_PATTERN = re.compile(r"^([A-Z_]+):(\d{4}-\d{2}-\d{2})$")


@dataclass
class ValidationResult:
    """Outcome of a validation pass."""

    valid: bool = True
    errors: List[str] = field(default_factory=list)

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise ValidationError(self.errors)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class MemoryValidator:
    """Stateless checks for entries and their parts."""

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def validate_tag(self, tag: str) -> bool:
        """True iff *tag* is ``[TYPE:YYYY-MM-DD]`` with a real calendar date."""
        if not isinstance(tag, str) or len(tag) > self.config.max_tag_length:
            return False
        m = TAG_PATTERN.match(tag)
        if not m:
            return False
        tag_type, year, month, day = m.groups()
        if tag_type not in VALID_TAG_TYPES:
            return False
        try:
            date(int(year), int(month), int(day))
        except ValueError:
            return False
        return True

    def validate_timestamp(self, timestamp: str) -> bool:
        return parse_timestamp(timestamp) is not None

    def validate_content(self, content: str) -> List[str]:
        """Return content errors (empty = valid)."""
        if not isinstance(content, str):
            return [f"content must be a string, got {type(content).__name__}"]
        if not content.strip():
            return ["content must not be empty"]
        size = len(content.encode("utf-8"))
        if size > self.config.max_content_bytes:
            return [
                f"content too large: {size} bytes "
                f"(max {self.config.max_content_bytes})"
            ]
        return []

    def validate_entry(self, entry: Entry) -> ValidationResult:
        """Validate every field of an entry, collecting all errors."""
        errors: List[str] = []
        if entry.file_type not in VALID_FILE_TYPES:
            errors.append(f"invalid file_type: {entry.file_type!r}")
        if not self.validate_timestamp(entry.timestamp):
            errors.append(f"invalid timestamp: {entry.timestamp!r}")
        if not entry.tag:
            errors.append("tag is required")
        elif not self.validate_tag(entry.tag):
            errors.append(
                f"invalid tag format: {entry.tag!r} (expected [TYPE:YYYY-MM-DD])"
            )
        errors.extend(self.validate_content(entry.content))
        errors.extend(validate_metadata(entry.metadata))
        return ValidationResult(valid=not errors, errors=errors)

    def validate_entries(
        self,
        entries: Sequence[Entry],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> List[Tuple[int, ValidationResult]]:
        """Validate many entries; returns (index, result) for invalid ones."""
        processor = BatchProcessor(self.config.batch_size)
        failures: List[Tuple[int, ValidationResult]] = []

        def check(indexed: Tuple[int, Entry]) -> None:
            idx, entry = indexed
            result = self.validate_entry(entry)
            if not result.valid:
                failures.append((idx, result))

        processor.process(list(enumerate(entries)), check, cancel=cancel)
        return failures


# ---------------------------------------------------------------------------
# Sanitizers
# ---------------------------------------------------------------------------

_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")
_TRAVERSAL_RE = re.compile(r"\.\.[/\\]")


def sanitize_content(content: str) -> str:
    """Remove null bytes, normalize line endings, collapse blank-line runs."""
    text = content.replace("\x00", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _MULTI_NEWLINE_RE.sub("\n\n", text)
    return text.strip()


def sanitize_tag(tag: str) -> str:
    """Trim and add missing brackets (legacy ``TYPE:DATE`` form)."""
    text = tag.strip()
    if _LEGACY_TAG_PATTERN.match(text):
        return f"[{text}]"
    if text and not text.startswith("["):
        text = "[" + text
    if text and not text.endswith("]"):
        text = text + "]"
    return text


def sanitize_path(path: str) -> str:
    """Strip parent-directory traversal segments and null bytes."""
    text = path.replace("\x00", "")
    while _TRAVERSAL_RE.search(text):
        text = _TRAVERSAL_RE.sub("", text)
    return text


def escape_sql_string(value: str) -> str:
    """Double single quotes for embedding a literal in hand-built SQL."""
    return value.replace("'", "''")


def escape_like(value: str) -> str:
    """Escape LIKE wildcards; use with ``ESCAPE '\\'``."""
    return (
        value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Per-item outcome of a batch run."""

    results: List[Any] = field(default_factory=list)
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results) + len(self.failures)


class BatchProcessor:
    """Run a callable over items in fixed-size chunks.

    A failing item is recorded and does not stop the batch.  The cancel
    token is checked before each chunk; cancellation raises
    OperationCancelled carrying the number of items already processed.
    """

    def __init__(self, batch_size: int = 100):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size

    def chunks(self, items: Sequence[Any]) -> Iterable[Sequence[Any]]:
        for start in range(0, len(items), self.batch_size):
            yield items[start:start + self.batch_size]

    def process(
        self,
        items: Sequence[Any],
        fn: Callable[[Any], Any],
        *,
        cancel: Optional[threading.Event] = None,
        isolate: bool = False,
    ) -> BatchResult:
        """Apply *fn* to every item.

        Args:
            items: Input sequence.
            fn: Callable applied to each item.
            cancel: Optional event; when set, stop at the next chunk boundary.
            isolate: If True, record per-item exceptions instead of raising.
        """
        out = BatchResult()
        index = 0
        for chunk in self.chunks(items):
            if cancel is not None and cancel.is_set():
                logger.info(f"Batch cancelled after {index} item(s)")
                raise OperationCancelled(processed=index)
            for item in chunk:
                if isolate:
                    try:
                        out.results.append(fn(item))
                    except Exception as exc:
                        out.failures.append((index, str(exc)))
                else:
                    out.results.append(fn(item))
                index += 1
        return out

"""
Metadata Tagging

Validation, (de)serialization, merging, filtering and counting for the
metadata bag attached to entries.  Known dimensions:

    progress   done | in-progress | draft | deprecated
    targets    subset of ui, db, refactor, tests, docs, perf, integration, infra
    phase      research | planning | execution | checkpoint

Any other key passes through untouched.
"""

from __future__ import annotations

import json
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Union

from aimem.errors import ValidationError
from aimem.types import (
    VALID_PHASES,
    VALID_PROGRESS,
    VALID_TARGETS,
    Entry,
    EntryMetadata,
)

MetadataLike = Union[EntryMetadata, Dict[str, Any], str, None]


def validate_metadata(meta: MetadataLike) -> List[str]:
    """Return list of error messages (empty = valid)."""
    try:
        m = parse_metadata(meta)
    except ValidationError as exc:
        return list(exc.errors)
    errors: List[str] = []
    if m.progress is not None and m.progress not in VALID_PROGRESS:
        errors.append(
            f"metadata.progress: {m.progress!r} not in {sorted(VALID_PROGRESS)}"
        )
    if m.phase is not None and m.phase not in VALID_PHASES:
        errors.append(
            f"metadata.phase: {m.phase!r} not in {sorted(VALID_PHASES)}"
        )
    bad = [t for t in m.targets if t not in VALID_TARGETS]
    if bad:
        errors.append(
            f"metadata.targets: unknown {bad} (allowed {sorted(VALID_TARGETS)})"
        )
    try:
        json.dumps(m.extra)
    except (TypeError, ValueError):
        errors.append("metadata: passthrough values must be JSON-serializable")
    return errors


def parse_metadata(meta: MetadataLike) -> EntryMetadata:
    """Coerce a JSON string, dict or EntryMetadata to EntryMetadata."""
    if meta is None:
        return EntryMetadata()
    if isinstance(meta, EntryMetadata):
        return meta
    if isinstance(meta, str):
        if not meta.strip():
            return EntryMetadata()
        try:
            meta = json.loads(meta)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"metadata: invalid JSON ({exc.msg})") from exc
    if not isinstance(meta, dict):
        raise ValidationError(
            f"metadata: expected object, got {type(meta).__name__}"
        )
    return EntryMetadata.from_dict(meta)


def serialize_metadata(meta: MetadataLike) -> str:
    """Serialize to the compact JSON stored in the ``metadata`` column."""
    return parse_metadata(meta).to_json()


def merge_metadata(base: MetadataLike, updates: MetadataLike) -> EntryMetadata:
    """Shallow merge: keys present in *updates* win; targets are replaced."""
    merged = parse_metadata(base).to_dict()
    merged.update(parse_metadata(updates).to_dict())
    return EntryMetadata.from_dict(merged)


def create_metadata(
    progress: Optional[str] = None,
    targets: Optional[Iterable[str]] = None,
    phase: Optional[str] = None,
    **extra: Any,
) -> EntryMetadata:
    """Build and validate a metadata bag in one call.

    Raises:
        ValidationError: if any known dimension is out of vocabulary.
    """
    meta = EntryMetadata(
        progress=progress,
        targets=sorted(set(targets or [])),
        phase=phase,
        extra=dict(extra),
    )
    errors = validate_metadata(meta)
    if errors:
        raise ValidationError(errors)
    return meta


# ---------------------------------------------------------------------------
# Filters and counts
# ---------------------------------------------------------------------------


def filter_entries(
    entries: Iterable[Entry],
    *,
    progress: Optional[str] = None,
    targets: Optional[Iterable[str]] = None,
    phase: Optional[str] = None,
) -> List[Entry]:
    """Keep entries matching every given dimension.

    ``targets`` matches when the entry carries at least one of them.
    """
    wanted = set(targets or [])
    out = []
    for e in entries:
        if progress is not None and e.metadata.progress != progress:
            continue
        if phase is not None and e.metadata.phase != phase:
            continue
        if wanted and not wanted & set(e.metadata.targets):
            continue
        out.append(e)
    return out


def count_by_dimension(entries: Iterable[Entry]) -> Dict[str, Dict[str, int]]:
    """Histogram of progress, phase and target values."""
    progress: Counter = Counter()
    phase: Counter = Counter()
    targets: Counter = Counter()
    for e in entries:
        if e.metadata.progress:
            progress[e.metadata.progress] += 1
        if e.metadata.phase:
            phase[e.metadata.phase] += 1
        targets.update(e.metadata.targets)
    return {
        "progress": dict(progress),
        "phase": dict(phase),
        "targets": dict(targets),
    }


def progress_buckets(entries: Iterable[Entry]) -> Dict[str, List[Entry]]:
    """Group PROGRESS-style entries by status; untagged ones count as draft."""
    buckets: Dict[str, List[Entry]] = {s: [] for s in
                                       ("done", "in-progress", "draft", "deprecated")}
    for e in entries:
        status = e.metadata.progress or "draft"
        buckets.setdefault(status, []).append(e)
    return buckets

"""
Export/Import — Markdown Files and JSONL

Markdown layout (one file per entry type, readable and diffable)::

    activeContext.md  decisionLog.md  progress.md  systemPatterns.md
    projectBrief.md   researchReport.md  planReport.md  executionReport.md

Each file starts with a ``# Title`` header followed by entries, oldest
first, as ``[TYPE:YYYY-MM-DD] content`` blocks.  Import parses those blocks
back (timestamp = midnight UTC of the tag date) and skips entries already
present, keyed by type, tag and the first 50 characters of content.

JSONL carries full entries (metadata included), one per line.

stdout purity: JSONL export writes only JSONL to its stream.  Progress goes
to the ``log`` callable (stderr by default).
"""

from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from aimem.errors import AimemError, StorageError, ValidationError
from aimem.schema import backup_dir, backup_stamp
from aimem.types import (
    FILE_TYPE_TITLES,
    FILE_TYPE_TO_FILENAME,
    FILE_TYPES,
    VALID_FILE_TYPES,
    Entry,
    file_type_from_name,
)

_TAG_LINE_RE = re.compile(r"^\[([A-Z_]+):(\d{4}-\d{2}-\d{2})\]\s?(.*)$")
_DEDUP_PREFIX = 50


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    total: int = 0
    imported: int = 0
    skipped_dedup: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "imported": self.imported,
            "skipped_dedup": self.skipped_dedup,
            "errors": self.errors,
        }


def _default_log(msg: str) -> None:
    """Log to stderr."""
    print(msg, file=sys.stderr)


def dedup_key(entry: Entry) -> Tuple[str, str, str]:
    return (entry.file_type, entry.tag, entry.content[:_DEDUP_PREFIX])


def _existing_keys(store) -> Set[Tuple[str, str, str]]:
    return {dedup_key(e) for e in store.iter_entries()}


def _store_entries(
    store,
    entries: Iterable[Entry],
    result: ImportResult,
    *,
    dry_run: bool,
    log: Callable[[str], None],
    label: str,
) -> None:
    seen = _existing_keys(store)
    for entry in entries:
        result.total += 1
        key = dedup_key(entry)
        if key in seen:
            result.skipped_dedup += 1
            continue
        if dry_run:
            result.imported += 1
            seen.add(key)
            continue
        try:
            store.append_entry(entry)
        except AimemError as e:
            log(f"[{label}] Rejected entry {entry.tag}: {e}")
            result.errors += 1
            continue
        seen.add(key)
        result.imported += 1


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------


def render_markdown(file_type: str, entries: Iterable[Entry]) -> str:
    """One type's markdown file, entries oldest first."""
    ordered = sorted(entries, key=lambda e: (e.timestamp, e.id or 0))
    lines = [f"# {FILE_TYPE_TITLES[file_type]}", ""]
    for e in ordered:
        lines.append(f"{e.tag} {e.content.strip()}")
        lines.append("")
    return "\n".join(lines)


def export_markdown(
    store,
    out_dir: str,
    *,
    file_types: Optional[Iterable[str]] = None,
    log: Callable[[str], None] = _default_log,
) -> Dict[str, int]:
    """Write one markdown file per entry type; returns entries per file.

    Types without entries produce no file.
    """
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    wanted = [file_type_from_name(t) for t in file_types] if file_types else list(FILE_TYPES)
    by_type: Dict[str, List[Entry]] = {t: [] for t in wanted}
    for e in store.iter_entries():
        if e.file_type in by_type:
            by_type[e.file_type].append(e)

    written: Dict[str, int] = {}
    for file_type, entries in by_type.items():
        if not entries:
            continue
        name = FILE_TYPE_TO_FILENAME[file_type]
        (target / name).write_text(render_markdown(file_type, entries), encoding="utf-8")
        written[name] = len(entries)
    log(f"[export] {sum(written.values())} entries to {len(written)} file(s) in {target}")
    return written


def backup_markdown(
    store,
    *,
    label: str = "manual",
    log: Callable[[str], None] = _default_log,
) -> Path:
    """Export every type into ``.backup/markdown.<stamp>.<label>/`` beside the DB.

    Raises:
        StorageError: the store has no database file.
    """
    if not store.db_path or store.db_path == ":memory:":
        raise StorageError("in-memory store has no backup directory")
    target = backup_dir(store.db_path) / f"markdown.{backup_stamp()}.{label}"
    export_markdown(store, str(target), log=log)
    return target


def parse_markdown(text: str, default_type: Optional[str] = None) -> List[Entry]:
    """Parse ``[TYPE:YYYY-MM-DD] content`` blocks.

    A block runs until the next tag line or top-level header.  Tags whose
    type is not an entry type (e.g. DEPRECATED) take *default_type*, and
    are dropped without one.
    """
    entries: List[Entry] = []
    current: Optional[Tuple[str, str, str]] = None
    body: List[str] = []

    def flush() -> None:
        if current is None:
            return
        tag_type, date, first = current
        content = "\n".join([first] + body).strip()
        file_type = tag_type if tag_type in VALID_FILE_TYPES else default_type
        if not content or file_type is None:
            return
        entries.append(Entry(
            file_type=file_type,
            content=content,
            tag=f"[{tag_type}:{date}]",
            timestamp=f"{date}T00:00:00.000Z",
        ))

    for line in text.replace("\r\n", "\n").split("\n"):
        m = _TAG_LINE_RE.match(line)
        if m:
            flush()
            current = (m.group(1), m.group(2), m.group(3))
            body = []
        elif line.startswith("# "):
            flush()
            current = None
            body = []
        elif current is not None:
            body.append(line)
    flush()
    return entries


def import_markdown(
    store,
    source: str,
    *,
    dry_run: bool = False,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Import a markdown file, or every known markdown file in a directory."""
    path = Path(source)
    if path.is_dir():
        files = [(path / name, t) for t, name in FILE_TYPE_TO_FILENAME.items()
                 if (path / name).is_file()]
    elif path.is_file():
        try:
            default = file_type_from_name(path.name)
        except ValidationError:
            default = None
        files = [(path, default)]
    else:
        raise FileNotFoundError(source)

    result = ImportResult()
    for file_path, default_type in files:
        entries = parse_markdown(file_path.read_text(encoding="utf-8"), default_type)
        _store_entries(store, entries, result, dry_run=dry_run, log=log, label="import")
    log(
        f"[import] {result.imported} imported, {result.skipped_dedup} duplicate(s), "
        f"{result.errors} error(s) from {len(files)} file(s)"
    )
    return result


# ---------------------------------------------------------------------------
# JSONL
# ---------------------------------------------------------------------------


def export_jsonl(
    store,
    *,
    file_type: Optional[str] = None,
    output: IO[str] = sys.stdout,
    log: Callable[[str], None] = _default_log,
) -> int:
    """Export entries as JSONL, oldest first.  Returns the count."""
    wanted = file_type_from_name(file_type) if file_type else None
    count = 0
    for entry in store.iter_entries():
        if wanted and entry.file_type != wanted:
            continue
        data = entry.to_dict()
        data.pop("embedding", None)
        output.write(json.dumps(data, ensure_ascii=False) + "\n")
        count += 1
    log(f"[export] {count} entries exported")
    return count


def import_jsonl(
    store,
    source: IO[str] | str,
    *,
    dry_run: bool = False,
    log: Callable[[str], None] = _default_log,
) -> ImportResult:
    """Import entries from JSONL; ids are reassigned by the store.

    Malformed lines are counted as errors and do not stop the import.
    """
    if isinstance(source, str):
        fh = open(source, "r", encoding="utf-8")
        should_close_fh = True
    else:
        fh = source
        should_close_fh = False

    result = ImportResult()
    parsed: List[Entry] = []
    try:
        for lineno, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                data.pop("id", None)
                data.pop("embedding", None)
                data.pop("embedding_state", None)
                parsed.append(Entry.from_dict(data))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
                log(f"[import] Invalid entry on line {lineno}: {e}")
                result.total += 1
                result.errors += 1
    finally:
        if should_close_fh:
            fh.close()

    _store_entries(store, parsed, result, dry_run=dry_run, log=log, label="import")
    log(
        f"[import] {result.imported} imported, {result.skipped_dedup} duplicate(s), "
        f"{result.errors} error(s)"
    )
    return result

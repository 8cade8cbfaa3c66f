"""
Schema Versioning and Migration

Tables:
    entries         - Typed, tagged, timestamped memory entries
    token_metrics   - Token accounting (append-only, pruned by age)
    query_metrics   - Query timings (append-only, pruned by age)
    schema_version  - One row per applied migration level

Version history:
    0  pre-versioned store: five entry types, no telemetry, no metadata columns
    1  schema_version, token_metrics and query_metrics tables
    2  report entry types, metadata/phase/progress_status columns,
       embedding_state (rebuilt with copy-and-swap)

Migration protocol: a timestamped backup copy is written to ``.backup/``
next to the database before the first pending step.  Each step runs in its
own transaction; table rebuilds copy into ``entries_new``, verify the row
count, and only then drop and rename.  A count mismatch rolls back and
raises MigrationError, leaving the original table untouched.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from aimem.errors import MigrationError
from aimem.types import FILE_TYPES, _now_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

BACKUP_DIRNAME = ".backup"

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_FILE_TYPE_CHECK = ", ".join(f"'{t}'" for t in FILE_TYPES)


def _entries_ddl(table: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table} (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    file_type        TEXT NOT NULL CHECK(file_type IN ({_FILE_TYPE_CHECK})),
    timestamp        TEXT NOT NULL,
    tag              TEXT NOT NULL,
    content          TEXT NOT NULL,
    metadata         TEXT NOT NULL DEFAULT '{{}}',   -- JSON object
    phase            TEXT,
    progress_status  TEXT,
    embedding        BLOB,                           -- 48-byte sign-quantized vector
    embedding_state  TEXT NOT NULL DEFAULT 'pending'
        CHECK(embedding_state IN ('pending','ready','failed','skipped'))
)"""


_ENTRY_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_entries_type_time "
    "ON entries(file_type, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_entries_time ON entries(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_entries_tag ON entries(tag)",
    "CREATE INDEX IF NOT EXISTS idx_entries_progress ON entries(progress_status)",
    "CREATE INDEX IF NOT EXISTS idx_entries_phase ON entries(phase)",
    "CREATE INDEX IF NOT EXISTS idx_entries_embedding_state "
    "ON entries(embedding_state)",
)

_TELEMETRY_DDL = (
    """
CREATE TABLE IF NOT EXISTS schema_version (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    version     INTEGER NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    applied_at  TEXT NOT NULL
)""",
    """
CREATE TABLE IF NOT EXISTS token_metrics (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp      TEXT NOT NULL,
    model          TEXT NOT NULL DEFAULT '',
    input_tokens   INTEGER NOT NULL DEFAULT 0,
    output_tokens  INTEGER NOT NULL DEFAULT 0,
    total_tokens   INTEGER NOT NULL DEFAULT 0,
    context_status TEXT NOT NULL DEFAULT 'healthy'
        CHECK(context_status IN ('healthy','warning','critical')),
    created_at     TEXT NOT NULL
)""",
    """
CREATE TABLE IF NOT EXISTS query_metrics (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp    TEXT NOT NULL,
    operation    TEXT NOT NULL,
    elapsed_ms   REAL NOT NULL DEFAULT 0,
    result_count INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT NOT NULL
)""",
    "CREATE INDEX IF NOT EXISTS idx_token_metrics_time ON token_metrics(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_query_metrics_time ON query_metrics(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_query_metrics_op ON query_metrics(operation)",
)

# ---------------------------------------------------------------------------
# FTS5 (optional, trigram tokenizer gives substring semantics like LIKE)
# ---------------------------------------------------------------------------

FTS5_SCHEMA_SQL = (
    """
CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    content, tag,
    content='entries',
    content_rowid='id',
    tokenize='trigram'
)""",
    """
CREATE TRIGGER IF NOT EXISTS entries_fts_ai
AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, content, tag)
    VALUES (new.id, new.content, new.tag);
END""",
    """
CREATE TRIGGER IF NOT EXISTS entries_fts_bd
BEFORE DELETE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, content, tag)
    VALUES ('delete', old.id, old.content, old.tag);
END""",
    """
CREATE TRIGGER IF NOT EXISTS entries_fts_bu
BEFORE UPDATE OF content, tag ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, content, tag)
    VALUES ('delete', old.id, old.content, old.tag);
END""",
    """
CREATE TRIGGER IF NOT EXISTS entries_fts_au
AFTER UPDATE OF content, tag ON entries BEGIN
    INSERT INTO entries_fts(rowid, content, tag)
    VALUES (new.id, new.content, new.tag);
END""",
)


# ---------------------------------------------------------------------------
# Introspection helpers
# ---------------------------------------------------------------------------


def _table_exists(conn, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,),
    ).fetchone()
    return row is not None


def _columns(conn, table: str) -> List[str]:
    return [r[1] for r in conn.execute(f"PRAGMA table_info({table})")]


def _count_rows(conn, table: str) -> int:
    return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])


def detect_version(conn) -> int:
    """Return the applied schema level (0 for pre-versioned stores)."""
    if not _table_exists(conn, "schema_version"):
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def _record_version(conn, version: int, description: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version, description, applied_at) "
        "VALUES (?, ?, ?)",
        (version, description, _now_iso()),
    )


# ---------------------------------------------------------------------------
# Migration steps
# ---------------------------------------------------------------------------


def _migrate_v1(conn) -> None:
    """Add schema_version and the telemetry tables."""
    for ddl in _TELEMETRY_DDL:
        conn.execute(ddl)


def _migrate_v2(conn) -> None:
    """Rebuild entries with the extended type set and new columns."""
    cols = set(_columns(conn, "entries"))

    def col(name: str, default: str) -> str:
        return name if name in cols else default

    if "embedding" in cols:
        state = "CASE WHEN embedding IS NULL THEN 'pending' ELSE 'ready' END"
    else:
        state = "'pending'"
    select = ", ".join([
        "id",
        "file_type",
        "timestamp",
        # Legacy rows may store the tag without brackets
        "CASE WHEN substr(tag, 1, 1) = '[' THEN tag ELSE '[' || tag || ']' END",
        "content",
        "COALESCE(metadata, '{}')" if "metadata" in cols else "'{}'",
        col("phase", "NULL"),
        col("progress_status", "NULL"),
        col("embedding", "NULL"),
        state,
    ])

    before = _count_rows(conn, "entries")
    conn.execute("DROP TABLE IF EXISTS entries_new")
    conn.execute(_entries_ddl("entries_new"))
    conn.execute(
        "INSERT INTO entries_new (id, file_type, timestamp, tag, content, "
        "metadata, phase, progress_status, embedding, embedding_state) "
        f"SELECT {select} FROM entries"
    )
    after = _count_rows(conn, "entries_new")
    if after != before:
        raise MigrationError(
            f"row count mismatch while rebuilding entries: "
            f"expected {before}, copied {after}",
            expected=before, actual=after,
        )
    conn.execute("DROP TABLE entries")
    conn.execute("ALTER TABLE entries_new RENAME TO entries")
    for ddl in _ENTRY_INDEXES:
        conn.execute(ddl)


@dataclass
class Migration:
    version: int
    description: str
    apply: Callable[[Any], None]


MIGRATIONS: Sequence[Migration] = (
    Migration(1, "telemetry tables and schema_version", _migrate_v1),
    Migration(2, "report types, metadata columns, embedding state", _migrate_v2),
)


@dataclass
class MigrationReport:
    """What ensure_schema() did."""

    from_version: int = 0
    to_version: int = SCHEMA_VERSION
    applied: List[int] = field(default_factory=list)
    backup_path: Optional[str] = None
    created: bool = False

    @property
    def migrated(self) -> bool:
        return bool(self.applied)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _create_fresh(conn) -> None:
    conn.execute("BEGIN")
    try:
        conn.execute(_entries_ddl("entries"))
        for ddl in _ENTRY_INDEXES:
            conn.execute(ddl)
        for ddl in _TELEMETRY_DDL:
            conn.execute(ddl)
        _record_version(conn, SCHEMA_VERSION, "initial schema")
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def ensure_schema(
    conn, db_path: str = ":memory:", *, backup: bool = True,
) -> MigrationReport:
    """Create or migrate the schema to SCHEMA_VERSION.

    Safe to call on every open: a store already at SCHEMA_VERSION is left
    untouched and its row count never changes.

    Args:
        conn: Open DB-API connection (sqlite3 or pysqlite3).
        db_path: Path of the database file, used for the pre-migration backup.
        backup: Write a backup copy before the first pending step.

    Raises:
        MigrationError: if a step aborts (the step is rolled back).
    """
    if not _table_exists(conn, "entries") and not _table_exists(conn, "schema_version"):
        _create_fresh(conn)
        logger.info(f"Created schema v{SCHEMA_VERSION}")
        return MigrationReport(from_version=SCHEMA_VERSION, created=True)

    current = detect_version(conn)
    report = MigrationReport(from_version=current)
    pending = [m for m in MIGRATIONS if m.version > current]
    if not pending:
        return report

    if backup and db_path != ":memory:":
        report.backup_path = str(
            backup_database(db_path, label=f"pre-v{SCHEMA_VERSION}", conn=conn)
        )

    for step in pending:
        conn.execute("BEGIN")
        try:
            step.apply(conn)
            _record_version(conn, step.version, step.description)
            conn.execute("COMMIT")
        except MigrationError:
            conn.execute("ROLLBACK")
            logger.error(f"Migration to v{step.version} aborted, rolled back")
            raise
        except Exception as exc:
            conn.execute("ROLLBACK")
            raise MigrationError(
                f"migration to v{step.version} failed: {exc}"
            ) from exc
        report.applied.append(step.version)
        logger.info(f"Applied migration v{step.version}: {step.description}")
    return report


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def backup_dir(db_path: str) -> Path:
    return Path(db_path).resolve().parent / BACKUP_DIRNAME


def backup_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def backup_database(db_path: str, label: str = "manual", conn=None) -> Path:
    """Copy the database file to ``.backup/<name>.<stamp>.<label>.backup``.

    When an open connection is given, the WAL is checkpointed first so the
    copy is self-contained.  Returns the backup path.
    """
    src = Path(db_path)
    dest_dir = backup_dir(db_path)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{src.name}.{backup_stamp()}.{label}.backup"
    if conn is not None:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    shutil.copy2(src, dest)
    logger.info(f"Backup created: {dest}")
    return dest


def _backup_stamp(path: Path, db_name: str) -> str:
    return path.name[len(db_name) + 1:].split(".", 1)[0]


def list_backups(db_path: str) -> List[Path]:
    """Backups of *db_path*, oldest first."""
    directory = backup_dir(db_path)
    if not directory.is_dir():
        return []
    name = Path(db_path).name
    found = [p for p in directory.glob(f"{name}.*.backup") if p.is_file()]
    return sorted(found, key=lambda p: _backup_stamp(p, name))


def latest_backup(
    db_path: str, exclude_labels: Sequence[str] = ("corrupt",),
) -> Optional[Path]:
    """Most recent usable backup of *db_path*, or None."""
    for path in reversed(list_backups(db_path)):
        label = path.name[:-len(".backup")].rsplit(".", 1)[-1]
        if label not in exclude_labels:
            return path
    return None

"""
Storage Backends

Three interchangeable implementations of the same row-level interface,
probed once per store in this order:

    sqlite          standard-library sqlite3 (portable, always importable)
    native-sqlite   pysqlite3 binding (optional extra, newer SQLite build)
    memory          pure-Python lists and dicts (no persistence)

A probe fails when the driver cannot be imported or the database cannot be
opened; the next backend is tried.  A file that opens but is not a valid
database is reported as a StorageError instead, so corruption is never
mistaken for an unavailable driver.

Rows are plain dicts with the ``entries`` column names; metadata travels as
its JSON string.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aimem.errors import StorageError
from aimem.schema import (
    FTS5_SCHEMA_SQL,
    SCHEMA_VERSION,
    MigrationReport,
    detect_version,
    ensure_schema,
)
from aimem.types import FILE_TYPES
from aimem.validation import escape_like

logger = logging.getLogger(__name__)

ENTRY_COLUMNS = (
    "id", "file_type", "timestamp", "tag", "content", "metadata",
    "phase", "progress_status", "embedding", "embedding_state",
)
METRIC_TABLES = {
    "token": ("token_metrics", (
        "timestamp", "model", "input_tokens", "output_tokens",
        "total_tokens", "context_status",
    )),
    "query": ("query_metrics", (
        "timestamp", "operation", "elapsed_ms", "result_count",
    )),
}
UPDATABLE_COLUMNS = {
    "timestamp", "tag", "content", "metadata", "phase", "progress_status",
    "embedding", "embedding_state",
}

# FTS5 trigram needs at least three characters to match
_FTS_MIN_TERM = 3


class BackendUnavailable(StorageError):
    """The backend's driver is missing or the database cannot be opened."""


@dataclass
class EntryFilter:
    """Row selection criteria shared by all backends."""

    file_type: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    term: Optional[str] = None
    progress_status: Optional[str] = None
    phase: Optional[str] = None
    embedding_state: Optional[str] = None
    ascending: bool = False


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class StorageBackend:
    """Row-level storage contract.  Not thread-safe; the store serializes."""

    name = "abstract"
    persistent = False

    def open(self, path: str, *, wal_mode: bool = True) -> None:
        raise NotImplementedError

    def prepare(self, *, backup: bool = True) -> MigrationReport:
        """Create or migrate the schema."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def fts_available(self) -> bool:
        return False

    def schema_version(self) -> int:
        raise NotImplementedError

    def insert_entry(self, row: Dict[str, Any]) -> int:
        raise NotImplementedError

    def update_entry(self, entry_id: int, fields: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def get_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def select_entries(self, flt: EntryFilter, limit: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def count_by_type(self) -> Dict[str, int]:
        raise NotImplementedError

    def count_by_embedding_state(self) -> Dict[str, int]:
        raise NotImplementedError

    def insert_metric(self, kind: str, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    def select_metrics(self, kind: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def prune_metrics(self, before: str) -> int:
        raise NotImplementedError

    def integrity_check(self) -> List[str]:
        return []


# ---------------------------------------------------------------------------
# SQLite (stdlib)
# ---------------------------------------------------------------------------


class SQLiteBackend(StorageBackend):
    """SQLite through a DB-API 2 driver module."""

    name = "sqlite"
    driver = "sqlite3"

    def __init__(self):
        self._module = None
        self._conn = None
        self._path = ":memory:"
        self._fts5 = False

    def _load_driver(self):
        try:
            return importlib.import_module(self.driver)
        except ImportError as exc:
            raise BackendUnavailable(f"{self.driver} not importable: {exc}") from exc

    @property
    def persistent(self) -> bool:  # type: ignore[override]
        return self._path != ":memory:"

    @property
    def connection(self):
        return self._conn

    def open(self, path: str, *, wal_mode: bool = True) -> None:
        module = self._load_driver()
        self._module = module
        self._path = path
        if path != ":memory:":
            try:
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise BackendUnavailable(f"cannot create directory for {path}: {exc}") from exc
        try:
            conn = module.connect(path, check_same_thread=False)
        except module.OperationalError as exc:
            raise BackendUnavailable(f"cannot open database {path}: {exc}") from exc
        conn.row_factory = module.Row
        try:
            # Reads the header: raises on non-database files
            conn.execute("PRAGMA user_version").fetchone()
            if wal_mode and path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
        except module.OperationalError as exc:
            conn.close()
            raise BackendUnavailable(f"cannot open database {path}: {exc}") from exc
        except module.DatabaseError as exc:
            conn.close()
            raise StorageError(str(exc)) from exc
        self._conn = conn

    def prepare(self, *, backup: bool = True) -> MigrationReport:
        try:
            report = ensure_schema(self._conn, self._path, backup=backup)
        except self._module.DatabaseError as exc:
            raise StorageError(str(exc)) from exc
        self._init_fts5(rebuild=report.migrated)
        return report

    def _init_fts5(self, rebuild: bool = False) -> None:
        """Create the FTS5 index; fall back to LIKE search if unavailable."""
        try:
            existed = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name='entries_fts'"
            ).fetchone() is not None
            for ddl in FTS5_SCHEMA_SQL:
                self._conn.execute(ddl)
            if rebuild or not existed:
                self._conn.execute("INSERT INTO entries_fts(entries_fts) VALUES ('rebuild')")
            self._conn.commit()
            self._fts5 = True
        except self._module.OperationalError as exc:
            # Typical message: "no such module: fts5" or "no such tokenizer: trigram"
            self._conn.rollback()
            self._fts5 = False
            logger.info(f"FTS5 not available, falling back to LIKE search: {exc}")

    @property
    def fts_available(self) -> bool:
        return self._fts5

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _run(self, sql: str, params: Sequence[Any] = ()):
        try:
            return self._conn.execute(sql, params)
        except self._module.DatabaseError as exc:
            raise StorageError(str(exc)) from exc

    def _commit(self) -> None:
        try:
            self._conn.commit()
        except self._module.DatabaseError as exc:
            raise StorageError(str(exc)) from exc

    def schema_version(self) -> int:
        return detect_version(self._conn)

    def insert_entry(self, row: Dict[str, Any]) -> int:
        cols = [c for c in ENTRY_COLUMNS if c != "id" and c in row]
        sql = (
            f"INSERT INTO entries ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})"
        )
        cur = self._run(sql, [row[c] for c in cols])
        self._commit()
        return int(cur.lastrowid)

    def update_entry(self, entry_id: int, fields: Dict[str, Any]) -> bool:
        cols = [c for c in fields if c in UPDATABLE_COLUMNS]
        if not cols:
            return False
        sql = f"UPDATE entries SET {', '.join(c + ' = ?' for c in cols)} WHERE id = ?"
        cur = self._run(sql, [fields[c] for c in cols] + [entry_id])
        self._commit()
        return cur.rowcount > 0

    def get_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        row = self._run("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
        return dict(row) if row else None

    def _where(self, flt: EntryFilter, alias: str = "") -> Tuple[List[str], List[Any]]:
        p = alias
        clauses: List[str] = []
        params: List[Any] = []
        if flt.file_type:
            clauses.append(f"{p}file_type = ?")
            params.append(flt.file_type)
        if flt.start:
            clauses.append(f"{p}timestamp >= ?")
            params.append(flt.start)
        if flt.end:
            clauses.append(f"{p}timestamp <= ?")
            params.append(flt.end)
        if flt.progress_status:
            clauses.append(f"{p}progress_status = ?")
            params.append(flt.progress_status)
        if flt.phase:
            clauses.append(f"{p}phase = ?")
            params.append(flt.phase)
        if flt.embedding_state:
            clauses.append(f"{p}embedding_state = ?")
            params.append(flt.embedding_state)
        return clauses, params

    def select_entries(self, flt: EntryFilter, limit: int) -> List[Dict[str, Any]]:
        order = "ASC" if flt.ascending else "DESC"
        if flt.term and self._fts5 and len(flt.term) >= _FTS_MIN_TERM:
            clauses, params = self._where(flt, alias="e.")
            clauses.insert(0, "entries_fts MATCH ?")
            phrase = '"' + flt.term.replace('"', '""') + '"'
            params.insert(0, phrase)
            sql = (
                "SELECT e.* FROM entries e JOIN entries_fts ON entries_fts.rowid = e.id "
                f"WHERE {' AND '.join(clauses)} "
                f"ORDER BY e.timestamp {order}, e.id {order} LIMIT ?"
            )
            try:
                rows = self._conn.execute(sql, params + [limit]).fetchall()
                return [dict(r) for r in rows]
            except self._module.OperationalError as exc:
                logger.warning(f"FTS5 query failed, using LIKE: {exc}")

        clauses, params = self._where(flt)
        if flt.term:
            pattern = f"%{escape_like(flt.term)}%"
            clauses.append(
                "(content LIKE ? ESCAPE '\\' OR tag LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        sql = (
            f"SELECT * FROM entries {where}"
            f"ORDER BY timestamp {order}, id {order} LIMIT ?"
        )
        rows = self._run(sql, params + [limit]).fetchall()
        return [dict(r) for r in rows]

    def count_by_type(self) -> Dict[str, int]:
        rows = self._run(
            "SELECT file_type, COUNT(*) AS n FROM entries GROUP BY file_type"
        ).fetchall()
        return {r["file_type"]: r["n"] for r in rows}

    def count_by_embedding_state(self) -> Dict[str, int]:
        rows = self._run(
            "SELECT embedding_state, COUNT(*) AS n FROM entries GROUP BY embedding_state"
        ).fetchall()
        return {r["embedding_state"]: r["n"] for r in rows}

    def insert_metric(self, kind: str, row: Dict[str, Any]) -> None:
        table, cols = METRIC_TABLES[kind]
        all_cols = list(cols) + ["created_at"]
        values = [row.get(c) for c in cols] + [row.get("created_at") or row["timestamp"]]
        self._run(
            f"INSERT INTO {table} ({', '.join(all_cols)}) "
            f"VALUES ({', '.join('?' for _ in all_cols)})",
            values,
        )
        self._commit()

    def select_metrics(self, kind: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        table, cols = METRIC_TABLES[kind]
        sql = f"SELECT {', '.join(cols)} FROM {table}"
        params: List[Any] = []
        if since:
            sql += " WHERE timestamp >= ?"
            params.append(since)
        sql += " ORDER BY timestamp DESC, id DESC"
        return [dict(r) for r in self._run(sql, params).fetchall()]

    def prune_metrics(self, before: str) -> int:
        removed = 0
        for table, _ in METRIC_TABLES.values():
            cur = self._run(f"DELETE FROM {table} WHERE timestamp < ?", (before,))
            removed += cur.rowcount
        self._commit()
        return removed

    def integrity_check(self) -> List[str]:
        rows = self._run("PRAGMA integrity_check").fetchall()
        issues = [r[0] for r in rows]
        return [] if issues == ["ok"] else issues


class NativeSQLiteBackend(SQLiteBackend):
    """SQLite through the pysqlite3 binding (``pip install aimem[native]``)."""

    name = "native-sqlite"
    driver = "pysqlite3.dbapi2"


# ---------------------------------------------------------------------------
# Pure-Python in-memory
# ---------------------------------------------------------------------------


class InMemoryBackend(StorageBackend):
    """Dict-backed storage; always available, never persistent."""

    name = "memory"
    persistent = False

    def __init__(self):
        self._rows: Dict[int, Dict[str, Any]] = {}
        self._metrics: Dict[str, List[Dict[str, Any]]] = {k: [] for k in METRIC_TABLES}
        self._next_id = 1

    def open(self, path: str, *, wal_mode: bool = True) -> None:
        if path != ":memory:":
            logger.warning(f"In-memory backend: {path} will not be persisted")

    def prepare(self, *, backup: bool = True) -> MigrationReport:
        return MigrationReport(from_version=SCHEMA_VERSION, created=True)

    def close(self) -> None:
        self._rows.clear()

    def schema_version(self) -> int:
        return SCHEMA_VERSION

    def insert_entry(self, row: Dict[str, Any]) -> int:
        if row["file_type"] not in FILE_TYPES:
            raise StorageError(f"CHECK constraint failed: file_type {row['file_type']!r}")
        entry_id = self._next_id
        self._next_id += 1
        stored = {c: None for c in ENTRY_COLUMNS}
        stored.update({"metadata": "{}", "embedding_state": "pending"})
        stored.update({k: v for k, v in row.items() if k in ENTRY_COLUMNS})
        stored["id"] = entry_id
        self._rows[entry_id] = stored
        return entry_id

    def update_entry(self, entry_id: int, fields: Dict[str, Any]) -> bool:
        row = self._rows.get(entry_id)
        cols = {k: v for k, v in fields.items() if k in UPDATABLE_COLUMNS}
        if row is None or not cols:
            return False
        row.update(cols)
        return True

    def get_entry(self, entry_id: int) -> Optional[Dict[str, Any]]:
        row = self._rows.get(entry_id)
        return dict(row) if row else None

    @staticmethod
    def _matches(row: Dict[str, Any], flt: EntryFilter) -> bool:
        if flt.file_type and row["file_type"] != flt.file_type:
            return False
        if flt.start and row["timestamp"] < flt.start:
            return False
        if flt.end and row["timestamp"] > flt.end:
            return False
        if flt.progress_status and row["progress_status"] != flt.progress_status:
            return False
        if flt.phase and row["phase"] != flt.phase:
            return False
        if flt.embedding_state and row["embedding_state"] != flt.embedding_state:
            return False
        if flt.term:
            term = flt.term.lower()
            if term not in row["content"].lower() and term not in row["tag"].lower():
                return False
        return True

    def select_entries(self, flt: EntryFilter, limit: int) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._rows.values() if self._matches(r, flt)]
        rows.sort(key=lambda r: (r["timestamp"], r["id"]), reverse=not flt.ascending)
        return rows[:limit]

    def count_by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self._rows.values():
            counts[r["file_type"]] = counts.get(r["file_type"], 0) + 1
        return counts

    def count_by_embedding_state(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self._rows.values():
            counts[r["embedding_state"]] = counts.get(r["embedding_state"], 0) + 1
        return counts

    def insert_metric(self, kind: str, row: Dict[str, Any]) -> None:
        _, cols = METRIC_TABLES[kind]
        self._metrics[kind].append({c: row.get(c) for c in cols})

    def select_metrics(self, kind: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._metrics[kind]
                if not since or r["timestamp"] >= since]
        rows.reverse()
        rows.sort(key=lambda r: r["timestamp"], reverse=True)
        return rows

    def prune_metrics(self, before: str) -> int:
        removed = 0
        for kind, rows in self._metrics.items():
            kept = [r for r in rows if r["timestamp"] >= before]
            removed += len(rows) - len(kept)
            self._metrics[kind] = kept
        return removed


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

BACKENDS = {
    "sqlite": SQLiteBackend,
    "native-sqlite": NativeSQLiteBackend,
    "memory": InMemoryBackend,
}
PROBE_ORDER = ("sqlite", "native-sqlite", "memory")


def open_backend(
    path: str, preference: str = "auto", *, wal_mode: bool = True,
) -> StorageBackend:
    """Probe backends and return the first one that opens *path*.

    Args:
        path: Database path or ":memory:".
        preference: "auto" to probe in order, or a backend name to pin it.

    Raises:
        BackendUnavailable: if a pinned backend cannot be opened.
        StorageError: if the file opens but is not a readable database.
    """
    if preference != "auto":
        if preference not in BACKENDS:
            raise BackendUnavailable(f"unknown backend: {preference!r}")
        backend = BACKENDS[preference]()
        backend.open(path, wal_mode=wal_mode)
        return backend

    failures: List[str] = []
    for name in PROBE_ORDER:
        backend = BACKENDS[name]()
        try:
            backend.open(path, wal_mode=wal_mode)
        except BackendUnavailable as exc:
            failures.append(f"{name}: {exc}")
            logger.warning(f"Backend {name} unavailable: {exc}")
            continue
        if failures:
            logger.warning(f"Degraded storage: using {name} backend")
        else:
            logger.debug(f"Using {name} backend for {path}")
        return backend
    raise BackendUnavailable("; ".join(failures))

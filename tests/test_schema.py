"""
Tests for aimem.schema and aimem.backends — creation, migration, backups,
backend probing.
"""

import sqlite3

import pytest

import aimem.schema as schema
from aimem.backends import (
    BackendUnavailable,
    EntryFilter,
    InMemoryBackend,
    NativeSQLiteBackend,
    SQLiteBackend,
    open_backend,
)
from aimem.config import MemoryConfig
from aimem.errors import MigrationError
from aimem.schema import (
    SCHEMA_VERSION,
    backup_database,
    detect_version,
    ensure_schema,
    latest_backup,
    list_backups,
)
from aimem.store import MemoryStore

LEGACY_ROWS = [
    ("CONTEXT", "2025-01-01T10:00:00.000Z", "CONTEXT:2025-01-01", "old context", None),
    ("DECISION", "2025-01-02T10:00:00.000Z", "[DECISION:2025-01-02]", "use sqlite", b"\x01" * 48),
    ("PROGRESS", "2025-01-03T10:00:00.000Z", "PROGRESS:2025-01-03", "done x", None),
]


def make_legacy_db(path, rows=LEGACY_ROWS):
    """A pre-versioned store: five types, no telemetry, no metadata columns."""
    conn = sqlite3.connect(str(path))
    conn.execute("""
        CREATE TABLE entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_type TEXT NOT NULL CHECK(file_type IN
                ('CONTEXT','DECISION','PROGRESS','PATTERN','BRIEF')),
            timestamp TEXT NOT NULL,
            tag TEXT NOT NULL,
            content TEXT NOT NULL,
            embedding BLOB
        )""")
    conn.executemany(
        "INSERT INTO entries (file_type, timestamp, tag, content, embedding) "
        "VALUES (?, ?, ?, ?, ?)", rows,
    )
    conn.commit()
    conn.close()


def _store_for(path):
    cfg = MemoryConfig()
    cfg.store.db_path = str(path)
    return MemoryStore(cfg)


class TestFreshSchema:
    def test_created_at_current_version(self):
        conn = sqlite3.connect(":memory:")
        report = ensure_schema(conn)
        assert report.created
        assert detect_version(conn) == SCHEMA_VERSION
        tables = {r[0] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"entries", "token_metrics", "query_metrics", "schema_version"} <= tables

    def test_second_call_is_noop(self):
        conn = sqlite3.connect(":memory:")
        ensure_schema(conn)
        report = ensure_schema(conn)
        assert not report.created and report.applied == []

    def test_check_constraint_rejects_unknown_type(self):
        conn = sqlite3.connect(":memory:")
        ensure_schema(conn)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO entries (file_type, timestamp, tag, content) "
                "VALUES ('NOTE', 't', '[NOTE:2025-01-01]', 'x')"
            )


class TestMigration:
    def test_legacy_store_migrates(self, tmp_path):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        store = _store_for(db).open()
        try:
            report = store.migration
            assert report.from_version == 0
            assert report.applied == [1, 2]
            assert report.backup_path is not None
            assert store.schema_version() == SCHEMA_VERSION
            entries = store.iter_entries()
            assert [e.tag for e in entries] == [
                "[CONTEXT:2025-01-01]", "[DECISION:2025-01-02]", "[PROGRESS:2025-01-03]",
            ]
            assert [e.embedding_state for e in entries] == ["pending", "ready", "pending"]
            assert entries[1].embedding == b"\x01" * 48
            assert [e.id for e in entries] == [1, 2, 3]
        finally:
            store.close()

    def test_backup_written_before_migration(self, tmp_path):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        store = _store_for(db).open()
        store.close()
        backups = list_backups(str(db))
        assert len(backups) == 1
        assert backups[0].name.endswith(f".pre-v{SCHEMA_VERSION}.backup")
        conn = sqlite3.connect(str(backups[0]))
        assert detect_version(conn) == 0
        conn.close()

    def test_remigration_is_noop(self, tmp_path):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        _store_for(db).open().close()
        store = _store_for(db).open()
        try:
            assert store.migration.applied == []
            assert store.stats()["total_entries"] == len(LEGACY_ROWS)
        finally:
            store.close()
        assert len(list_backups(str(db))) == 1

    def test_migrated_store_accepts_report_types(self, tmp_path):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        store = _store_for(db).open()
        try:
            from aimem.types import Entry
            store.append_entry(Entry(file_type="PLAN_REPORT", content="plan"))
            assert store.entry_counts()["PLAN_REPORT"] == 1
        finally:
            store.close()

    def test_count_mismatch_aborts_and_keeps_original(self, tmp_path, monkeypatch):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        real = schema._count_rows

        def short_count(conn, table):
            n = real(conn, table)
            return n - 1 if table == "entries_new" else n

        monkeypatch.setattr(schema, "_count_rows", short_count)
        with pytest.raises(MigrationError) as exc:
            _store_for(db).open()
        assert exc.value.expected == 3
        assert exc.value.actual == 2

        conn = sqlite3.connect(str(db))
        cols = [r[1] for r in conn.execute("PRAGMA table_info(entries)")]
        assert "embedding_state" not in cols
        assert conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0] == 3
        assert not conn.execute(
            "SELECT 1 FROM sqlite_master WHERE name='entries_new'").fetchone()
        conn.close()


class TestBackups:
    def test_latest_skips_corrupt(self, tmp_path):
        db = tmp_path / "memory.db"
        make_legacy_db(db)
        good = backup_database(str(db), label="manual")
        backup_database(str(db), label="corrupt")
        assert latest_backup(str(db)) == good

    def test_no_backups(self, tmp_path):
        assert latest_backup(str(tmp_path / "memory.db")) is None
        assert list_backups(str(tmp_path / "memory.db")) == []


class TestBackends:
    def test_probe_prefers_sqlite(self):
        backend = open_backend(":memory:")
        try:
            assert backend.name == "sqlite"
        finally:
            backend.close()

    def test_pinned_unknown_backend(self):
        with pytest.raises(BackendUnavailable):
            open_backend(":memory:", "postgres")

    def test_falls_back_when_drivers_missing(self, monkeypatch):
        monkeypatch.setattr(SQLiteBackend, "driver", "no_such_sqlite_driver")
        monkeypatch.setattr(NativeSQLiteBackend, "driver", "no_such_pysqlite_driver")
        backend = open_backend(":memory:")
        assert backend.name == "memory"

    def test_sqlite_fts_and_like_agree(self):
        backend = SQLiteBackend()
        backend.open(":memory:")
        backend.prepare()
        try:
            for text in ("Alpha beta", "gamma ALPHA", "delta"):
                backend.insert_entry({
                    "file_type": "CONTEXT", "timestamp": "2025-01-01T00:00:00.000Z",
                    "tag": "[CONTEXT:2025-01-01]", "content": text, "metadata": "{}",
                })
            via_fts = backend.select_entries(EntryFilter(term="alpha"), 10)
            backend._fts5 = False
            via_like = backend.select_entries(EntryFilter(term="alpha"), 10)
            assert {r["id"] for r in via_fts} == {r["id"] for r in via_like} == {1, 2}
        finally:
            backend.close()

    def test_like_escapes_wildcards(self):
        backend = SQLiteBackend()
        backend.open(":memory:")
        backend.prepare()
        backend._fts5 = False
        try:
            for text in ("100% done", "100 done"):
                backend.insert_entry({
                    "file_type": "PROGRESS", "timestamp": "2025-01-01T00:00:00.000Z",
                    "tag": "[PROGRESS:2025-01-01]", "content": text,
                })
            rows = backend.select_entries(EntryFilter(term="0%"), 10)
            assert [r["content"] for r in rows] == ["100% done"]
        finally:
            backend.close()

    def test_in_memory_backend_contract(self):
        backend = InMemoryBackend()
        backend.open(":memory:")
        backend.prepare()
        a = backend.insert_entry({"file_type": "BRIEF", "timestamp": "2025-01-02",
                                  "tag": "[BRIEF:2025-01-02]", "content": "b"})
        b = backend.insert_entry({"file_type": "BRIEF", "timestamp": "2025-01-01",
                                  "tag": "[BRIEF:2025-01-01]", "content": "a"})
        assert [r["id"] for r in backend.select_entries(EntryFilter(), 10)] == [a, b]
        assert backend.update_entry(a, {"content": "bb"})
        assert not backend.update_entry(99, {"content": "x"})
        assert backend.get_entry(a)["content"] == "bb"
        assert backend.count_by_type() == {"BRIEF": 2}

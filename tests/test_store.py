"""
Tests for aimem.store — MemoryStore CRUD, queries, telemetry, lifecycle.
"""

import sqlite3

import pytest

from aimem.config import MemoryConfig
from aimem.errors import CorruptionError, MigrationError, StorageError, ValidationError
from aimem.store import MemoryStore
from aimem.types import Entry, TokenMetric


def _entry(file_type="DECISION", content="Use SQLite for storage",
           timestamp="2025-12-04T10:00:00.000Z", **kw):
    return Entry(file_type=file_type, content=content, timestamp=timestamp, **kw)


def _seed(store):
    rows = [
        ("CONTEXT", "Working on the parser", "2025-12-01T09:00:00.000Z"),
        ("DECISION", "Adopt FTS5 trigram search", "2025-12-02T09:00:00.000Z"),
        ("DECISION", "Keep WAL mode enabled", "2025-12-03T09:00:00.000Z"),
        ("PROGRESS", "Parser done", "2025-12-04T09:00:00.000Z"),
    ]
    return [store.append_entry(_entry(t, c, ts)) for t, c, ts in rows]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_requires_init(self):
        with pytest.raises(StorageError, match="not initialized"):
            MemoryStore().get_entry(1)

    def test_init_reports_failure(self, tmp_path):
        cfg = MemoryConfig()
        cfg.store.backend = "sqlite"
        # A directory cannot be opened as a database file
        store = MemoryStore(cfg)
        assert store.init(str(tmp_path)) is False
        assert store.last_error is not None
        assert not store.is_open

    def test_backend_and_version(self, store):
        assert store.backend_name == "sqlite"
        assert store.schema_version() == 2

    def test_context_manager_closes(self, config):
        with MemoryStore(config).open(":memory:") as s:
            assert s.is_open
        assert not s.is_open

    def test_persists_across_reopen(self, tmp_path):
        cfg = MemoryConfig()
        cfg.store.db_path = str(tmp_path / "memory.db")
        with MemoryStore(cfg).open() as s:
            entry_id = s.append_entry(_entry())
        with MemoryStore(cfg).open() as s:
            assert s.get_entry(entry_id).content == "Use SQLite for storage"

    def test_memory_backend_is_visible(self):
        cfg = MemoryConfig()
        cfg.store.backend = "memory"
        with MemoryStore(cfg).open(":memory:") as s:
            s.append_entry(_entry())
            assert s.backend_name == "memory"
            assert s.stats()["persistent"] is False


class TestRecovery:
    def _corrupt(self, path):
        for suffix in ("-wal", "-shm"):
            side = path.with_name(path.name + suffix)
            if side.exists():
                side.unlink()
        path.write_bytes(b"x" * 4096)

    def test_corrupt_without_backup(self, tmp_path):
        db = tmp_path / "memory.db"
        self._corrupt(db)
        cfg = MemoryConfig()
        cfg.store.db_path = str(db)
        with pytest.raises(CorruptionError) as exc:
            MemoryStore(cfg).open()
        assert exc.value.report.corrupted

    def test_corrupt_restored_from_backup(self, tmp_path):
        db = tmp_path / "memory.db"
        cfg = MemoryConfig()
        cfg.store.db_path = str(db)
        with MemoryStore(cfg).open() as s:
            entry_id = s.append_entry(_entry())
            s.backup("manual")
        self._corrupt(db)

        store = MemoryStore(cfg).open()
        try:
            assert store.recovered
            assert store.get_entry(entry_id).content == "Use SQLite for storage"
            assert store.stats()["recovered"] is True
        finally:
            store.close()
        assert any(p.name.endswith(".corrupt.backup")
                   for p in (tmp_path / ".backup").iterdir())

    def test_auto_recover_disabled(self, tmp_path):
        db = tmp_path / "memory.db"
        cfg = MemoryConfig()
        cfg.store.db_path = str(db)
        cfg.store.auto_recover = False
        with MemoryStore(cfg).open() as s:
            s.backup()
        self._corrupt(db)
        with pytest.raises(CorruptionError):
            MemoryStore(cfg).open()

    def _fail_first_connect(self, monkeypatch, error):
        real = MemoryStore._connect
        calls = []

        def connect(store, path):
            calls.append(path)
            if len(calls) == 1:
                raise error
            return real(store, path)

        monkeypatch.setattr(MemoryStore, "_connect", connect)
        return calls

    def test_damaged_file_during_migration_recovers(self, tmp_path, monkeypatch):
        db = tmp_path / "memory.db"
        cfg = MemoryConfig()
        cfg.store.db_path = str(db)
        with MemoryStore(cfg).open() as s:
            entry_id = s.append_entry(_entry())
            s.backup("manual")
        error = MigrationError("migration to v2 failed: database disk image is malformed")
        error.__cause__ = sqlite3.DatabaseError("database disk image is malformed")
        calls = self._fail_first_connect(monkeypatch, error)

        store = MemoryStore(cfg).open()
        try:
            assert store.recovered and len(calls) == 2
            assert store.get_entry(entry_id) is not None
        finally:
            store.close()

    def test_row_count_mismatch_is_not_recovered(self, tmp_path, monkeypatch):
        cfg = MemoryConfig()
        cfg.store.db_path = str(tmp_path / "memory.db")
        calls = self._fail_first_connect(
            monkeypatch, MigrationError("row count mismatch", expected=3, actual=2),
        )
        with pytest.raises(MigrationError, match="row count"):
            MemoryStore(cfg).open()
        assert len(calls) == 1

    def test_backup_of_memory_store_fails(self, store):
        with pytest.raises(StorageError):
            store.backup()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestAppend:
    def test_round_trip(self, store):
        e = _entry(metadata={"progress": "done", "targets": ["db"], "phase": "execution"})
        entry_id = store.append_entry(e)
        assert e.id == entry_id
        [got] = store.query_by_type("DECISION")
        assert got.id == entry_id
        assert got.content == e.content
        assert got.timestamp == "2025-12-04T10:00:00.000Z"
        assert got.tag == "[DECISION:2025-12-04]"
        assert got.metadata == e.metadata
        assert got.embedding is None
        assert got.embedding_state == "pending"

    def test_ids_increase(self, store):
        ids = _seed(store)
        assert ids == sorted(ids) and len(set(ids)) == 4

    def test_timestamp_normalized(self, store):
        e = _entry(timestamp="2025-12-04T12:00:00+02:00")
        store.append_entry(e)
        assert store.get_entry(e.id).timestamp == "2025-12-04T10:00:00.000Z"

    def test_caller_entry_not_modified(self, store):
        e = _entry(timestamp="2025-12-04T12:00:00.123456+02:00")
        entry_id = store.append_entry(e)
        assert e.id == entry_id
        assert e.timestamp == "2025-12-04T12:00:00.123456+02:00"
        assert e.tag == ""
        stored = store.get_entry(entry_id)
        assert stored.timestamp == "2025-12-04T10:00:00.123Z"
        assert stored.tag == "[DECISION:2025-12-04]"

    def test_legacy_tag_normalized(self, store):
        e = _entry(tag="DECISION:2025-12-04")
        store.append_entry(e)
        assert store.get_entry(e.id).tag == "[DECISION:2025-12-04]"

    @pytest.mark.parametrize("kw", [
        {"content": ""},
        {"timestamp": "yesterday"},
        {"tag": "[decision:2025-12-04]"},
        {"metadata": {"phase": "shipping"}},
    ])
    def test_invalid_rejected_and_not_stored(self, store, kw):
        with pytest.raises(ValidationError):
            store.append_entry(_entry(**kw))
        assert store.stats()["total_entries"] == 0

    def test_oversized_content(self):
        cfg = MemoryConfig()
        cfg.validation.max_content_bytes = 10
        with MemoryStore(cfg).open(":memory:") as s:
            with pytest.raises(ValidationError, match="too large"):
                s.append_entry(_entry(content="x" * 11))

    def test_append_entries_isolates_failures(self, store):
        result = store.append_entries([_entry(), _entry(content=" "), _entry()])
        assert len(result.results) == 2
        assert [i for i, _ in result.failures] == [1]

    def test_skipped_state_kept(self, store):
        e = _entry(embedding_state="skipped")
        store.append_entry(e)
        assert store.get_entry(e.id).embedding_state == "skipped"


class TestUpdate:
    def test_update_fields(self, store):
        entry_id = store.append_entry(_entry())
        assert store.update_entry(entry_id, {"content": "Use Postgres"})
        assert store.get_entry(entry_id).content == "Use Postgres"

    def test_missing_or_empty(self, store):
        entry_id = store.append_entry(_entry())
        assert store.update_entry(999, {"content": "x"}) is False
        assert store.update_entry(entry_id, {}) is False

    def test_unknown_field(self, store):
        entry_id = store.append_entry(_entry())
        with pytest.raises(ValidationError):
            store.update_entry(entry_id, {"file_type": "BRIEF"})

    def test_invalid_update_leaves_entry(self, store):
        entry_id = store.append_entry(_entry())
        with pytest.raises(ValidationError):
            store.update_entry(entry_id, {"content": ""})
        assert store.get_entry(entry_id).content == "Use SQLite for storage"

    def test_content_change_resets_embedding(self, store):
        entry_id = store.append_entry(_entry())
        store.set_embedding(entry_id, b"\xff" * 48)
        assert store.get_entry(entry_id).embedding_state == "ready"
        store.update_entry(entry_id, {"metadata": {"progress": "done"}})
        assert store.get_entry(entry_id).embedding_state == "ready"
        store.update_entry(entry_id, {"content": "changed"})
        got = store.get_entry(entry_id)
        assert got.embedding is None and got.embedding_state == "pending"

    def test_edit_merges_metadata(self, store):
        entry_id = store.append_entry(_entry(metadata={"progress": "draft", "owner": "a"}))
        got = store.edit_entry(entry_id, metadata={"progress": "done"})
        assert got.metadata.progress == "done"
        assert got.metadata.extra == {"owner": "a"}
        got = store.edit_entry(entry_id, metadata={"phase": "research"}, merge=False)
        assert got.metadata.progress is None and got.metadata.phase == "research"

    def test_edit_missing(self, store):
        assert store.edit_entry(5, content="x") is None

    def test_append_to_entry(self, store):
        entry_id = store.append_entry(_entry())
        got = store.append_to_entry(entry_id, "Benchmarks confirm.", date="2025-12-05")
        assert got.content == (
            "Use SQLite for storage\n\n---\n\n**[Updated 2025-12-05]** Benchmarks confirm."
        )
        assert store.append_to_entry(999, "x") is None
        with pytest.raises(ValidationError):
            store.append_to_entry(entry_id, "  ")

    def test_deprecate_and_supersede(self, store):
        old, new = store.append_entry(_entry()), store.append_entry(_entry(content="v2"))
        assert store.mark_superseded(old, new)
        got = store.get_entry(old)
        assert got.progress_status == "deprecated"
        assert got.metadata.extra["superseded_by"] == new
        assert not store.mark_superseded(old, 999)
        assert store.mark_deprecated(new)
        assert [e.id for e in store.query_by_metadata(progress="deprecated")] == [new, old]


class TestEmbeddingColumns:
    def test_wrong_size_rejected(self, store):
        entry_id = store.append_entry(_entry())
        with pytest.raises(ValidationError):
            store.set_embedding(entry_id, b"\x00" * 10)

    def test_missing_and_ready(self, store):
        ids = _seed(store)
        store.set_embedding(ids[1], b"\x01" * 48)
        store.mark_embedding_failed(ids[2])
        missing = store.entries_missing_embeddings()
        assert [e.id for e in missing] == [ids[0], ids[3]]
        [ready] = store.entries_with_embeddings()
        assert ready.id == ids[1] and ready.embedding == b"\x01" * 48

    def test_invalid_state(self, store):
        entry_id = store.append_entry(_entry())
        with pytest.raises(ValidationError):
            store.set_embedding_state(entry_id, "done")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestQueries:
    def test_newest_first(self, store):
        ids = _seed(store)
        assert [e.id for e in store.list_entries()] == list(reversed(ids))

    def test_query_by_type_alias(self, store):
        _seed(store)
        got = store.query_by_type("decisionLog.md")
        assert [e.content for e in got] == ["Keep WAL mode enabled", "Adopt FTS5 trigram search"]

    def test_limit_validation_and_clamp(self):
        cfg = MemoryConfig()
        cfg.store.max_limit = 2
        cfg.store.default_limit = 2
        with MemoryStore(cfg).open(":memory:") as s:
            _seed(s)
            assert len(s.get_recent(count=100)) == 2
            with pytest.raises(ValidationError):
                s.get_recent(count=0)

    def test_date_range_inclusive_days(self, store):
        _seed(store)
        got = store.query_by_date_range(None, "2025-12-02", "2025-12-03")
        assert len(got) == 2
        got = store.query_by_date_range("DECISION", "2025-12-03", "2025-12-03")
        assert [e.content for e in got] == ["Keep WAL mode enabled"]

    def test_empty_range_rejected(self, store):
        with pytest.raises(ValidationError):
            store.query_by_date_range(None, "2025-12-05", "2025-12-01")

    def test_full_text_search(self, store):
        _seed(store)
        assert [e.content for e in store.full_text_search("parser")] == [
            "Parser done", "Working on the parser",
        ]
        assert store.full_text_search("parser", file_type="CONTEXT")[0].file_type == "CONTEXT"
        assert store.full_text_search("DECISION:2025-12-02")[0].content == \
            "Adopt FTS5 trigram search"
        assert store.full_text_search("zz") == []

    def test_blank_search_rejected(self, store):
        with pytest.raises(ValidationError):
            store.full_text_search("   ")

    def test_get_recent_by_type(self, store):
        _seed(store)
        assert [e.file_type for e in store.get_recent("PROGRESS", 5)] == ["PROGRESS"]

    def test_iter_entries_oldest_first(self, store):
        ids = _seed(store)
        assert [e.id for e in store.iter_entries()] == ids

    def test_execute_query_envelope(self, store):
        _seed(store)
        ok = store.execute_query("query_by_type", file_type="PROGRESS")
        assert ok.ok and ok.count == 1
        bad = store.execute_query("query_by_type", file_type="NOPE")
        assert not bad.ok and "unknown file type" in bad.error
        assert not store.execute_query("drop_everything").ok
        assert not store.execute_query("get_recent", nonsense=1).ok

    def test_entry_counts(self, store):
        _seed(store)
        assert store.entry_counts() == {"CONTEXT": 1, "DECISION": 2, "PROGRESS": 1}


# ---------------------------------------------------------------------------
# Telemetry and introspection
# ---------------------------------------------------------------------------


class TestTelemetry:
    def test_queries_are_timed(self, store):
        _seed(store)
        store.query_by_type("DECISION")
        store.full_text_search("parser")
        metrics = store.query_query_metrics()
        ops = {m.operation for m in metrics}
        assert {"query_by_type", "full_text_search"} <= ops
        [m] = store.query_query_metrics(operation="query_by_type")
        assert m.result_count == 2
        assert store.average_query_time_ms("query_by_type") >= 0.0

    def test_token_metrics(self, store):
        store.record_token_metric(TokenMetric(model="m", input_tokens=10, total_tokens=10))
        store.record_token_metric(TokenMetric(model="m", input_tokens=5, total_tokens=5,
                                              context_status="warning"))
        got = store.query_token_metrics(days=1)
        assert [m.total_tokens for m in got] == [5, 10]

    def test_prune_by_age(self, store):
        store.record_token_metric(TokenMetric(timestamp="2000-01-01T00:00:00.000Z"))
        store.record_token_metric(TokenMetric())
        assert store.prune_metrics(30) == 1
        assert len(store.query_token_metrics()) == 1

    def test_stats(self, store):
        ids = _seed(store)
        store.set_embedding(ids[0], b"\x00" * 48)
        stats = store.stats()
        assert stats["total_entries"] == 4
        assert stats["by_type"]["DECISION"] == 2
        assert stats["embeddings"] == {"ready": 1, "pending": 3}
        assert stats["schema_version"] == 2

    def test_integrity_check(self, disk_store):
        disk_store.append_entry(_entry())
        assert disk_store.integrity_check() == []

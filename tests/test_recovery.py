"""
Tests for aimem.recovery — error classification, integrity, restore.
"""

import sqlite3

import pytest

from aimem.recovery import attempt_recovery, detect_corruption, verify_integrity
from aimem.schema import backup_database, ensure_schema, list_backups


@pytest.mark.parametrize("message,corrupted,recoverable", [
    ("database disk image is malformed", True, True),
    ("file is not a database", True, True),
    ("Database Corrupted at page 3", True, True),
    ("database is locked", False, True),
    ("disk I/O error", True, False),
    ("attempt to write a readonly database", False, False),
    ("no such table: nope", False, True),
])
def test_detect_corruption(message, corrupted, recoverable):
    report = detect_corruption(sqlite3.DatabaseError(message))
    assert report.corrupted is corrupted
    assert report.recoverable is recoverable


def test_unclassified_reason_keeps_message():
    assert "boom" in detect_corruption(RuntimeError("boom")).reason


def _make_db(path):
    conn = sqlite3.connect(str(path))
    ensure_schema(conn, str(path), backup=False)
    conn.execute(
        "INSERT INTO entries (file_type, timestamp, tag, content) "
        "VALUES ('CONTEXT', '2025-12-01T00:00:00.000Z', '[CONTEXT:2025-12-01]', 'hello')"
    )
    conn.commit()
    conn.close()


class TestVerifyIntegrity:
    def test_valid(self, tmp_path):
        db = tmp_path / "memory.db"
        _make_db(db)
        assert verify_integrity(str(db)).valid

    def test_missing(self, tmp_path):
        report = verify_integrity(str(tmp_path / "absent.db"))
        assert not report.valid
        assert "missing" in report.issues[0]

    def test_garbage(self, tmp_path):
        db = tmp_path / "memory.db"
        db.write_bytes(b"x" * 4096)
        assert not verify_integrity(str(db)).valid


class TestAttemptRecovery:
    def test_no_backup(self, tmp_path):
        db = tmp_path / "memory.db"
        db.write_bytes(b"x" * 4096)
        assert attempt_recovery(str(db)) is False
        assert db.read_bytes() == b"x" * 4096

    def test_restores_latest_and_keeps_evidence(self, tmp_path):
        db = tmp_path / "memory.db"
        _make_db(db)
        backup_database(str(db), label="manual")
        db.write_bytes(b"x" * 4096)

        assert attempt_recovery(str(db)) is True
        conn = sqlite3.connect(str(db))
        try:
            assert conn.execute("SELECT content FROM entries").fetchone()[0] == "hello"
        finally:
            conn.close()
        labels = [p.name.rsplit(".", 2)[-2] for p in list_backups(str(db))]
        assert sorted(labels) == ["corrupt", "manual"]

    def test_explicit_backup_path(self, tmp_path):
        db = tmp_path / "memory.db"
        _make_db(db)
        saved = backup_database(str(db), label="manual")
        db.write_bytes(b"x" * 4096)
        assert attempt_recovery(str(db), str(saved))

    def test_invalid_backup_rejected(self, tmp_path):
        db = tmp_path / "memory.db"
        db.write_bytes(b"x" * 4096)
        bad = tmp_path / "bad.backup"
        bad.write_bytes(b"y" * 4096)
        assert attempt_recovery(str(db), str(bad)) is False


class TestCreateBackup:
    def test_copy_is_restorable(self, tmp_path):
        from aimem.recovery import create_backup

        db = tmp_path / "memory.db"
        _make_db(db)
        saved = create_backup(str(db), label="weekly")
        assert saved.name.endswith(".weekly.backup")
        assert verify_integrity(str(saved)).valid

    def test_missing_file(self, tmp_path):
        from aimem.recovery import create_backup

        with pytest.raises(FileNotFoundError):
            create_backup(str(tmp_path / "absent.db"))

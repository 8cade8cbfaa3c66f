"""
Database Recovery

Classifies storage errors, restores a damaged database from its latest
backup, and runs read-only integrity checks.

Recovery never destroys evidence: the damaged file is copied into
``.backup/`` (label ``corrupt``) before the restore overwrites it, and
``corrupt`` copies are never chosen as restore sources.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from aimem.schema import backup_database, latest_backup

logger = logging.getLogger(__name__)

# (message fragment, corrupted, recoverable, reason)
_SIGNATURES: Tuple[Tuple[str, bool, bool, str], ...] = (
    ("database disk image is malformed", True, True, "malformed database image"),
    ("file is not a database", True, True, "file is not a database"),
    ("file is encrypted or is not a database", True, True, "file is not a database"),
    ("database corrupted", True, True, "database corrupted"),
    ("cannot open database", True, True, "cannot open database"),
    ("unable to open database", True, True, "cannot open database"),
    ("database is locked", False, True, "database is locked"),
    ("disk i/o error", True, False, "disk I/O error"),
    ("readonly database", False, False, "read-only database"),
    ("read-only", False, False, "read-only database"),
)


@dataclass
class CorruptionReport:
    """Classification of a storage error."""

    corrupted: bool = False
    recoverable: bool = True
    reason: str = ""


@dataclass
class IntegrityReport:
    """Result of a read-only integrity check."""

    valid: bool = True
    issues: List[str] = field(default_factory=list)


def detect_corruption(error: BaseException) -> CorruptionReport:
    """Classify *error* by its message.

    A locked database is transient: not corrupted, retryable.  Disk I/O
    errors and read-only files cannot be fixed by restoring a backup.
    """
    message = str(error).lower()
    for fragment, corrupted, recoverable, reason in _SIGNATURES:
        if fragment in message:
            return CorruptionReport(corrupted=corrupted, recoverable=recoverable,
                                    reason=reason)
    return CorruptionReport(corrupted=False, recoverable=True,
                            reason=f"unclassified: {error}")


def verify_integrity(db_path: str) -> IntegrityReport:
    """Run ``PRAGMA integrity_check`` on a read-only connection."""
    path = Path(db_path)
    if not path.is_file():
        return IntegrityReport(valid=False, issues=[f"missing file: {db_path}"])
    uri = f"{path.resolve().as_uri()}?mode=ro"
    try:
        conn = sqlite3.connect(uri, uri=True)
    except sqlite3.Error as exc:
        return IntegrityReport(valid=False, issues=[str(exc)])
    try:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
    except sqlite3.DatabaseError as exc:
        return IntegrityReport(valid=False, issues=[str(exc)])
    finally:
        conn.close()
    issues = [r[0] for r in rows]
    if issues == ["ok"]:
        return IntegrityReport(valid=True)
    return IntegrityReport(valid=False, issues=issues)


def attempt_recovery(db_path: str, backup_path: Optional[str] = None) -> bool:
    """Restore *db_path* from a backup.

    Args:
        db_path: The damaged database file.
        backup_path: Backup to restore; defaults to the latest usable one.

    Returns:
        True if a backup was restored and passes the integrity check,
        False if no backup exists or the restored copy is invalid.
    """
    source = Path(backup_path) if backup_path else latest_backup(db_path)
    if source is None or not source.is_file():
        logger.warning(f"No backup available to recover {db_path}")
        return False

    target = Path(db_path)
    if target.exists():
        backup_database(db_path, label="corrupt")
    # Stale WAL/SHM files belong to the damaged database
    for suffix in ("-wal", "-shm"):
        side = target.with_name(target.name + suffix)
        if side.exists():
            side.unlink()
    shutil.copy2(source, target)

    report = verify_integrity(db_path)
    if not report.valid:
        logger.error(f"Restored backup {source} failed integrity check: {report.issues}")
        return False
    logger.info(f"Recovered {db_path} from {source}")
    return True


def create_backup(db_path: str, label: str = "manual") -> Path:
    """Copy a closed database file into ``.backup/``.

    Raises:
        FileNotFoundError: *db_path* does not exist.
    """
    if not Path(db_path).is_file():
        raise FileNotFoundError(db_path)
    return backup_database(db_path, label=label)

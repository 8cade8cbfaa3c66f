"""
Memory Store — Durable Entry Storage

Public surface of the storage layer.  A MemoryStore is constructed
explicitly (no process-wide singleton), bound to one backend chosen by
capability probing on init(), and serializes every backend call through a
single lock.

Guarantees:
    - ids are assigned by the backend and increase monotonically
    - every query is ordered by timestamp descending and bounded by a limit
      (default 50, clamped to 1000)
    - every query records a QueryMetric (operation, elapsed ms, result count)
    - schema migration runs on init, after a synchronous backup
    - a recoverable corruption on init triggers exactly one restore from
      the latest backup, then the store reopens
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from aimem.backends import (
    BackendUnavailable,
    EntryFilter,
    StorageBackend,
    open_backend,
)
from aimem.config import MemoryConfig
from aimem.errors import (
    AimemError,
    CorruptionError,
    MigrationError,
    StorageError,
    ValidationError,
)
from aimem.recovery import attempt_recovery, detect_corruption
from aimem.schema import MigrationReport, backup_database
from aimem.tagging import merge_metadata, parse_metadata
from aimem.types import (
    VALID_EMBEDDING_STATES,
    Entry,
    QueryMetric,
    QueryResult,
    TokenMetric,
    file_type_from_name,
    format_timestamp,
    make_tag,
    normalize_timestamp,
    parse_timestamp,
)
from aimem.validation import (
    BatchProcessor,
    BatchResult,
    MemoryValidator,
    sanitize_tag,
)

logger = logging.getLogger(__name__)

_QUERY_OPERATIONS = (
    "query_by_type", "query_by_date_range", "full_text_search",
    "get_recent", "query_by_metadata", "list_entries",
)


def _row_to_entry(row: Dict[str, Any]) -> Entry:
    return Entry(
        id=row["id"],
        file_type=row["file_type"],
        timestamp=row["timestamp"],
        tag=row["tag"],
        content=row["content"],
        metadata=parse_metadata(row.get("metadata") or "{}"),
        embedding=bytes(row["embedding"]) if row.get("embedding") is not None else None,
        embedding_state=row.get("embedding_state") or "pending",
    )


def _with_update_marker(content: str, text: str, date: str) -> str:
    return f"{content}\n\n---\n\n**[Updated {date}]** {text}"


class MemoryStore:
    """
    Entry store over a probed backend.

    Thread-safe via explicit lock.  Call init() (non-raising) or open()
    (raising) before any other operation.
    """

    def __init__(self, config: Optional[MemoryConfig] = None):
        self.config = config or MemoryConfig()
        self._lock = threading.Lock()
        self._backend: Optional[StorageBackend] = None
        self._validator = MemoryValidator(self.config.validation)
        self.db_path: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.migration: Optional[MigrationReport] = None
        self.recovered: bool = False

    # -- lifecycle -----------------------------------------------------------

    def init(self, path: Optional[str] = None) -> bool:
        """Open the store.  Returns False (and keeps ``last_error``) on failure."""
        try:
            self.open(path)
        except AimemError as exc:
            self.last_error = exc
            logger.error(f"MemoryStore init failed: {exc}")
            return False
        return True

    def open(self, path: Optional[str] = None) -> MemoryStore:
        """Open the store, raising on failure.

        Raises:
            CorruptionError: corrupted and no usable backup.
            MigrationError: a migration step aborted.
            StorageError: any other backend failure.
        """
        path = path or self.config.store.db_path
        self.close()
        self.db_path = path
        self.last_error = None
        try:
            self._connect(path)
        except BackendUnavailable:
            raise
        except StorageError as exc:
            # A migration step that hit a damaged file is classified by its cause
            cause = exc.__cause__ if isinstance(exc, MigrationError) else exc
            if cause is None:
                raise
            report = detect_corruption(cause)
            if not report.corrupted:
                raise
            if not (report.recoverable and self.config.store.auto_recover
                    and path != ":memory:"):
                raise CorruptionError(f"{path}: {report.reason}", report) from exc
            logger.warning(f"Corruption detected in {path} ({report.reason}), recovering")
            if not attempt_recovery(path):
                raise CorruptionError(
                    f"{path}: {report.reason}; no usable backup", report,
                ) from exc
            self.recovered = True
            self._connect(path)
        logger.info(
            f"MemoryStore initialized: {path} (backend={self.backend_name}, "
            f"fts5={'yes' if self._backend.fts_available else 'no'})"
        )
        return self

    def _connect(self, path: str) -> None:
        backend = open_backend(
            path, self.config.store.backend, wal_mode=self.config.store.wal_mode,
        )
        try:
            self.migration = backend.prepare()
        except AimemError:
            backend.close()
            raise
        self._backend = backend

    def close(self) -> None:
        with self._lock:
            if self._backend is not None:
                self._backend.close()
                self._backend = None

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._backend is not None

    @property
    def backend_name(self) -> Optional[str]:
        """Name of the active backend ("sqlite", "native-sqlite", "memory")."""
        return self._backend.name if self._backend else None

    def _require(self) -> StorageBackend:
        if self._backend is None:
            raise StorageError("store is not initialized; call init() first")
        return self._backend

    def schema_version(self) -> int:
        with self._lock:
            return self._require().schema_version()

    def backup(self, label: str = "manual") -> str:
        """Write a backup copy of the database file and return its path."""
        with self._lock:
            backend = self._require()
            if not backend.persistent:
                raise StorageError(f"{backend.name} store has no file to back up")
            conn = getattr(backend, "connection", None)
            return str(backup_database(self.db_path, label=label, conn=conn))

    # -- helpers -------------------------------------------------------------

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.store.default_limit
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        return min(limit, self.config.store.max_limit)

    def _timed(self, operation: str, flt: EntryFilter, limit: int) -> List[Entry]:
        backend = self._require()
        t0 = time.perf_counter()
        rows = backend.select_entries(flt, limit)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        try:
            backend.insert_metric("query", QueryMetric(
                operation=operation, elapsed_ms=round(elapsed_ms, 3),
                result_count=len(rows),
            ).to_dict())
        except StorageError as exc:
            logger.warning(f"Query metric not recorded for {operation}: {exc}")
        return [_row_to_entry(r) for r in rows]

    def _prepare(self, entry: Entry) -> Entry:
        """Validated copy of *entry* with normalized tag and timestamp."""
        prepared = replace(entry)
        parsed = parse_timestamp(prepared.timestamp)
        if parsed is not None:
            prepared.timestamp = format_timestamp(parsed)
        if prepared.tag:
            prepared.tag = sanitize_tag(prepared.tag)
        elif parsed is not None:
            prepared.tag = make_tag(prepared.file_type, prepared.timestamp)
        self._validator.validate_entry(prepared).raise_if_invalid()
        return prepared

    @staticmethod
    def _entry_to_row(entry: Entry) -> Dict[str, Any]:
        if entry.embedding is not None:
            state = "ready"
        elif entry.embedding_state in ("skipped", "failed"):
            state = entry.embedding_state
        else:
            state = "pending"
        return {
            "file_type": entry.file_type,
            "timestamp": entry.timestamp,
            "tag": entry.tag,
            "content": entry.content,
            "metadata": entry.metadata.to_json(),
            "phase": entry.metadata.phase,
            "progress_status": entry.metadata.progress,
            "embedding": entry.embedding,
            "embedding_state": state,
        }

    # -- writes --------------------------------------------------------------

    def append_entry(self, entry: Entry) -> int:
        """Validate and insert an entry; sets and returns its new id.

        Only the id is written back to *entry*; normalization applies to the
        stored row (read it back with get_entry()).

        Raises:
            ValidationError: the entry is invalid.
            StorageError: the backend rejected the write.
        """
        prepared = self._prepare(entry)
        row = self._entry_to_row(prepared)
        with self._lock:
            entry_id = self._require().insert_entry(row)
        entry.id = entry_id
        logger.debug(f"Appended entry {entry_id} ({prepared.file_type} {prepared.tag})")
        return entry_id

    def append_entries(self, entries: Iterable[Entry]) -> BatchResult:
        """Insert many entries; invalid ones are reported, not fatal."""
        processor = BatchProcessor(self.config.validation.batch_size)
        return processor.process(list(entries), self.append_entry, isolate=True)

    def update_entry(self, entry_id: int, partial: Dict[str, Any]) -> bool:
        """Replace the given fields of an entry.

        Updatable keys: content, tag, timestamp, metadata.  Changing content
        resets the embedding to pending.

        Returns:
            False if the id does not exist or *partial* is empty.

        Raises:
            ValidationError: unknown keys or an invalid resulting entry.
        """
        if not partial:
            return False
        unknown = set(partial) - {"content", "tag", "timestamp", "metadata"}
        if unknown:
            raise ValidationError(f"fields not updatable: {sorted(unknown)}")
        with self._lock:
            backend = self._require()
            row = backend.get_entry(entry_id)
            if row is None:
                return False
            current = _row_to_entry(row)
            updated = Entry(
                id=current.id,
                file_type=current.file_type,
                timestamp=partial.get("timestamp", current.timestamp),
                tag=partial.get("tag", current.tag),
                content=partial.get("content", current.content),
                metadata=parse_metadata(partial["metadata"]) if "metadata" in partial
                else current.metadata,
                embedding=current.embedding,
                embedding_state=current.embedding_state,
            )
            updated = self._prepare(updated)
            fields = self._entry_to_row(updated)
            del fields["file_type"]
            if updated.content != current.content:
                fields["embedding"] = None
                fields["embedding_state"] = "pending"
            return backend.update_entry(entry_id, fields)

    def edit_entry(
        self,
        entry_id: int,
        *,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        merge: bool = True,
    ) -> Optional[Entry]:
        """Replace content and/or metadata; returns the updated entry or None."""
        partial: Dict[str, Any] = {}
        if content is not None:
            partial["content"] = content
        if metadata is not None:
            if merge:
                current = self.get_entry(entry_id)
                if current is None:
                    return None
                partial["metadata"] = merge_metadata(current.metadata, metadata)
            else:
                partial["metadata"] = metadata
        if not self.update_entry(entry_id, partial):
            return None
        return self.get_entry(entry_id)

    def append_to_entry(
        self, entry_id: int, text: str, date: Optional[str] = None,
    ) -> Optional[Entry]:
        """Append *text* under an ``**[Updated DATE]**`` marker."""
        if not text or not text.strip():
            raise ValidationError("appended text must not be empty")
        current = self.get_entry(entry_id)
        if current is None:
            return None
        date = date or datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.edit_entry(
            entry_id, content=_with_update_marker(current.content, text.strip(), date),
        )

    def mark_deprecated(self, entry_id: int) -> bool:
        return self.edit_entry(entry_id, metadata={"progress": "deprecated"}) is not None

    def mark_superseded(self, entry_id: int, superseded_by: int) -> bool:
        """Deprecate *entry_id* and record the id that replaces it."""
        if self.get_entry(superseded_by) is None:
            return False
        updated = self.edit_entry(entry_id, metadata={
            "progress": "deprecated", "superseded_by": superseded_by,
        })
        return updated is not None

    # -- embeddings ----------------------------------------------------------

    def set_embedding(
        self, entry_id: int, quantized: bytes, *, content: Optional[str] = None,
    ) -> bool:
        """Attach a quantized vector and mark the entry ready.

        With *content*, the vector is stored only if the entry still holds
        that text; returns False when it was edited meanwhile.
        """
        expected = self.config.embedding.dimensions // 8
        if len(quantized) != expected:
            raise ValidationError(
                f"embedding must be {expected} bytes, got {len(quantized)}"
            )
        with self._lock:
            backend = self._require()
            if content is not None:
                row = backend.get_entry(entry_id)
                if row is None or row["content"] != content:
                    return False
            return backend.update_entry(entry_id, {
                "embedding": bytes(quantized), "embedding_state": "ready",
            })

    def set_embedding_state(self, entry_id: int, state: str) -> bool:
        if state not in VALID_EMBEDDING_STATES:
            raise ValidationError(f"invalid embedding_state: {state!r}")
        with self._lock:
            return self._require().update_entry(entry_id, {"embedding_state": state})

    def mark_embedding_failed(self, entry_id: int) -> bool:
        return self.set_embedding_state(entry_id, "failed")

    def entries_missing_embeddings(self, limit: Optional[int] = None) -> List[Entry]:
        """Pending entries, oldest first."""
        flt = EntryFilter(embedding_state="pending", ascending=True)
        with self._lock:
            rows = self._require().select_entries(flt, self._clamp_limit(limit))
        return [_row_to_entry(r) for r in rows]

    def entries_with_embeddings(self, limit: Optional[int] = None) -> List[Entry]:
        flt = EntryFilter(embedding_state="ready")
        with self._lock:
            rows = self._require().select_entries(flt, self._clamp_limit(limit))
        return [_row_to_entry(r) for r in rows]

    # -- reads ---------------------------------------------------------------

    def get_entry(self, entry_id: int) -> Optional[Entry]:
        with self._lock:
            row = self._require().get_entry(entry_id)
        return _row_to_entry(row) if row else None

    def query_by_type(self, file_type: str, limit: Optional[int] = None) -> List[Entry]:
        """Entries of one type, newest first."""
        flt = EntryFilter(file_type=file_type_from_name(file_type))
        limit = self._clamp_limit(limit)
        with self._lock:
            return self._timed("query_by_type", flt, limit)

    def query_by_date_range(
        self,
        file_type: Optional[str],
        start: str,
        end: str,
        limit: Optional[int] = None,
    ) -> List[Entry]:
        """Entries with start <= timestamp <= end (bare dates are whole days)."""
        lo = normalize_timestamp(start)
        hi = normalize_timestamp(end, end_of_day=True)
        if lo > hi:
            raise ValidationError(f"empty date range: {start} > {end}")
        flt = EntryFilter(
            file_type=file_type_from_name(file_type) if file_type else None,
            start=lo, end=hi,
        )
        limit = self._clamp_limit(limit)
        with self._lock:
            return self._timed("query_by_date_range", flt, limit)

    def full_text_search(
        self,
        term: str,
        limit: Optional[int] = None,
        file_type: Optional[str] = None,
    ) -> List[Entry]:
        """Case-insensitive substring search over content and tag."""
        if not term or not term.strip():
            raise ValidationError("search term must not be empty")
        flt = EntryFilter(
            term=term.strip(),
            file_type=file_type_from_name(file_type) if file_type else None,
        )
        limit = self._clamp_limit(limit)
        with self._lock:
            return self._timed("full_text_search", flt, limit)

    def get_recent(
        self, file_type: Optional[str] = None, count: Optional[int] = None,
    ) -> List[Entry]:
        """Most recent entries, optionally of one type."""
        flt = EntryFilter(
            file_type=file_type_from_name(file_type) if file_type else None,
        )
        limit = self._clamp_limit(count)
        with self._lock:
            return self._timed("get_recent", flt, limit)

    def query_by_metadata(
        self,
        *,
        progress: Optional[str] = None,
        phase: Optional[str] = None,
        file_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Entry]:
        flt = EntryFilter(
            progress_status=progress,
            phase=phase,
            file_type=file_type_from_name(file_type) if file_type else None,
        )
        limit = self._clamp_limit(limit)
        with self._lock:
            return self._timed("query_by_metadata", flt, limit)

    def list_entries(self, limit: Optional[int] = None) -> List[Entry]:
        limit = self._clamp_limit(limit)
        with self._lock:
            return self._timed("list_entries", EntryFilter(), limit)

    def iter_entries(self, ascending: bool = True) -> List[Entry]:
        """Every entry, bypassing the query cap (export and reindexing)."""
        with self._lock:
            backend = self._require()
            rows = backend.select_entries(
                EntryFilter(ascending=ascending), limit=2 ** 62,
            )
        return [_row_to_entry(r) for r in rows]

    def execute_query(self, operation: str, **kwargs: Any) -> QueryResult:
        """Run a named query and return an envelope instead of raising."""
        if operation not in _QUERY_OPERATIONS:
            return QueryResult(error=f"unknown operation: {operation}")
        method: Callable[..., List[Entry]] = getattr(self, operation)
        try:
            entries = method(**kwargs)
        except (AimemError, TypeError) as exc:
            return QueryResult(error=str(exc))
        return QueryResult(entries=entries, count=len(entries))

    def entry_counts(self) -> Dict[str, int]:
        with self._lock:
            return self._require().count_by_type()

    # -- telemetry -----------------------------------------------------------

    def record_token_metric(self, metric: TokenMetric) -> None:
        with self._lock:
            self._require().insert_metric("token", metric.to_dict())

    def record_query_metric(self, metric: QueryMetric) -> None:
        with self._lock:
            self._require().insert_metric("query", metric.to_dict())

    @staticmethod
    def _since(days: Optional[float]) -> Optional[str]:
        if days is None:
            return None
        return format_timestamp(datetime.now(timezone.utc) - timedelta(days=days))

    def query_token_metrics(self, days: Optional[float] = None) -> List[TokenMetric]:
        with self._lock:
            rows = self._require().select_metrics("token", self._since(days))
        return [TokenMetric.from_dict(r) for r in rows]

    def query_query_metrics(
        self, days: Optional[float] = None, operation: Optional[str] = None,
    ) -> List[QueryMetric]:
        with self._lock:
            rows = self._require().select_metrics("query", self._since(days))
        metrics = [QueryMetric.from_dict(r) for r in rows]
        if operation:
            metrics = [m for m in metrics if m.operation == operation]
        return metrics

    def average_query_time_ms(self, operation: Optional[str] = None) -> float:
        metrics = self.query_query_metrics(operation=operation)
        if not metrics:
            return 0.0
        return sum(m.elapsed_ms for m in metrics) / len(metrics)

    def prune_metrics(self, retention_days: Optional[int] = None) -> int:
        """Delete telemetry rows older than the retention window."""
        days = retention_days if retention_days is not None else \
            self.config.metrics.retention_days
        cutoff = self._since(days)
        with self._lock:
            removed = self._require().prune_metrics(cutoff)
        if removed:
            logger.info(f"Pruned {removed} metric row(s) older than {days} days")
        return removed

    # -- introspection -------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            backend = self._require()
            by_type = backend.count_by_type()
            by_state = backend.count_by_embedding_state()
            version = backend.schema_version()
            fts = backend.fts_available
        return {
            "backend": backend.name,
            "persistent": backend.persistent,
            "db_path": self.db_path,
            "schema_version": version,
            "fts5": fts,
            "total_entries": sum(by_type.values()),
            "by_type": by_type,
            "embeddings": by_state,
            "recovered": self.recovered,
        }

    def integrity_check(self) -> List[str]:
        with self._lock:
            return self._require().integrity_check()

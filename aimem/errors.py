"""
Error taxonomy for aimem.

Validation, conflict and not-found errors are recoverable by the caller.
Storage and corruption errors carry enough context (counts, corruption
report) to decide between retry, recovery, or abort.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class AimemError(Exception):
    """Base class for all aimem errors."""


class ValidationError(AimemError, ValueError):
    """Raised when an entry, tag, timestamp or metadata bag is invalid."""

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class StorageError(AimemError):
    """Raised when the storage backend fails."""


class MigrationError(StorageError):
    """Raised when a schema migration step aborts.

    The original table is left untouched when this is raised.
    """

    def __init__(self, message: str, expected: Optional[int] = None,
                 actual: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class CorruptionError(StorageError):
    """Raised when the database is corrupt and could not be recovered."""

    def __init__(self, message: str, report=None):
        self.report = report
        super().__init__(message)


class ConflictError(AimemError):
    """Raised when a transaction id is already active."""


class TransactionNotFound(AimemError, KeyError):
    """Raised on commit/rollback of an unknown transaction id."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class BudgetOverflow(AimemError):
    """An entry does not fit in the remaining token budget."""

    def __init__(self, needed: int, remaining: int):
        self.needed = needed
        self.remaining = remaining
        super().__init__(f"needs {needed} tokens, {remaining} remaining")


class OperationCancelled(AimemError):
    """Raised at a chunk boundary when a batch operation is cancelled."""

    def __init__(self, processed: int = 0):
        self.processed = processed
        super().__init__(f"operation cancelled after {processed} item(s)")


class EmbeddingUnavailable(AimemError):
    """Raised when no embedding can be produced for an entry."""


class ConfigError(ValueError):
    """Raised when config values are out of valid range."""

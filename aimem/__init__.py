"""
aimem — Typed, searchable memory for LLM agents.

Entries (context, decisions, progress, patterns, briefs, reports) live in a
single SQLite database with full-text search, background embeddings and
token-budgeted context selection.
"""

__version__ = "0.3.0"

from aimem.types import Entry, EntryMetadata, QueryMetric, TokenMetric
from aimem.errors import AimemError, CorruptionError, StorageError, ValidationError
from aimem.store import MemoryStore
from aimem.schema import SCHEMA_VERSION
from aimem.config import MemoryConfig, load_config
from aimem.engine import MemoryEngine

__all__ = [
    "__version__",
    "Entry",
    "EntryMetadata",
    "TokenMetric",
    "QueryMetric",
    "AimemError",
    "StorageError",
    "CorruptionError",
    "ValidationError",
    "MemoryStore",
    "MemoryEngine",
    "MemoryConfig",
    "load_config",
    "SCHEMA_VERSION",
]

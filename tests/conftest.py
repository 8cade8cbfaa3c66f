"""
Shared fixtures: a deterministic embedding model and store factories.
"""

import hashlib
import re

import numpy as np
import pytest

from aimem.config import MemoryConfig
from aimem.store import MemoryStore

_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeModel:
    """Bag-of-words hashing model with the sentence-transformers call shape.

    Identical texts map to identical unit vectors; texts sharing words are
    close.  ``calls`` records each batch passed to encode().
    """

    def __init__(self, dimensions=384, fail_on=None):
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls = []

    def _vector(self, text):
        vec = np.zeros(self.dimensions, dtype=np.float32)
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimensions
            vec[idx] += 1.0 if digest[4] & 1 else -1.0
        norm = np.linalg.norm(vec)
        return vec / norm if norm else vec

    def encode(self, texts, normalize_embeddings=True, show_progress_bar=False):
        self.calls.append(list(texts))
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RuntimeError("model exploded")
        return np.stack([self._vector(t) for t in texts])


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def config():
    return MemoryConfig()


@pytest.fixture
def store(config):
    """In-memory SQLite store."""
    s = MemoryStore(config).open(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Disk-backed store under tmp_path."""
    cfg = MemoryConfig()
    cfg.store.db_path = str(tmp_path / "mem" / "memory.db")
    s = MemoryStore(cfg).open()
    yield s
    s.close()

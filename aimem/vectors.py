"""
Vector Store — In-Memory Similarity Index

Keeps full-precision and quantized vectors per entry id and answers
nearest-neighbour, near-duplicate and clustering queries by exhaustive
cosine comparison (numpy matrix products; fine up to ~1e5 vectors).

Persistence goes through the quantized form only: export() emits
``{"id", "quantized", "text"}`` records and load() restores dequantized
(+1/-1) vectors, so similarities after a reload are approximate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from aimem.embeddings import dequantize_embedding, quantize_embedding

logger = logging.getLogger(__name__)


@dataclass
class VectorEntry:
    id: int
    embedding: np.ndarray
    quantized: bytes
    text: str = ""


@dataclass
class SearchResult:
    id: int
    similarity: float
    text: str = ""


@dataclass
class DuplicateGroup:
    """A primary entry and the entries that nearly duplicate it."""

    primary_id: int
    duplicate_ids: List[int] = field(default_factory=list)
    similarities: List[float] = field(default_factory=list)

    @property
    def ids(self) -> List[int]:
        return [self.primary_id] + self.duplicate_ids


@dataclass
class Cluster:
    centroid: np.ndarray
    member_ids: List[int] = field(default_factory=list)
    avg_similarity: float = 0.0


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def hybrid_score(
    semantic: float,
    keyword: float,
    semantic_weight: float = 0.7,
    keyword_weight: float = 0.3,
) -> float:
    """Blend a cosine similarity in [-1, 1] with a keyword score.

    The cosine is mapped to [0, 1] and the keyword score clamped to [0, 1].
    """
    sem = (max(-1.0, min(1.0, semantic)) + 1.0) / 2.0
    kw = max(0.0, min(1.0, keyword))
    return semantic_weight * sem + keyword_weight * kw


class VectorStore:
    """Dict-backed vector index keyed by entry id."""

    def __init__(self, dimensions: int = 384):
        self.dimensions = dimensions
        self._vectors: Dict[int, VectorEntry] = {}
        self._dirty = False

    # -- mutation ------------------------------------------------------------

    def add_vector(self, entry_id: int, embedding: Sequence[float], text: str = "") -> None:
        vec = np.asarray(embedding, dtype=np.float32)
        if vec.shape != (self.dimensions,):
            raise ValueError(
                f"expected {self.dimensions}-d vector, got shape {vec.shape}"
            )
        self._vectors[entry_id] = VectorEntry(
            id=entry_id, embedding=vec, quantized=quantize_embedding(vec), text=text,
        )
        self._dirty = True

    def add_vectors(self, items: Iterable[Tuple[int, Sequence[float], str]]) -> int:
        n = 0
        for entry_id, embedding, text in items:
            self.add_vector(entry_id, embedding, text)
            n += 1
        return n

    def add_quantized(self, entry_id: int, quantized: bytes, text: str = "") -> None:
        """Index a stored (quantized) vector."""
        self.add_vector(entry_id, dequantize_embedding(quantized, self.dimensions), text)

    def remove_vector(self, entry_id: int) -> bool:
        if self._vectors.pop(entry_id, None) is None:
            return False
        self._dirty = True
        return True

    def clear(self) -> None:
        if self._vectors:
            self._dirty = True
        self._vectors.clear()

    # -- access --------------------------------------------------------------

    def get_vector(self, entry_id: int) -> Optional[VectorEntry]:
        return self._vectors.get(entry_id)

    def __contains__(self, entry_id: int) -> bool:
        return entry_id in self._vectors

    @property
    def size(self) -> int:
        return len(self._vectors)

    def __len__(self) -> int:
        return len(self._vectors)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def _matrix(self) -> Tuple[List[int], np.ndarray]:
        ids = list(self._vectors)
        if not ids:
            return ids, np.zeros((0, self.dimensions), dtype=np.float32)
        return ids, np.stack([self._vectors[i].embedding for i in ids])

    # -- queries -------------------------------------------------------------

    def similarities(self, query: Sequence[float]) -> Dict[int, float]:
        """Cosine similarity of *query* to every indexed vector."""
        q = np.asarray(query, dtype=np.float32)
        if q.shape != (self.dimensions,):
            raise ValueError(f"dimension mismatch: {q.shape[0]} vs {self.dimensions}")
        ids, matrix = self._matrix()
        if not ids:
            return {}
        qn = float(np.linalg.norm(q))
        if qn == 0.0:
            return {i: 0.0 for i in ids}
        sims = _unit_rows(matrix) @ (q / qn)
        return {i: float(s) for i, s in zip(ids, sims)}

    def search(
        self,
        query: Sequence[float],
        limit: int = 10,
        min_similarity: float = 0.5,
    ) -> List[SearchResult]:
        """Top *limit* vectors with similarity >= *min_similarity*, best first."""
        sims = self.similarities(query)
        hits = [(i, s) for i, s in sims.items() if s >= min_similarity]
        hits.sort(key=lambda x: (-x[1], x[0]))
        return [
            SearchResult(id=i, similarity=s, text=self._vectors[i].text)
            for i, s in hits[:limit]
        ]

    def deduplicate(self, threshold: float = 0.95) -> List[DuplicateGroup]:
        """Group vectors whose similarity to a primary is >= *threshold*.

        Primaries are taken in insertion order; each vector joins at most one
        group.  Only groups with at least one duplicate are returned.
        """
        ids, matrix = self._matrix()
        if len(ids) < 2:
            return []
        unit = _unit_rows(matrix)
        sims = unit @ unit.T
        taken = set()
        groups: List[DuplicateGroup] = []
        for a in range(len(ids)):
            if a in taken:
                continue
            taken.add(a)
            group = DuplicateGroup(primary_id=ids[a])
            for b in range(a + 1, len(ids)):
                if b not in taken and sims[a, b] >= threshold:
                    taken.add(b)
                    group.duplicate_ids.append(ids[b])
                    group.similarities.append(float(sims[a, b]))
            if group.duplicate_ids:
                groups.append(group)
        return groups

    def cluster(
        self,
        k: int = 5,
        max_iterations: int = 10,
        seed: Optional[int] = None,
    ) -> List[Cluster]:
        """Spherical k-means over the indexed vectors.

        With ``k >= size`` every vector is its own cluster (similarity 1.0).
        Pass *seed* for reproducible centroid initialization.  Empty clusters
        are dropped from the result.

        Raises:
            ValueError: if ``k <= 0``.
        """
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        ids, matrix = self._matrix()
        if not ids:
            return []
        if k >= len(ids):
            return [
                Cluster(centroid=self._vectors[i].embedding.copy(),
                        member_ids=[i], avg_similarity=1.0)
                for i in ids
            ]

        unit = _unit_rows(matrix)
        rng = np.random.default_rng(seed)
        centroids = unit[rng.choice(len(ids), size=k, replace=False)].copy()
        assignment = np.full(len(ids), -1)
        for _ in range(max(1, max_iterations)):
            new_assignment = np.argmax(unit @ centroids.T, axis=1)
            if np.array_equal(new_assignment, assignment):
                break
            assignment = new_assignment
            for c in range(k):
                members = unit[assignment == c]
                if len(members):
                    centroids[c] = _unit_rows(members.mean(axis=0, keepdims=True))[0]

        clusters: List[Cluster] = []
        for c in range(k):
            idx = np.flatnonzero(assignment == c)
            if not len(idx):
                continue
            sims = unit[idx] @ centroids[c]
            clusters.append(Cluster(
                centroid=centroids[c].copy(),
                member_ids=[ids[i] for i in idx],
                avg_similarity=float(np.mean(sims)),
            ))
        return clusters

    # -- persistence ---------------------------------------------------------

    def export(self) -> List[Dict[str, Any]]:
        """Quantized records suitable for JSON."""
        return [
            {"id": v.id, "quantized": v.quantized.hex(), "text": v.text}
            for v in self._vectors.values()
        ]

    def load(self, records: Iterable[Dict[str, Any]]) -> int:
        """Replace the index with exported records; leaves the store clean."""
        self._vectors.clear()
        n = 0
        for rec in records:
            data = rec["quantized"]
            if isinstance(data, str):
                data = bytes.fromhex(data)
            self.add_quantized(int(rec["id"]), data, rec.get("text", ""))
            n += 1
        self._dirty = False
        logger.debug(f"Loaded {n} vectors")
        return n


def find_duplicate_clusters(
    store: VectorStore, threshold: float = 0.95,
) -> List[Tuple[int, List[int]]]:
    """(primary id, duplicate ids) pairs from ``store.deduplicate``."""
    return [(g.primary_id, g.duplicate_ids) for g in store.deduplicate(threshold)]

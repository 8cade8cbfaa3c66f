"""
Embedding Service

Text to fixed-dimension dense vectors (384-d, ``all-MiniLM-L6-v2`` by
default), plus the sign-bit quantization used for storage:

    quantize    one bit per dimension, set iff value > 0;
                bit i lives in byte i // 8 at position i % 8 (LSB first)
    dequantize  set bit -> +1.0, clear bit -> -1.0

The sentence-transformers model is loaded lazily on first use; blank text
short-circuits to a zero vector without touching it.  Any object with an
``encode(texts, **kwargs)`` method returning an (n, d) array can be
injected instead (tests use a deterministic fake).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from aimem.config import EmbeddingConfig
from aimem.errors import EmbeddingUnavailable, OperationCancelled

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """One embedded text."""

    embedding: np.ndarray
    quantized: bytes
    dimensions: int
    model: str

    @property
    def is_zero(self) -> bool:
        return not np.any(self.embedding)


# ---------------------------------------------------------------------------
# Quantization and similarity
# ---------------------------------------------------------------------------


def quantize_embedding(vector: Sequence[float]) -> bytes:
    """Pack sign bits of *vector* into ``ceil(len / 8)`` bytes."""
    arr = np.asarray(vector, dtype=np.float32)
    return np.packbits(arr > 0, bitorder="little").tobytes()


def dequantize_embedding(data: bytes, dimensions: Optional[int] = None) -> np.ndarray:
    """Unpack sign bits to a float32 vector of +1.0 / -1.0."""
    bits = np.unpackbits(np.frombuffer(data, dtype=np.uint8), bitorder="little")
    if dimensions is not None:
        bits = bits[:dimensions]
    return np.where(bits == 1, 1.0, -1.0).astype(np.float32)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; 0.0 if either is all zeros.

    Raises:
        ValueError: dimension mismatch.
    """
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class EmbeddingService:
    """Lazy sentence-transformers wrapper with batching and cancellation."""

    def __init__(self, config: Optional[EmbeddingConfig] = None, model: Any = None):
        self.config = config or EmbeddingConfig()
        self._model = model
        self._load_lock = threading.Lock()
        self._load_seconds: Optional[float] = None

    def _get_model(self):
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as exc:
                    raise EmbeddingUnavailable(
                        "sentence-transformers is not installed "
                        "(pip install aimem[embeddings])"
                    ) from exc
                t0 = time.perf_counter()
                self._model = SentenceTransformer(self.config.model_name)
                self._load_seconds = time.perf_counter() - t0
                logger.info(
                    f"Embedding model loaded: {self.config.model_name} "
                    f"in {self._load_seconds:.1f}s"
                )
        return self._model

    def is_ready(self) -> bool:
        """True once a model is loaded (or injected)."""
        return self._model is not None

    def model_info(self) -> Dict[str, Any]:
        return {
            "model": self.config.model_name,
            "dimensions": self.config.dimensions,
            "quantized_bytes": self.config.dimensions // 8,
            "batch_size": self.config.batch_size,
            "loaded": self.is_ready(),
            "load_seconds": self._load_seconds,
        }

    def unload(self) -> None:
        self._model = None

    def _result(self, vector: np.ndarray) -> EmbeddingResult:
        return EmbeddingResult(
            embedding=vector,
            quantized=quantize_embedding(vector),
            dimensions=self.config.dimensions,
            model=self.config.model_name,
        )

    def _zero(self) -> EmbeddingResult:
        return self._result(np.zeros(self.config.dimensions, dtype=np.float32))

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._get_model()
        vectors = np.asarray(
            model.encode(texts, normalize_embeddings=True, show_progress_bar=False),
            dtype=np.float32,
        )
        if vectors.ndim != 2 or vectors.shape[1] != self.config.dimensions:
            raise EmbeddingUnavailable(
                f"model returned shape {vectors.shape}, "
                f"expected (n, {self.config.dimensions})"
            )
        return vectors

    def embed(self, text: str) -> EmbeddingResult:
        """Embed one text.  Blank text yields a zero vector."""
        if not text or not text.strip():
            return self._zero()
        return self._result(self._encode([text])[0])

    def embed_batch(
        self,
        texts: Sequence[str],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> List[EmbeddingResult]:
        """Embed many texts in chunks of ``batch_size``.

        Results keep input order.  The cancel token is checked before each
        chunk and raises OperationCancelled.
        """
        results: List[Optional[EmbeddingResult]] = [None] * len(texts)
        size = self.config.batch_size
        for start in range(0, len(texts), size):
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(processed=start)
            chunk = texts[start:start + size]
            idx = [i for i, t in enumerate(chunk) if t and t.strip()]
            if idx:
                vectors = self._encode([chunk[i] for i in idx])
                for i, vec in zip(idx, vectors):
                    results[start + i] = self._result(vec)
            for i in range(len(chunk)):
                if results[start + i] is None:
                    results[start + i] = self._zero()
        return results  # type: ignore[return-value]

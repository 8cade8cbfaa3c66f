"""
Tests for aimem.embeddings — quantization, cosine, lazy service.
"""

import threading

import numpy as np
import pytest

from aimem.config import EmbeddingConfig
from aimem.embeddings import (
    EmbeddingService,
    cosine_similarity,
    dequantize_embedding,
    quantize_embedding,
)
from aimem.errors import EmbeddingUnavailable, OperationCancelled

from conftest import FakeModel


class TestQuantization:
    def test_bit_layout(self):
        vec = np.full(16, -1.0)
        vec[0] = 0.3   # byte 0, bit 0
        vec[9] = 2.0   # byte 1, bit 1
        assert quantize_embedding(vec) == bytes([0b00000001, 0b00000010])

    def test_zero_is_clear_bit(self):
        assert quantize_embedding(np.zeros(8)) == b"\x00"

    def test_size(self):
        assert len(quantize_embedding(np.ones(384))) == 48

    def test_dequantize_signs(self):
        vec = np.array([0.5, -0.2, 0.0, 3.0, -1.0, 1.0, -7.0, 0.1])
        out = dequantize_embedding(quantize_embedding(vec))
        assert out.tolist() == [1.0, -1.0, -1.0, 1.0, -1.0, 1.0, -1.0, 1.0]
        assert out.dtype == np.float32

    def test_dequantize_truncates_to_dimensions(self):
        assert dequantize_embedding(b"\xff\xff", dimensions=12).shape == (12,)


class TestCosine:
    def test_basic(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 2], [-1, -2]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError, match="dimension mismatch"):
            cosine_similarity([1, 2], [1, 2, 3])


class TestEmbeddingService:
    def test_embed(self, fake_model):
        svc = EmbeddingService(model=fake_model)
        result = svc.embed("sqlite storage layer")
        assert result.embedding.shape == (384,)
        assert len(result.quantized) == 48
        assert result.model == "all-MiniLM-L6-v2"
        assert np.linalg.norm(result.embedding) == pytest.approx(1.0, abs=1e-5)

    def test_blank_text_skips_model(self, fake_model):
        svc = EmbeddingService(model=fake_model)
        result = svc.embed("   ")
        assert result.is_zero
        assert fake_model.calls == []

    def test_deterministic_and_similar(self, fake_model):
        svc = EmbeddingService(model=fake_model)
        a = svc.embed("cache token counts")
        b = svc.embed("cache token counts")
        c = svc.embed("cache token counts quickly")
        assert np.array_equal(a.embedding, b.embedding)
        assert cosine_similarity(a.embedding, c.embedding) > 0.5

    def test_batch_keeps_order_and_chunks(self, fake_model):
        svc = EmbeddingService(EmbeddingConfig(batch_size=2), model=fake_model)
        texts = ["alpha", "", "beta", "gamma", "delta"]
        results = svc.embed_batch(texts)
        assert len(results) == 5
        assert results[1].is_zero
        assert np.array_equal(results[2].embedding, svc.embed("beta").embedding)
        assert fake_model.calls[:3] == [["alpha"], ["beta", "gamma"], ["delta"]]

    def test_cancel_before_chunk(self, fake_model):
        svc = EmbeddingService(EmbeddingConfig(batch_size=1), model=fake_model)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            svc.embed_batch(["a", "b"], cancel=cancel)
        assert fake_model.calls == []

    def test_wrong_model_shape(self):
        svc = EmbeddingService(model=FakeModel(dimensions=16))
        with pytest.raises(EmbeddingUnavailable, match="shape"):
            svc.embed("hello")

    def test_model_errors_propagate(self):
        svc = EmbeddingService(model=FakeModel(fail_on="boom"))
        with pytest.raises(RuntimeError):
            svc.embed("boom")

    def test_model_info(self, fake_model):
        info = EmbeddingService(model=fake_model).model_info()
        assert info["loaded"] is True
        assert info["quantized_bytes"] == 48

    def test_lazy_until_used(self):
        svc = EmbeddingService()
        assert not svc.is_ready()
        assert svc.embed("").is_zero
        assert not svc.is_ready()

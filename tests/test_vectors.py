"""
Tests for aimem.vectors — similarity index, dedup, clustering.
"""

import numpy as np
import pytest

from aimem.embeddings import quantize_embedding
from aimem.vectors import VectorStore, find_duplicate_clusters, hybrid_score


def _unit(*values, dims=8):
    vec = np.zeros(dims, dtype=np.float32)
    vec[:len(values)] = values
    return vec / np.linalg.norm(vec)


@pytest.fixture
def index():
    vs = VectorStore(dimensions=8)
    vs.add_vector(1, _unit(1, 0), "east")
    vs.add_vector(2, _unit(0.99, 0.1), "east-ish")
    vs.add_vector(3, _unit(0, 1), "north")
    vs.add_vector(4, _unit(-1, 0), "west")
    return vs


class TestIndex:
    def test_add_and_remove(self, index):
        assert index.size == 4 and 3 in index
        assert index.is_dirty
        index.mark_clean()
        assert index.remove_vector(3)
        assert not index.remove_vector(3)
        assert index.is_dirty and len(index) == 3

    def test_rejects_wrong_dimensions(self, index):
        with pytest.raises(ValueError):
            index.add_vector(9, np.ones(4))

    def test_add_quantized(self):
        vs = VectorStore(dimensions=8)
        vs.add_quantized(7, quantize_embedding([1, -1, 1, -1, 1, -1, 1, -1]))
        assert vs.get_vector(7).embedding.tolist() == [1, -1, 1, -1, 1, -1, 1, -1]


class TestSearch:
    def test_best_first_with_threshold(self, index):
        hits = index.search(_unit(1, 0), limit=10, min_similarity=0.5)
        assert [h.id for h in hits] == [1, 2]
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[0].text == "east"

    def test_limit(self, index):
        assert len(index.search(_unit(1, 0), limit=1, min_similarity=-1.0)) == 1

    def test_zero_query(self, index):
        assert set(index.similarities(np.zeros(8)).values()) == {0.0}

    def test_empty_index(self):
        assert VectorStore(8).search(_unit(1)) == []

    def test_query_dimension_mismatch(self, index):
        with pytest.raises(ValueError):
            index.similarities(np.ones(3))


class TestDedupAndClusters:
    def test_deduplicate(self, index):
        [group] = index.deduplicate(threshold=0.95)
        assert group.ids == [1, 2]
        assert group.similarities[0] > 0.95
        assert find_duplicate_clusters(index, 0.95) == [(1, [2])]

    def test_no_duplicates_below_threshold(self, index):
        assert index.deduplicate(threshold=0.9999) == []

    def test_cluster_partitions(self, index):
        clusters = index.cluster(k=3, seed=0)
        members = sorted(i for c in clusters for i in c.member_ids)
        assert members == [1, 2, 3, 4]
        together = [c for c in clusters if 1 in c.member_ids][0]
        assert 4 not in together.member_ids

    def test_cluster_k_at_least_size(self, index):
        clusters = index.cluster(k=10)
        assert len(clusters) == 4
        assert all(c.avg_similarity == 1.0 for c in clusters)

    def test_cluster_invalid_k(self, index):
        with pytest.raises(ValueError):
            index.cluster(k=0)


class TestPersistence:
    def test_export_load_is_quantized(self, index):
        records = index.export()
        fresh = VectorStore(dimensions=8)
        assert fresh.load(records) == 4
        assert not fresh.is_dirty
        assert set(np.unique(fresh.get_vector(2).embedding)) <= {-1.0, 1.0}


def test_hybrid_score():
    assert hybrid_score(1.0, 1.0) == pytest.approx(1.0)
    assert hybrid_score(-1.0, 0.0) == pytest.approx(0.0)
    assert hybrid_score(0.0, 0.5) == pytest.approx(0.7 * 0.5 + 0.3 * 0.5)
    assert hybrid_score(5.0, 9.0) == pytest.approx(1.0)

"""
Tests for aimem.metrics — telemetry summaries and retention.
"""

import pytest

from aimem.metrics import MetricsService, summarize_queries, summarize_tokens
from aimem.types import QueryMetric, TokenMetric


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_summarize_tokens():
    rows = [
        TokenMetric(input_tokens=10, output_tokens=5, total_tokens=15, context_status="warning"),
        TokenMetric(input_tokens=5, total_tokens=5),
    ]
    s = summarize_tokens(rows)
    assert s["count"] == 2 and s["total_tokens"] == 20 and s["avg_tokens"] == 10.0
    assert s["status_counts"] == {"warning": 1, "healthy": 1}
    assert s["latest_status"] == "warning"
    assert summarize_tokens([])["latest_status"] is None


def test_summarize_queries():
    rows = [QueryMetric(operation="get_recent", elapsed_ms=float(i), result_count=2)
            for i in range(1, 21)]
    rows.append(QueryMetric(operation="full_text_search", elapsed_ms=3.0))
    s = summarize_queries(rows)
    assert list(s) == ["full_text_search", "get_recent"]
    assert s["get_recent"]["count"] == 20
    assert s["get_recent"]["avg_ms"] == 10.5
    assert s["get_recent"]["max_ms"] == 20.0
    assert s["get_recent"]["p95_ms"] == 19.0
    assert s["get_recent"]["avg_results"] == 2.0


class TestMetricsService:
    def test_summary_is_cached(self, store):
        clock = Clock()
        svc = MetricsService(store, clock=clock)
        store.record_token_metric(TokenMetric(total_tokens=1))
        first = svc.summary()
        store.record_token_metric(TokenMetric(total_tokens=1))
        assert svc.summary()["tokens"]["count"] == first["tokens"]["count"] == 1
        clock.now = 31.0
        assert svc.summary()["tokens"]["count"] == 2

    def test_refresh_bypasses_cache(self, store):
        svc = MetricsService(store, clock=Clock())
        svc.summary()
        store.record_token_metric(TokenMetric(total_tokens=4))
        assert svc.summary(refresh=True)["tokens"]["count"] == 1

    def test_summary_includes_queries_and_entries(self, store):
        from aimem.types import Entry

        store.append_entry(Entry(file_type="BRIEF", content="goal"))
        store.query_by_type("BRIEF")
        data = MetricsService(store).summary(days=None)
        assert data["entries"] == {"BRIEF": 1}
        assert data["queries"]["query_by_type"]["count"] == 1

    def test_prune_invalidates(self, store):
        svc = MetricsService(store, clock=Clock())
        store.record_token_metric(TokenMetric(timestamp="2001-01-01T00:00:00.000Z"))
        assert svc.summary(days=None)["tokens"]["count"] == 1
        assert svc.prune(retention_days=30) == 1
        assert svc.summary(days=None)["tokens"]["count"] == 0

    def test_average_tokens(self, store):
        store.record_token_metric(TokenMetric(total_tokens=10))
        store.record_token_metric(TokenMetric(total_tokens=30))
        assert MetricsService(store).average_tokens() == pytest.approx(20.0)

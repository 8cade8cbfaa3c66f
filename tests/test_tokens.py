"""
Tests for aimem.tokens — estimation, remote counting, cache, budget.
"""

from types import SimpleNamespace

import pytest

from aimem.config import BudgetConfig, TokenCacheConfig
from aimem.tokens import (
    TokenCountCache,
    TokenCountRequest,
    TokenCounter,
    estimate_request_tokens,
    estimate_tokens,
    get_context_budget,
)


class FakeClient:
    """Stands in for anthropic.Anthropic: counts words."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self.messages = SimpleNamespace(count_tokens=self._count)

    def _count(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise ConnectionError("offline")
        words = sum(len(str(m["content"]).split()) for m in kwargs["messages"])
        return SimpleNamespace(input_tokens=words)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def offline(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


class TestEstimate:
    def test_ceil_chars(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_request_overhead(self):
        req = TokenCountRequest(
            messages=[{"role": "user", "content": "hello world"}], system="be brief",
        )
        assert estimate_request_tokens(req) == (3 + 4) + (2 + 4)

    def test_content_blocks(self):
        req = TokenCountRequest.coerce({"messages": [
            {"role": "user", "content": [{"type": "text", "text": "abcd"}]},
        ]})
        assert estimate_request_tokens(req) == 1 + 4

    def test_coerce_string(self):
        req = TokenCountRequest.coerce("hi")
        assert req.messages == [{"role": "user", "content": "hi"}]


class TestCache:
    def test_hit_and_miss(self):
        cache = TokenCountCache()
        assert cache.get("k") is None
        cache.set("k", 5)
        assert cache.get("k") == 5
        assert cache.stats()["hits"] == 1 and cache.stats()["misses"] == 1

    def test_ttl(self):
        clock = FakeClock()
        cache = TokenCountCache(ttl_seconds=10, clock=clock)
        cache.set("k", 5)
        clock.now = 10.0
        assert cache.get("k") == 5
        clock.now = 10.5
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_evicts_oldest_insertion(self):
        cache = TokenCountCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2 and cache.get("c") == 3


class TestCounter:
    def test_estimate_without_client(self, offline):
        counter = TokenCounter()
        result = counter.count_tokens("hello world")
        assert result.input_tokens == 7
        assert result.estimated_only and not result.cached
        assert not counter.precise

    def test_cached_estimate_stays_estimated(self, offline):
        counter = TokenCounter()
        first = counter.count_tokens("hello world")
        second = counter.count_tokens("hello world")
        assert second.cached and second.input_tokens == first.input_tokens
        assert second.estimated_only

    def test_remote_count_and_cache(self):
        client = FakeClient()
        counter = TokenCounter(client=client)
        first = counter.count_tokens("one two three")
        second = counter.count_tokens("one two three")
        assert first.input_tokens == 3 and not first.estimated_only
        assert second.cached and second.input_tokens == 3
        assert not second.estimated_only
        assert len(client.calls) == 1
        assert client.calls[0]["model"] == "claude-sonnet-4-5"

    def test_system_passed_through(self):
        client = FakeClient()
        TokenCounter(client=client).count_tokens({
            "messages": [{"role": "user", "content": "x"}], "system": "sys",
            "model": "other-model",
        })
        assert client.calls[0]["system"] == "sys"
        assert client.calls[0]["model"] == "other-model"

    def test_remote_failure_falls_back(self):
        counter = TokenCounter(client=FakeClient(fail=True))
        result = counter.count_tokens("hello world")
        assert result.estimated_only and result.input_tokens == 7

    def test_distinct_models_cached_separately(self):
        client = FakeClient()
        counter = TokenCounter(client=client)
        counter.count_tokens({"messages": [{"role": "user", "content": "x"}], "model": "a"})
        counter.count_tokens({"messages": [{"role": "user", "content": "x"}], "model": "b"})
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_async(self, offline):
        result = await TokenCounter().count_tokens_async("abcd")
        assert result.input_tokens == 5


class TestMetricsBuffer:
    def test_flush_to_store(self, store, offline):
        counter = TokenCounter(store=store)
        counter.count_tokens("abc")
        counter.record_usage(10, 5, model="m")
        assert counter.flush_metrics() == 2
        rows = store.query_token_metrics()
        assert sorted(m.total_tokens for m in rows) == [5, 15]
        assert counter.pending_metrics() == []

    def test_buffer_full_flushes(self, store):
        counter = TokenCounter(TokenCacheConfig(metrics_buffer_size=2), store=store)
        counter.record_usage(1)
        assert len(store.query_token_metrics()) == 0
        counter.record_usage(2)
        assert len(store.query_token_metrics()) == 2

    def test_bounded_without_store(self):
        counter = TokenCounter(TokenCacheConfig(metrics_buffer_size=3))
        for i in range(5):
            counter.record_usage(i)
        assert len(counter.pending_metrics()) <= 3

    def test_status_recorded(self):
        counter = TokenCounter()
        assert counter.record_usage(155_000).context_status == "critical"


class TestBudget:
    @pytest.mark.parametrize("used,status", [
        (0, "healthy"),
        (100_000, "healthy"),
        (120_000, "warning"),
        (149_999, "warning"),
        (150_000, "critical"),
        (155_000, "critical"),
        (200_000, "critical"),
    ])
    def test_status(self, used, status):
        assert get_context_budget(used).status == status

    def test_totals(self):
        budget = get_context_budget(40_000)
        assert budget.total == 160_000
        assert budget.remaining == 120_000
        assert budget.percent_used == 25.0
        assert budget.recommendations

    def test_overflow_clamped(self):
        budget = get_context_budget(500_000)
        assert budget.remaining == 0 and budget.percent_used == 100.0

    def test_custom_window(self):
        cfg = BudgetConfig(context_window=10_000, output_reserve=0.0,
                           healthy_remaining=5_000, warning_remaining=1_000)
        assert get_context_budget(2_000, config=cfg).status == "healthy"
        assert get_context_budget(6_000, window=10_000, config=cfg).status == "warning"
        assert get_context_budget(1_000, window=1_000, config=cfg).status == "critical"

"""
Telemetry Summaries

Read-side aggregation over the token_metrics and query_metrics tables:
token usage totals and averages, context-status distribution, and per
operation query latency.  Summaries are cached briefly since the
underlying tables only grow between prunes.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from aimem.config import MetricsConfig
from aimem.types import QueryMetric, TokenMetric

logger = logging.getLogger(__name__)


def _percentile(values: List[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    k = min(len(ordered) - 1, max(0, int(round(pct / 100.0 * (len(ordered) - 1)))))
    return ordered[k]


def summarize_tokens(metrics: List[TokenMetric]) -> Dict[str, Any]:
    n = len(metrics)
    statuses = Counter(m.context_status for m in metrics)
    total_in = sum(m.input_tokens for m in metrics)
    total_out = sum(m.output_tokens for m in metrics)
    total = sum(m.total_tokens for m in metrics)
    return {
        "count": n,
        "input_tokens": total_in,
        "output_tokens": total_out,
        "total_tokens": total,
        "avg_tokens": round(total / n, 2) if n else 0.0,
        "status_counts": dict(statuses),
        # Rows come newest first
        "latest_status": metrics[0].context_status if metrics else None,
    }


def summarize_queries(metrics: List[QueryMetric]) -> Dict[str, Dict[str, Any]]:
    by_op: Dict[str, List[QueryMetric]] = defaultdict(list)
    for m in metrics:
        by_op[m.operation].append(m)
    out: Dict[str, Dict[str, Any]] = {}
    for op, rows in sorted(by_op.items()):
        times = [r.elapsed_ms for r in rows]
        out[op] = {
            "count": len(rows),
            "avg_ms": round(sum(times) / len(times), 3),
            "p95_ms": round(_percentile(times, 95), 3),
            "max_ms": round(max(times), 3),
            "avg_results": round(sum(r.result_count for r in rows) / len(rows), 2),
        }
    return out


class MetricsService:
    """Cached telemetry summaries over a MemoryStore."""

    def __init__(
        self,
        store,
        config: Optional[MetricsConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.config = config or MetricsConfig()
        self._clock = clock
        self._cache: Dict[Optional[float], Tuple[float, Dict[str, Any]]] = {}

    def token_summary(self, days: Optional[float] = 7) -> Dict[str, Any]:
        return summarize_tokens(self.store.query_token_metrics(days))

    def query_summary(self, days: Optional[float] = 7) -> Dict[str, Dict[str, Any]]:
        return summarize_queries(self.store.query_query_metrics(days))

    def average_tokens(self, days: Optional[float] = 7) -> float:
        return self.token_summary(days)["avg_tokens"]

    def summary(self, days: Optional[float] = 7, *, refresh: bool = False) -> Dict[str, Any]:
        """Combined token, query and entry summary (cached)."""
        now = self._clock()
        cached = self._cache.get(days)
        if cached and not refresh and now - cached[0] < self.config.summary_cache_seconds:
            return cached[1]
        data = {
            "days": days,
            "tokens": self.token_summary(days),
            "queries": self.query_summary(days),
            "entries": self.store.entry_counts(),
        }
        self._cache[days] = (now, data)
        return data

    def invalidate(self) -> None:
        self._cache.clear()

    def prune(self, retention_days: Optional[int] = None) -> int:
        """Apply the retention window; clears the summary cache."""
        days = self.config.retention_days if retention_days is None else retention_days
        removed = self.store.prune_metrics(days)
        self.invalidate()
        logger.debug(f"Metrics pruned: {removed} row(s), retention {days}d")
        return removed

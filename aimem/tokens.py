"""
Token Counting and Context Budget

TokenCounter counts the input tokens of a request, precisely through the
Anthropic ``messages.count_tokens`` endpoint when a client is available,
otherwise with a local estimate:

    ceil(chars / 4) per message or system prompt, plus 4 tokens overhead each

Results are cached (bounded size, TTL, oldest-first eviction).  Counts are
buffered as TokenMetric rows and flushed to the store when one is attached.

get_context_budget() turns a used-token count into a budget report with a
healthy / warning / critical status and recommendations.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from aimem.config import BudgetConfig, TokenCacheConfig
from aimem.types import TokenMetric

logger = logging.getLogger(__name__)

MESSAGE_OVERHEAD_TOKENS = 4
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Local token estimate: ``ceil(len(text) / chars_per_token)``."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


@dataclass
class TokenCountRequest:
    """Messages API shaped request: ``[{"role", "content"}]`` plus system."""

    messages: List[Dict[str, Any]] = field(default_factory=list)
    system: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def coerce(cls, request: Union[TokenCountRequest, Dict[str, Any], str]) -> TokenCountRequest:
        if isinstance(request, cls):
            return request
        if isinstance(request, str):
            return cls(messages=[{"role": "user", "content": request}])
        return cls(
            messages=list(request.get("messages", [])),
            system=request.get("system"),
            model=request.get("model"),
        )

    def cache_key(self, default_model: str) -> str:
        payload = json.dumps(
            [self.model or default_model, self.system, self.messages],
            sort_keys=True, ensure_ascii=False, default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class TokenCountResult:
    input_tokens: int
    output_tokens: int = 0
    total_tokens: int = 0
    cached: bool = False
    estimated_only: bool = False

    def __post_init__(self):
        if not self.total_tokens:
            self.total_tokens = self.input_tokens + self.output_tokens


def _message_text(content: Any) -> str:
    """Flatten string or content-block message content to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(str(block.get("text", "")))
            else:
                parts.append(str(block))
        return "\n".join(parts)
    return "" if content is None else str(content)


def estimate_request_tokens(request: TokenCountRequest) -> int:
    total = 0
    if request.system:
        total += estimate_tokens(request.system) + MESSAGE_OVERHEAD_TOKENS
    for msg in request.messages:
        total += estimate_tokens(_message_text(msg.get("content"))) + MESSAGE_OVERHEAD_TOKENS
    return total


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class TokenCountCache:
    """Bounded TTL cache; evicts the oldest insertion when full."""

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: OrderedDict = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                self.misses += 1
                return None
            value, stored_at = item
            if self._clock() - stored_at > self.ttl_seconds:
                del self._items[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._items:
                del self._items[key]
            while len(self._items) >= self.max_size:
                self._items.popitem(last=False)
            self._items[key] = (value, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._items),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

_RECOMMENDATIONS = {
    "healthy": [
        "Context usage is healthy; no action needed.",
    ],
    "warning": [
        "Summarize or drop older low-relevance entries.",
        "Prefer high-priority entries (briefs, patterns) when adding context.",
    ],
    "critical": [
        "Start a new session to avoid truncation.",
        "Save important context to memory before continuing.",
        "Select only essential entries for the remaining turns.",
    ],
}


@dataclass
class ContextBudget:
    total: int
    used: int
    remaining: int
    percent_used: float
    status: str
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "used": self.used,
            "remaining": self.remaining,
            "percent_used": self.percent_used,
            "status": self.status,
            "recommendations": list(self.recommendations),
        }


def get_context_budget(
    used: int,
    window: Optional[int] = None,
    config: Optional[BudgetConfig] = None,
) -> ContextBudget:
    """Budget report for *used* tokens in a *window*-token context.

    ``output_reserve`` of the window is held back for the response; the
    rest is the usable total.
    """
    cfg = config or BudgetConfig()
    window = cfg.context_window if window is None else window
    used = max(0, int(used))
    total = window - int(window * cfg.output_reserve)
    remaining = max(0, total - used)
    percent = min(100.0, round(used / total * 100.0, 2)) if total > 0 else 100.0
    if remaining > cfg.healthy_remaining:
        status = "healthy"
    elif remaining > cfg.warning_remaining:
        status = "warning"
    else:
        status = "critical"
    return ContextBudget(
        total=total, used=used, remaining=remaining, percent_used=percent,
        status=status, recommendations=list(_RECOMMENDATIONS[status]),
    )


# ---------------------------------------------------------------------------
# Counter
# ---------------------------------------------------------------------------


class TokenCounter:
    """Token counter with remote-precise / local-estimate paths and a cache."""

    def __init__(
        self,
        config: Optional[TokenCacheConfig] = None,
        *,
        client: Any = None,
        store=None,
        budget: Optional[BudgetConfig] = None,
    ):
        self.config = config or TokenCacheConfig()
        self.budget_config = budget or BudgetConfig()
        self.cache = TokenCountCache(self.config.max_size, self.config.ttl_seconds)
        self.store = store
        self._client = client
        self._client_resolved = client is not None
        self._buffer: List[TokenMetric] = []
        self._buffer_lock = threading.Lock()

    def _get_client(self):
        """Anthropic client if ANTHROPIC_API_KEY is set and the SDK is installed."""
        if self._client_resolved:
            return self._client
        self._client_resolved = True
        if not os.environ.get("ANTHROPIC_API_KEY"):
            return None
        try:
            import anthropic
        except ImportError:
            logger.info("anthropic not installed; token counts are estimated")
            return None
        self._client = anthropic.Anthropic()
        return self._client

    @property
    def precise(self) -> bool:
        return self._get_client() is not None

    def count_tokens(
        self, request: Union[TokenCountRequest, Dict[str, Any], str],
    ) -> TokenCountResult:
        """Count input tokens of *request*; cache hits skip recomputation."""
        req = TokenCountRequest.coerce(request)
        key = req.cache_key(self.config.model)
        hit = self.cache.get(key)
        if hit is not None:
            count, estimated = hit
            return TokenCountResult(input_tokens=count, cached=True, estimated_only=estimated)

        estimated = False
        client = self._get_client()
        count: Optional[int] = None
        if client is not None:
            kwargs: Dict[str, Any] = {
                "model": req.model or self.config.model,
                "messages": req.messages,
            }
            if req.system:
                kwargs["system"] = req.system
            try:
                count = int(client.messages.count_tokens(**kwargs).input_tokens)
            except Exception as exc:
                logger.warning(f"Remote token count failed, estimating: {exc}")
        if count is None:
            count = estimate_request_tokens(req)
            estimated = True

        self.cache.set(key, (count, estimated))
        self.record_usage(count, 0, model=req.model)
        return TokenCountResult(input_tokens=count, estimated_only=estimated)

    async def count_tokens_async(
        self, request: Union[TokenCountRequest, Dict[str, Any], str],
    ) -> TokenCountResult:
        return await asyncio.to_thread(self.count_tokens, request)

    def get_context_budget(self, used: int, window: Optional[int] = None) -> ContextBudget:
        return get_context_budget(used, window, self.budget_config)

    # -- metrics -------------------------------------------------------------

    def record_usage(
        self, input_tokens: int, output_tokens: int = 0, model: Optional[str] = None,
    ) -> TokenMetric:
        """Buffer a TokenMetric; flushes when the buffer is full."""
        total = input_tokens + output_tokens
        metric = TokenMetric(
            model=model or self.config.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
            context_status=self.get_context_budget(total).status,
        )
        with self._buffer_lock:
            self._buffer.append(metric)
            full = len(self._buffer) >= self.config.metrics_buffer_size
        if full:
            self.flush_metrics()
        return metric

    def pending_metrics(self) -> List[TokenMetric]:
        with self._buffer_lock:
            return list(self._buffer)

    def flush_metrics(self) -> int:
        """Write buffered metrics to the store; returns rows written.

        Without a store the buffer keeps only the newest
        ``metrics_buffer_size`` rows.
        """
        with self._buffer_lock:
            if self.store is None:
                del self._buffer[:-self.config.metrics_buffer_size]
                return 0
            batch, self._buffer = self._buffer, []
        for metric in batch:
            self.store.record_token_metric(metric)
        return len(batch)

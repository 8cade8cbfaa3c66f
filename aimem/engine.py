"""
Memory Engine — Composition Root

MemoryEngine wires the store, the ordered write queue, the background
embedding queue, the vector index, the scorer, the token counter and the
context selector into the request/response operations an agent calls:

    append / edit / append_to / update   writes, in submission order
    rank / semantic_search               hybrid relevance ranking
    select_context / render_context      token-budgeted prompt context
    context_budget                       window accounting
    find_duplicates / cluster            vector-index maintenance
    synthesize_report / save_report      phase reports from stored entries

Every collaborator is passed in or built from one MemoryConfig; nothing is
process-global, so several engines can coexist (one per database).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from aimem.config import MemoryConfig
from aimem.context import ContextFormatter, ContextSelection, select_context_for_budget
from aimem.embedding_queue import EmbeddingQueue
from aimem.embeddings import EmbeddingService
from aimem.errors import EmbeddingUnavailable
from aimem.metrics import MetricsService
from aimem.reports import SynthesizedReport, synthesize_report
from aimem.scoring import RelevanceScorer, ScoredEntry
from aimem.store import MemoryStore
from aimem.tokens import ContextBudget, TokenCounter
from aimem.transactions import TransactionManager
from aimem.types import Entry, EntryMetadata, file_type_from_name
from aimem.vectors import Cluster, DuplicateGroup, VectorStore, hybrid_score

logger = logging.getLogger(__name__)

# Candidates pulled from the store per ranking call
_RANK_POOL = 200


class MemoryEngine:
    """Async facade over one memory database."""

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        *,
        store: Optional[MemoryStore] = None,
        embedder: Optional[EmbeddingService] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.config = config or MemoryConfig()
        self.store = store or MemoryStore(self.config)
        self.transactions = TransactionManager()
        self.vectors = VectorStore(self.config.embedding.dimensions)
        self.embedder = embedder
        if self.embedder is None and self.config.embedding.enabled:
            self.embedder = EmbeddingService(self.config.embedding)
        self.embeddings: Optional[EmbeddingQueue] = None
        if self.embedder is not None:
            self.embeddings = EmbeddingQueue(self.store, self.embedder, self.vectors)
        self.scorer = RelevanceScorer(self.config.scoring)
        self.formatter = ContextFormatter(self.config.selector)
        self.tokens = token_counter or TokenCounter(
            self.config.tokens, store=self.store, budget=self.config.budget,
        )
        self.metrics = MetricsService(self.store, self.config.metrics)

    # -- lifecycle -----------------------------------------------------------

    async def start(self, path: Optional[str] = None, *, resume_pending: bool = True) -> MemoryEngine:
        """Open the store, index stored vectors, requeue pending embeddings."""
        if not self.store.is_open:
            await asyncio.to_thread(self.store.open, path)
        ready = await asyncio.to_thread(
            self.store.entries_with_embeddings, self.config.store.max_limit,
        )
        for entry in ready:
            self.vectors.add_quantized(entry.id, entry.embedding, entry.content[:200])
        self.vectors.mark_clean()
        if resume_pending and self.embeddings is not None:
            pending = await asyncio.to_thread(
                self.store.entries_missing_embeddings, self.config.store.max_limit,
            )
            for entry in pending:
                self.embeddings.submit(entry.id, entry.content)
            if pending:
                logger.info(f"Requeued {len(pending)} pending embedding(s)")
        return self

    async def close(self) -> None:
        """Finish queued writes and embeddings, flush metrics, close the store."""
        await self.transactions.close()
        if self.embeddings is not None:
            await self.embeddings.close()
        if self.store.is_open:
            await asyncio.to_thread(self.tokens.flush_metrics)
        self.store.close()

    async def __aenter__(self) -> MemoryEngine:
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # -- writes --------------------------------------------------------------

    def _schedule_embedding(self, entry: Entry) -> None:
        if self.embeddings is not None:
            self.embeddings.submit(entry.id, entry.content)

    async def append(
        self,
        file_type: str,
        content: str,
        *,
        tag: Optional[str] = None,
        timestamp: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Entry:
        """Store a new entry; its embedding is computed in the background."""
        entry = Entry(
            file_type=file_type_from_name(file_type),
            content=content,
            tag=tag or "",
            metadata=EntryMetadata.from_dict(metadata),
            embedding_state="pending" if self.embeddings is not None else "skipped",
        )
        if timestamp:
            entry.timestamp = timestamp
        stored = await self.transactions.queue_operation(self._write_one, entry)
        self._schedule_embedding(stored)
        return stored

    def _write_one(self, entry: Entry) -> Entry:
        return self.store.get_entry(self.store.append_entry(entry))

    async def append_many(self, entries: Iterable[Entry]) -> List[Entry]:
        """Append several entries atomically with respect to other writes."""
        items = list(entries)
        if self.embeddings is None:
            items = [replace(e, embedding_state="skipped") for e in items]

        def write_all() -> List[Entry]:
            return [self._write_one(e) for e in items]

        stored = await self.transactions.queue_operation(write_all)
        for e in stored:
            self._schedule_embedding(e)
        return stored

    async def update(self, entry_id: int, partial: Dict[str, Any]) -> bool:
        ok = await self.transactions.queue_operation(self.store.update_entry, entry_id, partial)
        if ok and "content" in partial:
            await self._reembed(entry_id)
        return ok

    async def edit(
        self,
        entry_id: int,
        *,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        merge: bool = True,
    ) -> Optional[Entry]:
        updated = await self.transactions.queue_operation(
            self.store.edit_entry, entry_id, content=content, metadata=metadata, merge=merge,
        )
        if updated is not None and content is not None:
            await self._reembed(entry_id)
        return updated

    async def append_to(self, entry_id: int, text: str) -> Optional[Entry]:
        updated = await self.transactions.queue_operation(
            self.store.append_to_entry, entry_id, text,
        )
        if updated is not None:
            await self._reembed(entry_id)
        return updated

    async def _reembed(self, entry_id: int) -> None:
        self.vectors.remove_vector(entry_id)
        if self.embeddings is None:
            await asyncio.to_thread(self.store.set_embedding_state, entry_id, "skipped")
            return
        entry = await asyncio.to_thread(self.store.get_entry, entry_id)
        if entry is not None:
            self._schedule_embedding(entry)

    async def wait_for_embedding(self, entry_id: int, timeout: Optional[float] = None):
        """Await an entry's vector (see EmbeddingQueue.wait_for)."""
        if self.embeddings is None:
            raise EmbeddingUnavailable("embeddings are disabled")
        return await self.embeddings.wait_for(entry_id, timeout)

    async def flush(self) -> None:
        """Wait for queued writes and embeddings to finish."""
        await self.transactions.drain()
        if self.embeddings is not None:
            await self.embeddings.drain()

    # -- ranking -------------------------------------------------------------

    async def _query_vector(self, query: str):
        if self.embedder is None or not self.vectors.size or not query.strip():
            return None
        try:
            result = await asyncio.to_thread(self.embedder.embed, query)
        except EmbeddingUnavailable as exc:
            logger.warning(f"Semantic ranking disabled: {exc}")
            return None
        return result.embedding

    async def rank(
        self,
        query: Optional[str] = None,
        *,
        file_types: Optional[Iterable[str]] = None,
        pool: int = _RANK_POOL,
    ) -> List[ScoredEntry]:
        """Hybrid ranking of recent entries against *query*.

        Entries with an indexed vector blend cosine similarity with the
        keyword relevance (hybrid_score); others keep keyword relevance.
        """
        types = [file_type_from_name(t) for t in file_types] if file_types else [None]
        candidates: Dict[int, Entry] = {}
        for t in types:
            for e in await asyncio.to_thread(self.store.get_recent, t, pool):
                candidates[e.id] = e
        scored = self.scorer.score_entries(candidates.values(), query)

        qvec = await self._query_vector(query or "")
        if qvec is not None:
            sims = self.vectors.similarities(qvec)
            blended = []
            for s in scored:
                if s.entry.id in sims:
                    rel = hybrid_score(sims[s.entry.id], s.relevance_score)
                    s = replace(
                        s,
                        relevance_score=rel,
                        final_score=rel * s.recency_score * s.priority_multiplier,
                        reason=f"{s.reason}, semantic {sims[s.entry.id]:.2f}",
                    )
                blended.append(s)
            scored = blended
        return self.scorer.rank_entries(scored)

    async def semantic_search(
        self, query: str, limit: int = 10, min_similarity: float = 0.5,
    ) -> List[Tuple[Entry, float]]:
        """Entries nearest to *query* in embedding space."""
        if self.embedder is None:
            raise EmbeddingUnavailable("embeddings are disabled")
        result = await asyncio.to_thread(self.embedder.embed, query)
        hits = self.vectors.search(result.embedding, limit, min_similarity)
        out: List[Tuple[Entry, float]] = []
        for hit in hits:
            entry = await asyncio.to_thread(self.store.get_entry, hit.id)
            if entry is not None:
                out.append((entry, hit.similarity))
        return out

    # -- context -------------------------------------------------------------

    def context_budget(self, used: int, window: Optional[int] = None) -> ContextBudget:
        return self.tokens.get_context_budget(used, window)

    async def select_context(
        self,
        query: Optional[str] = None,
        budget: Optional[int] = None,
        *,
        file_types: Optional[Iterable[str]] = None,
        threshold: Optional[float] = None,
        allow_truncation: bool = True,
    ) -> ContextSelection:
        """Rank entries and fill *budget* tokens (default: the whole usable window)."""
        if budget is None:
            budget = self.context_budget(0).remaining
        ranked = await self.rank(query, file_types=file_types)
        ranked = self.scorer.filter_by_threshold(ranked, threshold)
        return select_context_for_budget(
            ranked, budget, allow_truncation=allow_truncation, config=self.config.selector,
        )

    def render_context(self, selection: ContextSelection) -> str:
        """Selected entries as prompt text, in rank order."""
        return "\n".join(f.formatted for f in self.formatter.format_entries(
            selection.entries, include_metadata=False,
        ))

    # -- reports -------------------------------------------------------------

    async def synthesize_report(
        self,
        report_type: str,
        recent: Optional[int] = None,
        *,
        file_types: Optional[Iterable[str]] = None,
        title: Optional[str] = None,
    ) -> SynthesizedReport:
        """Build a research/plan/execution (or custom) report from stored entries."""
        return await asyncio.to_thread(
            synthesize_report, self.store, report_type, recent,
            file_types=file_types, title=title,
        )

    async def save_report(self, report: SynthesizedReport) -> Entry:
        """Store *report* as its report-type entry."""
        entry = report.to_entry()
        if self.embeddings is None:
            entry.embedding_state = "skipped"
        stored = await self.transactions.queue_operation(self._write_one, entry)
        self._schedule_embedding(stored)
        return stored

    # -- maintenance ---------------------------------------------------------

    def find_duplicates(self, threshold: float = 0.95) -> List[DuplicateGroup]:
        return self.vectors.deduplicate(threshold)

    def cluster(self, k: int = 5, seed: Optional[int] = None) -> List[Cluster]:
        return self.vectors.cluster(k, seed=seed)

    def stats(self) -> Dict[str, Any]:
        data = self.store.stats()
        data["vectors"] = self.vectors.size
        data["embedding_queue"] = self.embeddings.pending_count if self.embeddings else 0
        data["write_queue"] = self.transactions.queue_length
        data["token_cache"] = self.tokens.cache.stats()
        if self.embedder is not None:
            data["embedding_model"] = self.embedder.model_info()
        return data

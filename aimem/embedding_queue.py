"""
Background Embedding Queue

Appends never wait for the embedding model.  The engine submits
``(entry id, text)`` after the row is committed; a single asyncio worker
embeds queued texts in batches (in a thread, off the event loop), stores
the quantized vector, and indexes the full-precision one.

Entry state moves pending -> ready, or pending -> failed when the model
errors on the text.  When the model cannot be loaded at all, entries stay
pending so a later run can embed them.  Failures are logged and recorded
on the entry, never raised into the append path.  wait_for() is the
await/poll primitive for callers that need the vector.  Resubmitting an
edited entry supersedes its earlier job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from aimem.embeddings import EmbeddingService, dequantize_embedding
from aimem.errors import EmbeddingUnavailable
from aimem.vectors import VectorStore

logger = logging.getLogger(__name__)

# Characters of entry text kept alongside indexed vectors
_PREVIEW_CHARS = 200


class EmbeddingQueue:
    """Single-worker batch embedder bound to a store and a vector index.

    Each submission gets a sequence number.  A result is kept only while
    its number is still the latest for the entry, so an edit made during
    encoding never ends up with the old text's vector.
    """

    def __init__(self, store, service: EmbeddingService, vectors: Optional[VectorStore] = None):
        self.store = store
        self.service = service
        self.vectors = vectors if vectors is not None else VectorStore(service.config.dimensions)
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._latest: Dict[int, int] = {}
        self._seq = 0
        self.embedded = 0
        self.failed = 0
        self.stale = 0

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # Tasks and futures of a previous loop can never complete here
            self._pending.clear()
            self._latest.clear()
            self._worker = None
            self._loop = loop
        return loop

    def _ensure_worker(self) -> asyncio.Queue:
        loop = self._bind_loop()
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = loop.create_task(self._run())
        return self._queue

    def submit(self, entry_id: int, text: str) -> None:
        """Schedule *entry_id* for embedding.  Must be called inside a loop.

        Resubmitting an entry supersedes any job still queued or running for
        it; earlier waiters are released by the newest job.
        """
        queue = self._ensure_worker()
        self._seq += 1
        self._latest[entry_id] = self._seq
        fut = self._loop.create_future()
        previous = self._pending.get(entry_id)
        if previous is not None and not previous.done():
            fut.add_done_callback(lambda f, prev=previous: _chain(f, prev))
        self._pending[entry_id] = fut
        queue.put_nowait((entry_id, text, self._seq))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _is_current(self, entry_id: int, seq: int) -> bool:
        return self._latest.get(entry_id) == seq

    def _next_batch(self, first: Tuple[int, str, int]) -> List[Tuple[int, str, int]]:
        batch = [first]
        while len(batch) < self.service.config.batch_size:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                # Put the stop marker back for the outer loop
                self._queue.task_done()
                self._queue.put_nowait(None)
                break
            batch.append(item)
        return batch

    async def _run(self) -> None:
        queue = self._queue
        while True:
            item = await queue.get()
            if item is None:
                queue.task_done()
                return
            batch = self._next_batch(item)
            try:
                await self._embed(batch)
            except Exception as exc:
                logger.error(f"Embedding worker error: {exc}")
                for entry_id, _, seq in batch:
                    self._resolve(entry_id, seq, "failed")
            finally:
                for _ in batch:
                    queue.task_done()

    async def _embed(self, batch: List[Tuple[int, str, int]]) -> None:
        batch = [job for job in batch if self._is_current(job[0], job[2])]
        if not batch:
            return
        texts = [text for _, text, _ in batch]
        try:
            results = await asyncio.to_thread(self.service.embed_batch, texts)
        except EmbeddingUnavailable as exc:
            # Model missing or misconfigured: entries stay pending for a later run
            logger.warning(f"Embedding model unavailable, {len(batch)} entries left pending: {exc}")
            for entry_id, _, seq in batch:
                self._resolve(entry_id, seq, "pending")
            return
        except Exception as exc:
            logger.warning(f"Embedding failed for {len(batch)} entries: {exc}")
            for entry_id, _, seq in batch:
                if not self._is_current(entry_id, seq):
                    continue
                await asyncio.to_thread(self.store.mark_embedding_failed, entry_id)
                self.failed += 1
                self._resolve(entry_id, seq, "failed")
            return
        for (entry_id, text, seq), result in zip(batch, results):
            if not self._is_current(entry_id, seq):
                self.stale += 1
                continue
            stored = await asyncio.to_thread(
                self.store.set_embedding, entry_id, result.quantized, content=text,
            )
            if not self._is_current(entry_id, seq):
                self.stale += 1
                continue
            if stored:
                self.vectors.add_vector(entry_id, result.embedding, text[:_PREVIEW_CHARS])
                self.embedded += 1
            else:
                logger.debug(f"Entry {entry_id} changed or vanished before its vector was stored")
            self._resolve(entry_id, seq, "ready" if stored else "missing")

    def _resolve(self, entry_id: int, seq: int, state: str) -> None:
        if not self._is_current(entry_id, seq):
            return
        del self._latest[entry_id]
        fut = self._pending.pop(entry_id, None)
        if fut is not None and not fut.done():
            fut.set_result(state)

    async def wait_for(self, entry_id: int, timeout: Optional[float] = None) -> np.ndarray:
        """Wait for an entry's vector and return it.

        An entry still pending but not queued (e.g. after a restart) is
        queued again first.

        Raises:
            asyncio.TimeoutError: not ready within *timeout* seconds.
            KeyError: unknown entry id.
            EmbeddingUnavailable: the entry failed or was skipped.
        """
        self._bind_loop()
        fut = self._pending.get(entry_id)
        if fut is None:
            entry = await asyncio.to_thread(self.store.get_entry, entry_id)
            if entry is None:
                raise KeyError(entry_id)
            if entry.embedding_state == "pending":
                self.submit(entry_id, entry.content)
                fut = self._pending[entry_id]
        if fut is not None:
            await asyncio.wait_for(asyncio.shield(fut), timeout)

        indexed = self.vectors.get_vector(entry_id)
        if indexed is not None:
            return indexed.embedding
        entry = await asyncio.to_thread(self.store.get_entry, entry_id)
        if entry is None:
            raise KeyError(entry_id)
        if entry.embedding_state != "ready" or entry.embedding is None:
            raise EmbeddingUnavailable(
                f"entry {entry_id} has no embedding (state={entry.embedding_state})"
            )
        return dequantize_embedding(entry.embedding, self.service.config.dimensions)

    async def state(self, entry_id: int) -> Optional[str]:
        """Polling primitive: current embedding state of an entry."""
        entry = await asyncio.to_thread(self.store.get_entry, entry_id)
        return entry.embedding_state if entry else None

    def _worker_alive(self) -> bool:
        """True when a worker is running on the current event loop."""
        return (
            self._worker is not None
            and self._loop is asyncio.get_running_loop()
            and not self._worker.done()
        )

    async def drain(self) -> None:
        """Wait until every submitted entry is processed."""
        if self._worker_alive():
            await self._queue.join()

    async def close(self) -> None:
        if self._worker_alive():
            self._queue.put_nowait(None)
            await self._worker
        self._worker = None
        self._queue = None


def _chain(source: asyncio.Future, target: asyncio.Future) -> None:
    if not target.done():
        target.set_result(source.result())

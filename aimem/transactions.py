"""
Transaction Manager and Ordered Write Queue

Two independent facilities used by the engine:

- transaction bookkeeping: begin/commit/rollback by caller-chosen id,
  duplicate ids rejected, unknown ids reported, undo callbacks run in
  reverse order on rollback;
- an asyncio write queue: queue_operation() accepts sync or async
  callables and runs them one at a time, strictly in submission order, on
  a single worker task.  Each caller receives its own operation's result
  or exception; a failing operation never affects the others.

Sync callables run in a worker thread (``asyncio.to_thread``) so blocking
storage calls do not stall the event loop; ordering is unaffected because
the worker awaits each operation before starting the next.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from aimem.errors import ConflictError, TransactionNotFound
from aimem.types import _now_iso

logger = logging.getLogger(__name__)


@dataclass
class Transaction:
    id: str
    started_at: str = field(default_factory=_now_iso)
    state: str = "active"
    _undo: List[Callable[[], Any]] = field(default_factory=list, repr=False)

    def on_rollback(self, fn: Callable[[], Any]) -> None:
        """Register an undo callback (run in reverse order on rollback)."""
        self._undo.append(fn)


class TransactionManager:
    """Transaction registry plus a single-worker FIFO operation queue."""

    def __init__(self):
        self._active: Dict[str, Transaction] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- transactions --------------------------------------------------------

    def begin_transaction(self, tx_id: str) -> Transaction:
        if tx_id in self._active:
            raise ConflictError(f"transaction already active: {tx_id}")
        tx = Transaction(id=tx_id)
        self._active[tx_id] = tx
        logger.debug(f"Transaction {tx_id} started")
        return tx

    def _pop(self, tx_id: str) -> Transaction:
        try:
            return self._active.pop(tx_id)
        except KeyError:
            raise TransactionNotFound(f"no active transaction: {tx_id}") from None

    def commit_transaction(self, tx_id: str) -> Transaction:
        tx = self._pop(tx_id)
        tx.state = "committed"
        tx._undo.clear()
        logger.debug(f"Transaction {tx_id} committed")
        return tx

    def rollback_transaction(self, tx_id: str) -> Transaction:
        tx = self._pop(tx_id)
        tx.state = "rolled_back"
        for fn in reversed(tx._undo):
            fn()
        tx._undo.clear()
        logger.debug(f"Transaction {tx_id} rolled back")
        return tx

    def is_active(self, tx_id: str) -> bool:
        return tx_id in self._active

    @property
    def active_transaction_count(self) -> int:
        return len(self._active)

    @asynccontextmanager
    async def transaction(self, tx_id: str) -> AsyncIterator[Transaction]:
        """Commit on normal exit, roll back and re-raise on error."""
        tx = self.begin_transaction(tx_id)
        try:
            yield tx
        except BaseException:
            self.rollback_transaction(tx_id)
            raise
        else:
            self.commit_transaction(tx_id)

    # -- ordered queue -------------------------------------------------------

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # A worker bound to an earlier loop never runs again
            self._worker = None
            self._loop = loop
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = loop.create_task(self._run())
        return self._queue

    def _worker_alive(self) -> bool:
        return (
            self._worker is not None
            and self._loop is asyncio.get_running_loop()
            and not self._worker.done()
        )

    async def _run(self) -> None:
        queue = self._queue
        while True:
            job = await queue.get()
            if job is None:
                queue.task_done()
                return
            fn, args, kwargs, fut = job
            try:
                if inspect.iscoroutinefunction(fn):
                    result = await fn(*args, **kwargs)
                else:
                    result = await asyncio.to_thread(fn, *args, **kwargs)
                    if inspect.isawaitable(result):
                        result = await result
            except Exception as exc:
                if not fut.cancelled():
                    fut.set_exception(exc)
            else:
                if not fut.cancelled():
                    fut.set_result(result)
            finally:
                queue.task_done()

    async def queue_operation(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run *fn* after every previously queued operation; return its result."""
        queue = self._ensure_worker()
        fut = asyncio.get_running_loop().create_future()
        queue.put_nowait((fn, args, kwargs, fut))
        return await fut

    @property
    def queue_length(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def drain(self) -> None:
        """Wait until every queued operation has finished."""
        if self._worker_alive():
            await self._queue.join()

    def clear(self) -> None:
        """Forget active transactions without running undo callbacks."""
        self._active.clear()

    async def close(self) -> None:
        """Finish queued work and stop the worker."""
        if self._worker_alive():
            self._queue.put_nowait(None)
            await self._worker
        self._worker = None
        self._queue = None

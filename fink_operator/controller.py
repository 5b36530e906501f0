"""
controller.py
-------------
Worker pool that drains the work queue into the reconciler.

Each worker loops ``dequeue → reconcile → done``. What happens to the key
afterwards depends on how the pass ended:

=========================  ==========================================
outcome                    follow-up
=========================  ==========================================
``Result.done``            forget backoff
``Result.after(d)``        forget backoff, requeue after *d* seconds
``Result.immediately``     forget backoff, enqueue again
``Result.backoff``         requeue with exponential backoff
``ConflictError``          enqueue again, backoff untouched
``ResourceNotFoundError``  forget
``CorruptStateError``      requeue at the backoff cap
any other error            requeue with exponential backoff
=========================  ==========================================
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from fink_operator.errors import (
    ConflictError,
    CorruptStateError,
    FinkError,
    ResourceNotFoundError,
)
from fink_operator.reconciler import Reconciler, Requeue, Result
from fink_operator.workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    def __init__(self, reconciler: Reconciler, queue: WorkQueue, *, workers: int = 4) -> None:
        if workers < 1:
            raise ValueError("at least one worker is required")
        self.reconciler = reconciler
        self.queue = queue
        self.workers = workers
        self._tasks: List[asyncio.Task] = []
        self.passes = 0
        self.failures = 0

    def enqueue(self, key: str) -> None:
        self.queue.enqueue(key)

    def resync(self, keys: Iterable[str]) -> int:
        count = 0
        for key in keys:
            self.queue.enqueue(key)
            count += 1
        logger.info(f"Enqueued {count} existing VirtualMachine(s) for re-validation")
        return count

    async def start(self) -> None:
        for worker_id in range(self.workers):
            self._tasks.append(asyncio.create_task(self.run_worker(worker_id), name=f"fink-worker-{worker_id}"))
        logger.info(f"Started {self.workers} reconciliation worker(s)")

    async def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.shutdown()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("Reconciliation workers stopped")

    async def run_worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} running")
        while True:
            try:
                await self.process_next_item()
            except QueueShutDown:
                logger.debug(f"Worker {worker_id} exiting")
                return

    async def process_next_item(self) -> str:
        key = await self.queue.dequeue()
        try:
            await self._process(key)
        finally:
            self.queue.done(key)
        return key

    async def _process(self, key: str) -> None:
        self.passes += 1
        try:
            result = await self.reconciler.reconcile(key)
        except ConflictError as exc:
            logger.info(f"{key}: write conflict, retrying at once ({exc})")
            self.queue.enqueue(key)
        except ResourceNotFoundError:
            logger.debug(f"{key} no longer exists")
            self.queue.forget(key)
        except CorruptStateError as exc:
            self.failures += 1
            delay = self.queue.requeue_at_cap(key)
            logger.error(f"{key}: {exc}; retrying in {delay:.0f}s")
        except FinkError as exc:
            self.failures += 1
            delay = self.queue.requeue_with_backoff(key)
            logger.warning(f"reconcile of {key} failed: {exc}; retrying in {delay:.1f}s")
        except Exception:
            self.failures += 1
            delay = self.queue.requeue_with_backoff(key)
            logger.exception(f"Unexpected error reconciling {key}; retrying in {delay:.1f}s")
        else:
            self._apply(key, result)

    def _apply(self, key: str, result: Result) -> None:
        if result.requeue == Requeue.BACKOFF:
            self.queue.requeue_with_backoff(key)
            return
        self.queue.forget(key)
        if result.requeue == Requeue.IMMEDIATE:
            self.queue.enqueue(key)
        elif result.requeue == Requeue.AFTER and result.delay:
            self.queue.requeue_after(key, result.delay)

    @property
    def in_flight(self) -> int:
        return self.queue.depth["processing"]

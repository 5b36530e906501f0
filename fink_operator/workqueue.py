"""
workqueue.py
------------
Deduplicating, rate-limited work queue of resource keys.

Semantics
~~~~~~~~~
* A key is either *queued*, *processing*, or neither. ``enqueue`` of a queued
  key is a no-op. ``enqueue`` of a processing key marks it dirty; ``done``
  puts it back in line, so a key is never handed to two workers at once.
* Delayed requeues sit in a heap until their deadline, measured with the
  injected ``clock``. For one key only the earliest pending deadline counts.
* All methods except ``dequeue`` are synchronous and must be called from the
  event loop that owns the queue.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from fink_operator.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by ``dequeue`` once the queue has been shut down."""


class WorkQueue:
    def __init__(
        self,
        backoff: Optional[ExponentialBackoff] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 1.0,
    ) -> None:
        self.backoff = backoff or ExponentialBackoff()
        self._clock = clock
        self._poll_interval = poll_interval
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._deadlines: Dict[str, float] = {}
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    # -- producer side ---------------------------------------------------------
    def enqueue(self, key: str) -> None:
        if self._shutting_down:
            return
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            logger.debug(f"{key} is being processed; deferring")
            return
        self._queue.append(key)
        self._wakeup.set()

    def requeue_after(self, key: str, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.enqueue(key)
            return
        deadline = self._clock() + delay
        current = self._deadlines.get(key)
        if current is not None and current <= deadline:
            return
        self._deadlines[key] = deadline
        heapq.heappush(self._waiting, (deadline, next(self._sequence), key))
        self._wakeup.set()

    def requeue_with_backoff(self, key: str) -> float:
        delay = self.backoff.when(key)
        logger.debug(f"Requeueing {key} in {delay:.1f}s (failure #{self.backoff.failures(key)})")
        self.requeue_after(key, delay)
        return delay

    def requeue_at_cap(self, key: str) -> float:
        delay = self.backoff.cap
        self.requeue_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        self.backoff.forget(key)

    # -- consumer side ---------------------------------------------------------
    async def dequeue(self) -> str:
        """Wait for a key, mark it processing, and return it."""
        while True:
            if self._shutting_down:
                raise QueueShutDown()
            self._promote_due()
            if self._queue:
                key = self._queue.popleft()
                self._processing.add(key)
                self._dirty.discard(key)
                return key
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._next_wait())
            except asyncio.TimeoutError:
                pass

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        self._shutting_down = True
        self._wakeup.set()

    # -- introspection ---------------------------------------------------------
    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def depth(self) -> Dict[str, int]:
        return {
            "queued": len(self._queue),
            "processing": len(self._processing),
            "waiting": len(self._deadlines),
        }

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def pending_delay(self, key: str) -> Optional[float]:
        """Seconds until a delayed requeue of *key* fires, ``None`` if none is pending."""
        deadline = self._deadlines.get(key)
        if deadline is None:
            return None
        return max(0.0, deadline - self._clock())

    # -- internals -------------------------------------------------------------
    def _promote_due(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            deadline, _, key = heapq.heappop(self._waiting)
            if self._deadlines.get(key) != deadline:
                continue  # superseded by an earlier deadline
            del self._deadlines[key]
            self.enqueue(key)

    def _next_wait(self) -> float:
        if not self._waiting:
            return self._poll_interval
        remaining = self._waiting[0][0] - self._clock()
        return max(0.0, min(remaining, self._poll_interval))

"""Per-key exponential backoff used by the work queue."""
from __future__ import annotations

import threading
from typing import Dict

from tenacity import RetryCallState, wait_exponential


class ExponentialBackoff:
    """``min(base * factor ** failures, cap)`` seconds, tracked per key.

    ``when`` counts a failure and returns the delay to wait before the next
    attempt; ``forget`` resets the key after a successful pass. The delays come
    from tenacity's ``wait_exponential``; the queue keeps one attempt counter
    per key instead of one retry loop per call.
    """

    def __init__(self, base: float = 1.0, factor: float = 2.0, cap: float = 300.0) -> None:
        if base <= 0 or factor < 1 or cap < base:
            raise ValueError(f"invalid backoff policy base={base} factor={factor} cap={cap}")
        self.base = base
        self.factor = factor
        self.cap = cap
        self._wait = wait_exponential(multiplier=base, exp_base=factor, max=cap)
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        retry_state.attempt_number = failures + 1
        return self._wait(retry_state)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

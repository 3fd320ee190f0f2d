from __future__ import annotations

import asyncio
import time
from typing import Callable


class TokenBucket:
    """Async token bucket. ``0 <= tokens <= capacity`` at all times.

    Waiters are served one at a time under a lock, so concurrent ``acquire``
    calls never debit below zero. Waiting is done with ``asyncio.sleep`` and is
    cancellable.
    """

    def __init__(self, capacity: float, refill_rate: float, clock: Callable[[], float] = time.monotonic):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.tokens = float(capacity)
        self._clock = clock
        self._last = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def per_interval(cls, tokens: float, interval_sec: float = 1.0) -> "TokenBucket":
        return cls(capacity=tokens, refill_rate=tokens / interval_sec)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._last, 0.0)
        self._last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)

    def try_acquire(self, tokens: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: float = 1.0) -> None:
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        async with self._lock:
            while not self.try_acquire(tokens):
                sleep_for = (tokens - self.tokens) / self.refill_rate
                await asyncio.sleep(min(max(sleep_for, 0.01), 2.0))

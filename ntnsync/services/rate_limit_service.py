"""In-process token-bucket rate limiter for outgoing Notion API calls."""

from __future__ import annotations

import asyncio
import time


class TokenBucketRateLimiter:
    """Allow at most one request per *interval* seconds, with a burst of *burst*.

    Thread-safety: intended for a single event loop. The asyncio lock
    serializes waiters so tokens are handed out in arrival order.
    """

    def __init__(self, interval: float, burst: int = 1) -> None:
        self.interval = interval
        self.burst = burst
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        if self.interval <= 0:
            self._tokens = float(self.burst)
        else:
            elapsed = now - self._updated
            self._tokens = min(float(self.burst), self._tokens + elapsed / self.interval)
        self._updated = now

    def try_acquire(self) -> bool:
        """Take a token without waiting. Returns False when none is available."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a token is available and take it. Cancellation aborts the wait."""
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep((1 - self._tokens) * self.interval)

"""Token-bucket rate limiting for the Blockfrost adapter.

Requests hold a concurrency slot for their whole lifetime and spend one
token from a bucket refilled at a steady rate. A 429 response can push
the bucket into a penalty window that every waiter respects.
"""

from __future__ import annotations

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class RateLimiter:
    """Async token bucket plus in-flight request cap.

    Args:
        rate: Tokens added per second.
        burst: Bucket capacity.
        max_in_flight: Concurrent requests allowed.
    """

    def __init__(self, rate: float = 10.0, burst: int = 50, max_in_flight: int = 5):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = float(burst)
        self._available = float(burst)
        self._stamp = time.monotonic()
        self._paused_until = 0.0
        self._slots = asyncio.Semaphore(max_in_flight)
        self._bucket_lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        self._available = min(self.capacity, self._available + (now - self._stamp) * self.rate)
        self._stamp = now

    async def _take_token(self) -> None:
        async with self._bucket_lock:
            now = time.monotonic()
            if now < self._paused_until:
                await asyncio.sleep(self._paused_until - now)
                now = time.monotonic()
            self._refill(now)
            if self._available >= 1.0:
                self._available -= 1.0
                return
            deficit = (1.0 - self._available) / self.rate
            await asyncio.sleep(deficit)
            self._refill(time.monotonic())
            self._available = max(0.0, self._available - 1.0)

    def penalize(self, seconds: float) -> None:
        """Hold back every request for ``seconds`` (after a 429)."""
        until = time.monotonic() + seconds
        if until > self._paused_until:
            logger.debug("Rate limited, pausing requests for %.1fs", seconds)
            self._paused_until = until
            self._available = 0.0

    async def __aenter__(self) -> RateLimiter:
        await self._slots.acquire()
        try:
            await self._take_token()
        except BaseException:
            self._slots.release()
            raise
        return self

    async def __aexit__(self, *exc) -> None:
        self._slots.release()


# Blockfrost free tier: 10 req/s sustained, bursts of 500
def blockfrost_limiter() -> RateLimiter:
    return RateLimiter(rate=10.0, burst=50, max_in_flight=5)

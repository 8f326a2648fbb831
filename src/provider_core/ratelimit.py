"""Client-side token-bucket rate limiter.

One limiter is shared by every request issued through a Transport, so many
reconciliations converging in parallel are smoothed into the steady rate the
server accepts.

ALGORITHM:
Tokens refill continuously at ``rate`` per second up to ``burst``. Acquiring
reserves one token immediately (the balance may go negative) and then sleeps
until the reservation matures. Reservations are handed out under an
asyncio.Lock, so concurrent callers are served in arrival order. A caller
cancelled while waiting gives its token back.
"""

from __future__ import annotations

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class TokenBucket:
    """Async token bucket.

    Args:
        rate: Steady refill rate in tokens per second (must be > 0).
        burst: Bucket capacity; the bucket starts full.
    """

    def __init__(self, rate: float, burst: int) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive: {rate}")
        if burst < 1:
            raise ValueError(f"burst must be at least 1: {burst}")
        self._rate = rate
        self._burst = burst
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)
            self._updated = now

    async def _reserve(self) -> float:
        """Take one token and return how long the caller must wait for it."""
        async with self._lock:
            self._refill(time.monotonic())
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._rate

    async def _refund(self) -> None:
        async with self._lock:
            self._refill(time.monotonic())
            self._tokens = min(float(self._burst), self._tokens + 1)

    async def acquire(self) -> float:
        """Wait for one token.

        Returns:
            Seconds spent waiting (0.0 when a token was available).

        Raises:
            asyncio.CancelledError: If the caller is cancelled while waiting.
        """
        wait = await self._reserve()
        if wait <= 0:
            return 0.0

        logger.debug(
            "Rate limiter throttling request",
            extra={"wait_seconds": round(wait, 3), "rate": self._rate, "burst": self._burst},
        )
        try:
            await asyncio.sleep(wait)
        except asyncio.CancelledError:
            await asyncio.shield(self._refund())
            raise
        return wait

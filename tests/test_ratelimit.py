"""Tests for the token-bucket rate limiter."""

import asyncio

import pytest

from provider_core.ratelimit import TokenBucket


class TestTokenBucket:
    """Tests for TokenBucket."""

    @pytest.mark.parametrize(("rate", "burst"), [(0, 1), (-1.0, 1), (1.0, 0)])
    def test_invalid_arguments(self, rate: float, burst: int) -> None:
        with pytest.raises(ValueError):
            TokenBucket(rate, burst)

    @pytest.mark.asyncio
    async def test_burst_is_served_immediately(self) -> None:
        bucket = TokenBucket(rate=1.0, burst=3)

        waits = [await bucket.acquire() for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]

    @pytest.mark.asyncio
    async def test_waits_once_burst_is_spent(self) -> None:
        bucket = TokenBucket(rate=50.0, burst=1)
        loop = asyncio.get_running_loop()

        await bucket.acquire()
        start = loop.time()
        waited = await bucket.acquire()

        assert waited > 0
        assert loop.time() - start >= 0.015

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_spaced(self) -> None:
        bucket = TokenBucket(rate=50.0, burst=1)

        waits = sorted(await asyncio.gather(*(bucket.acquire() for _ in range(3))))

        assert waits[0] == 0.0
        assert 0 < waits[1] < waits[2]
        assert waits[2] == pytest.approx(0.04, abs=0.015)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_returns_its_token(self) -> None:
        bucket = TokenBucket(rate=1.0, burst=1)
        await bucket.acquire()

        waiter = asyncio.create_task(bucket.acquire())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        # Without the refund the next reservation would be ~2s out
        assert await bucket._reserve() < 1.5

import asyncio
import time

import pytest

from core.rate_limiter import RateLimiter


class TestRateLimiter:

    async def test_returns_result(self):
        limiter = RateLimiter(max_concurrent=2, min_interval_ms=0)

        async def call():
            return 42

        assert await limiter.execute(call) == 42
        assert limiter.stats['total_executed'] == 1

    async def test_propagates_errors(self):
        limiter = RateLimiter(max_concurrent=2, min_interval_ms=0)

        async def call():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await limiter.execute(call)
        assert limiter.stats['total_failed'] == 1
        assert limiter.get_status()['running'] == 0

    async def test_concurrency_limit(self):
        limiter = RateLimiter(max_concurrent=2, min_interval_ms=0)
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return True

        results = await asyncio.gather(*(limiter.execute(call) for _ in range(6)))

        assert all(results)
        assert peak == 2
        assert limiter.get_status() == {'queueLength': 0, 'running': 0, 'maxConcurrent': 2}

    async def test_min_interval_between_starts(self):
        limiter = RateLimiter(max_concurrent=5, min_interval_ms=30)
        starts = []

        async def call():
            starts.append(time.monotonic())

        await asyncio.gather(*(limiter.execute(call) for _ in range(3)))

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.025 for gap in gaps)
        assert limiter.stats['total_delayed'] == 2

    async def test_execute_many_keeps_order(self):
        limiter = RateLimiter(max_concurrent=3, min_interval_ms=0)

        def make(value):
            async def call():
                await asyncio.sleep(0.01 * (3 - value))
                return value
            return call

        assert await limiter.execute_many([make(i) for i in range(3)]) == [0, 1, 2]

    async def test_cancelled_waiter_frees_queue(self):
        limiter = RateLimiter(max_concurrent=1, min_interval_ms=0)
        gate = asyncio.Event()

        async def blocking():
            await gate.wait()
            return 'first'

        async def quick():
            return 'next'

        first = asyncio.create_task(limiter.execute(blocking))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(limiter.execute(quick))
        await asyncio.sleep(0)
        assert limiter.get_status()['queueLength'] == 1

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        gate.set()

        assert await first == 'first'
        assert await asyncio.wait_for(limiter.execute(quick), timeout=1) == 'next'
        assert limiter.get_status() == {'queueLength': 0, 'running': 0, 'maxConcurrent': 1}

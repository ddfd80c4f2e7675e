"""Tests for the bounded-concurrency limiter."""

import asyncio
import time

from src.training.limiter import AsyncLimiter


def test_peak_never_exceeds_limit():
    limiter = AsyncLimiter(2, name="test")

    async def work():
        await asyncio.sleep(0.01)

    async def main():
        await asyncio.gather(*(limiter.run(work) for _ in range(8)))

    asyncio.run(main())
    assert limiter.peak == 2
    assert limiter.in_flight == 0


def test_ceiling_clamps_limit():
    assert AsyncLimiter(8, ceiling=3).limit == 3
    assert AsyncLimiter(0).limit == 1


def test_waiters_start_in_fifo_order():
    limiter = AsyncLimiter(1)
    started = []

    async def work(i):
        started.append(i)
        await asyncio.sleep(0)

    async def main():
        await asyncio.gather(*(limiter.run(work, i) for i in range(6)))

    asyncio.run(main())
    assert started == list(range(6))


def test_run_blocking_uses_executor():
    limiter = AsyncLimiter(2)

    def blocking(value):
        time.sleep(0.01)
        return value * 2

    async def main():
        return await asyncio.gather(*(limiter.run_blocking(blocking, i) for i in range(4)))

    assert asyncio.run(main()) == [0, 2, 4, 6]
    assert limiter.peak <= 2

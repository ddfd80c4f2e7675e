"""Bounded-concurrency limiter for asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class AsyncLimiter:
    """
    Caps the number of coroutines in flight.

    Built on :class:`asyncio.Semaphore`, whose waiters are released in FIFO
    order. ``peak`` records the highest observed concurrency.
    """

    def __init__(self, max_concurrent: int, ceiling: Optional[int] = None, name: str = "limiter"):
        limit = max(1, int(max_concurrent))
        if ceiling is not None:
            limit = min(limit, max(1, int(ceiling)))
        self.limit = limit
        self.name = name
        self.in_flight = 0
        self.peak = 0
        self._semaphore: Optional[asyncio.Semaphore] = None

    @property
    def semaphore(self) -> asyncio.Semaphore:
        # Created lazily so the semaphore binds to the running loop.
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.limit)
        return self._semaphore

    async def __aenter__(self) -> "AsyncLimiter":
        await self.semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.in_flight -= 1
        self.semaphore.release()

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async with self:
            return await func(*args, **kwargs)

    async def run_blocking(self, func: Callable[..., Any], *args) -> Any:
        """Run a blocking callable in the default executor under the limit."""
        async with self:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, func, *args)

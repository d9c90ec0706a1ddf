"""Concurrency limiter for asynchronous work.

A counting semaphore with FIFO hand-off: when a slot frees up it is passed
directly to the oldest waiter, so the running count never exceeds
``max_concurrency`` and waiters are served in arrival order.

USAGE:
    limiter = ConcurrencyLimiter(max_concurrency=3)
    result = await limiter.run(lambda: fetch(url))
    outcomes = await limiter.run_all([lambda: fetch(u) for u in urls])
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class LimiterResetError(Exception):
    """Raised in waiters that were still queued when ``reset()`` was called."""

    pass


@dataclass
class LimiterStatus:
    """Point-in-time snapshot of limiter bookkeeping."""

    running: int
    queued: int
    max_concurrency: int


@dataclass
class SettledOutcome:
    """Outcome of one function in ``run_all``: either a value or an error."""

    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConcurrencyLimiter:
    """Bounded-parallelism gate for coroutine functions."""

    def __init__(self, max_concurrency: int = 5):
        self.max_concurrency = max(1, int(max_concurrency))
        self._running = 0
        self._waiters: deque[asyncio.Future] = deque()
        # Bumped by reset(); slots acquired before a reset are not released twice
        self._generation = 0

    async def _acquire(self) -> int:
        if self._running < self.max_concurrency and not self._waiters:
            self._running += 1
            return self._generation

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # The slot was handed over just before cancellation; pass it on
                self._release(self._generation)
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise
        return self._generation

    def _release(self, generation: int) -> None:
        if generation != self._generation:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot to the next waiter; running count is unchanged
                waiter.set_result(None)
                return
        self._running = max(0, self._running - 1)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn()`` once a slot is free.

        The slot is released whether ``fn`` returns or raises; exceptions
        propagate to the caller unchanged.
        """
        generation = await self._acquire()
        try:
            return await fn()
        finally:
            self._release(generation)

    async def run_all(self, fns: Iterable[Callable[[], Awaitable[T]]]) -> list[SettledOutcome]:
        """Run every function with limiting; one outcome per input, in input order."""
        results = await asyncio.gather(*(self.run(fn) for fn in fns), return_exceptions=True)
        outcomes = []
        for result in results:
            if isinstance(result, BaseException):
                outcomes.append(SettledOutcome(error=result))
            else:
                outcomes.append(SettledOutcome(value=result))
        return outcomes

    async def run_all_or_throw(self, fns: Iterable[Callable[[], Awaitable[T]]]) -> list[T]:
        """
        Run every function with limiting and return their results in input order.

        The first failure propagates. Known limitation: operations that already
        started are not cancelled and keep running in the background.
        """
        return await asyncio.gather(*(self.run(fn) for fn in fns))

    def status(self) -> LimiterStatus:
        return LimiterStatus(
            running=self._running,
            queued=sum(1 for w in self._waiters if not w.done()),
            max_concurrency=self.max_concurrency,
        )

    def reset(self) -> None:
        """
        Zero all bookkeeping without waiting for in-flight work.

        Queued waiters fail with ``LimiterResetError``. Intended for tests and
        abnormal recovery only; not safe while the limiter is in active use.
        """
        self._generation += 1
        waiters, self._waiters = self._waiters, deque()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(LimiterResetError("Concurrency limiter was reset"))
        if self._running or waiters:
            logger.warning(
                f"Concurrency limiter reset with {self._running} running and "
                f"{len(waiters)} queued operation(s)"
            )
        self._running = 0


def create_limiter(max_concurrency: int = 5) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(max_concurrency)


async def map_with_concurrency(
    items: Iterable[T], fn: Callable[[T], Awaitable[R]], max_concurrency: int = 5
) -> list[R]:
    """Like ``asyncio.gather`` over ``fn(item)`` but at most ``max_concurrency`` at once."""
    limiter = ConcurrencyLimiter(max_concurrency)
    return await limiter.run_all_or_throw([lambda item=item: fn(item) for item in items])


async def map_with_concurrency_settled(
    items: Iterable[T], fn: Callable[[T], Awaitable[R]], max_concurrency: int = 5
) -> list[SettledOutcome]:
    """Settled variant of ``map_with_concurrency``."""
    limiter = ConcurrencyLimiter(max_concurrency)
    return await limiter.run_all([lambda item=item: fn(item) for item in items])

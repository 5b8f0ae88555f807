"""
Concurrency admission for model requests.

``RateLimiter`` bounds the number of operations in flight at once.  It never
rejects work; callers beyond capacity wait until a permit frees up.

Two entry points exist:

``run``
    Holds a permit while a single awaitable operation executes.
``stream``
    Holds a permit for the whole lifetime of the stream the operation
    returns.  The permit is released once the stream is exhausted, raises,
    is closed with ``aclose``, or is garbage collected unconsumed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Permit:
    """One admission slot.  Releasing it more than once is a no-op."""

    __slots__ = ("_limiter",)

    def __init__(self, limiter: RateLimiter) -> None:
        self._limiter: RateLimiter | None = limiter

    @property
    def held(self) -> bool:
        return self._limiter is not None

    def release(self) -> None:
        limiter, self._limiter = self._limiter, None
        if limiter is not None:
            limiter._release()


class RateLimiter:
    """
    Counting admission gate.

    Parameters
    ----------
    limit:
        Maximum number of concurrent operations.  Fixed for the lifetime
        of the limiter.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"RateLimiter limit must be positive, got {limit}")
        self._capacity = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        """Number of permits currently held."""
        return self._in_flight

    async def acquire(self) -> _Permit:
        await self._semaphore.acquire()
        self._in_flight += 1
        return _Permit(self)

    def _release(self) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` while holding a permit."""
        permit = await self.acquire()
        try:
            return await operation()
        finally:
            permit.release()

    async def stream(
        self,
        operation: Callable[[], Awaitable[AsyncIterator[T]]],
    ) -> LimitedStream[T]:
        """
        Acquire a permit, then await ``operation()`` for a stream.

        The permit travels with the returned ``LimitedStream``.  If the
        operation itself fails the permit is released before the error
        propagates.
        """
        permit = await self.acquire()
        try:
            inner = await operation()
        except BaseException:
            permit.release()
            raise
        return LimitedStream(inner, permit)


class LimitedStream(Generic[T]):
    """
    An async iterator that owns a rate-limiter permit.

    Items are forwarded from the wrapped iterator in order.  When the wrapped
    iterator finishes or raises, the error (if any) is propagated once and
    every later ``__anext__`` raises ``StopAsyncIteration``.
    """

    def __init__(self, inner: AsyncIterator[T], permit: _Permit) -> None:
        self._inner = inner
        self._permit = permit
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> LimitedStream[T]:
        return self

    async def __anext__(self) -> T:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await self._inner.__anext__()
        except BaseException:
            # Exhaustion, a backend error, or cancellation of the consumer
            # all terminate the stream.
            self._finish()
            raise

    async def aclose(self) -> None:
        """Stop consuming early, closing the wrapped iterator."""
        if self._finished:
            return
        self._finished = True
        try:
            close = getattr(self._inner, "aclose", None)
            if close is not None:
                await close()
        finally:
            self._permit.release()

    async def __aenter__(self) -> LimitedStream[T]:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _finish(self) -> None:
        self._finished = True
        self._permit.release()

    def __del__(self) -> None:
        if self._permit.held:
            logger.debug("Stream dropped before completion; releasing permit")
            self._permit.release()

"""Counting semaphore with a FIFO queue of pending actions.

Actions run synchronously: immediately inside ``acquire`` when a permit is
free, otherwise inside the ``release`` call that frees one. There is no
background thread; the queue only drains on release.
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    use: Callable[[], None]
    deadline: Optional[float] = None
    on_timeout: Optional[Callable[[], None]] = None

    def expired(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


class Semaphore:
    """Bounded-concurrency gate.

    ``permits`` goes negative while actions are queued; its magnitude is the
    number of outstanding waiters.

    Example usage:
        sem = Semaphore(1)
        sem.acquire(lambda: start_work())   # runs now
        sem.acquire(lambda: more_work())    # queued
        sem.release()                       # runs more_work()
    """

    def __init__(self, permits: int = 1, clock: Callable[[], float] = time.monotonic):
        if not isinstance(permits, int):
            raise TypeError(f"permits must be an int, got {type(permits).__name__}")
        if permits < 0:
            raise ValueError(f"permits cannot be negative, got {permits}")
        self._permits = permits
        self._initial_permits = permits
        self._pending: deque[_Pending] = deque()
        self._clock = clock

    def acquire(
        self,
        use: Callable[[], None],
        timeout: Optional[float] = None,
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> None:
        """Run ``use`` now if a permit is free, otherwise queue it.

        Args:
            use: Action to run once a permit is granted
            timeout: Seconds the queued action stays eligible to run
            on_timeout: Called instead of ``use`` when the deadline has passed
        """
        if not callable(use):
            raise TypeError(f"use must be callable, got {type(use).__name__}")
        self._permits -= 1
        if self._permits >= 0:
            use()
            return

        deadline = self._clock() + timeout if timeout is not None else None
        self._pending.append(_Pending(use, deadline, on_timeout))
        logger.debug(f"Semaphore acquire queued, pending: {len(self._pending)}")

    def release(self) -> None:
        """Return a permit and hand it to the oldest eligible pending action.

        Expired entries get their ``on_timeout`` callback and the freed
        permit moves on to the next entry.
        """
        if self._permits >= self._initial_permits:
            logger.warning("Semaphore released more permits than initially set")
        self._permits += 1

        while self._pending:
            pending = self._pending.popleft()
            if not pending.expired(self._clock()):
                pending.use()
                logger.debug(f"Semaphore ran pending action, remaining: {len(self._pending)}")
                return

            # The expired waiter no longer counts against the permits
            self._permits += 1
            logger.debug("Semaphore pending action expired")
            if pending.on_timeout:
                pending.on_timeout()

    def try_acquire(self, use: Callable[[], None]) -> bool:
        """Run ``use`` only if a permit is free right now."""
        if not callable(use):
            raise TypeError(f"use must be callable, got {type(use).__name__}")
        if self._permits > 0:
            self._permits -= 1
            use()
            return True
        return False

    def available(self) -> int:
        """Free permits, never below zero."""
        return max(0, self._permits)

    def pending_count(self) -> int:
        return len(self._pending)

    @asynccontextmanager
    async def hold(self, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold a permit for the duration of an ``async with`` block.

        Raises:
            asyncio.TimeoutError: If no permit was granted within ``timeout``
        """
        loop = asyncio.get_running_loop()
        granted: asyncio.Future = loop.create_future()

        def use() -> None:
            if granted.done():
                # Waiter was cancelled or timed out; pass the permit on
                self.release()
            else:
                granted.set_result(None)

        def expired() -> None:
            if not granted.done():
                granted.set_exception(asyncio.TimeoutError())

        self.acquire(use, timeout, expired)
        try:
            await asyncio.wait_for(granted, timeout)
        except asyncio.CancelledError:
            # Granted just before the cancellation landed; give it back
            if granted.done() and not granted.cancelled() and granted.exception() is None:
                self.release()
            raise
        try:
            yield
        finally:
            self.release()

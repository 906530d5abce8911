"""
Signal Relay - Permit pool
Layer 1: Signal Network

Counting semaphore with a resizable capacity and FIFO hand-off. Unlike
asyncio.Semaphore it can be reset, which wakes every waiter with a refusal
instead of a permit.
"""
import asyncio
from collections import deque
from typing import Deque

import structlog

logger = structlog.get_logger(__name__)


class PermitPool:
    """FIFO permit pool bounding concurrent task execution."""

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("Concurrency must be at least 1")
        self.max_concurrent = max_concurrent
        self._current = 0
        self._waiters: Deque[asyncio.Future] = deque()

    async def acquire(self) -> bool:
        """
        Wait for a permit.

        Returns:
            True when a permit was granted, False if the pool was reset while waiting
        """
        if self._current < self.max_concurrent:
            self._current += 1
            return True

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.result():
                # Permit was handed over just before cancellation
                self.release()
            raise

    def release(self) -> None:
        """Return a permit and hand it to the oldest waiter that still wants one."""
        if self._current > 0:
            self._current -= 1
        self._wake_waiters()

    def set_concurrency(self, max_concurrent: int) -> None:
        """Change capacity for future acquisitions; held permits are never revoked."""
        if max_concurrent < 1:
            raise ValueError("Concurrency must be at least 1")
        previous = self.max_concurrent
        self.max_concurrent = max_concurrent
        self._wake_waiters()
        logger.info("Permit pool resized", previous=previous, max_concurrent=max_concurrent)

    def reset(self) -> None:
        """Restore full capacity and refuse every waiting acquisition."""
        self._current = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(False)

    @property
    def current(self) -> int:
        return self._current

    @property
    def waiting_count(self) -> int:
        return len(self._waiters)

    def _wake_waiters(self) -> None:
        while self._waiters and self._current < self.max_concurrent:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._current += 1
            waiter.set_result(True)

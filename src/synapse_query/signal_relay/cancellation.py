"""
Signal Relay - Cooperative cancellation
Layer 1: Signal Network

A cancellation token only signals intent. Transports decide whether and how
to abort their underlying call; controllers treat a failure as aborted only
if the token had actually fired.
"""
import asyncio
from typing import Callable, List, Optional

import structlog

from ..shared.errors import CancellationError

logger = structlog.get_logger(__name__)


class CancellationToken:
    """Per-operation cancellation flag with callbacks and an awaitable event."""

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Aborted") -> None:
        """Fire the token. Firing twice is a no-op."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception as e:
                logger.error("Error in cancellation callback", error=str(e))
        self._callbacks.clear()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` when the token fires (immediately if it already has)."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        """Suspend until the token fires."""
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason or "Aborted")

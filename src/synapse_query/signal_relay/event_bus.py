"""
Signal Relay - Event Bus
Layer 1: Signal Network

Minimal publish/subscribe channel for cross-component signals such as
invalidate, refetch, refetch-all and the queue bulk-discard event.
"""
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[Any], None]


class EventBus:
    """Synchronous event emitter owned by one client instance."""

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.off(event, callback)

    def once(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register a listener that is removed after its first call."""
        def wrapper(payload: Any) -> None:
            self.off(event, wrapper)
            callback(payload)

        return self.on(event, wrapper)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)
            if not listeners:
                del self._listeners[event]

    def emit(self, event: str, payload: Any = None) -> None:
        """Call every listener of ``event``; a failing listener is logged and skipped."""
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(payload)
            except Exception as e:
                logger.error("Error in event listener", event_name=event, error=str(e))

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        """Remove every listener of every event."""
        self._listeners.clear()

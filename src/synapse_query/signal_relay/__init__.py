"""
Signal Relay - Event bus, cancellation and permit pool
Layer 1: Signal Network

The queue controller lives in ``signal_relay.task_queue``.
"""

from .cancellation import CancellationToken
from .event_bus import EventBus
from .semaphore import PermitPool

__all__ = [
    'CancellationToken',
    'EventBus',
    'PermitPool',
]

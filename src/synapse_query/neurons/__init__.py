"""
Neurons - Built-in plugins

The Neurons layer provides:
- Cache serving with a freshness window
- In-flight request deduplication
- Tag invalidation after mutations
- Optimistic cache rewrites around mutations
- Purging of discarded queue entries
- Request and lifecycle logging
"""

from .cache import cache_plugin
from .deduplication import deduplication_plugin
from .invalidation import invalidation_plugin
from .optimistic import optimistic_plugin
from .queue_purge import queue_purge_plugin
from .request_logging import request_logging_plugin

__all__ = [
    'cache_plugin',
    'deduplication_plugin',
    'invalidation_plugin',
    'optimistic_plugin',
    'queue_purge_plugin',
    'request_logging_plugin',
]

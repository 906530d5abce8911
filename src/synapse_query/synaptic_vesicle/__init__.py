"""
Synaptic Vesicle - Cache Store
Layer 0: Storage

Keyed result storage with tags, staleness, subscriptions and pending
operation slots.
"""

from .query_key import create_page_key, create_query_key, create_tracker_key, sort_object_keys
from .state_store import CacheEntry, CacheStore, track_pending

__all__ = [
    'CacheEntry',
    'CacheStore',
    'track_pending',
    'create_query_key',
    'create_page_key',
    'create_tracker_key',
    'sort_object_keys',
]

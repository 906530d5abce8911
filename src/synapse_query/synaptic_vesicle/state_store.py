"""
Synaptic Vesicle - Cache Store
Layer 0: Storage

This module implements the keyed result store shared by every controller of
one client instance. It provides:
- Shallow-merge writes with tag tracking
- Tag-based staleness marking
- Per-key synchronous subscriptions
- A pending-operation slot per key for request de-duplication
- Optimistic update bookkeeping (apply, confirm, roll back)

The store never enforces de-duplication itself; controllers check
``pending_operation`` before starting a fetch and await it when present.
"""
import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from ..shared.config import get_settings
from ..shared.metrics_collector import get_metrics_collector
from .query_key import create_query_key, is_tracker_key, self_tag_from_key

logger = structlog.get_logger(__name__)

Subscriber = Callable[[], None]
DataChangeListener = Callable[[str, Any, Any], None]

# Fields a caller may write through set_cache
ENTRY_FIELDS = frozenset({
    "data", "error", "timestamp", "tags", "is_stale", "is_optimistic",
    "meta", "pending_operation", "previous_data",
})


@dataclass
class CacheEntry:
    """Stored state for one query key."""
    key: str
    data: Any = None
    error: Any = None
    timestamp: float = 0.0
    tags: Set[str] = field(default_factory=set)
    is_stale: bool = False
    is_optimistic: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)
    pending_operation: Optional[Awaitable] = None
    previous_data: Any = None
    self_tag: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.data is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary for snapshots and logging."""
        return {
            "key": self.key,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp,
            "tags": sorted(self.tags),
            "is_stale": self.is_stale,
            "is_optimistic": self.is_optimistic,
            "meta": dict(self.meta),
            "pending": self.pending_operation is not None,
        }


class CacheStore:
    """
    In-memory keyed cache with tags, staleness and subscriptions.

    One store belongs to one client instance; it is never shared through
    module globals.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._data_listeners: List[DataChangeListener] = []
        self.metrics = get_metrics_collector()

    # Keys

    @staticmethod
    def create_query_key(path: str, method: str = "GET", options: Optional[Dict[str, Any]] = None) -> str:
        return create_query_key(path, method, options)

    # Reads

    def get_cache(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def get_all_entries(self) -> Dict[str, CacheEntry]:
        return dict(self._entries)

    def get_entries_by_tags(self, tags: Iterable[str]) -> List[CacheEntry]:
        """Entries whose tag set intersects ``tags``."""
        wanted = set(tags)
        return [entry for entry in list(self._entries.values()) if entry.tags & wanted]

    def get_cache_by_tags(self, tags: Iterable[str]) -> Optional[CacheEntry]:
        """First entry with data whose tags intersect ``tags``."""
        for entry in self.get_entries_by_tags(tags):
            if entry.has_data:
                return entry
        return None

    def get_entries_by_self_tag(self, path: str) -> List[CacheEntry]:
        return [entry for entry in list(self._entries.values()) if entry.self_tag == path]

    @property
    def size(self) -> int:
        return len(self._entries)

    def get_subscriber_count(self, key: str) -> int:
        return len(self._subscribers.get(key, ()))

    # Writes

    def set_cache(self, key: str, replace_tags: bool = False, **fields: Any) -> CacheEntry:
        """
        Shallow-merge ``fields`` into the entry for ``key``, creating it if needed.

        Tags are unioned with the existing set unless ``replace_tags`` is true.
        Writing ``data`` or ``error`` clears the pending-operation slot.

        Raises:
            TypeError: If an unknown field is given
        """
        unknown = set(fields) - ENTRY_FIELDS
        if unknown:
            raise TypeError(f"Unknown cache entry fields: {sorted(unknown)}")

        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, self_tag=self_tag_from_key(key))
            self._entries[key] = entry

        old_data = entry.data
        settles = "data" in fields or "error" in fields

        for name, value in fields.items():
            if name == "tags":
                new_tags = set(value or ())
                entry.tags = new_tags if replace_tags else entry.tags | new_tags
            elif name == "meta":
                entry.meta = dict(value or {})
            else:
                setattr(entry, name, value)

        if settles:
            if "pending_operation" not in fields:
                entry.pending_operation = None
            if "timestamp" not in fields:
                entry.timestamp = time.time()

        self._notify(key)
        if "data" in fields and fields["data"] is not old_data:
            self._notify_data_change(key, old_data, entry.data)
        return entry

    def delete_cache(self, key: str) -> None:
        """Remove the entry entirely; subscribers of the key are notified."""
        if self._entries.pop(key, None) is not None:
            self._notify(key)

    def set_meta(self, key: str, meta: Dict[str, Any]) -> None:
        """Merge plugin-contributed side data into an existing entry."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.meta.update(meta)
        self._notify(key)

    def mark_stale(self, tags: Iterable[str]) -> List[str]:
        """
        Mark every entry whose tags intersect ``tags`` as stale.

        Entries with no tag overlap are untouched. Returns the affected keys.
        """
        wanted = set(tags)
        if not wanted:
            return []

        affected = []
        for key, entry in list(self._entries.items()):
            if entry.tags & wanted:
                entry.is_stale = True
                entry.timestamp = 0.0
                entry.pending_operation = None
                affected.append(key)

        for key in affected:
            self._notify(key)

        if affected:
            self.metrics.cache_invalidations.increment(len(affected))
        logger.debug("Cache entries marked stale", tags=sorted(wanted), affected=len(affected))
        return affected

    def clear(self) -> None:
        """Drop every entry. Subscriptions are kept."""
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key)

    # Pending operations

    def set_pending(self, key: str, operation: Optional[Awaitable]) -> None:
        entry = self._entries.get(key)
        if entry is None:
            if operation is None:
                return
            entry = CacheEntry(key=key, self_tag=self_tag_from_key(key))
            self._entries[key] = entry
        entry.pending_operation = operation

    def get_pending(self, key: str) -> Optional[Awaitable]:
        entry = self._entries.get(key)
        return entry.pending_operation if entry else None

    # Optimistic updates

    def set_optimistic(
        self,
        tags: List[str],
        updater: Callable[[Any], Any],
        match: Optional[Callable[[Dict[str, Any]], bool]] = None
    ) -> List[str]:
        """
        Apply ``updater`` to the data of every entry whose self tag is the last of ``tags``.

        Pagination trackers and entries without data are skipped. The old data is
        kept for rollback. Returns the affected keys.
        """
        if not tags:
            return []
        target = tags[-1]

        affected = []
        for key, entry in list(self._entries.items()):
            if is_tracker_key(key) or entry.self_tag != target or not entry.has_data:
                continue
            if match is not None:
                try:
                    request = json.loads(key)
                except ValueError:
                    continue
                if not match(request):
                    continue

            old_data = entry.data
            entry.previous_data = old_data
            entry.data = updater(old_data)
            entry.is_optimistic = True
            affected.append(key)
            self._notify(key)
            self._notify_data_change(key, old_data, entry.data)

        return affected

    def confirm_optimistic(self, keys: Iterable[str]) -> None:
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None:
                entry.is_optimistic = False
                entry.previous_data = None

    def rollback_optimistic(self, keys: Iterable[str]) -> None:
        for key in keys:
            entry = self._entries.get(key)
            if entry is None or entry.previous_data is None:
                continue
            old_data = entry.data
            entry.data = entry.previous_data
            entry.previous_data = None
            entry.is_optimistic = False
            self._notify(key)
            self._notify_data_change(key, old_data, entry.data)

    # Subscriptions

    def subscribe_cache(self, key: str, callback: Subscriber) -> Callable[[], None]:
        """Register a per-key listener; returns the unsubscribe function."""
        self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._subscribers.get(key)
            if listeners and callback in listeners:
                listeners.remove(callback)
                if not listeners:
                    del self._subscribers[key]

        return unsubscribe

    def on_data_change(self, callback: DataChangeListener) -> Callable[[], None]:
        """Listen for data changes on any key: ``callback(key, old_data, new_data)``."""
        self._data_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._data_listeners:
                self._data_listeners.remove(callback)

        return unsubscribe

    def _notify(self, key: str) -> None:
        # Snapshot: a subscriber may subscribe or write again while notified
        for callback in list(self._subscribers.get(key, ())):
            try:
                callback()
            except Exception as e:
                logger.error("Error in cache subscriber", key=key, error=str(e))

    def _notify_data_change(self, key: str, old_data: Any, new_data: Any) -> None:
        for callback in list(self._data_listeners):
            try:
                callback(key, old_data, new_data)
            except Exception as e:
                logger.error("Error in data change listener", key=key, error=str(e))


def track_pending(
    store: CacheStore,
    key: str,
    operation: Awaitable,
    timeout: Optional[float] = None
) -> "asyncio.Future":
    """
    Store ``operation`` in the pending slot of ``key`` until it settles.

    The slot is also cleared after ``timeout`` seconds so a hung operation
    cannot block de-duplication forever. Returns the stored future.
    """
    future = asyncio.ensure_future(operation)
    store.set_pending(key, future)
    loop = asyncio.get_running_loop()
    delay = timeout if timeout is not None else get_settings().pending_timeout_seconds

    def clear_slot(*_: Any) -> None:
        if store.get_pending(key) is future:
            store.set_pending(key, None)

    handle = loop.call_later(delay, clear_slot)

    def on_done(fut: "asyncio.Future") -> None:
        handle.cancel()
        clear_slot()

    future.add_done_callback(on_done)
    return future

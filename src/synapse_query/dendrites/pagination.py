"""
Dendrites - Bidirectional Pagination Controller
Layer 3: Data Ingestion

This module manages an ordered, growable-at-both-ends sequence of cached pages
for one logical query. Page order is insertion order: fetching next appends
to the tail, fetching previous prepends to the head.

The ordered page keys and the request that produced each page are persisted
as a tracker entry in the cache store, so another controller for the same
query can resume from them. A page that fails never enters the tracker.
"""
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from ..central_cortex.executor import PluginExecutor
from ..central_cortex.plugins import LifecyclePhase, OperationType, PluginContext
from ..shared.metrics_collector import get_metrics_collector
from ..shared.schemas import (
    INVALIDATE_EVENT,
    REFETCH_ALL_EVENT,
    REFETCH_EVENT,
    Response,
)
from ..signal_relay.cancellation import CancellationToken
from ..signal_relay.event_bus import EventBus
from ..synaptic_vesicle.query_key import create_page_key, create_tracker_key, is_tracker_key
from ..synaptic_vesicle.state_store import CacheStore, track_pending
from .page_utils import PageContext, PaginationState, collect_page_data, merge_request

logger = structlog.get_logger(__name__)

Transport = Callable[[Dict[str, Any], CancellationToken], Awaitable[Any]]
PagePredicate = Callable[[PageContext], bool]
PageRequestBuilder = Callable[[PageContext], Dict[str, Any]]


class FetchDirection(str, Enum):
    """Which end of the page list a fetch extends."""
    NEXT = "next"
    PREV = "prev"


class PaginationController:
    """
    Ordered page list for one paginated query.

    Features:
    - Predicate-gated fetching at either end
    - De-duplication against the page key's pending operation
    - Merged projection recomputed on every page change
    - Reset on tag invalidation, refetch-all, or refetch of a tracked page
    """

    def __init__(
        self,
        path: str,
        method: str,
        transport: Transport,
        store: CacheStore,
        bus: EventBus,
        executor: PluginExecutor,
        merger: Callable[[List[Any]], Any],
        initial_request: Optional[Dict[str, Any]] = None,
        can_fetch_next: Optional[PagePredicate] = None,
        can_fetch_prev: Optional[PagePredicate] = None,
        next_page_request: Optional[PageRequestBuilder] = None,
        prev_page_request: Optional[PageRequestBuilder] = None,
        tags: Optional[List[str]] = None,
        base_options: Optional[Dict[str, Any]] = None,
        plugin_options: Optional[Dict[str, Any]] = None,
        instance_id: Optional[str] = None
    ):
        if can_fetch_prev is not None and prev_page_request is None:
            raise ValueError("can_fetch_prev requires prev_page_request")

        self.path = path
        self.method = method.upper()
        self.transport = transport
        self.store = store
        self.bus = bus
        self.executor = executor
        self.merger = merger
        self.initial_request = dict(initial_request or {})
        self.can_fetch_next = can_fetch_next
        self.can_fetch_prev = can_fetch_prev
        self.next_page_request = next_page_request or (lambda ctx: {})
        self.prev_page_request = prev_page_request
        self.tags = list(tags if tags is not None else [path])
        self.base_options = dict(base_options or {})
        self.plugin_options = dict(plugin_options or {})
        self.instance_id = instance_id
        self.metrics = get_metrics_collector()

        self.tracker_key = create_tracker_key(self.path, self.method, self.base_options)

        self._page_keys: List[str] = []
        self._page_requests: Dict[str, Dict[str, Any]] = {}
        self._active_request: Dict[str, Any] = dict(self.initial_request)
        self._pending_fetches: Dict[str, CancellationToken] = {}
        self._fetching_direction: Optional[FetchDirection] = None
        self._latest_error: Any = None
        self._token: Optional[CancellationToken] = None

        self._subscribers: List[Callable[[], None]] = []
        self._page_subscriptions: List[Callable[[], None]] = []
        self._bus_subscriptions: List[Callable[[], None]] = []
        self._runners: Set[asyncio.Task] = set()

        self._resume_from_tracker()
        self._state = self._compute_state()

    # Snapshots

    def get_state(self) -> PaginationState:
        return self._state

    def get_fetching_direction(self) -> Optional[FetchDirection]:
        return self._fetching_direction

    @property
    def page_keys(self) -> List[str]:
        return list(self._page_keys)

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # Fetching

    async def fetch_next(self) -> None:
        """Fetch the page after the last one; no-op until a first page exists."""
        edge = self._edge_context(FetchDirection.NEXT)
        if edge is None or self.can_fetch_next is None or not self.can_fetch_next(edge):
            return
        override = self.next_page_request(edge)
        await self._fetch_page(FetchDirection.NEXT, merge_request(self._active_request, override))

    async def fetch_prev(self) -> None:
        """Fetch the page before the first one; no-op until a first page exists."""
        edge = self._edge_context(FetchDirection.PREV)
        if edge is None or self.can_fetch_prev is None or not self.can_fetch_prev(edge):
            return
        override = self.prev_page_request(edge)
        await self._fetch_page(FetchDirection.PREV, merge_request(self._active_request, override))

    async def trigger(
        self,
        request: Optional[Dict[str, Any]] = None,
        replace: bool = False,
        force: bool = True
    ) -> None:
        """
        Discard every tracked page and load page one again.

        Args:
            request: Override merged over the initial request (or replacing it
                when ``replace`` is true); omitted resets to the initial request
            replace: Use ``request`` as the new base request as-is
            force: Mark other entries of this path stale and bypass cached data
        """
        in_flight = list(self._pending_fetches)
        self.abort()
        for key in self._page_keys + in_flight:
            self.store.set_pending(key, None)

        if force:
            for entry in self.store.get_entries_by_self_tag(self.path):
                if not is_tracker_key(entry.key) and entry.key not in self._page_keys:
                    self.store.set_cache(entry.key, is_stale=True)

        if request is None:
            self._active_request = dict(self.initial_request)
        elif replace:
            self._active_request = dict(request)
        else:
            self._active_request = merge_request(self.initial_request, request)

        self._unsubscribe_pages()
        for key in self._page_keys:
            self.store.delete_cache(key)
        self.store.delete_cache(self.tracker_key)
        self._page_keys = []
        self._page_requests = {}
        self._latest_error = None
        self._notify()

        logger.info("Pagination reset", path=self.path, request=self._active_request)
        await self._fetch_page(
            FetchDirection.NEXT, self._active_request, force_refetch=force, dedupe=False
        )

    def abort(self) -> None:
        """Cancel every in-flight page fetch at either end."""
        for token in self._pending_fetches.values():
            token.cancel()
        self._pending_fetches.clear()
        if self._token is not None:
            self._token.cancel()
            self._token = None
        self._fetching_direction = None

    async def join(self) -> None:
        """Wait for resets started by bus events."""
        while self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    # Lifecycle

    async def mount(self) -> None:
        """Start listening to page changes and invalidation signals."""
        self._subscribe_pages()
        self._bus_subscriptions = [
            self.bus.on(INVALIDATE_EVENT, self._on_invalidate),
            self.bus.on(REFETCH_ALL_EVENT, self._on_refetch_all),
            self.bus.on(REFETCH_EVENT, self._on_refetch),
        ]
        self._state = self._compute_state()
        await self.executor.execute_lifecycle(
            LifecyclePhase.MOUNT, OperationType.PAGES, self.get_context()
        )

    async def unmount(self) -> None:
        await self.executor.execute_lifecycle(
            LifecyclePhase.UNMOUNT, OperationType.PAGES, self.get_context()
        )
        self._unsubscribe_pages()
        for unsubscribe in self._bus_subscriptions:
            unsubscribe()
        self._bus_subscriptions = []

    async def update(self, previous_context: Optional[PluginContext] = None) -> None:
        await self.executor.execute_lifecycle(
            LifecyclePhase.UPDATE, OperationType.PAGES, self.get_context(), previous_context
        )

    def get_context(self) -> PluginContext:
        """Plugin context for the first page of the active request."""
        return self._create_context(self._page_key(self._active_request), self._active_request)

    def set_plugin_options(self, options: Dict[str, Any]) -> None:
        self.plugin_options = dict(options or {})

    # Internals

    def _page_key(self, request: Dict[str, Any]) -> str:
        return create_page_key(self.path, self.method, self.base_options, request)

    def _create_context(
        self,
        page_key: str,
        request: Dict[str, Any],
        force_refetch: bool = False,
        token: Optional[CancellationToken] = None
    ) -> PluginContext:
        fragment = {k: v for k, v in request.items() if v is not None}
        fragment.setdefault("headers", {})
        fragment.update(path=self.path, method=self.method)
        return self.executor.create_context(
            operation_type=OperationType.PAGES,
            path=self.path,
            method=self.method,
            query_key=page_key,
            store=self.store,
            bus=self.bus,
            tags=self.tags,
            request=fragment,
            plugin_options=self.plugin_options,
            force_refetch=force_refetch,
            token=token,
            instance_id=self.instance_id,
        )

    def _edge_context(self, direction: FetchDirection) -> Optional[PageContext]:
        if not self._page_keys:
            return None
        responses, requests = collect_page_data(
            self._page_keys, self.store, self._page_requests, self._active_request
        )
        if not responses:
            return None
        index = -1 if direction == FetchDirection.NEXT else 0
        return PageContext(
            response=responses[index],
            all_responses=responses,
            request=requests[index],
        )

    async def _fetch_page(
        self,
        direction: FetchDirection,
        request: Dict[str, Any],
        force_refetch: bool = False,
        dedupe: bool = True
    ) -> None:
        page_key = self._page_key(request)
        if dedupe and (self.store.get_pending(page_key) is not None or page_key in self._pending_fetches):
            logger.debug("Page fetch already pending", page_key=page_key)
            return

        token = CancellationToken()
        self._token = token
        self._pending_fetches[page_key] = token
        self._fetching_direction = direction
        self._latest_error = None
        self._notify()

        context = self._create_context(page_key, request, force_refetch, token)

        async def core() -> Any:
            return await self.transport(context.request, token)

        operation = track_pending(
            self.store, page_key, self.executor.execute_middleware(OperationType.PAGES, context, core)
        )
        context.pending_operation = operation

        try:
            response = await operation
        except asyncio.CancelledError:
            token.cancel()
            raise
        except Exception as e:
            response = Response(error=e, aborted=token.cancelled)
        finally:
            if self._pending_fetches.get(page_key) is token:
                del self._pending_fetches[page_key]
            if self.store.get_pending(page_key) is operation:
                self.store.set_pending(page_key, None)
            if self._token is token:
                self._token = None
                self._fetching_direction = None

        if token.cancelled or response.aborted:
            self.metrics.pagination_fetches.increment(direction=direction.value, outcome="aborted")
            logger.debug("Page fetch aborted", page_key=page_key)
            self._notify()
            return

        if response.error is None:
            self._page_requests[page_key] = dict(request)
            if page_key not in self._page_keys:
                if direction == FetchDirection.NEXT:
                    self._page_keys.append(page_key)
                else:
                    self._page_keys.insert(0, page_key)
            self.store.set_cache(
                page_key, data=response.data, error=None, tags=self.tags, is_stale=False
            )
            self._save_tracker()
            self._subscribe_pages()
            self._latest_error = None
            outcome = "success"
        else:
            self.store.set_cache(page_key, error=response.error, tags=self.tags)
            self._latest_error = response.error
            outcome = "error"
            logger.warning("Page fetch failed",
                           page_key=page_key,
                           direction=direction.value,
                           error=str(response.error))

        self.metrics.pagination_fetches.increment(direction=direction.value, outcome=outcome)
        self._notify()

    def _resume_from_tracker(self) -> None:
        entry = self.store.get_cache(self.tracker_key)
        if entry is None or not isinstance(entry.data, dict):
            return
        page_keys = [
            key for key in entry.data.get("page_keys", [])
            if self.store.get_cache(key) is not None
        ]
        self._page_keys = page_keys
        self._page_requests = {
            key: dict(req) for key, req in entry.data.get("page_requests", {}).items()
            if key in page_keys
        }
        self._active_request = dict(entry.data.get("active_request", self.initial_request))
        logger.debug("Pagination resumed from tracker", path=self.path, pages=len(page_keys))

    def _save_tracker(self) -> None:
        self.store.set_cache(self.tracker_key, data={
            "page_keys": list(self._page_keys),
            "page_requests": {key: dict(req) for key, req in self._page_requests.items()},
            "active_request": dict(self._active_request),
        })

    def _compute_state(self) -> PaginationState:
        if not self._page_keys:
            return PaginationState(error=self._latest_error)

        responses, requests = collect_page_data(
            self._page_keys, self.store, self._page_requests, self._active_request
        )
        if not responses:
            return PaginationState(error=self._latest_error, page_keys=list(self._page_keys))

        last = PageContext(response=responses[-1], all_responses=responses, request=requests[-1])
        first = PageContext(response=responses[0], all_responses=responses, request=requests[0])

        return PaginationState(
            data=self.merger(list(responses)),
            all_responses=responses,
            all_requests=requests,
            can_fetch_next=bool(self.can_fetch_next(last)) if self.can_fetch_next else False,
            can_fetch_prev=bool(self.can_fetch_prev(first)) if self.can_fetch_prev else False,
            error=self._latest_error,
            page_keys=list(self._page_keys),
        )

    def _notify(self) -> None:
        self._state = self._compute_state()
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as e:
                logger.error("Error in pagination subscriber", error=str(e))

    def _subscribe_pages(self) -> None:
        self._unsubscribe_pages()
        self._page_subscriptions = [
            self.store.subscribe_cache(key, self._notify) for key in self._page_keys
        ]

    def _unsubscribe_pages(self) -> None:
        for unsubscribe in self._page_subscriptions:
            unsubscribe()
        self._page_subscriptions = []

    def _spawn_reset(self, reason: str) -> None:
        logger.debug("Pagination reset requested", path=self.path, reason=reason)
        runner = asyncio.ensure_future(self.trigger(self._active_request, replace=True))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    def _on_invalidate(self, tags: Any) -> None:
        if set(tags or ()) & set(self.tags):
            self._spawn_reset("invalidate")

    def _on_refetch_all(self, _payload: Any = None) -> None:
        self._spawn_reset("refetch-all")

    def _on_refetch(self, event: Any) -> None:
        query_key = getattr(event, "query_key", None)
        if query_key is None and isinstance(event, dict):
            query_key = event.get("query_key")
        if query_key in self._page_keys:
            self._spawn_reset("refetch")

"""
Central Cortex - Single operation controller
Layer 2: Orchestration

Runs one keyed read or write call through the plugin pipeline, honouring
the de-duplication contract of the cache store: a second execute for a key
with an operation in flight awaits that operation instead of starting another.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from ..shared.schemas import (
    INVALIDATE_EVENT,
    REFETCH_ALL_EVENT,
    REFETCH_EVENT,
    Response,
)
from ..signal_relay.cancellation import CancellationToken
from ..signal_relay.event_bus import EventBus
from ..synaptic_vesicle.query_key import create_query_key
from ..synaptic_vesicle.state_store import CacheStore, track_pending
from .executor import PluginExecutor
from .plugins import LifecyclePhase, OperationType, PluginContext

logger = structlog.get_logger(__name__)

Transport = Callable[[Dict[str, Any], CancellationToken], Awaitable[Any]]


@dataclass
class OperationState:
    """Snapshot of one operation's result."""
    data: Any = None
    error: Any = None
    timestamp: float = 0.0
    is_stale: bool = False
    is_optimistic: bool = False
    is_fetching: bool = False


class OperationController:
    """Controller for a single read or write call."""

    def __init__(
        self,
        path: str,
        method: str,
        transport: Transport,
        store: CacheStore,
        bus: EventBus,
        executor: PluginExecutor,
        operation_type: OperationType = OperationType.READ,
        request: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        plugin_options: Optional[Dict[str, Any]] = None,
        instance_id: Optional[str] = None
    ):
        self.path = path
        self.method = method.upper()
        self.transport = transport
        self.store = store
        self.bus = bus
        self.executor = executor
        self.operation_type = OperationType(operation_type)
        self.request = dict(request or {})
        self.tags = list(tags if tags is not None else [path])
        self.plugin_options = dict(plugin_options or {})
        self.instance_id = instance_id
        self.query_key = create_query_key(self.path, self.method, self.request)

        self._token: Optional[CancellationToken] = None
        self._last_response: Optional[Response] = None
        self._subscribers: List[Callable[[], None]] = []
        self._cache_unsubscribe: Optional[Callable[[], None]] = None
        self._bus_subscriptions: List[Callable[[], None]] = []
        self._runners: Set[asyncio.Task] = set()

    @property
    def caches_result(self) -> bool:
        return self.operation_type == OperationType.READ

    def get_state(self) -> OperationState:
        fetching = self.store.get_pending(self.query_key) is not None or self._token is not None
        if not self.caches_result:
            response = self._last_response
            return OperationState(
                data=response.data if response else None,
                error=response.error if response else None,
                is_fetching=fetching,
            )

        entry = self.store.get_cache(self.query_key)
        if entry is None:
            return OperationState(is_fetching=fetching)
        return OperationState(
            data=entry.data,
            error=entry.error,
            timestamp=entry.timestamp,
            is_stale=entry.is_stale,
            is_optimistic=entry.is_optimistic,
            is_fetching=fetching,
        )

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)
        if self._cache_unsubscribe is None:
            self._cache_unsubscribe = self.store.subscribe_cache(self.query_key, self._notify)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def get_context(self, force_refetch: bool = False, token: Optional[CancellationToken] = None) -> PluginContext:
        fragment = {k: v for k, v in self.request.items() if v is not None}
        fragment.setdefault("headers", {})
        fragment.update(path=self.path, method=self.method)
        return self.executor.create_context(
            operation_type=self.operation_type,
            path=self.path,
            method=self.method,
            query_key=self.query_key,
            store=self.store,
            bus=self.bus,
            tags=self.tags,
            request=fragment,
            plugin_options=self.plugin_options,
            force_refetch=force_refetch,
            token=token,
            instance_id=self.instance_id,
        )

    async def execute(self, request: Optional[Dict[str, Any]] = None, force: bool = False) -> Response:
        """
        Run the operation, or join the one already in flight for this key.

        Args:
            request: New request fragment; changes the query key
            force: Skip joining an in-flight operation and bypass cached data

        Returns:
            The settled Response; failures are carried in ``error``
        """
        if request is not None:
            self._set_request(request)

        existing = self.store.get_pending(self.query_key)
        if existing is not None and not force:
            logger.debug("Joining in-flight operation", query_key=self.query_key)
            try:
                return Response.coerce(await asyncio.shield(existing))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return Response(error=e)

        token = CancellationToken()
        self._token = token
        context = self.get_context(force_refetch=force, token=token)

        async def core() -> Any:
            return await self.transport(context.request, token)

        async def run() -> Response:
            await self.executor.execute_lifecycle(
                LifecyclePhase.BEFORE_CALL, self.operation_type, context
            )
            return await self.executor.execute_middleware(self.operation_type, context, core)

        if self.caches_result:
            operation = track_pending(self.store, self.query_key, run())
        else:
            operation = asyncio.ensure_future(run())
        context.pending_operation = operation
        self._notify()

        try:
            response = await operation
        except asyncio.CancelledError:
            token.cancel()
            raise
        except Exception as e:
            response = Response(error=e, aborted=token.cancelled)
        finally:
            if self.store.get_pending(self.query_key) is operation:
                self.store.set_pending(self.query_key, None)
            if self._token is token:
                self._token = None

        if token.cancelled or response.aborted:
            self._notify()
            return Response(status=response.status, error=response.error, aborted=True)

        try:
            if response.error is None:
                if self.caches_result:
                    self.store.set_cache(
                        self.query_key, data=response.data, error=None, tags=self.tags, is_stale=False
                    )
                await self.executor.execute_lifecycle(LifecyclePhase.SUCCESS, self.operation_type, context)
            else:
                if self.caches_result:
                    self.store.set_cache(self.query_key, error=response.error, tags=self.tags)
                await self.executor.execute_lifecycle(LifecyclePhase.ERROR, self.operation_type, context)
            await self.executor.execute_lifecycle(LifecyclePhase.AFTER_CALL, self.operation_type, context)
        except Exception as e:
            response = Response(status=response.status, data=response.data, error=e)

        self._last_response = response
        self._notify()
        return response

    async def refetch(self) -> Response:
        return await self.execute(force=True)

    def abort(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    async def mount(self) -> None:
        """Run the mount phase and, for reads, re-execute on refetch and invalidation signals."""
        if self.caches_result and not self._bus_subscriptions:
            self._bus_subscriptions = [
                self.bus.on(REFETCH_EVENT, self._on_refetch),
                self.bus.on(INVALIDATE_EVENT, self._on_invalidate),
                self.bus.on(REFETCH_ALL_EVENT, self._on_refetch_all),
            ]
        await self.executor.execute_lifecycle(LifecyclePhase.MOUNT, self.operation_type, self.get_context())

    async def unmount(self) -> None:
        await self.executor.execute_lifecycle(LifecyclePhase.UNMOUNT, self.operation_type, self.get_context())
        for unsubscribe in self._bus_subscriptions:
            unsubscribe()
        self._bus_subscriptions = []
        if self._cache_unsubscribe is not None:
            self._cache_unsubscribe()
            self._cache_unsubscribe = None

    async def update(self, previous_context: Optional[PluginContext] = None) -> None:
        await self.executor.execute_lifecycle(
            LifecyclePhase.UPDATE, self.operation_type, self.get_context(), previous_context
        )

    def set_plugin_options(self, options: Dict[str, Any]) -> None:
        self.plugin_options = dict(options or {})

    async def join(self) -> None:
        """Wait for re-executions started by bus events."""
        while self._runners:
            await asyncio.gather(*list(self._runners), return_exceptions=True)

    def _set_request(self, request: Dict[str, Any]) -> None:
        self.request = dict(request)
        new_key = create_query_key(self.path, self.method, self.request)
        if new_key == self.query_key:
            return
        self.query_key = new_key
        if self._cache_unsubscribe is not None:
            self._cache_unsubscribe()
            self._cache_unsubscribe = self.store.subscribe_cache(self.query_key, self._notify)

    def _spawn_refetch(self, reason: str) -> None:
        logger.debug("Operation refetch requested", query_key=self.query_key, reason=reason)
        runner = asyncio.ensure_future(self.execute(force=True))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    def _on_refetch(self, event: Any) -> None:
        if getattr(event, "query_key", None) == self.query_key:
            self._spawn_refetch(getattr(event, "reason", "refetch"))

    def _on_invalidate(self, tags: Any) -> None:
        if set(tags or ()) & set(self.tags):
            self._spawn_refetch("invalidate")

    def _on_refetch_all(self, _payload: Any = None) -> None:
        self._spawn_refetch("refetch-all")

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as e:
                logger.error("Error in operation subscriber", error=str(e))

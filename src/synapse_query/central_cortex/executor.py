"""
Central Cortex - Plugin Pipeline
Layer 2: Orchestration

This module composes the registered plugins into a single wrapped call per
operation. It provides:
- Dependency validation and priority ordering at registration
- Middleware composition with the core operation innermost
- After-response hooks that may replace the response
- Lifecycle dispatch for controllers
- Context construction, one-time setup and the merged instance API

The pipeline never swallows exceptions. Exceptions raised by plugin code are
re-raised as PluginError; errors that merely pass through a middleware from
further down the chain are re-raised unchanged.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from ..shared.errors import PluginDependencyError, PluginError
from ..shared.metrics_collector import get_metrics_collector
from ..shared.schemas import REQUEST_COMPLETE_EVENT, RequestCompleteEvent, Response
from ..signal_relay.cancellation import CancellationToken
from ..signal_relay.event_bus import EventBus
from ..synaptic_vesicle.state_store import CacheStore
from .plugins import (
    InstanceContext,
    LifecyclePhase,
    OperationType,
    Plugin,
    PluginAccessor,
    PluginContext,
)

logger = structlog.get_logger(__name__)

CoreOperation = Callable[[], Awaitable[Any]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class PluginExecutor:
    """Ordered plugin registry and middleware composer for one client instance."""

    def __init__(self, plugins: Sequence[Plugin] = ()):
        self._validate_dependencies(plugins)
        # sorted() is stable, so equal priorities keep registration order
        self._plugins: List[Plugin] = sorted(plugins, key=lambda p: p.priority)
        self.metrics = get_metrics_collector()

        logger.info("Plugin executor initialized",
                    plugins=[p.name for p in self._plugins])

    @staticmethod
    def _validate_dependencies(plugins: Sequence[Plugin]) -> None:
        names = {plugin.name for plugin in plugins}
        for plugin in plugins:
            for dependency in plugin.dependencies:
                if dependency not in names:
                    logger.error("Plugin dependency missing",
                                 plugin=plugin.name,
                                 dependency=dependency)
                    raise PluginDependencyError(plugin.name, dependency)

    @property
    def plugins(self) -> List[Plugin]:
        return list(self._plugins)

    def get_plugin(self, name: str) -> Optional[Plugin]:
        for plugin in self._plugins:
            if plugin.name == name:
                return plugin
        return None

    def get_plugins_for(self, operation_type: OperationType) -> List[Plugin]:
        return [p for p in self._plugins if p.applies_to(operation_type)]

    def create_context(
        self,
        operation_type: OperationType,
        path: str,
        method: str,
        query_key: str,
        store: CacheStore,
        bus: EventBus,
        tags: Optional[List[str]] = None,
        request: Optional[Dict[str, Any]] = None,
        plugin_options: Optional[Dict[str, Any]] = None,
        force_refetch: bool = False,
        token: Optional[CancellationToken] = None,
        instance_id: Optional[str] = None,
    ) -> PluginContext:
        """Assemble the context handed to every plugin for one operation."""
        context = PluginContext(
            operation_type=OperationType(operation_type),
            path=path,
            method=method.upper(),
            query_key=query_key,
            store=store,
            bus=bus,
            tags=list(tags if tags is not None else [path]),
            request=dict(request or {}),
            plugin_options=dict(plugin_options or {}),
            force_refetch=force_refetch,
            token=token,
        )
        if instance_id is not None:
            context.instance_id = instance_id
        context.plugins = PluginAccessor(self, context)
        return context

    async def execute_middleware(
        self,
        operation_type: OperationType,
        context: PluginContext,
        core: CoreOperation
    ) -> Response:
        """
        Run ``core`` wrapped by every applicable plugin's middleware.

        Args:
            operation_type: Kind of operation, used to filter plugins
            context: Context built by create_context
            core: Zero-argument coroutine function performing the transport call

        Returns:
            The settled response after after-response hooks

        Raises:
            PluginError: If plugin code raised
            Exception: Whatever ``core`` raised, unchanged
        """
        applicable = self.get_plugins_for(operation_type)
        chain = [p for p in applicable if p.middleware is not None]

        async def call(index: int) -> Response:
            if index == len(chain):
                return Response.coerce(await core())

            plugin = chain[index]
            downstream: List[BaseException] = []

            async def next_call() -> Response:
                try:
                    return await call(index + 1)
                except BaseException as e:
                    downstream.append(e)
                    raise

            try:
                result = await plugin.middleware(context, next_call)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if any(e is passed for passed in downstream):
                    raise
                logger.warning("Plugin middleware failed",
                               plugin=plugin.name,
                               query_key=context.query_key,
                               error=str(e))
                raise PluginError(plugin.name, e) from e
            return Response.coerce(result)

        with self.metrics.pipeline_middleware_seconds.time():
            response = await call(0)

        for plugin in applicable:
            if plugin.after_response is None:
                continue
            try:
                replaced = await _maybe_await(plugin.after_response(context, response))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Plugin after-response hook failed",
                               plugin=plugin.name,
                               query_key=context.query_key,
                               error=str(e))
                raise PluginError(plugin.name, e) from e
            if replaced is not None:
                response = Response.coerce(replaced)

        context.response = response
        context.bus.emit(REQUEST_COMPLETE_EVENT, RequestCompleteEvent(
            query_key=context.query_key,
            operation_type=context.operation_type.value,
            ok=response.ok,
            status=response.status,
        ))
        return response

    async def execute_lifecycle(
        self,
        phase: LifecyclePhase,
        operation_type: OperationType,
        context: PluginContext,
        previous_context: Optional[PluginContext] = None
    ) -> None:
        """Invoke ``phase`` on every applicable plugin that implements it."""
        phase = LifecyclePhase(phase)
        for plugin in self.get_plugins_for(operation_type):
            handler = plugin.lifecycle.get(phase)
            if handler is None:
                continue
            try:
                if phase == LifecyclePhase.UPDATE:
                    await _maybe_await(handler(context, previous_context))
                else:
                    await _maybe_await(handler(context))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Plugin lifecycle callback failed",
                               plugin=plugin.name,
                               phase=phase.value,
                               error=str(e))
                raise PluginError(plugin.name, e) from e

    def run_setup(self, store: CacheStore, bus: EventBus) -> None:
        """Call every plugin's one-time setup hook."""
        instance = InstanceContext(store=store, bus=bus)
        for plugin in self._plugins:
            if plugin.setup is not None:
                plugin.setup(instance)
                logger.info("Plugin setup complete", plugin=plugin.name)

    def build_instance_api(self, store: CacheStore, bus: EventBus) -> Dict[str, Any]:
        """Merge every plugin's client-wide API into one mapping."""
        instance = InstanceContext(store=store, bus=bus)
        api: Dict[str, Any] = {}
        for plugin in self._plugins:
            if plugin.instance_api is not None:
                api.update(plugin.instance_api(instance))
        return api

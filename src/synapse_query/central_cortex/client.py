"""
Central Cortex - Client instance
Layer 2: Orchestration

Wires one cache store, one event bus and one plugin executor together and
builds controllers that share them. Several clients can live in one process
without seeing each other's state.
"""
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..dendrites.pagination import PagePredicate, PageRequestBuilder, PaginationController
from ..shared.config import EngineSettings, get_settings
from ..shared.logging_config import configure_logging
from ..signal_relay.event_bus import EventBus
from ..signal_relay.task_queue import QueueController, Transport
from ..synaptic_vesicle.state_store import CacheStore
from .executor import PluginExecutor
from .operation import OperationController
from .plugins import OperationType, Plugin

logger = structlog.get_logger(__name__)


class SynapseClient:
    """
    Entry point owning the per-instance engine state.

    Example:
        client = SynapseClient(transport, plugins=[cache_plugin(stale_time=30)])
        posts = client.operation("posts")
        response = await posts.execute()
    """

    def __init__(
        self,
        transport: Transport,
        plugins: Sequence[Plugin] = (),
        settings: Optional[EngineSettings] = None
    ):
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level.value, self.settings.log_format.value)

        self.id = uuid.uuid4().hex
        self.transport = transport
        self.store = CacheStore()
        self.bus = EventBus()
        self.executor = PluginExecutor(plugins)

        self.executor.run_setup(self.store, self.bus)
        self.api: Dict[str, Any] = self.executor.build_instance_api(self.store, self.bus)

        logger.info("Client initialized",
                    client_id=self.id,
                    plugins=[p.name for p in self.executor.plugins])

    def operation(
        self,
        path: str,
        method: str = "GET",
        request: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        plugin_options: Optional[Dict[str, Any]] = None,
        operation_type: Optional[OperationType] = None
    ) -> OperationController:
        """Controller for one read (GET) or write (any other method) call."""
        if operation_type is None:
            operation_type = OperationType.READ if method.upper() == "GET" else OperationType.WRITE
        return OperationController(
            path=path,
            method=method,
            transport=self.transport,
            store=self.store,
            bus=self.bus,
            executor=self.executor,
            operation_type=operation_type,
            request=request,
            tags=tags,
            plugin_options=plugin_options,
            instance_id=self.id,
        )

    def queue(
        self,
        path: str,
        method: str = "POST",
        concurrency: Optional[int] = None,
        hook_options: Optional[Dict[str, Any]] = None
    ) -> QueueController:
        """Concurrency-bounded queue against one endpoint."""
        return QueueController(
            path=path,
            method=method,
            transport=self.transport,
            store=self.store,
            bus=self.bus,
            executor=self.executor,
            concurrency=concurrency if concurrency is not None else self.settings.default_concurrency,
            hook_options=hook_options,
        )

    def pages(
        self,
        path: str,
        merger: Callable[[List[Any]], Any],
        method: str = "GET",
        initial_request: Optional[Dict[str, Any]] = None,
        can_fetch_next: Optional[PagePredicate] = None,
        can_fetch_prev: Optional[PagePredicate] = None,
        next_page_request: Optional[PageRequestBuilder] = None,
        prev_page_request: Optional[PageRequestBuilder] = None,
        tags: Optional[List[str]] = None,
        base_options: Optional[Dict[str, Any]] = None,
        plugin_options: Optional[Dict[str, Any]] = None
    ) -> PaginationController:
        """Bidirectional pagination controller for one query."""
        return PaginationController(
            path=path,
            method=method,
            transport=self.transport,
            store=self.store,
            bus=self.bus,
            executor=self.executor,
            merger=merger,
            initial_request=initial_request,
            can_fetch_next=can_fetch_next,
            can_fetch_prev=can_fetch_prev,
            next_page_request=next_page_request,
            prev_page_request=prev_page_request,
            tags=tags,
            base_options=base_options,
            plugin_options=plugin_options,
            instance_id=self.id,
        )

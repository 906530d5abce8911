"""
Synapse Query - client-side request orchestration.

Tagged result caching, a plugin pipeline, a concurrency-bounded task queue
and bidirectional pagination over an opaque async transport.
"""

from .shared.config import EngineSettings, get_settings
from .shared.errors import (
    ApplicationError,
    CancellationError,
    PluginDependencyError,
    PluginError,
    SynapseQueryError,
    TransportError,
)
from .shared.schemas import QueueStats, Response
from .synaptic_vesicle.state_store import CacheEntry, CacheStore
from .signal_relay.cancellation import CancellationToken
from .signal_relay.event_bus import EventBus
from .central_cortex.plugins import LifecyclePhase, OperationType, Plugin, PluginContext
from .central_cortex.executor import PluginExecutor
from .central_cortex.operation import OperationController
from .signal_relay.task_queue import QueueController, QueueTask, TaskStatus
from .dendrites.pagination import FetchDirection, PaginationController
from .dendrites.page_utils import PageContext, PaginationState
from .central_cortex.client import SynapseClient

__version__ = "0.1.0"

__all__ = [
    'SynapseClient',
    'EngineSettings',
    'get_settings',
    'SynapseQueryError',
    'TransportError',
    'CancellationError',
    'ApplicationError',
    'PluginError',
    'PluginDependencyError',
    'Response',
    'QueueStats',
    'CacheEntry',
    'CacheStore',
    'CancellationToken',
    'EventBus',
    'LifecyclePhase',
    'OperationType',
    'Plugin',
    'PluginContext',
    'PluginExecutor',
    'OperationController',
    'QueueController',
    'QueueTask',
    'TaskStatus',
    'FetchDirection',
    'PaginationController',
    'PageContext',
    'PaginationState',
]

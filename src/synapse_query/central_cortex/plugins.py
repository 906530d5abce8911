"""
Central Cortex - Plugin model
Layer 2: Orchestration

A plugin is a tagged capability set: it declares the operation kinds it
applies to and fills any subset of the named slots (middleware,
after-response hook, lifecycle callbacks, exports, instance API, setup).
Dispatch filters on the declared operations and composes what is present.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
)

from ..shared.schemas import Response
from ..signal_relay.cancellation import CancellationToken

if TYPE_CHECKING:
    from ..signal_relay.event_bus import EventBus
    from ..synaptic_vesicle.state_store import CacheStore
    from .executor import PluginExecutor


class OperationType(str, Enum):
    """Kinds of operation a plugin can apply to."""
    READ = "read"
    WRITE = "write"
    QUEUE = "queue"
    PAGES = "pages"


class LifecyclePhase(str, Enum):
    """Fixed points at which controllers invoke plugin callbacks."""
    MOUNT = "mount"
    UNMOUNT = "unmount"
    UPDATE = "update"
    BEFORE_CALL = "before_call"
    AFTER_CALL = "after_call"
    SUCCESS = "success"
    ERROR = "error"


NextCall = Callable[[], Awaitable[Response]]
Middleware = Callable[["PluginContext", NextCall], Awaitable[Union[Response, Dict[str, Any]]]]
AfterResponse = Callable[["PluginContext", Response], Any]


@dataclass
class InstanceContext:
    """What one-time setup and instance-API factories receive."""
    store: "CacheStore"
    bus: "EventBus"


@dataclass
class Plugin:
    """A named extension declaring its operation kinds and implemented slots."""
    name: str
    operations: Sequence[OperationType] = ()
    middleware: Optional[Middleware] = None
    after_response: Optional[AfterResponse] = None
    lifecycle: Dict[LifecyclePhase, Callable[..., Any]] = field(default_factory=dict)
    exports: Optional[Callable[["PluginContext"], Any]] = None
    instance_api: Optional[Callable[[InstanceContext], Dict[str, Any]]] = None
    setup: Optional[Callable[[InstanceContext], None]] = None
    priority: int = 0
    dependencies: Sequence[str] = ()

    def __post_init__(self):
        self.operations = tuple(OperationType(op) for op in self.operations)
        self.lifecycle = {
            LifecyclePhase(phase): handler for phase, handler in self.lifecycle.items()
        }

    def applies_to(self, operation_type: OperationType) -> bool:
        return OperationType(operation_type) in self.operations

    @property
    def capabilities(self) -> List[str]:
        """Names of the slots this plugin implements."""
        slots = []
        if self.middleware is not None:
            slots.append("middleware")
        if self.after_response is not None:
            slots.append("after_response")
        slots.extend(f"lifecycle.{phase.value}" for phase in self.lifecycle)
        if self.exports is not None:
            slots.append("exports")
        if self.instance_api is not None:
            slots.append("instance_api")
        if self.setup is not None:
            slots.append("setup")
        return slots


class PluginAccessor:
    """Lets a plugin reach the exports of other plugins for the same context."""

    def __init__(self, executor: "PluginExecutor", context: "PluginContext"):
        self._executor = executor
        self._context = context

    def get(self, name: str) -> Any:
        plugin = self._executor.get_plugin(name)
        if plugin is None or plugin.exports is None:
            return None
        return plugin.exports(self._context)


@dataclass
class PluginContext:
    """Everything a plugin sees about one operation."""
    operation_type: OperationType
    path: str
    method: str
    query_key: str
    store: "CacheStore"
    bus: "EventBus"
    tags: List[str] = field(default_factory=list)
    request: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    plugin_options: Dict[str, Any] = field(default_factory=dict)
    force_refetch: bool = False
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    request_timestamp: float = field(default_factory=time.time)
    token: Optional[CancellationToken] = None
    pending_operation: Optional[Awaitable[Any]] = None
    response: Optional[Response] = None
    plugins: Optional[PluginAccessor] = None

"""
Neurons - Invalidation plugin
Marks related cache entries stale after successful mutations and tells
mounted controllers to refetch.
"""
from typing import Any, Dict, Iterable, List, Union

import structlog

from ..central_cortex.plugins import InstanceContext, OperationType, Plugin, PluginContext
from ..shared.schemas import INVALIDATE_EVENT, REFETCH_ALL_EVENT, Response
from ..signal_relay.event_bus import EventBus
from ..synaptic_vesicle.state_store import CacheStore

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "invalidation"
DEFAULT_MODE_KEY = "invalidation:default_mode"

MODES = ("all", "self", "none")
REFETCH_ALL = "*"


def _mode_tags(context: PluginContext, mode: str) -> List[str]:
    if mode == "all":
        return list(context.tags)
    if mode == "self":
        return [context.path]
    return []


def resolve_tags(context: PluginContext, default_mode: str) -> List[str]:
    """Tags a completed mutation should invalidate, from its ``invalidate`` option."""
    option = context.plugin_options.get("invalidate")

    if not option:
        mode = context.metadata.get(DEFAULT_MODE_KEY, default_mode)
        return _mode_tags(context, mode)

    if isinstance(option, str):
        if option in MODES:
            return _mode_tags(context, option)
        return [option]

    tags: List[str] = []
    mode = "none"
    for item in option:
        if item in ("all", "self"):
            mode = item
        else:
            tags.append(item)
    tags.extend(_mode_tags(context, mode))

    # Preserve order, drop duplicates
    return list(dict.fromkeys(tags))


def invalidate_tags(store: CacheStore, bus: EventBus, tags: Iterable[str]) -> None:
    tags = list(tags)
    if REFETCH_ALL in tags:
        logger.info("Refetch all requested")
        bus.emit(REFETCH_ALL_EVENT, None)
        return
    if tags:
        store.mark_stale(tags)
        bus.emit(INVALIDATE_EVENT, tags)
        logger.info("Invalidated tags", tags=tags)


def invalidation_plugin(default_mode: str = "all") -> Plugin:
    """
    Build the invalidation plugin.

    Args:
        default_mode: "all" (the operation's tags), "self" (its path) or "none"
    """
    if default_mode not in MODES:
        raise ValueError(f"Unknown invalidation mode: {default_mode}")

    def after_response(context: PluginContext, response: Response) -> None:
        if response.error is not None or response.aborted:
            return
        invalidate_tags(context.store, context.bus, resolve_tags(context, default_mode))

    def exports(context: PluginContext) -> Dict[str, Any]:
        def set_default_mode(mode: str) -> None:
            context.metadata[DEFAULT_MODE_KEY] = mode

        return {"set_default_mode": set_default_mode}

    def instance_api(instance: InstanceContext) -> Dict[str, Any]:
        def invalidate(tags: Union[str, List[str]]) -> None:
            invalidate_tags(instance.store, instance.bus, [tags] if isinstance(tags, str) else tags)

        return {"invalidate": invalidate}

    return Plugin(
        name=PLUGIN_NAME,
        operations=(OperationType.WRITE, OperationType.QUEUE),
        after_response=after_response,
        exports=exports,
        instance_api=instance_api,
    )

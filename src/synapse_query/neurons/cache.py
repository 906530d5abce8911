"""
Neurons - Cache plugin
Serves fresh cached data without calling the transport.
"""
import time
from typing import Any

import structlog

from ..central_cortex.plugins import OperationType, Plugin, PluginContext
from ..shared.schemas import Response

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "cache"


def cache_plugin(stale_time: float = 0.0) -> Plugin:
    """
    Build the cache plugin.

    Args:
        stale_time: Seconds a written entry stays fresh; a per-operation
            ``stale_time`` plugin option overrides it
    """

    async def middleware(context: PluginContext, next_call) -> Any:
        if not context.force_refetch:
            entry = context.store.get_cache(context.query_key)
            if entry is not None and entry.has_data and not entry.is_stale:
                window = context.plugin_options.get("stale_time", stale_time)
                if time.time() - entry.timestamp <= window:
                    logger.debug("Serving cached data", query_key=context.query_key)
                    return Response(status=200, data=entry.data)
        return await next_call()

    return Plugin(
        name=PLUGIN_NAME,
        operations=(OperationType.READ, OperationType.PAGES),
        middleware=middleware,
    )

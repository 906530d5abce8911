"""
Neurons - Deduplication plugin
Shares an operation already in flight for the same query key.
"""
import asyncio
from typing import Any, Union

import structlog

from ..central_cortex.plugins import OperationType, Plugin, PluginContext
from ..shared.schemas import Response

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "deduplication"

IN_FLIGHT = "in-flight"


def deduplication_plugin(read: Union[str, bool] = IN_FLIGHT, write: Union[str, bool] = False) -> Plugin:
    """
    Build the deduplication plugin.

    Args:
        read: "in-flight" to share pending reads and page fetches, False to disable
        write: "in-flight" to share pending writes, False to disable
    """

    def mode_for(context: PluginContext) -> Union[str, bool]:
        override = context.plugin_options.get("dedupe")
        if override is not None:
            return override
        return write if context.operation_type == OperationType.WRITE else read

    async def middleware(context: PluginContext, next_call) -> Any:
        if mode_for(context) == IN_FLIGHT:
            existing = context.store.get_pending(context.query_key)
            if existing is not None and existing is not context.pending_operation:
                logger.debug("Sharing in-flight operation", query_key=context.query_key)
                try:
                    return await asyncio.shield(existing)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    return Response(error=e)
        return await next_call()

    return Plugin(
        name=PLUGIN_NAME,
        operations=(OperationType.READ, OperationType.PAGES, OperationType.WRITE),
        middleware=middleware,
        priority=-10,
    )

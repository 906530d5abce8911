"""
Neurons - Queue purge plugin
Deletes cache entries of tasks discarded by a queue clear.
"""
from typing import Any

import structlog

from ..central_cortex.plugins import InstanceContext, Plugin
from ..shared.schemas import QUEUE_CLEAR_EVENT

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "queue-purge"


def queue_purge_plugin() -> Plugin:

    def setup(instance: InstanceContext) -> None:
        def on_queue_clear(event: Any) -> None:
            keys = getattr(event, "query_keys", None) or []
            for key in keys:
                instance.store.delete_cache(key)
            logger.debug("Purged discarded queue entries", count=len(keys))

        instance.bus.on(QUEUE_CLEAR_EVENT, on_queue_clear)

    return Plugin(name=PLUGIN_NAME, setup=setup)

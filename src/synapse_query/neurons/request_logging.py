"""
Neurons - Request logging plugin
Logs every middleware call and lifecycle phase through structlog.
"""
import time
from typing import Any

import structlog

from ..central_cortex.plugins import LifecyclePhase, OperationType, Plugin, PluginContext

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "request-logging"


def request_logging_plugin(level: str = "debug") -> Plugin:
    log = getattr(logger, level)

    async def middleware(context: PluginContext, next_call) -> Any:
        started = time.perf_counter()
        response = await next_call()
        log("Request completed",
            operation=context.operation_type.value,
            method=context.method,
            path=context.path,
            status=response.status,
            ok=response.ok,
            duration_ms=round((time.perf_counter() - started) * 1000, 2))
        return response

    def phase_logger(phase: LifecyclePhase):
        def handler(context: PluginContext, *_: Any) -> None:
            log("Lifecycle phase", phase=phase.value, query_key=context.query_key)
        return handler

    return Plugin(
        name=PLUGIN_NAME,
        operations=tuple(OperationType),
        middleware=middleware,
        lifecycle={phase: phase_logger(phase) for phase in LifecyclePhase},
        priority=100,
    )

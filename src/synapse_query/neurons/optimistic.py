"""
Neurons - Optimistic update plugin
Rewrites cached reads before a mutation completes and confirms or rolls
them back once the mutation settles.

A write opts in with an ``optimistic`` plugin option holding one update or a
list of them. Each update is a mapping with:
- tags: target tags; the last one is the self tag of the entries to rewrite
- updater: ``updater(data)`` for immediate updates,
  ``updater(data, response_data)`` for ``timing="on_success"``
- match: optional predicate over the parsed request key
- timing: "immediate" (default) or "on_success"
- rollback_on_error: defaults to True
- on_error: optional callback receiving the mutation error
"""
import asyncio
import json
from typing import Any, List, Mapping

import structlog

from ..central_cortex.plugins import OperationType, Plugin, PluginContext
from ..shared.schemas import Response
from ..synaptic_vesicle.query_key import is_tracker_key

logger = structlog.get_logger(__name__)

PLUGIN_NAME = "optimistic"
AFFECTED_KEYS = "optimistic:affected_keys"

IMMEDIATE = "immediate"
ON_SUCCESS = "on_success"


def resolve_updates(context: PluginContext) -> List[Mapping[str, Any]]:
    """Optimistic updates requested by the operation's plugin options."""
    option = context.plugin_options.get("optimistic")
    if not option:
        return []
    updates = [option] if isinstance(option, Mapping) else list(option)
    for update in updates:
        if not update.get("tags") or not callable(update.get("updater")):
            raise ValueError("Optimistic updates need tags and an updater")
        if update.get("timing", IMMEDIATE) not in (IMMEDIATE, ON_SUCCESS):
            raise ValueError(f"Unknown optimistic timing: {update['timing']}")
    return updates


def _apply_on_success(context: PluginContext, update: Mapping[str, Any], response_data: Any) -> None:
    target = list(update["tags"])[-1]
    match = update.get("match")
    updater = update["updater"]

    for entry in context.store.get_entries_by_self_tag(target):
        if is_tracker_key(entry.key) or not entry.has_data:
            continue
        if match is not None and not match(json.loads(entry.key)):
            continue
        context.store.set_cache(entry.key, data=updater(entry.data, response_data))


def optimistic_plugin() -> Plugin:
    """Build the optimistic update plugin."""

    async def middleware(context: PluginContext, next_call) -> Any:
        updates = resolve_updates(context)
        if not updates:
            return await next_call()

        # No automatic invalidation unless the write asks for it
        invalidation = context.plugins.get("invalidation") if context.plugins else None
        if invalidation is not None:
            invalidation["set_default_mode"]("none")

        affected: List[str] = []
        for update in updates:
            if update.get("timing", IMMEDIATE) == IMMEDIATE:
                affected.extend(context.store.set_optimistic(
                    list(update["tags"]), update["updater"], update.get("match")
                ))
        context.metadata[AFFECTED_KEYS] = affected
        if affected:
            logger.debug("Applied optimistic update", query_key=context.query_key, affected=len(affected))

        try:
            response = await next_call()
        except asyncio.CancelledError:
            context.store.rollback_optimistic(affected)
            raise
        except Exception as e:
            response = Response(error=e)
            _settle_failure(context, updates, affected, response)
            raise

        if response.error is not None or response.aborted:
            _settle_failure(context, updates, affected, response)
            return response

        context.store.confirm_optimistic(affected)
        for update in updates:
            if update.get("timing", IMMEDIATE) == ON_SUCCESS:
                _apply_on_success(context, update, response.data)
        return response

    return Plugin(
        name=PLUGIN_NAME,
        operations=(OperationType.WRITE,),
        middleware=middleware,
        dependencies=("invalidation",),
    )


def _settle_failure(
    context: PluginContext,
    updates: List[Mapping[str, Any]],
    affected: List[str],
    response: Response
) -> None:
    rollback = any(
        update.get("rollback_on_error", True) and update.get("timing", IMMEDIATE) == IMMEDIATE
        for update in updates
    )
    if rollback and affected:
        context.store.rollback_optimistic(affected)
        logger.info("Rolled back optimistic update", query_key=context.query_key, affected=len(affected))

    for update in updates:
        on_error = update.get("on_error")
        if on_error is not None:
            on_error(response.error)

"""
Unit tests for the built-in plugins.
"""
import asyncio
import time

import pytest
from structlog.testing import capture_logs

from synapse_query.central_cortex.executor import PluginExecutor
from synapse_query.central_cortex.plugins import LifecyclePhase, OperationType
from synapse_query.neurons.cache import cache_plugin
from synapse_query.neurons.deduplication import deduplication_plugin
from synapse_query.neurons.invalidation import (
    DEFAULT_MODE_KEY,
    invalidation_plugin,
    resolve_tags,
)
from synapse_query.neurons.optimistic import optimistic_plugin
from synapse_query.neurons.request_logging import request_logging_plugin
from synapse_query.shared.errors import PluginDependencyError, PluginError
from synapse_query.shared.schemas import INVALIDATE_EVENT, REFETCH_ALL_EVENT, Response


def make_context(executor, store, bus, operation_type=OperationType.READ, **kwargs):
    options = dict(
        operation_type=operation_type,
        path="posts",
        method="GET",
        query_key=store.create_query_key("posts"),
        store=store,
        bus=bus,
    )
    options.update(kwargs)
    return executor.create_context(**options)


class CoreCalls:
    """Core operation that records how often it ran."""

    def __init__(self, data="fresh"):
        self.data = data
        self.count = 0

    async def __call__(self):
        self.count += 1
        return Response(status=200, data=self.data)


class TestCachePlugin:
    """Test serving cached data."""

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=60)])
        context = make_context(executor, store, bus)
        store.set_cache(context.query_key, data="cached")
        core = CoreCalls()

        response = await executor.execute_middleware(OperationType.READ, context, core)

        assert response.data == "cached"
        assert core.count == 0

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=60)])
        context = make_context(executor, store, bus)
        store.set_cache(context.query_key, data="cached", timestamp=time.time() - 120)
        core = CoreCalls()

        response = await executor.execute_middleware(OperationType.READ, context, core)

        assert response.data == "fresh"
        assert core.count == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_refetched(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=60)])
        context = make_context(executor, store, bus)
        store.set_cache(context.query_key, data="cached", tags=["posts"])
        store.mark_stale(["posts"])
        core = CoreCalls()

        await executor.execute_middleware(OperationType.READ, context, core)

        assert core.count == 1

    @pytest.mark.asyncio
    async def test_force_refetch_bypasses_cache(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=60)])
        context = make_context(executor, store, bus, force_refetch=True)
        store.set_cache(context.query_key, data="cached")
        core = CoreCalls()

        await executor.execute_middleware(OperationType.READ, context, core)

        assert core.count == 1

    @pytest.mark.asyncio
    async def test_stale_time_option_overrides(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=0)])
        context = make_context(executor, store, bus, plugin_options={"stale_time": 300})
        store.set_cache(context.query_key, data="cached", timestamp=time.time() - 120)
        core = CoreCalls()

        response = await executor.execute_middleware(OperationType.READ, context, core)

        assert response.data == "cached"

    @pytest.mark.asyncio
    async def test_not_applied_to_writes(self, store, bus):
        executor = PluginExecutor([cache_plugin(stale_time=60)])
        context = make_context(executor, store, bus, operation_type=OperationType.WRITE)
        store.set_cache(context.query_key, data="cached")
        core = CoreCalls()

        await executor.execute_middleware(OperationType.WRITE, context, core)

        assert core.count == 1


class TestDeduplicationPlugin:
    """Test sharing of in-flight operations."""

    @pytest.mark.asyncio
    async def test_shares_pending_operation(self, store, bus):
        executor = PluginExecutor([deduplication_plugin()])
        context = make_context(executor, store, bus)
        pending = asyncio.get_running_loop().create_future()
        store.set_pending(context.query_key, pending)
        core = CoreCalls()

        running = asyncio.ensure_future(executor.execute_middleware(OperationType.READ, context, core))
        await asyncio.sleep(0)
        pending.set_result(Response(status=200, data="shared"))
        response = await running

        assert response.data == "shared"
        assert core.count == 0

    @pytest.mark.asyncio
    async def test_own_operation_is_not_shared(self, store, bus):
        executor = PluginExecutor([deduplication_plugin()])
        context = make_context(executor, store, bus)
        core = CoreCalls()

        operation = asyncio.ensure_future(executor.execute_middleware(OperationType.READ, context, core))
        context.pending_operation = operation
        store.set_pending(context.query_key, operation)

        response = await operation
        assert response.data == "fresh"
        assert core.count == 1

    @pytest.mark.asyncio
    async def test_failed_shared_operation_becomes_error(self, store, bus):
        executor = PluginExecutor([deduplication_plugin()])
        context = make_context(executor, store, bus)
        pending = asyncio.get_running_loop().create_future()
        pending.set_exception(ValueError("upstream failure"))
        store.set_pending(context.query_key, pending)

        response = await executor.execute_middleware(OperationType.READ, context, CoreCalls())

        assert isinstance(response.error, ValueError)

    @pytest.mark.asyncio
    async def test_writes_not_shared_by_default(self, store, bus):
        executor = PluginExecutor([deduplication_plugin()])
        context = make_context(executor, store, bus, operation_type=OperationType.WRITE, method="POST")
        pending = asyncio.get_running_loop().create_future()
        store.set_pending(context.query_key, pending)
        core = CoreCalls()

        await executor.execute_middleware(OperationType.WRITE, context, core)

        assert core.count == 1
        pending.cancel()

    @pytest.mark.asyncio
    async def test_dedupe_option_disables(self, store, bus):
        executor = PluginExecutor([deduplication_plugin()])
        context = make_context(executor, store, bus, plugin_options={"dedupe": False})
        pending = asyncio.get_running_loop().create_future()
        store.set_pending(context.query_key, pending)
        core = CoreCalls()

        await executor.execute_middleware(OperationType.READ, context, core)

        assert core.count == 1
        pending.cancel()


class TestInvalidationPlugin:
    """Test tag resolution and invalidation after mutations."""

    def _context(self, store, bus, **kwargs):
        executor = PluginExecutor([invalidation_plugin()])
        return make_context(
            executor, store, bus,
            operation_type=OperationType.WRITE,
            method="POST",
            tags=["posts", "posts/1"],
            path="posts/1",
            **kwargs
        )

    def test_default_mode_uses_all_tags(self, store, bus):
        assert resolve_tags(self._context(store, bus), "all") == ["posts", "posts/1"]

    def test_self_mode(self, store, bus):
        context = self._context(store, bus, plugin_options={"invalidate": "self"})
        assert resolve_tags(context, "all") == ["posts/1"]

    def test_single_tag(self, store, bus):
        context = self._context(store, bus, plugin_options={"invalidate": "users"})
        assert resolve_tags(context, "all") == ["users"]

    def test_list_with_mode(self, store, bus):
        context = self._context(store, bus, plugin_options={"invalidate": ["users", "all", "posts"]})
        assert resolve_tags(context, "none") == ["users", "posts", "posts/1"]

    def test_none_mode(self, store, bus):
        context = self._context(store, bus, plugin_options={"invalidate": "none"})
        assert resolve_tags(context, "all") == []

    def test_exported_default_mode(self, store, bus):
        context = self._context(store, bus)
        context.plugins.get("invalidation")["set_default_mode"]("none")

        assert context.metadata[DEFAULT_MODE_KEY] == "none"
        assert resolve_tags(context, "all") == []

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            invalidation_plugin("everything")

    @pytest.mark.asyncio
    async def test_successful_write_marks_stale_and_emits(self, store, bus):
        store.set_cache("listing", data=[1], tags=["posts"])
        events = []
        bus.on(INVALIDATE_EVENT, events.append)
        executor = PluginExecutor([invalidation_plugin()])
        context = self._context(store, bus)

        await executor.execute_middleware(OperationType.WRITE, context, CoreCalls())

        assert store.get_cache("listing").is_stale
        assert events == [["posts", "posts/1"]]

    @pytest.mark.asyncio
    async def test_failed_write_does_not_invalidate(self, store, bus):
        store.set_cache("listing", data=[1], tags=["posts"])
        executor = PluginExecutor([invalidation_plugin()])
        context = self._context(store, bus)

        async def failing():
            return Response(status=422, error="invalid")

        await executor.execute_middleware(OperationType.WRITE, context, failing)

        assert not store.get_cache("listing").is_stale

    def test_instance_api_refetch_all(self, store, bus):
        events = []
        bus.on(REFETCH_ALL_EVENT, lambda payload: events.append("all"))
        executor = PluginExecutor([invalidation_plugin()])
        api = executor.build_instance_api(store, bus)

        api["invalidate"]("*")

        assert events == ["all"]

    def test_instance_api_single_tag(self, store, bus):
        store.set_cache("listing", data=[1], tags=["posts"])
        api = PluginExecutor([invalidation_plugin()]).build_instance_api(store, bus)

        api["invalidate"]("posts")

        assert store.get_cache("listing").is_stale


class TestOptimisticPlugin:
    """Test optimistic rewrites around a mutation."""

    def _executor(self):
        return PluginExecutor([invalidation_plugin(), optimistic_plugin()])

    def _context(self, executor, store, bus, optimistic):
        return make_context(
            executor, store, bus,
            operation_type=OperationType.WRITE,
            method="POST",
            query_key=store.create_query_key("posts", "POST"),
            tags=["posts"],
            plugin_options={"optimistic": optimistic},
        )

    @pytest.mark.asyncio
    async def test_applied_before_call_and_confirmed(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1, 2], tags=["posts"])
        seen = []

        async def create():
            entry = store.get_cache(listing)
            seen.append((entry.data, entry.is_optimistic))
            return Response(status=201, data={"id": 3})

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: posts + [3],
        })

        await executor.execute_middleware(OperationType.WRITE, context, create)

        entry = store.get_cache(listing)
        assert seen == [([1, 2, 3], True)]
        assert entry.data == [1, 2, 3]
        assert not entry.is_optimistic
        assert not entry.is_stale

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1, 2], tags=["posts"])
        errors = []

        async def rejected():
            return Response(status=422, error="invalid")

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: posts + [3],
            "on_error": errors.append,
        })

        response = await executor.execute_middleware(OperationType.WRITE, context, rejected)

        entry = store.get_cache(listing)
        assert response.error == "invalid"
        assert entry.data == [1, 2]
        assert not entry.is_optimistic
        assert errors == ["invalid"]

    @pytest.mark.asyncio
    async def test_raising_transport_rolls_back(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1, 2], tags=["posts"])

        async def broken():
            raise RuntimeError("connection reset")

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: [],
        })

        with pytest.raises(RuntimeError):
            await executor.execute_middleware(OperationType.WRITE, context, broken)

        assert store.get_cache(listing).data == [1, 2]

    @pytest.mark.asyncio
    async def test_rollback_can_be_disabled(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1, 2], tags=["posts"])

        async def rejected():
            return Response(status=422, error="invalid")

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: posts + [3],
            "rollback_on_error": False,
        })

        await executor.execute_middleware(OperationType.WRITE, context, rejected)

        assert store.get_cache(listing).data == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_on_success_timing_uses_response(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1, 2], tags=["posts"])
        seen = []

        async def create():
            seen.append(store.get_cache(listing).data)
            return Response(status=201, data=3)

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts, created: posts + [created],
            "timing": "on_success",
        })

        await executor.execute_middleware(OperationType.WRITE, context, create)

        assert seen == [[1, 2]]
        assert store.get_cache(listing).data == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_match_selects_entries(self, store, bus):
        first = store.create_query_key("posts", "GET", {"query": {"page": 1}})
        second = store.create_query_key("posts", "GET", {"query": {"page": 2}})
        store.set_cache(first, data=["a"], tags=["posts"])
        store.set_cache(second, data=["b"], tags=["posts"])

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: posts + ["new"],
            "match": lambda request: request["options"]["query"]["page"] == 1,
        })

        await executor.execute_middleware(OperationType.WRITE, context, CoreCalls())

        assert store.get_cache(first).data == ["a", "new"]
        assert store.get_cache(second).data == ["b"]

    @pytest.mark.asyncio
    async def test_explicit_invalidate_still_applies(self, store, bus):
        listing = store.create_query_key("posts")
        store.set_cache(listing, data=[1], tags=["posts"])

        executor = self._executor()
        context = self._context(executor, store, bus, {
            "tags": ["posts"],
            "updater": lambda posts: posts + [2],
        })
        context.plugin_options["invalidate"] = "all"

        await executor.execute_middleware(OperationType.WRITE, context, CoreCalls())

        assert store.get_cache(listing).is_stale

    @pytest.mark.asyncio
    async def test_update_without_updater_is_a_plugin_error(self, store, bus):
        executor = self._executor()
        context = self._context(executor, store, bus, {"tags": ["posts"]})

        with pytest.raises(PluginError):
            await executor.execute_middleware(OperationType.WRITE, context, CoreCalls())

    def test_requires_invalidation_plugin(self):
        with pytest.raises(PluginDependencyError):
            PluginExecutor([optimistic_plugin()])


class TestRequestLoggingPlugin:
    """Test request and lifecycle logging."""

    @pytest.mark.asyncio
    async def test_logs_request_and_phases(self, store, bus):
        with capture_logs() as logs:
            executor = PluginExecutor([request_logging_plugin(level="info")])
            context = make_context(executor, store, bus)

            response = await executor.execute_middleware(OperationType.READ, context, CoreCalls())
            await executor.execute_lifecycle(LifecyclePhase.SUCCESS, OperationType.READ, context)

        assert response.data == "fresh"
        completed = [log for log in logs if log["event"] == "Request completed"]
        assert len(completed) == 1
        assert completed[0]["status"] == 200
        assert completed[0]["path"] == "posts"
        phases = [log["phase"] for log in logs if log["event"] == "Lifecycle phase"]
        assert phases == ["success"]

    def test_applies_to_every_operation(self):
        plugin = request_logging_plugin()
        assert set(plugin.operations) == set(OperationType)
        assert plugin.priority == 100

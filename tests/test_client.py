"""
Integration tests for the client instance.
Tests controller factories, plugin wiring and isolation between instances.
"""
import asyncio

import pytest

from synapse_query import SynapseClient
from synapse_query.central_cortex.plugins import OperationType
from synapse_query.neurons import (
    cache_plugin,
    deduplication_plugin,
    invalidation_plugin,
    optimistic_plugin,
    queue_purge_plugin,
)
from synapse_query.shared.config import EngineSettings
from synapse_query.shared.schemas import Response


class FakeApi:
    """In-memory posts endpoint."""

    def __init__(self):
        self.posts = [{"id": 1, "title": "first"}]
        self.calls = []

    async def __call__(self, request, token):
        self.calls.append((request["method"], request["path"]))
        await asyncio.sleep(0)
        if request["method"] == "GET":
            return Response(status=200, data=list(self.posts))
        post = dict(request.get("body") or {}, id=len(self.posts) + 1)
        self.posts.append(post)
        return Response(status=201, data=post)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def client(api):
    return SynapseClient(api, plugins=[
        cache_plugin(stale_time=60),
        deduplication_plugin(),
        invalidation_plugin(),
        queue_purge_plugin(),
    ])


class TestFactories:
    """Test controller construction."""

    def test_operation_type_from_method(self, client):
        assert client.operation("posts").operation_type == OperationType.READ
        assert client.operation("posts", "POST").operation_type == OperationType.WRITE

    def test_controllers_share_instance_state(self, client):
        read = client.operation("posts")
        queue = client.queue("posts")
        pages = client.pages("posts", merger=lambda responses: responses)

        assert read.store is queue.store is pages.store is client.store
        assert read.bus is queue.bus is pages.bus is client.bus
        assert read.instance_id == client.id

    def test_queue_concurrency_from_settings(self, api):
        client = SynapseClient(api, settings=EngineSettings(default_concurrency=5))

        assert client.queue("uploads").concurrency == 5
        assert client.queue("uploads", concurrency=1).concurrency == 1

    def test_instance_api(self, client):
        assert callable(client.api["invalidate"])


class TestEndToEnd:
    """Test reads, writes and invalidation across controllers."""

    @pytest.mark.asyncio
    async def test_cached_read(self, client, api):
        first = await client.operation("posts").execute()
        second = await client.operation("posts").execute()

        assert first.data == second.data
        assert api.calls == [("GET", "posts")]

    @pytest.mark.asyncio
    async def test_write_invalidates_mounted_read(self, client, api):
        posts = client.operation("posts")
        await posts.mount()
        await posts.execute()

        created = await client.operation("posts", "POST", request={"body": {"title": "second"}}).execute()
        await posts.join()

        assert created.status == 201
        assert [p["title"] for p in posts.get_state().data] == ["first", "second"]
        assert api.calls == [("GET", "posts"), ("POST", "posts"), ("GET", "posts")]

    @pytest.mark.asyncio
    async def test_manual_invalidation(self, client, api):
        posts = client.operation("posts")
        await posts.mount()
        await posts.execute()

        client.api["invalidate"](["posts"])
        await posts.join()

        assert len(api.calls) == 2

    @pytest.mark.asyncio
    async def test_clients_are_isolated(self, api):
        first = SynapseClient(api, plugins=[cache_plugin(stale_time=60)])
        second = SynapseClient(api, plugins=[cache_plugin(stale_time=60)])

        await first.operation("posts").execute()
        await second.operation("posts").execute()

        assert first.store is not second.store
        assert len(api.calls) == 2

    @pytest.mark.asyncio
    async def test_queue_through_client(self, client, api):
        queue = client.queue("posts")

        responses = await asyncio.gather(*[
            queue.trigger({"body": {"title": f"bulk-{n}"}}) for n in range(4)
        ])

        assert all(r.ok for r in responses)
        assert queue.get_stats().success == 4
        assert len(api.posts) == 5

    @pytest.mark.asyncio
    async def test_optimistic_write_skips_refetch(self, api):
        client = SynapseClient(api, plugins=[
            cache_plugin(stale_time=60),
            invalidation_plugin(),
            optimistic_plugin(),
        ])
        posts = client.operation("posts")
        await posts.mount()
        await posts.execute()

        created = await client.operation("posts", "POST", request={"body": {"title": "second"}}, plugin_options={
            "optimistic": {
                "tags": ["posts"],
                "updater": lambda current: current + [{"id": None, "title": "second"}],
            },
        }).execute()
        await posts.join()

        entry = client.store.get_cache(posts.query_key)
        assert created.status == 201
        assert [p["title"] for p in entry.data] == ["first", "second"]
        assert not entry.is_optimistic
        assert api.calls == [("GET", "posts"), ("POST", "posts")]

"""
Shared fixtures for Synapse Query tests.
"""
import asyncio
from typing import Any, Dict, List, Optional

import pytest

from synapse_query.central_cortex.executor import PluginExecutor
from synapse_query.shared.errors import CancellationError
from synapse_query.shared.metrics_collector import get_metrics_collector
from synapse_query.shared.schemas import Response
from synapse_query.signal_relay.cancellation import CancellationToken
from synapse_query.signal_relay.event_bus import EventBus
from synapse_query.synaptic_vesicle.state_store import CacheStore


class GatedTransport:
    """
    Transport whose calls stay pending until the test resolves them.

    With ``honour_cancel`` set, a call raises CancellationError as soon as its
    token fires, the way a real transport aborting its request would.
    """

    def __init__(self, honour_cancel: bool = True):
        self.honour_cancel = honour_cancel
        self.requests: List[Dict[str, Any]] = []
        self.tokens: List[CancellationToken] = []
        self._gates: List[asyncio.Future] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def __call__(self, request: Dict[str, Any], token: CancellationToken) -> Response:
        gate = asyncio.get_running_loop().create_future()
        self.requests.append(request)
        self.tokens.append(token)
        self._gates.append(gate)

        if self.honour_cancel:
            token.add_callback(
                lambda: gate.done() or gate.set_exception(CancellationError("Aborted"))
            )
        return await gate

    def resolve(self, index: int, data: Any = None, status: int = 200, error: Any = None) -> None:
        self._gates[index].set_result(Response(status=status, data=data, error=error))

    def fail(self, index: int, exc: BaseException) -> None:
        self._gates[index].set_exception(exc)


async def flush(rounds: int = 10) -> None:
    """Let scheduled tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with zeroed metrics."""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def store():
    return CacheStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def executor():
    return PluginExecutor()


@pytest.fixture
def gated_transport():
    return GatedTransport()

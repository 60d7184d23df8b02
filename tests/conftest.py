"""Test configuration and fixtures."""

import random
from typing import List

import pytest

from protocolos.kernel.executor import ExecutionEngine
from protocolos.kernel.lifecycle import LifecycleTracker
from protocolos.kernel.models import Handshake, RequestTemplate, RestApiKeyConfig
from protocolos.protocols.base import RequestPolicy
from protocolos.protocols.dummy import DummyTransport
from protocolos.protocols.registry import ProtocolRegistry


class RecordingSleep:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def transport() -> DummyTransport:
    """Provide a scripted transport with an empty queue (200, empty body)."""
    return DummyTransport()


@pytest.fixture
def policy() -> RequestPolicy:
    """Provide a fixed policy independent of PO_* environment variables."""
    return RequestPolicy(timeout_s=5.0, max_retries=3, retry_base_delay_s=1.0)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def registry(transport: DummyTransport, policy: RequestPolicy) -> ProtocolRegistry:
    return ProtocolRegistry(transport=transport, policy=policy)


@pytest.fixture
def engine(registry: ProtocolRegistry, policy: RequestPolicy, sleep: RecordingSleep) -> ExecutionEngine:
    """Provide an engine with recorded sleeps and seeded jitter."""
    return ExecutionEngine(
        registry,
        tracker=LifecycleTracker(history_size=10),
        policy=policy,
        sleep=sleep,
        rng=random.Random(42),
        strict_placeholders=False,
    )


def make_handshake(*commands: str, handshake_id: str = "hs-1", **kwargs) -> Handshake:
    """Build a REST API key handshake with one request per command."""
    kwargs.setdefault("authentication", RestApiKeyConfig(api_key="sk-test-123", api_url="https://api.example.com"))
    return Handshake(
        id=handshake_id,
        name="Test handshake",
        requests=[RequestTemplate(id=f"req-{i + 1}", title=f"Request {i + 1}", command=c) for i, c in enumerate(commands)],
        **kwargs,
    )


@pytest.fixture
def build_handshake():
    """Provide the handshake factory."""
    return make_handshake

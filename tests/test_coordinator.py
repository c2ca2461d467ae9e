"""Tests for the device cache coordinator/agent protocol."""

import numpy as np
import pytest

from columnar.errors import AgentAcknowledgmentFailure
from columnar.partition import build
from columnar.schema import ColumnType, Schema
from cuda_runtime.coordinator import (
    COORDINATOR_ENDPOINT,
    CacheAgent,
    CacheCoordinator,
    CachePartition,
    CacheState,
    LocalTransport,
    RegisterAgent,
    RetryPolicy,
    UncachePartition,
    ask_with_retry,
)
from cuda_runtime.device_context import DeviceContext
from cuda_runtime.runtime_config import RuntimeConfig

from tests.conftest import FakeBackend

NO_WAIT = RetryPolicy(max_attempts=3, wait_s=0.0)


class FlakyTransport(LocalTransport):
    """Fails the first `failures` sends to each endpoint in `flaky`."""

    def __init__(self, failures, flaky=()):
        super().__init__()
        self.failures = failures
        self.flaky = set(flaky)
        self.attempts = {}

    def send(self, endpoint, message):
        self.attempts[endpoint] = self.attempts.get(endpoint, 0) + 1
        if endpoint in self.flaky and self.attempts[endpoint] <= self.failures:
            raise ConnectionError(f"{endpoint} unreachable")
        return super().send(endpoint, message)


def _cluster(workers=2, transport=None):
    transport = transport or LocalTransport()
    coordinator = CacheCoordinator(transport, NO_WAIT)
    contexts = [DeviceContext(FakeBackend()) for _ in range(workers)]
    agents = [CacheAgent(c.cache, process_id=i) for i, c in enumerate(contexts)]
    for agent in agents:
        agent.register(transport, retry=NO_WAIT)
    return transport, coordinator, contexts, agents


def _put(ctx, partition_id, name="this"):
    ctx.cache.get_or_create_with_transfer(partition_id, name, np.zeros(8, np.uint8), ctx.streams[0])


# ---------------------------------------------------------------------------
# 1. Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_agents_register_under_process_name(self):
        transport, coordinator, _, agents = _cluster(2)
        assert coordinator.agents == {0: "device-cache-agent-0", 1: "device-cache-agent-1"}
        assert agents[0].registered
        assert set(transport.endpoints()) == {
            COORDINATOR_ENDPOINT, "device-cache-agent-0", "device-cache-agent-1",
        }

    def test_register_only_once(self):
        transport, _, _, agents = _cluster(1)
        with pytest.raises(RuntimeError, match="already registered"):
            agents[0].register(transport, retry=NO_WAIT)

    def test_default_process_id(self):
        agent = CacheAgent(DeviceContext(FakeBackend()).cache)
        assert agent.endpoint.startswith("device-cache-agent-")

    def test_register_without_coordinator(self):
        agent = CacheAgent(DeviceContext(FakeBackend()).cache, process_id=5)
        with pytest.raises(AgentAcknowledgmentFailure, match=COORDINATOR_ENDPOINT):
            agent.register(LocalTransport(), retry=NO_WAIT)
        assert not agent.registered


# ---------------------------------------------------------------------------
# 2. Cache / uncache broadcasts
# ---------------------------------------------------------------------------


class TestBroadcast:
    def test_cache_marks_every_worker(self):
        _, coordinator, contexts, _ = _cluster(3)
        coordinator.cache("p1")
        assert all(c.cache.is_persistent("p1") for c in contexts)
        assert coordinator.state("p1") is CacheState.PERSISTENT
        # Marking allocates nothing.
        assert all(len(c.cache) == 0 for c in contexts)

    def test_uncache_evicts_device_copies(self):
        _, coordinator, contexts, _ = _cluster(2)
        coordinator.cache("p1")
        for c in contexts:
            _put(c, "p1", "a")
            _put(c, "p1", "b")
            _put(c, "p2")
        coordinator.uncache("p1")
        for c in contexts:
            assert not c.cache.is_persistent("p1")
            assert set(c.cache.entries_for("p1")) == set()
            assert ("p2", "this") in c.cache
        assert coordinator.state("p1") is CacheState.UNMARKED

    def test_repeated_uncache_is_noop(self):
        _, coordinator, contexts, _ = _cluster(1)
        coordinator.uncache("never-cached")
        coordinator.uncache("never-cached")
        assert coordinator.state("never-cached") is CacheState.UNMARKED

    def test_host_reference_count_is_independent(self):
        _, coordinator, contexts, _ = _cluster(1)
        part = build([1, 2], Schema.primitive(ColumnType.INT), partition_id="p")
        coordinator.cache("p")
        assert part.ref_count == 1
        part.free()
        assert part.is_released

    def test_false_reply_is_fatal(self):
        transport, coordinator, contexts, _ = _cluster(2)
        transport.bind("device-cache-agent-1", lambda message: False)
        with pytest.raises(AgentAcknowledgmentFailure, match="device-cache-agent-1") as info:
            coordinator.cache("p1")
        assert info.value.reply is False
        assert coordinator.state("p1") is CacheState.UNKNOWN

    def test_transport_errors_are_retried(self):
        transport = FlakyTransport(failures=2, flaky={"device-cache-agent-0"})
        _, coordinator, contexts, _ = _cluster(1, transport)
        coordinator.cache("p1")
        assert contexts[0].cache.is_persistent("p1")
        # two failed sends, then the acknowledged one
        assert transport.attempts["device-cache-agent-0"] == 3

    def test_exhausted_retries(self):
        transport = FlakyTransport(failures=10, flaky={"device-cache-agent-0"})
        _, coordinator, contexts, _ = _cluster(1, transport)
        with pytest.raises(AgentAcknowledgmentFailure, match="unreachable") as info:
            coordinator.uncache("p1")
        assert isinstance(info.value.__cause__, ConnectionError)
        assert coordinator.state("p1") is CacheState.UNKNOWN

    def test_recovery_by_rebroadcast(self):
        transport, coordinator, contexts, agents = _cluster(2)
        transport.bind("device-cache-agent-1", lambda message: False)
        with pytest.raises(AgentAcknowledgmentFailure):
            coordinator.cache("p1")
        transport.bind("device-cache-agent-1", agents[1].handle)
        coordinator.cache("p1")
        assert coordinator.state("p1") is CacheState.PERSISTENT


# ---------------------------------------------------------------------------
# 3. Request/reply entry points
# ---------------------------------------------------------------------------


class TestHandlers:
    def test_remote_driver_through_transport(self):
        transport, coordinator, contexts, _ = _cluster(1)
        assert ask_with_retry(transport, COORDINATOR_ENDPOINT, CachePartition("p"), NO_WAIT)
        assert contexts[0].cache.is_persistent("p")
        assert ask_with_retry(transport, COORDINATOR_ENDPOINT, UncachePartition("p"), NO_WAIT)
        assert not contexts[0].cache.is_persistent("p")

    def test_coordinator_accepts_register_message(self):
        coordinator = CacheCoordinator(LocalTransport(), NO_WAIT)
        assert coordinator.handle(RegisterAgent("w9", "device-cache-agent-w9")) is True
        assert coordinator.agents == {"w9": "device-cache-agent-w9"}

    def test_coordinator_rejects_unknown_message(self):
        coordinator = CacheCoordinator(LocalTransport(), NO_WAIT)
        with pytest.raises(TypeError):
            coordinator.handle("hello")

    def test_agent_rejects_unknown_message(self):
        agent = CacheAgent(DeviceContext(FakeBackend()).cache, process_id=0)
        assert agent.handle(RegisterAgent(1, "x")) is False


class TestRetryPolicy:
    def test_from_config(self):
        policy = RetryPolicy.from_config(RuntimeConfig(ack_max_attempts=5, ack_retry_wait_s=0.5))
        assert policy == RetryPolicy(5, 0.5)

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

"""Cluster-wide device cache control: one coordinator, one agent per worker.

The coordinator broadcasts cache/uncache instructions to every registered
agent and requires each of them to acknowledge with True. Agents only flip
the persist-on-device mark of a partition in their process-local
DeviceBufferCache (uncache also evicts its device buffers right away).

Transport is a plain request/reply interface; LocalTransport wires
endpoints together inside one process.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from columnar.errors import AgentAcknowledgmentFailure
from cuda_runtime.device_cache import DeviceBufferCache
from cuda_runtime.runtime_config import DEFAULT_CONFIG, RuntimeConfig

logger = logging.getLogger(__name__)

COORDINATOR_ENDPOINT = "device-cache-coordinator"
AGENT_ENDPOINT_PREFIX = "device-cache-agent-"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegisterAgent:
    agent_id: Any
    endpoint: str


@dataclass(frozen=True)
class CachePartition:
    partition_id: Any


@dataclass(frozen=True)
class UncachePartition:
    partition_id: Any


class CacheState(enum.Enum):
    UNMARKED = "unmarked"
    PERSISTENT = "persistent"
    # A broadcast failed part-way; agents may disagree.
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

Handler = Callable[[Any], Any]


class Transport(Protocol):
    def bind(self, endpoint: str, handler: Handler) -> None: ...

    def send(self, endpoint: str, message: Any) -> Any: ...


class LocalTransport:
    """In-process transport: endpoint name -> handler callable."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def bind(self, endpoint: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[endpoint] = handler

    def unbind(self, endpoint: str) -> None:
        with self._lock:
            self._handlers.pop(endpoint, None)

    def endpoints(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def send(self, endpoint: str, message: Any) -> Any:
        with self._lock:
            handler = self._handlers.get(endpoint)
        if handler is None:
            raise ConnectionError(f"No handler bound to endpoint '{endpoint}'")
        return handler(message)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    wait_s: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    @classmethod
    def from_config(cls, config: RuntimeConfig = DEFAULT_CONFIG) -> RetryPolicy:
        return cls(config.ack_max_attempts, config.ack_retry_wait_s)


def ask_with_retry(
    transport: Transport,
    endpoint: str,
    message: Any,
    retry: RetryPolicy = RetryPolicy(),
) -> Any:
    """Send `message` and require a True reply.

    Transport errors are retried; a reply other than True is final.
    """
    last_exc: BaseException | None = None
    for attempt in range(1, retry.max_attempts + 1):
        try:
            reply = transport.send(endpoint, message)
        except Exception as exc:
            last_exc = exc
            if attempt < retry.max_attempts:
                logger.warning(
                    "Sending %r to '%s' failed (attempt %d/%d): %s",
                    message, endpoint, attempt, retry.max_attempts, exc,
                )
                time.sleep(retry.wait_s)
            continue
        if reply is not True:
            raise AgentAcknowledgmentFailure(endpoint, message, reply=reply)
        return reply
    raise AgentAcknowledgmentFailure(endpoint, message, cause=last_exc) from last_exc


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class CacheCoordinator:
    """Driver-side registry of agents and broadcaster of cache instructions."""

    def __init__(self, transport: Transport, retry: RetryPolicy | None = None,
                 endpoint: str = COORDINATOR_ENDPOINT):
        self._transport = transport
        self._retry = retry or RetryPolicy.from_config()
        self._endpoint = endpoint
        self._agents: dict[Any, str] = {}
        self._states: dict[Any, CacheState] = {}
        self._lock = threading.RLock()
        transport.bind(endpoint, self.handle)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def agents(self) -> dict[Any, str]:
        with self._lock:
            return dict(self._agents)

    def register(self, agent_id: Any, endpoint: str) -> bool:
        with self._lock:
            previous = self._agents.get(agent_id)
            self._agents[agent_id] = endpoint
        if previous is not None and previous != endpoint:
            logger.info("Agent %r re-registered: '%s' -> '%s'", agent_id, previous, endpoint)
        else:
            logger.info("Registered device cache agent %r at '%s'", agent_id, endpoint)
        return True

    def cache(self, partition_id: Any) -> None:
        """Mark a partition persist-on-device on every worker."""
        self._broadcast(CachePartition(partition_id), CacheState.PERSISTENT)

    def uncache(self, partition_id: Any) -> None:
        """Clear the mark on every worker and evict the device copies."""
        self._broadcast(UncachePartition(partition_id), CacheState.UNMARKED)

    def state(self, partition_id: Any) -> CacheState:
        with self._lock:
            return self._states.get(partition_id, CacheState.UNMARKED)

    def handle(self, message: Any) -> bool:
        """Request/reply entry point for remote drivers and agents."""
        if isinstance(message, RegisterAgent):
            return self.register(message.agent_id, message.endpoint)
        if isinstance(message, CachePartition):
            self.cache(message.partition_id)
            return True
        if isinstance(message, UncachePartition):
            self.uncache(message.partition_id)
            return True
        raise TypeError(f"Unsupported coordinator message {message!r}")

    def _broadcast(self, message: CachePartition | UncachePartition, target: CacheState) -> None:
        partition_id = message.partition_id
        with self._lock:
            agents = list(self._agents.items())
            logger.info(
                "Broadcasting %s to %d agent(s)", type(message).__name__, len(agents),
            )
            try:
                for agent_id, endpoint in agents:
                    ask_with_retry(self._transport, endpoint, message, self._retry)
            except AgentAcknowledgmentFailure:
                self._states[partition_id] = CacheState.UNKNOWN
                raise
            if target is CacheState.UNMARKED:
                self._states.pop(partition_id, None)
            else:
                self._states[partition_id] = target


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class CacheAgent:
    """Worker-side handler of cache/uncache instructions for one process."""

    def __init__(self, cache: DeviceBufferCache, process_id: Any = None):
        self._cache = cache
        self._process_id = os.getpid() if process_id is None else process_id
        self._registered = False

    @property
    def process_id(self) -> Any:
        return self._process_id

    @property
    def endpoint(self) -> str:
        return f"{AGENT_ENDPOINT_PREFIX}{self._process_id}"

    @property
    def registered(self) -> bool:
        return self._registered

    def handle(self, message: Any) -> bool:
        if isinstance(message, CachePartition):
            # Only the mark: buffers are created lazily by the next kernel run.
            self._cache.mark_persistent(message.partition_id)
            logger.debug("Partition %r marked persistent on device", message.partition_id)
            return True
        if isinstance(message, UncachePartition):
            self._cache.unmark_persistent(message.partition_id)
            evicted = self._cache.evict_partition(message.partition_id)
            logger.debug(
                "Partition %r unmarked, %d device buffer(s) evicted", message.partition_id, evicted,
            )
            return True
        logger.warning("Agent '%s' ignoring unsupported message %r", self.endpoint, message)
        return False

    def register(
        self,
        transport: Transport,
        coordinator_endpoint: str = COORDINATOR_ENDPOINT,
        retry: RetryPolicy | None = None,
    ) -> None:
        """Bind this agent's endpoint and announce it to the coordinator (once)."""
        if self._registered:
            raise RuntimeError(f"Agent '{self.endpoint}' is already registered")
        transport.bind(self.endpoint, self.handle)
        ask_with_retry(
            transport, coordinator_endpoint,
            RegisterAgent(self._process_id, self.endpoint),
            retry or RetryPolicy.from_config(),
        )
        self._registered = True
        logger.info("Agent '%s' registered with '%s'", self.endpoint, coordinator_endpoint)

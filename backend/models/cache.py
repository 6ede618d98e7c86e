"""Fast shared-state cache with counters, active-sets and run-scoped pub/sub.

The cache is a performance and cross-process coordination layer in front of
the durable OrchestratorRepository. It is never authoritative for values that
affect plan correctness: counters read here are leases of the repository's
values and may be re-seeded from it at any time.

Two adapters implement the OrchestratorCache protocol:
    InMemoryOrchestratorCache: single-process, used by default and in tests.
    RedisOrchestratorCache: redis.asyncio backed, for multi-process deployments.

Key layout (both adapters): "{prefix}:{type}:{id}", e.g.
"orchestrator:agent:5b0c...", "orchestrator:active:<run_id>".

Usage:
    >>> cache = InMemoryOrchestratorCache()
    >>> await cache.add_active_agent("run_1", "agent_1")
    >>> await cache.get_active_agents("run_1")
    ['agent_1']
    >>> await cache.increment_loop_counter("run_1", "task_1")
    1
"""

import asyncio
import contextlib
import time
import uuid
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

from events.types import StreamEvent
from models.schemas import OrchestratorState, SubAgentState

logger = structlog.get_logger(__name__)

EventCallback = Callable[[StreamEvent], Awaitable[None]]

# Maximum number of events retained per run for replay on reconnect.
MAX_RECENT_EVENTS_PER_RUN = 1000


class OrchestratorCache(Protocol):
    """Port for the low-latency cache and pub/sub facility."""

    async def set_orchestrator_state(self, state: OrchestratorState) -> None: ...

    async def get_orchestrator_state(self, run_id: str) -> OrchestratorState | None: ...

    async def delete_orchestrator_state(self, run_id: str) -> None: ...

    async def set_agent_state(self, state: SubAgentState) -> None: ...

    async def get_agent_state(self, agent_id: str) -> SubAgentState | None: ...

    async def delete_agent_state(self, agent_id: str) -> None: ...

    async def add_active_agent(self, run_id: str, agent_id: str) -> None: ...

    async def remove_active_agent(self, run_id: str, agent_id: str) -> bool: ...

    async def get_active_agents(self, run_id: str) -> list[str]: ...

    async def clear_active_agents(self, run_id: str) -> None: ...

    async def increment_loop_counter(self, run_id: str, task_id: str) -> int: ...

    async def get_loop_counter(self, run_id: str, task_id: str) -> int | None: ...

    async def set_loop_counter(self, run_id: str, task_id: str, value: int) -> None: ...

    async def increment_interventions(self, run_id: str) -> int: ...

    async def get_interventions(self, run_id: str) -> int | None: ...

    async def set_interventions(self, run_id: str, value: int) -> None: ...

    async def publish_event(self, run_id: str, event: StreamEvent) -> None: ...

    async def get_recent_events(self, run_id: str, limit: int = 100) -> list[StreamEvent]: ...

    async def subscribe_to_events(self, run_id: str, callback: EventCallback) -> str: ...

    async def unsubscribe_from_events(self, subscription_id: str) -> None: ...

    async def close(self) -> None: ...


def _key(prefix: str, kind: str, ident: str) -> str:
    return f"{prefix}:{kind}:{ident}"


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------


class InMemoryOrchestratorCache:
    """Process-local cache adapter.

    State values are stored as serialized JSON so readers never share mutable
    model instances with writers, matching the Redis adapter's semantics.
    Expiry is lazy: an entry past its TTL is dropped on the next read.

    Attributes:
        prefix: Key namespace.
        ttl_seconds: Expiry for state entries.
    """

    def __init__(self, prefix: str = "orchestrator", ttl_seconds: int = 3600) -> None:
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._values: dict[str, tuple[str, float]] = {}
        self._sets: dict[str, set[str]] = defaultdict(set)
        self._counters: dict[str, int] = {}
        self._events: dict[str, deque[StreamEvent]] = defaultdict(
            lambda: deque(maxlen=MAX_RECENT_EVENTS_PER_RUN)
        )
        self._subscriptions: dict[str, tuple[str, EventCallback]] = {}
        self._lock = asyncio.Lock()

    def _put(self, key: str, payload: str) -> None:
        self._values[key] = (payload, time.monotonic() + self.ttl_seconds)

    def _take(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._values[key]
            return None
        return payload

    # -- state -------------------------------------------------------------

    async def set_orchestrator_state(self, state: OrchestratorState) -> None:
        self._put(_key(self.prefix, "state", state.run_id), state.model_dump_json())

    async def get_orchestrator_state(self, run_id: str) -> OrchestratorState | None:
        payload = self._take(_key(self.prefix, "state", run_id))
        return OrchestratorState.model_validate_json(payload) if payload else None

    async def delete_orchestrator_state(self, run_id: str) -> None:
        self._values.pop(_key(self.prefix, "state", run_id), None)

    async def set_agent_state(self, state: SubAgentState) -> None:
        self._put(_key(self.prefix, "agent", state.id), state.model_dump_json())

    async def get_agent_state(self, agent_id: str) -> SubAgentState | None:
        payload = self._take(_key(self.prefix, "agent", agent_id))
        return SubAgentState.model_validate_json(payload) if payload else None

    async def delete_agent_state(self, agent_id: str) -> None:
        self._values.pop(_key(self.prefix, "agent", agent_id), None)

    # -- active-set --------------------------------------------------------

    async def add_active_agent(self, run_id: str, agent_id: str) -> None:
        self._sets[_key(self.prefix, "active", run_id)].add(agent_id)

    async def remove_active_agent(self, run_id: str, agent_id: str) -> bool:
        key = _key(self.prefix, "active", run_id)
        members = self._sets.get(key)
        if not members or agent_id not in members:
            return False
        members.discard(agent_id)
        if not members:
            del self._sets[key]
        return True

    async def get_active_agents(self, run_id: str) -> list[str]:
        return sorted(self._sets.get(_key(self.prefix, "active", run_id), ()))

    async def clear_active_agents(self, run_id: str) -> None:
        self._sets.pop(_key(self.prefix, "active", run_id), None)

    # -- counters ----------------------------------------------------------

    async def increment_loop_counter(self, run_id: str, task_id: str) -> int:
        key = _key(self.prefix, "loop", f"{run_id}:{task_id}")
        async with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    async def get_loop_counter(self, run_id: str, task_id: str) -> int | None:
        return self._counters.get(_key(self.prefix, "loop", f"{run_id}:{task_id}"))

    async def set_loop_counter(self, run_id: str, task_id: str, value: int) -> None:
        self._counters[_key(self.prefix, "loop", f"{run_id}:{task_id}")] = value

    async def increment_interventions(self, run_id: str) -> int:
        key = _key(self.prefix, "interventions", run_id)
        async with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    async def get_interventions(self, run_id: str) -> int | None:
        return self._counters.get(_key(self.prefix, "interventions", run_id))

    async def set_interventions(self, run_id: str, value: int) -> None:
        self._counters[_key(self.prefix, "interventions", run_id)] = value

    # -- pub/sub -----------------------------------------------------------

    async def publish_event(self, run_id: str, event: StreamEvent) -> None:
        self._events[run_id].append(event)
        callbacks = [cb for rid, cb in self._subscriptions.values() if rid == run_id]
        for callback in callbacks:
            try:
                await callback(event)
            except Exception as e:
                logger.warning(
                    "cache_subscriber_callback_failed",
                    run_id=run_id,
                    event_type=event.type.value,
                    error=str(e),
                )

    async def get_recent_events(self, run_id: str, limit: int = 100) -> list[StreamEvent]:
        events = list(self._events.get(run_id, ()))
        return events[-limit:]

    async def subscribe_to_events(self, run_id: str, callback: EventCallback) -> str:
        subscription_id = uuid.uuid4().hex
        self._subscriptions[subscription_id] = (run_id, callback)
        return subscription_id

    async def unsubscribe_from_events(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        self._subscriptions.clear()


# ---------------------------------------------------------------------------
# Redis adapter
# ---------------------------------------------------------------------------


class RedisOrchestratorCache:
    """redis.asyncio-backed cache adapter.

    Counters use INCR/HINCRBY so increments are atomic across processes.
    Events are PUBLISHed to "{prefix}:events:{run_id}" and also pushed onto a
    capped list "{prefix}:history:{run_id}" so reconnecting observers can
    replay recent activity.

    Attributes:
        client: The Redis client (decode_responses=True).
        prefix: Key namespace.
        ttl_seconds: Expiry applied to state, active-set and history keys.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "orchestrator",
        ttl_seconds: int = 3600,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._listeners: dict[str, tuple[Any, asyncio.Task[None]]] = {}

    @classmethod
    def from_url(
        cls,
        url: str,
        prefix: str = "orchestrator",
        ttl_seconds: int = 3600,
    ) -> "RedisOrchestratorCache":
        """Create an adapter with its own client."""
        client = redis.from_url(url, decode_responses=True)
        return cls(client, prefix=prefix, ttl_seconds=ttl_seconds)

    # -- state -------------------------------------------------------------

    async def set_orchestrator_state(self, state: OrchestratorState) -> None:
        await self.client.setex(
            _key(self.prefix, "state", state.run_id),
            self.ttl_seconds,
            state.model_dump_json(),
        )

    async def get_orchestrator_state(self, run_id: str) -> OrchestratorState | None:
        payload = await self.client.get(_key(self.prefix, "state", run_id))
        return OrchestratorState.model_validate_json(payload) if payload else None

    async def delete_orchestrator_state(self, run_id: str) -> None:
        await self.client.delete(_key(self.prefix, "state", run_id))

    async def set_agent_state(self, state: SubAgentState) -> None:
        await self.client.setex(
            _key(self.prefix, "agent", state.id),
            self.ttl_seconds,
            state.model_dump_json(),
        )

    async def get_agent_state(self, agent_id: str) -> SubAgentState | None:
        payload = await self.client.get(_key(self.prefix, "agent", agent_id))
        return SubAgentState.model_validate_json(payload) if payload else None

    async def delete_agent_state(self, agent_id: str) -> None:
        await self.client.delete(_key(self.prefix, "agent", agent_id))

    # -- active-set --------------------------------------------------------

    async def add_active_agent(self, run_id: str, agent_id: str) -> None:
        key = _key(self.prefix, "active", run_id)
        await self.client.sadd(key, agent_id)
        await self.client.expire(key, self.ttl_seconds)

    async def remove_active_agent(self, run_id: str, agent_id: str) -> bool:
        removed = await self.client.srem(_key(self.prefix, "active", run_id), agent_id)
        return bool(removed)

    async def get_active_agents(self, run_id: str) -> list[str]:
        members = await self.client.smembers(_key(self.prefix, "active", run_id))
        return sorted(members)

    async def clear_active_agents(self, run_id: str) -> None:
        await self.client.delete(_key(self.prefix, "active", run_id))

    # -- counters ----------------------------------------------------------

    async def increment_loop_counter(self, run_id: str, task_id: str) -> int:
        return int(await self.client.hincrby(_key(self.prefix, "loop", run_id), task_id, 1))

    async def get_loop_counter(self, run_id: str, task_id: str) -> int | None:
        value = await self.client.hget(_key(self.prefix, "loop", run_id), task_id)
        return int(value) if value is not None else None

    async def set_loop_counter(self, run_id: str, task_id: str, value: int) -> None:
        await self.client.hset(_key(self.prefix, "loop", run_id), task_id, value)

    async def increment_interventions(self, run_id: str) -> int:
        return int(await self.client.incr(_key(self.prefix, "interventions", run_id)))

    async def get_interventions(self, run_id: str) -> int | None:
        value = await self.client.get(_key(self.prefix, "interventions", run_id))
        return int(value) if value is not None else None

    async def set_interventions(self, run_id: str, value: int) -> None:
        await self.client.set(_key(self.prefix, "interventions", run_id), value)

    # -- pub/sub -----------------------------------------------------------

    async def publish_event(self, run_id: str, event: StreamEvent) -> None:
        payload = event.model_dump_json()
        history_key = _key(self.prefix, "history", run_id)
        await self.client.rpush(history_key, payload)
        await self.client.ltrim(history_key, -MAX_RECENT_EVENTS_PER_RUN, -1)
        await self.client.expire(history_key, self.ttl_seconds)
        await self.client.publish(_key(self.prefix, "events", run_id), payload)

    async def get_recent_events(self, run_id: str, limit: int = 100) -> list[StreamEvent]:
        payloads = await self.client.lrange(_key(self.prefix, "history", run_id), -limit, -1)
        return [StreamEvent.model_validate_json(p) for p in payloads]

    async def subscribe_to_events(self, run_id: str, callback: EventCallback) -> str:
        subscription_id = uuid.uuid4().hex
        channel = _key(self.prefix, "events", run_id)
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)

        async def _listen() -> None:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    await callback(StreamEvent.model_validate_json(message["data"]))
                except Exception as e:
                    logger.warning(
                        "cache_subscriber_callback_failed",
                        run_id=run_id,
                        error=str(e),
                    )

        task = asyncio.create_task(_listen(), name=f"cache_events_{run_id}")
        self._listeners[subscription_id] = (pubsub, task)
        logger.debug("cache_events_subscribed", run_id=run_id, channel=channel)
        return subscription_id

    async def unsubscribe_from_events(self, subscription_id: str) -> None:
        entry = self._listeners.pop(subscription_id, None)
        if entry is None:
            return
        pubsub, task = entry
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await pubsub.unsubscribe()
        await pubsub.aclose()

    async def close(self) -> None:
        for subscription_id in list(self._listeners):
            await self.unsubscribe_from_events(subscription_id)
        await self.client.aclose()


def create_cache(
    backend: str,
    redis_url: str,
    prefix: str,
    ttl_seconds: int,
) -> OrchestratorCache:
    """Build the configured cache adapter.

    Args:
        backend: "memory" or "redis".
        redis_url: Used only for the redis backend.
        prefix: Key namespace.
        ttl_seconds: State expiry.

    Returns:
        An OrchestratorCache implementation.

    Raises:
        ValueError: If the backend name is unknown.
    """
    if backend == "memory":
        return InMemoryOrchestratorCache(prefix=prefix, ttl_seconds=ttl_seconds)
    if backend == "redis":
        return RedisOrchestratorCache.from_url(redis_url, prefix=prefix, ttl_seconds=ttl_seconds)
    raise ValueError(f"Unknown cache backend: {backend}")

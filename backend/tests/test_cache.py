"""Tests for models/cache.py -- in-memory and Redis cache adapters.

The in-memory adapter is exercised directly. The Redis adapter is checked
against a mocked redis.asyncio client for key layout, TTLs and decoding;
no Redis server is needed.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from events.types import StreamEvent, StreamEventType
from models.cache import (
    InMemoryOrchestratorCache,
    RedisOrchestratorCache,
    create_cache,
)
from models.schemas import AgentType, OrchestratorState, OrchestratorStatus, SubAgentState


def _agent(agent_id: str = "agent_1") -> SubAgentState:
    return SubAgentState(
        id=agent_id,
        run_id="run_1",
        task_node_id="task_1",
        agent_type=AgentType.RESEARCH,
        task_description="look things up",
    )


def _event(run_id: str = "run_1", status: str = "executing") -> StreamEvent:
    return StreamEvent(type=StreamEventType.ORCHESTRATOR_STATUS, run_id=run_id, data={"status": status})


# ============================================================================
# In-memory adapter
# ============================================================================


class TestInMemoryState:
    async def test_orchestrator_state_roundtrip(self) -> None:
        cache = InMemoryOrchestratorCache()
        state = OrchestratorState(run_id="run_1", user_id="u1", status=OrchestratorStatus.EXECUTING)

        await cache.set_orchestrator_state(state)
        loaded = await cache.get_orchestrator_state("run_1")

        assert loaded == state
        assert loaded is not state

    async def test_readers_do_not_share_instances(self) -> None:
        cache = InMemoryOrchestratorCache()
        await cache.set_agent_state(_agent())

        loaded = await cache.get_agent_state("agent_1")
        loaded.total_tokens = 999

        assert (await cache.get_agent_state("agent_1")).total_tokens == 0

    async def test_delete(self) -> None:
        cache = InMemoryOrchestratorCache()
        await cache.set_agent_state(_agent())
        await cache.delete_agent_state("agent_1")
        assert await cache.get_agent_state("agent_1") is None

    async def test_expired_entries_dropped(self) -> None:
        cache = InMemoryOrchestratorCache(ttl_seconds=0)
        await cache.set_agent_state(_agent())
        assert await cache.get_agent_state("agent_1") is None


class TestInMemoryActiveSet:
    async def test_add_remove(self) -> None:
        cache = InMemoryOrchestratorCache()
        await cache.add_active_agent("run_1", "b")
        await cache.add_active_agent("run_1", "a")
        await cache.add_active_agent("run_1", "a")

        assert await cache.get_active_agents("run_1") == ["a", "b"]
        assert await cache.remove_active_agent("run_1", "a") is True
        assert await cache.remove_active_agent("run_1", "a") is False
        assert await cache.get_active_agents("run_1") == ["b"]

    async def test_clear(self) -> None:
        cache = InMemoryOrchestratorCache()
        await cache.add_active_agent("run_1", "a")
        await cache.clear_active_agents("run_1")
        assert await cache.get_active_agents("run_1") == []


class TestInMemoryCounters:
    async def test_missing_counter_is_none(self) -> None:
        cache = InMemoryOrchestratorCache()
        assert await cache.get_loop_counter("run_1", "task_1") is None
        assert await cache.get_interventions("run_1") is None

    async def test_concurrent_increments_are_atomic(self) -> None:
        cache = InMemoryOrchestratorCache()
        results = await asyncio.gather(
            *(cache.increment_loop_counter("run_1", "task_1") for _ in range(20))
        )
        assert sorted(results) == list(range(1, 21))
        assert await cache.get_loop_counter("run_1", "task_1") == 20

    async def test_set_then_increment(self) -> None:
        cache = InMemoryOrchestratorCache()
        await cache.set_interventions("run_1", 4)
        assert await cache.increment_interventions("run_1") == 5


class TestInMemoryPubSub:
    async def test_history_and_limit(self) -> None:
        cache = InMemoryOrchestratorCache()
        for status in ("planning", "executing", "completed"):
            await cache.publish_event("run_1", _event(status=status))

        recent = await cache.get_recent_events("run_1", limit=2)
        assert [e.data["status"] for e in recent] == ["executing", "completed"]

    async def test_unsubscribe_stops_delivery(self) -> None:
        cache = InMemoryOrchestratorCache()
        received: list[StreamEvent] = []

        async def on_event(event: StreamEvent) -> None:
            received.append(event)

        sub_id = await cache.subscribe_to_events("run_1", on_event)
        await cache.publish_event("run_1", _event())
        await cache.unsubscribe_from_events(sub_id)
        await cache.publish_event("run_1", _event())

        assert len(received) == 1

    async def test_failing_subscriber_does_not_break_publish(self) -> None:
        cache = InMemoryOrchestratorCache()
        received: list[StreamEvent] = []

        async def broken(event: StreamEvent) -> None:
            raise RuntimeError("boom")

        async def healthy(event: StreamEvent) -> None:
            received.append(event)

        await cache.subscribe_to_events("run_1", broken)
        await cache.subscribe_to_events("run_1", healthy)
        await cache.publish_event("run_1", _event())

        assert len(received) == 1


# ============================================================================
# Redis adapter (mocked client)
# ============================================================================


@pytest.fixture()
def redis_client() -> AsyncMock:
    client = AsyncMock()
    client.pubsub = MagicMock()
    return client


class TestRedisAdapter:
    async def test_state_written_with_ttl(self, redis_client: AsyncMock) -> None:
        cache = RedisOrchestratorCache(redis_client, prefix="orch", ttl_seconds=60)
        state = OrchestratorState(run_id="run_1", user_id="u1")

        await cache.set_orchestrator_state(state)

        redis_client.setex.assert_awaited_once_with("orch:state:run_1", 60, state.model_dump_json())

    async def test_state_decoded(self, redis_client: AsyncMock) -> None:
        agent = _agent()
        redis_client.get.return_value = agent.model_dump_json()
        cache = RedisOrchestratorCache(redis_client)

        loaded = await cache.get_agent_state("agent_1")

        redis_client.get.assert_awaited_once_with("orchestrator:agent:agent_1")
        assert loaded == agent

    async def test_missing_state_is_none(self, redis_client: AsyncMock) -> None:
        redis_client.get.return_value = None
        cache = RedisOrchestratorCache(redis_client)
        assert await cache.get_orchestrator_state("run_1") is None

    async def test_active_set_commands(self, redis_client: AsyncMock) -> None:
        redis_client.srem.return_value = 1
        redis_client.smembers.return_value = {"b", "a"}
        cache = RedisOrchestratorCache(redis_client, ttl_seconds=30)

        await cache.add_active_agent("run_1", "a")
        removed = await cache.remove_active_agent("run_1", "a")
        members = await cache.get_active_agents("run_1")

        redis_client.sadd.assert_awaited_once_with("orchestrator:active:run_1", "a")
        redis_client.expire.assert_awaited_once_with("orchestrator:active:run_1", 30)
        assert removed is True
        assert members == ["a", "b"]

    async def test_loop_counter_uses_hash(self, redis_client: AsyncMock) -> None:
        redis_client.hincrby.return_value = 3
        redis_client.hget.return_value = "3"
        cache = RedisOrchestratorCache(redis_client)

        assert await cache.increment_loop_counter("run_1", "task_1") == 3
        assert await cache.get_loop_counter("run_1", "task_1") == 3
        redis_client.hincrby.assert_awaited_once_with("orchestrator:loop:run_1", "task_1", 1)

    async def test_missing_counter_is_none(self, redis_client: AsyncMock) -> None:
        redis_client.get.return_value = None
        cache = RedisOrchestratorCache(redis_client)
        assert await cache.get_interventions("run_1") is None

    async def test_publish_keeps_history_and_publishes(self, redis_client: AsyncMock) -> None:
        cache = RedisOrchestratorCache(redis_client)
        event = _event()

        await cache.publish_event("run_1", event)

        payload = event.model_dump_json()
        redis_client.rpush.assert_awaited_once_with("orchestrator:history:run_1", payload)
        redis_client.ltrim.assert_awaited_once()
        redis_client.publish.assert_awaited_once_with("orchestrator:events:run_1", payload)

    async def test_recent_events_decoded(self, redis_client: AsyncMock) -> None:
        events = [_event(status="planning"), _event(status="executing")]
        redis_client.lrange.return_value = [e.model_dump_json() for e in events]
        cache = RedisOrchestratorCache(redis_client)

        recent = await cache.get_recent_events("run_1", limit=2)

        redis_client.lrange.assert_awaited_once_with("orchestrator:history:run_1", -2, -1)
        assert [e.data["status"] for e in recent] == ["planning", "executing"]


# ============================================================================
# Factory
# ============================================================================


class TestCreateCache:
    def test_memory(self) -> None:
        cache = create_cache("memory", "redis://unused", "p", 10)
        assert isinstance(cache, InMemoryOrchestratorCache)
        assert cache.prefix == "p"

    def test_redis(self) -> None:
        cache = create_cache("redis", "redis://localhost:6379/0", "p", 10)
        assert isinstance(cache, RedisOrchestratorCache)
        assert cache.ttl_seconds == 10

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown cache backend"):
            create_cache("memcached", "", "p", 10)

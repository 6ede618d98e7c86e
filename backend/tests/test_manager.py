"""Tests for orchestrator/manager.py -- sub-agent spawn, control and cleanup.

Agents are ScriptedRunner instances supplied through the manager's runner
factory, so these tests exercise the manager's bookkeeping, not the LLM loop.
"""

import asyncio
from typing import Any

import pytest

from events.distributor import EventDistributor
from events.types import SubAgentEvent, SubAgentEventType
from metrics import RunMetricsCollector
from models.cache import InMemoryOrchestratorCache
from models.database import OrchestratorRepository
from models.schemas import (
    AgentType,
    SpawnAgentConfig,
    SubAgentState,
    SubAgentStatus,
    TaskNode,
    TaskNodeStatus,
)
from orchestrator.loop_guard import LoopGuard
from orchestrator.manager import AgentSpawnError, SubAgentManager
from tests.conftest import RecordingWriter, RunnerScript, wait_until


def _config(node: TaskNode) -> SpawnAgentConfig:
    return SpawnAgentConfig(
        task_node_id=node.id,
        agent_type=node.agent_type,
        task_description=node.description,
    )


# ============================================================================
# Construction and spawning
# ============================================================================


class TestSpawn:
    def test_requires_llm_and_tools_without_factory(
        self,
        repository: OrchestratorRepository,
        cache: InMemoryOrchestratorCache,
        distributor: EventDistributor,
    ) -> None:
        with pytest.raises(ValueError, match="llm_client and tool_invoker"):
            SubAgentManager(repository, cache, distributor)

    def test_default_factory_requires_llm_and_tools(self, manager: SubAgentManager) -> None:
        state = SubAgentState(run_id="run_1", task_node_id="t", agent_type=AgentType.GENERAL, task_description="x")
        config = SpawnAgentConfig(task_node_id="t", agent_type=AgentType.GENERAL, task_description="x")

        with pytest.raises(ValueError, match="llm_client and tool_invoker"):
            manager._default_runner_factory(state, config)

    async def test_unknown_node(self, manager: SubAgentManager, seed_plan: Any) -> None:
        await seed_plan("run_1", ("a", "first", []))
        config = SpawnAgentConfig(task_node_id="ghost", agent_type=AgentType.GENERAL, task_description="x")

        with pytest.raises(AgentSpawnError, match="Task node not found: ghost"):
            await manager.spawn_agent("run_1", config)

    async def test_unknown_run(self, manager: SubAgentManager) -> None:
        config = SpawnAgentConfig(task_node_id="t", agent_type=AgentType.GENERAL, task_description="x")
        with pytest.raises(AgentSpawnError, match="Task node not found"):
            await manager.spawn_agent("no_such_run", config)

    async def test_dependencies_must_be_completed(
        self, manager: SubAgentManager, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []), ("b", "second", ["a"]))
        a, b = plan.nodes

        with pytest.raises(AgentSpawnError, match=f"Dependencies not completed: {a.id}"):
            await manager.spawn_agent("run_1", _config(b))

        await repository.update_task_node_status(a.id, TaskNodeStatus.COMPLETED)
        handle = await manager.spawn_agent("run_1", _config(b))
        assert (await handle.wait_for_completion()).success is True

    async def test_node_must_be_pending(
        self, manager: SubAgentManager, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        node = plan.nodes[0]
        await repository.update_task_node_status(node.id, TaskNodeStatus.IN_PROGRESS)

        with pytest.raises(AgentSpawnError, match=f"Task node is not pending: {node.id} \\(in_progress\\)"):
            await manager.spawn_agent("run_1", _config(node))

        assert await manager.get_active_agents("run_1") == []
        assert await repository.get_sub_agents_by_run("run_1") == []

    async def test_spawn_persists_before_running(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        cache: InMemoryOrchestratorCache,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.gates["first"] = asyncio.Event()
        plan = await seed_plan("run_1", ("a", "first", []))

        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        stored = await repository.get_sub_agent(handle.id)
        assert stored.task_node_id == plan.nodes[0].id
        assert await cache.get_active_agents("run_1") == [handle.id]
        assert (await repository.get_orchestrator_state("run_1")).active_agent_ids == [handle.id]
        assert (await cache.get_agent_state(handle.id)) is not None

        runner_script.gates["first"].set()
        await handle.wait_for_completion()


# ============================================================================
# Concurrency and the active-set
# ============================================================================


class TestActiveSet:
    async def test_concurrent_agents_enter_and_leave(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        cache: InMemoryOrchestratorCache,
        runner_script: RunnerScript,
    ) -> None:
        plan = await seed_plan("run_1", ("a", "one", []), ("b", "two", []), ("c", "three", []))
        for node in plan.nodes:
            runner_script.gates[node.description] = asyncio.Event()

        handles = await asyncio.gather(*(manager.spawn_agent("run_1", _config(n)) for n in plan.nodes))
        ids = [h.id for h in handles]

        assert sorted(await cache.get_active_agents("run_1")) == sorted(ids)
        assert len(await manager.get_active_agents("run_1")) == 3
        assert await manager.has_active_agents("run_1") is True

        for gate in runner_script.gates.values():
            gate.set()
        results = await manager.wait_for_agents(ids)

        assert all(r.success for r in results.values())
        assert [results[h.id].output for h in handles] == ["result of one", "result of two", "result of three"]
        assert await cache.get_active_agents("run_1") == []
        assert (await repository.get_orchestrator_state("run_1")).active_agent_ids == []
        assert await manager.has_active_agents("run_1") is False
        assert manager.in_process_agent_count() == 0

    async def test_cleanup_is_idempotent(
        self, manager: SubAgentManager, seed_plan: Any, metrics_collector: RunMetricsCollector
    ) -> None:
        metrics_collector.start("run_1")
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))
        await handle.wait_for_completion()

        assert await manager.cleanup_agent(handle.id) is False
        data = metrics_collector.get("run_1")
        assert data.agents_spawned == 1
        assert data.agents_completed == 1


# ============================================================================
# Events
# ============================================================================


class TestEvents:
    async def test_writers_see_agent_events_in_order(
        self, manager: SubAgentManager, seed_plan: Any, distributor: EventDistributor
    ) -> None:
        writer = RecordingWriter()
        distributor.register_writer("run_1", writer)
        plan = await seed_plan("run_1", ("a", "first", []))

        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))
        await handle.wait_for_completion()

        assert writer.types() == ["agent.reasoning", "agent.token", "agent.terminated"]
        assert all(e.agent_id == handle.id for e in writer.events)
        assert writer.events[-1].data["reason"] == "completed"
        assert writer.events[-1].data["taskId"] == plan.nodes[0].id

    async def test_handle_callbacks(
        self, manager: SubAgentManager, seed_plan: Any, runner_script: RunnerScript
    ) -> None:
        runner_script.gates["first"] = asyncio.Event()
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))
        received: list[SubAgentEvent] = []

        async def broken(event: SubAgentEvent) -> None:
            raise RuntimeError("callback bug")

        async def record(event: SubAgentEvent) -> None:
            received.append(event)

        handle.on_event(broken)
        handle.on_event(record)
        runner_script.gates["first"].set()
        await handle.wait_for_completion()

        statuses = [e.data["status"] for e in received if e.type == SubAgentEventType.STATUS]
        assert statuses[-1] == "completed"

    async def test_cache_tracks_live_status(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        cache: InMemoryOrchestratorCache,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.gates["first"] = asyncio.Event()
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        async def is_running() -> bool:
            state = await cache.get_agent_state(handle.id)
            return state is not None and state.status == SubAgentStatus.RUNNING

        await wait_until(is_running)
        runner_script.gates["first"].set()
        await handle.wait_for_completion()
        assert (await cache.get_agent_state(handle.id)).status == SubAgentStatus.COMPLETED


# ============================================================================
# Control
# ============================================================================


class TestControl:
    async def test_guidance_reaches_live_agent(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.gates["first"] = asyncio.Event()
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        assert await handle.send_guidance("be brief") is True

        assert runner_script.runner_for(handle.id).guidance == ["be brief"]
        assert (await repository.get_sub_agent(handle.id)).pending_guidance == "be brief"
        runner_script.gates["first"].set()
        await handle.wait_for_completion()

    async def test_cancel_hanging_agent(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.outcomes["first"] = ["hang"]
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        assert await handle.cancel("plan changed") is True
        result = await handle.wait_for_completion()

        assert result.success is False
        assert result.error == "Agent was cancelled"
        assert runner_script.runner_for(handle.id).cancel_reasons == ["plan changed"]
        assert (await repository.get_sub_agent(handle.id)).status == SubAgentStatus.CANCELLED

    async def test_cancel_all_agents(
        self, manager: SubAgentManager, seed_plan: Any, runner_script: RunnerScript
    ) -> None:
        runner_script.outcomes = {"one": ["hang"], "two": ["hang"]}
        plan = await seed_plan("run_1", ("a", "one", []), ("b", "two", []))
        handles = [await manager.spawn_agent("run_1", _config(n)) for n in plan.nodes]

        assert await manager.cancel_all_agents("run_1", "run aborted") == 2
        results = await manager.wait_for_agents([h.id for h in handles])
        assert all(r.error == "Agent was cancelled" for r in results.values())

    async def test_unregistered_agents_are_noops(self, manager: SubAgentManager) -> None:
        assert await manager.send_guidance("ghost", "hello") is False
        assert await manager.cancel_agent("ghost", "bye") is False
        assert await manager.get_agent("ghost") is None
        assert await manager.get_agent_state("ghost") is None

    async def test_evicted_agent_gets_read_only_handle(
        self, manager: SubAgentManager, seed_plan: Any
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        live = await manager.spawn_agent("run_1", _config(plan.nodes[0]))
        await live.wait_for_completion()

        handle = await manager.get_agent(live.id)

        assert handle.read_only is True
        assert handle.task_node_id == plan.nodes[0].id
        assert await handle.send_guidance("too late") is False
        assert await handle.cancel("too late") is False
        handle.on_event(lambda event: None)()
        assert (await handle.get_state()).status == SubAgentStatus.COMPLETED
        assert (await handle.wait_for_completion()).output is None


# ============================================================================
# Failures and waiting
# ============================================================================


class TestFailures:
    async def test_runner_exception_becomes_failed(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.outcomes["first"] = ["raise"]
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        result = await handle.wait_for_completion()

        assert result.success is False
        assert result.error == "runner exploded"
        assert (await repository.get_sub_agent(handle.id)).status == SubAgentStatus.FAILED

    async def test_scripted_failure(
        self, manager: SubAgentManager, seed_plan: Any, runner_script: RunnerScript
    ) -> None:
        runner_script.outcomes["first"] = ["fail"]
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        result = await handle.wait_for_completion()
        assert result.error == "scripted failure"

    async def test_wait_for_unknown_agents(self, manager: SubAgentManager) -> None:
        results = await manager.wait_for_agents(["nope"])
        assert results["nope"].success is False
        assert results["nope"].error == "Agent not found: nope"

    async def test_run_summary(
        self, manager: SubAgentManager, seed_plan: Any, runner_script: RunnerScript
    ) -> None:
        runner_script.tokens = 7
        runner_script.outcomes["bad"] = ["fail"]
        plan = await seed_plan("run_1", ("a", "good", []), ("b", "bad", []))
        handles = [await manager.spawn_agent("run_1", _config(n)) for n in plan.nodes]
        await manager.wait_for_agents([h.id for h in handles])

        summary = await manager.get_run_summary("run_1")

        assert summary["total"] == 2
        assert summary["completed"] == 1
        assert summary["failed"] == 1
        assert summary["active"] == 0
        assert {a["status"] for a in summary["agents"]} == {"completed", "failed"}


# ============================================================================
# Recovery and shutdown
# ============================================================================


class TestRecovery:
    async def test_reconcile_marks_orphans_failed(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        cache: InMemoryOrchestratorCache,
        loop_guard: LoopGuard,
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        node = plan.nodes[0]
        orphan = SubAgentState(
            run_id="run_1",
            task_node_id=node.id,
            agent_type=AgentType.GENERAL,
            task_description="first",
        )
        await repository.create_sub_agent(orphan)
        await repository.update_sub_agent_status(orphan.id, SubAgentStatus.RUNNING)
        await cache.add_active_agent("run_1", orphan.id)
        await cache.add_active_agent("run_1", "stale_agent")
        await repository.increment_retry_count(node.id)

        orphaned = await manager.reconcile_on_startup(loop_guard)

        assert orphaned == 1
        assert (await repository.get_sub_agent(orphan.id)).status == SubAgentStatus.FAILED
        assert await cache.get_active_agents("run_1") == []
        assert await cache.get_loop_counter("run_1", node.id) == 1

    async def test_shutdown_cancels_running_agents(
        self,
        manager: SubAgentManager,
        seed_plan: Any,
        repository: OrchestratorRepository,
        runner_script: RunnerScript,
    ) -> None:
        runner_script.outcomes["first"] = ["hang"]
        plan = await seed_plan("run_1", ("a", "first", []))
        handle = await manager.spawn_agent("run_1", _config(plan.nodes[0]))

        await manager.shutdown()

        assert manager.in_process_agent_count() == 0
        assert runner_script.runner_for(handle.id).cancel_reasons == ["Manager shutting down"]
        assert (await repository.get_sub_agent(handle.id)).status == SubAgentStatus.CANCELLED

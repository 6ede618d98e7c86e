"""Tests for models/database.py -- the durable SQLite repository.

Each test gets a fresh database file under pytest's tmp_path.
"""

from typing import Any

import pytest

from models.database import OrchestratorRepository, RepositoryError
from models.schemas import (
    AgentMessage,
    AgentType,
    Artifact,
    ArtifactType,
    OrchestratorStatus,
    ReasoningStep,
    ReasoningStepType,
    SubAgentState,
    SubAgentStatus,
    TaskNodeStatus,
    TaskPlanStatus,
    ToolCallRecord,
)


def _agent(run_id: str = "run_1", agent_id: str = "agent_1") -> SubAgentState:
    return SubAgentState(
        id=agent_id,
        run_id=run_id,
        task_node_id="task_1",
        agent_type=AgentType.CODING,
        task_description="write code",
        upstream_context="## Result from: earlier\n{}",
        additional_tools=["calculate"],
    )


# ============================================================================
# Initialization
# ============================================================================


class TestInit:
    async def test_creates_parent_directory(self, tmp_path: Any) -> None:
        repo = OrchestratorRepository(str(tmp_path / "nested" / "dir" / "db.sqlite"))
        await repo.init()
        assert (tmp_path / "nested" / "dir" / "db.sqlite").exists()

    async def test_init_is_idempotent(self, repository: OrchestratorRepository) -> None:
        await repository.init()
        await repository.create_orchestrator_state("run_1", "u1")
        await repository.init()
        assert await repository.get_orchestrator_state("run_1") is not None


# ============================================================================
# Plans and nodes
# ============================================================================


class TestPlans:
    async def test_plan_with_nodes(self, seed_plan: Any, repository: OrchestratorRepository) -> None:
        plan = await seed_plan("run_1", ("a", "first", []), ("b", "second", ["a"]))

        loaded = await repository.get_plan(plan.id)
        assert loaded.run_id == "run_1"
        assert loaded.status == TaskPlanStatus.EXECUTING
        assert [n.id for n in loaded.nodes] == [n.id for n in plan.nodes]

    async def test_missing_plan(self, repository: OrchestratorRepository) -> None:
        assert await repository.get_plan("nope") is None
        assert await repository.get_plan_by_run_id("nope") is None

    async def test_node_status_stamps_completed_at(
        self, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        node_id = plan.nodes[0].id

        await repository.update_task_node_status(node_id, TaskNodeStatus.COMPLETED)
        assert (await repository.get_task_node(node_id)).completed_at is not None

        await repository.update_task_node_status(node_id, TaskNodeStatus.PENDING)
        assert (await repository.get_task_node(node_id)).completed_at is None

    async def test_node_result_roundtrip(
        self, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        node_id = plan.nodes[0].id

        await repository.update_task_node_result(node_id, {"items": [1, 2, 3]})
        assert (await repository.get_task_node(node_id)).result == {"items": [1, 2, 3]}

    async def test_update_node_leaves_none_fields(
        self, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []), ("b", "second", []))
        a, b = plan.nodes

        await repository.update_task_node(b.id, dependencies=[a.id])

        node = await repository.get_task_node(b.id)
        assert node.dependencies == [a.id]
        assert node.description == "second"
        assert node.agent_type == AgentType.GENERAL

    async def test_retry_counts_for_run(
        self, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []), ("b", "second", []))
        a, b = plan.nodes

        assert await repository.increment_retry_count(a.id) == 1
        assert await repository.increment_retry_count(a.id) == 2

        assert await repository.get_retry_counts("run_1") == {a.id: 2, b.id: 0}
        assert await repository.get_retry_count("missing") == 0


# ============================================================================
# Sub-agents
# ============================================================================


class TestSubAgents:
    async def test_create_and_get(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent())

        loaded = await repository.get_sub_agent("agent_1")
        assert loaded.status == SubAgentStatus.INITIALIZING
        assert loaded.upstream_context.startswith("## Result from")
        assert loaded.additional_tools == ["calculate"]

    async def test_status_is_monotonic(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent())

        assert await repository.update_sub_agent_status("agent_1", SubAgentStatus.RUNNING) is True
        assert await repository.update_sub_agent_status("agent_1", SubAgentStatus.COMPLETED) is True
        assert await repository.update_sub_agent_status("agent_1", SubAgentStatus.FAILED) is False

        loaded = await repository.get_sub_agent("agent_1")
        assert loaded.status == SubAgentStatus.COMPLETED
        assert loaded.completed_at is not None

    async def test_appends(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent())

        await repository.append_message("agent_1", AgentMessage(role="user", content="hi"))
        await repository.append_message("agent_1", AgentMessage(role="assistant", content="hello"))
        await repository.append_tool_call(
            "agent_1", ToolCallRecord(run_id="run_1", tool_id="calculate", status="success")
        )
        await repository.append_reasoning_step(
            "agent_1", ReasoningStep(type=ReasoningStepType.THINKING, content="hmm")
        )
        await repository.append_artifact(
            "agent_1", Artifact(type=ArtifactType.CODE, name="code_python_1", content={"code": "x"})
        )

        loaded = await repository.get_sub_agent("agent_1")
        assert [m.content for m in loaded.messages] == ["hi", "hello"]
        assert loaded.tool_calls[0].tool_id == "calculate"
        assert loaded.reasoning_steps[0].content == "hmm"
        assert loaded.artifacts[0].name == "code_python_1"

    async def test_guidance(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent())

        await repository.set_guidance("agent_1", "focus on tests")
        assert (await repository.get_sub_agent("agent_1")).pending_guidance == "focus on tests"

        await repository.clear_guidance("agent_1")
        assert (await repository.get_sub_agent("agent_1")).pending_guidance is None

    async def test_metrics_accumulate(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent())
        await repository.update_sub_agent_metrics("agent_1", 100, 0.01)
        await repository.update_sub_agent_metrics("agent_1", 50, 0.02)

        loaded = await repository.get_sub_agent("agent_1")
        assert loaded.total_tokens == 150
        assert loaded.total_cost == pytest.approx(0.03)

    async def test_active_sub_agents(self, repository: OrchestratorRepository) -> None:
        await repository.create_sub_agent(_agent(agent_id="a1"))
        await repository.create_sub_agent(_agent(agent_id="a2"))
        await repository.create_sub_agent(_agent(run_id="run_2", agent_id="a3"))
        await repository.update_sub_agent_status("a2", SubAgentStatus.COMPLETED)

        assert {a.id for a in await repository.get_active_sub_agents()} == {"a1", "a3"}
        assert [a.id for a in await repository.get_active_sub_agents("run_1")] == ["a1"]
        assert [a.id for a in await repository.get_sub_agents_by_run("run_1")] == ["a1", "a2"]


# ============================================================================
# Orchestrator state
# ============================================================================


class TestOrchestratorState:
    async def test_create_and_load(self, repository: OrchestratorRepository) -> None:
        created = await repository.create_orchestrator_state("run_1", "u1")
        loaded = await repository.get_orchestrator_state("run_1")

        assert loaded.id == created.id
        assert loaded.status == OrchestratorStatus.IDLE
        assert loaded.plan is None
        assert loaded.active_agent_ids == []

    async def test_duplicate_run_rejected(self, repository: OrchestratorRepository) -> None:
        await repository.create_orchestrator_state("run_1", "u1")
        with pytest.raises(RepositoryError):
            await repository.create_orchestrator_state("run_1", "u1")

    async def test_plan_and_loop_counters_attached(
        self, seed_plan: Any, repository: OrchestratorRepository
    ) -> None:
        plan = await seed_plan("run_1", ("a", "first", []))
        await repository.increment_retry_count(plan.nodes[0].id)

        loaded = await repository.get_orchestrator_state("run_1")
        assert loaded.plan.id == plan.id
        assert loaded.loop_counters == {plan.nodes[0].id: 1}

    async def test_active_agents_deduplicated(self, repository: OrchestratorRepository) -> None:
        await repository.create_orchestrator_state("run_1", "u1")
        await repository.add_active_agent("run_1", "a1")
        await repository.add_active_agent("run_1", "a1")
        await repository.add_active_agent("run_1", "a2")
        await repository.remove_active_agent("run_1", "a1")

        loaded = await repository.get_orchestrator_state("run_1")
        assert loaded.active_agent_ids == ["a2"]

    async def test_status_and_live_runs(self, repository: OrchestratorRepository) -> None:
        await repository.create_orchestrator_state("run_1", "u1")
        await repository.create_orchestrator_state("run_2", "u1")
        await repository.update_orchestrator_status("run_2", OrchestratorStatus.COMPLETED)

        assert await repository.get_live_run_ids() == ["run_1"]
        done = await repository.get_orchestrator_state("run_2")
        assert done.completed_at is not None

    async def test_interventions_and_metrics(self, repository: OrchestratorRepository) -> None:
        await repository.create_orchestrator_state("run_1", "u1")
        assert await repository.increment_interventions("run_1") == 1
        assert await repository.increment_interventions("run_1") == 2
        await repository.update_orchestrator_metrics("run_1", 10, 0.5)

        loaded = await repository.get_orchestrator_state("run_1")
        assert loaded.total_interventions == 2
        assert loaded.total_tokens == 10
        assert loaded.total_cost == pytest.approx(0.5)

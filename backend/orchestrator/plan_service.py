"""Plan lifecycle backed by the durable repository.

TaskPlanService loads plans from the repository, applies the pure relations
and modifications from orchestrator.plan, and writes the outcome back. Invalid
edits raise InvalidPlanModification before anything is written.
"""

from typing import Any

import structlog

from models.database import OrchestratorRepository
from models.schemas import (
    AgentType,
    NewTaskInput,
    TaskInput,
    TaskNode,
    TaskNodeStatus,
    TaskPlan,
    TaskPlanStatus,
)
from orchestrator import plan as plan_model
from orchestrator.plan import (
    CompletionStatus,
    InvalidPlanModification,
    NodePartition,
    PlanValidation,
)

logger = structlog.get_logger(__name__)


class TaskPlanService:
    """Creates, queries and edits task plans.

    Attributes:
        repository: Durable store the service reads and writes.
    """

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    # -----------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------

    def validate_plan(self, tasks: list[TaskInput]) -> PlanValidation:
        return plan_model.validate_plan_input(tasks)

    async def create_plan(
        self,
        run_id: str,
        tasks: list[TaskInput],
        reasoning: str = "",
    ) -> TaskPlan:
        """Validate planner input and persist it as an executing plan.

        Raises:
            InvalidPlanModification: If validation fails. Nothing is persisted.
        """
        validation = self.validate_plan(tasks)
        if not validation.valid:
            raise InvalidPlanModification(f"Invalid plan: {', '.join(validation.errors)}")
        for warning in validation.warnings:
            logger.warning("plan_validation_warning", run_id=run_id, warning=warning)

        plan = await self.repository.create_plan(run_id, reasoning=reasoning)
        nodes = plan_model.build_nodes(plan.id, tasks)
        await self.repository.create_task_nodes(plan.id, nodes)
        await self.repository.update_plan_status(plan.id, TaskPlanStatus.EXECUTING)

        logger.info(
            "plan_created",
            run_id=run_id,
            plan_id=plan.id,
            task_count=len(nodes),
        )
        return plan.model_copy(update={"nodes": nodes, "status": TaskPlanStatus.EXECUTING})

    # -----------------------------------------------------------------
    # Retrieval
    # -----------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> TaskPlan | None:
        return await self.repository.get_plan(plan_id)

    async def get_plan_by_run_id(self, run_id: str) -> TaskPlan | None:
        return await self.repository.get_plan_by_run_id(run_id)

    async def _require_plan(self, plan_id: str) -> TaskPlan:
        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            raise InvalidPlanModification(f"Plan not found: {plan_id}")
        return plan

    async def get_ready_tasks(self, plan_id: str) -> NodePartition:
        return plan_model.partition_nodes(await self._require_plan(plan_id))

    async def is_plan_complete(self, plan_id: str) -> CompletionStatus:
        return plan_model.completion_status(await self._require_plan(plan_id))

    async def get_upstream_context(self, plan_id: str, node_id: str) -> str:
        return plan_model.upstream_context(await self._require_plan(plan_id), node_id)

    async def set_plan_status(self, plan_id: str, status: TaskPlanStatus) -> None:
        await self.repository.update_plan_status(plan_id, status)

    # -----------------------------------------------------------------
    # Node transitions
    # -----------------------------------------------------------------

    async def start_task(self, node_id: str, agent_id: str) -> None:
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.IN_PROGRESS)
        await self.repository.assign_agent_to_node(node_id, agent_id)

    async def complete_task(self, node_id: str, result: Any) -> None:
        await self.repository.update_task_node_result(node_id, result)
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.COMPLETED)

    async def fail_task(self, node_id: str, error: str) -> None:
        await self.repository.update_task_node_result(node_id, {"error": error})
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.FAILED)

    async def cancel_task(self, node_id: str, reason: str) -> None:
        await self.repository.update_task_node_result(node_id, {"cancelled": True, "reason": reason})
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.CANCELLED)

    async def reset_task(self, node_id: str) -> None:
        """Return a node to pending so it can be scheduled again."""
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.PENDING)

    # -----------------------------------------------------------------
    # Modification
    # -----------------------------------------------------------------

    async def add_task(self, plan_id: str, task: NewTaskInput) -> TaskNode:
        current = await self._require_plan(plan_id)
        _, node = plan_model.add_node(current, task)
        await self.repository.create_task_nodes(plan_id, [node])
        await self.repository.touch_plan(plan_id)
        logger.info("plan_task_added", plan_id=plan_id, task_id=node.id)
        return node

    async def remove_task(self, plan_id: str, node_id: str) -> None:
        current = await self._require_plan(plan_id)
        updated = plan_model.remove_node(current, node_id)
        node = updated.get_node(node_id)
        await self.repository.update_task_node_result(node_id, node.result)
        await self.repository.update_task_node_status(node_id, TaskNodeStatus.CANCELLED)
        await self.repository.touch_plan(plan_id)
        logger.info("plan_task_removed", plan_id=plan_id, task_id=node_id)

    async def update_task(
        self,
        plan_id: str,
        node_id: str,
        *,
        description: str | None = None,
        agent_type: AgentType | None = None,
    ) -> TaskNode:
        current = await self._require_plan(plan_id)
        updated = plan_model.update_node(
            current, node_id, description=description, agent_type=agent_type
        )
        node = updated.get_node(node_id)
        await self.repository.update_task_node(
            node_id, description=node.description, agent_type=node.agent_type
        )
        await self.repository.touch_plan(plan_id)
        logger.info("plan_task_updated", plan_id=plan_id, task_id=node_id)
        return node

    async def reorder_task(self, plan_id: str, node_id: str, dependencies: list[str]) -> TaskNode:
        current = await self._require_plan(plan_id)
        updated = plan_model.reorder_node(current, node_id, dependencies)
        node = updated.get_node(node_id)
        await self.repository.update_task_node(node_id, dependencies=node.dependencies)
        await self.repository.touch_plan(plan_id)
        logger.info("plan_task_reordered", plan_id=plan_id, task_id=node_id)
        return node

    # -----------------------------------------------------------------
    # Analysis
    # -----------------------------------------------------------------

    def get_plan_structure(self, plan: TaskPlan) -> str:
        return plan_model.plan_structure(plan)

    def get_plan_summary(self, plan: TaskPlan) -> str:
        return plan_model.plan_summary(plan)

"""Task DAG relations, validation and modification.

Everything here is pure: functions take a TaskPlan (or planner input) and
return values or new plans. Persistence lives in orchestrator.plan_service.

Modification functions never mutate their input. They return a copy with the
edit applied, or raise InvalidPlanModification and leave the plan as it was.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from models.schemas import (
    AgentType,
    NewTaskInput,
    TaskInput,
    TaskNode,
    TaskNodeStatus,
    TaskPlan,
    TaskPlanStatus,
)

logger = structlog.get_logger()

MAX_RECOMMENDED_TASKS = 10
MAX_RECOMMENDED_ROOTS = 5

_WHITE, _GRAY, _BLACK = 0, 1, 2


class InvalidPlanModification(ValueError):
    """Raised when a plan edit would break the DAG or touch a non-pending node."""


@dataclass
class PlanValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class NodePartition:
    """Nodes bucketed by schedulability. Cancelled nodes count as failed."""

    ready: list[TaskNode] = field(default_factory=list)
    waiting: list[TaskNode] = field(default_factory=list)
    completed: list[TaskNode] = field(default_factory=list)
    failed: list[TaskNode] = field(default_factory=list)


@dataclass
class CompletionStatus:
    complete: bool
    success: bool
    summary: dict[str, int]


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------


def _completed_ids(plan: TaskPlan) -> set[str]:
    return {n.id for n in plan.nodes if n.status == TaskNodeStatus.COMPLETED}


def ready_nodes(plan: TaskPlan) -> list[TaskNode]:
    """Pending nodes whose dependencies are all completed, in plan order."""
    done = _completed_ids(plan)
    return [
        node
        for node in plan.nodes
        if node.status == TaskNodeStatus.PENDING
        and all(dep in done for dep in node.dependencies)
    ]


def is_terminal(plan: TaskPlan) -> bool:
    return plan.status in (TaskPlanStatus.COMPLETED, TaskPlanStatus.FAILED)


def partition_nodes(plan: TaskPlan) -> NodePartition:
    """Split nodes into ready, waiting, completed and failed buckets.

    In-progress nodes and pending nodes with unfinished dependencies are
    waiting; cancelled nodes land in failed.
    """
    done = _completed_ids(plan)
    partition = NodePartition()
    for node in plan.nodes:
        if node.status == TaskNodeStatus.COMPLETED:
            partition.completed.append(node)
        elif node.status in (TaskNodeStatus.FAILED, TaskNodeStatus.CANCELLED):
            partition.failed.append(node)
        elif node.status == TaskNodeStatus.PENDING and all(
            dep in done for dep in node.dependencies
        ):
            partition.ready.append(node)
        else:
            partition.waiting.append(node)
    return partition


def completion_status(plan: TaskPlan) -> CompletionStatus:
    """Report whether every node has finished and whether all succeeded."""
    completed = sum(1 for n in plan.nodes if n.status == TaskNodeStatus.COMPLETED)
    failed = sum(
        1 for n in plan.nodes if n.status in (TaskNodeStatus.FAILED, TaskNodeStatus.CANCELLED)
    )
    pending = sum(
        1 for n in plan.nodes if n.status in (TaskNodeStatus.PENDING, TaskNodeStatus.IN_PROGRESS)
    )
    return CompletionStatus(
        complete=pending == 0,
        success=pending == 0 and failed == 0,
        summary={"completed": completed, "failed": failed, "pending": pending},
    )


def dependents_of(plan: TaskPlan, node_id: str) -> list[TaskNode]:
    return [n for n in plan.nodes if node_id in n.dependencies]


def plan_structure(plan: TaskPlan) -> Literal["sequential", "dag"]:
    """Classify the plan as a simple chain or a true DAG.

    A plan is a DAG if any node fans out to several dependents, any node joins
    several dependencies, or there is more than one root.
    """
    has_fan_out = any(len(dependents_of(plan, node.id)) > 1 for node in plan.nodes)
    has_join = any(len(node.dependencies) > 1 for node in plan.nodes)
    roots = [n for n in plan.nodes if not n.dependencies]
    if has_fan_out or has_join or len(roots) > 1:
        return "dag"
    return "sequential"


def plan_summary(plan: TaskPlan) -> str:
    """Human-readable listing of a plan for planner prompts and logs."""
    lines = []
    for index, node in enumerate(plan.nodes, start=1):
        if node.dependencies:
            deps = f" (depends on: {len(node.dependencies)} tasks)"
        else:
            deps = " (no dependencies)"
        lines.append(f"{index}. [{node.agent_type.value}] {node.description}{deps}")
    header = f"Plan ({plan_structure(plan)}): {len(plan.nodes)} tasks"
    return "\n".join([header, *lines])


def upstream_context(plan: TaskPlan, node_id: str) -> str:
    """Concatenate the results of a node's completed dependencies.

    Raises:
        InvalidPlanModification: If the node is not in the plan.
    """
    node = plan.get_node(node_id)
    if node is None:
        raise InvalidPlanModification(f"Task node not found: {node_id}")

    sections = []
    for dep_id in node.dependencies:
        dep = plan.get_node(dep_id)
        if dep is None or dep.status != TaskNodeStatus.COMPLETED or dep.result is None:
            continue
        rendered = json.dumps(dep.result, indent=2, default=str)
        sections.append(f"## Result from: {dep.description}\n{rendered}")
    return "\n\n".join(sections)


def execution_waves(plan: TaskPlan) -> list[list[TaskNode]]:
    """Group nodes into topological layers.

    All dependencies of a node in layer N sit in layers before N; layer 0
    has no dependencies. Dependencies outside the plan are ignored.
    """
    node_ids = {n.id for n in plan.nodes}
    resolved: set[str] = set()
    remaining = [n for n in plan.nodes]
    waves: list[list[TaskNode]] = []

    for _ in range(len(plan.nodes) + 1):
        if not remaining:
            break

        wave = [
            node
            for node in remaining
            if all(dep in resolved for dep in node.dependencies if dep in node_ids)
        ]
        if not wave:
            logger.warning(
                "execution_waves_cycle_detected",
                plan_id=plan.id,
                remaining=[n.id for n in remaining],
            )
            waves.append(remaining)
            break

        waves.append(wave)
        resolved.update(n.id for n in wave)
        remaining = [n for n in remaining if n.id not in resolved]

    return waves


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def detect_cycle(graph: dict[str, list[str]]) -> bool:
    """Return True if the dependency graph contains a cycle.

    Args:
        graph: Mapping of node id to the ids it depends on. Edges to ids that
            are not keys of the mapping are ignored.
    """
    colors = {node_id: _WHITE for node_id in graph}

    def visit(node_id: str) -> bool:
        colors[node_id] = _GRAY
        for dep in graph.get(node_id, []):
            if dep not in colors:
                continue
            if colors[dep] == _GRAY:
                return True
            if colors[dep] == _WHITE and visit(dep):
                return True
        colors[node_id] = _BLACK
        return False

    return any(colors[node_id] == _WHITE and visit(node_id) for node_id in graph)


def validate_plan_input(tasks: list[TaskInput]) -> PlanValidation:
    """Check planner output before any node is created.

    Returns:
        PlanValidation with every error and warning found; valid is False
        if there is at least one error.
    """
    if not tasks:
        return PlanValidation(valid=False, errors=["Plan must have at least one task"])

    errors: list[str] = []
    warnings: list[str] = []
    agent_types = {t.value for t in AgentType}

    temp_ids: set[str] = set()
    for task in tasks:
        if task.temp_id in temp_ids:
            errors.append(f"Duplicate tempId: {task.temp_id}")
        temp_ids.add(task.temp_id)

        if task.agent_type not in agent_types:
            errors.append(f"Invalid agent type: {task.agent_type} for task {task.temp_id}")

    for task in tasks:
        for dep in task.dependencies:
            if dep not in temp_ids:
                errors.append(f"Unknown dependency: {dep} in task {task.temp_id}")
            if dep == task.temp_id:
                errors.append(f"Task {task.temp_id} depends on itself")

    if detect_cycle({t.temp_id: list(t.dependencies) for t in tasks}):
        errors.append("Plan contains a cycle - not a valid DAG")

    if len(tasks) > MAX_RECOMMENDED_TASKS:
        warnings.append(
            f"Plan has more than {MAX_RECOMMENDED_TASKS} tasks - consider breaking it down"
        )

    roots = [t for t in tasks if not t.dependencies]
    if len(roots) > MAX_RECOMMENDED_ROOTS:
        warnings.append(
            f"{len(roots)} tasks have no dependencies - ensure parallelism is intentional"
        )

    return PlanValidation(valid=not errors, errors=errors, warnings=warnings)


def build_nodes(plan_id: str, tasks: list[TaskInput]) -> list[TaskNode]:
    """Create nodes for validated input, rewriting temp ids to real ids.

    Raises:
        InvalidPlanModification: If a dependency names an unknown temp id.
    """
    nodes = [
        TaskNode(plan_id=plan_id, description=t.description, agent_type=AgentType(t.agent_type))
        for t in tasks
    ]
    id_map = {task.temp_id: node.id for task, node in zip(tasks, nodes, strict=True)}
    for task, node in zip(tasks, nodes, strict=True):
        for dep in task.dependencies:
            if dep not in id_map:
                raise InvalidPlanModification(f"Unknown dependency: {dep}")
            node.dependencies.append(id_map[dep])
    return nodes


# ---------------------------------------------------------------------------
# Modification
# ---------------------------------------------------------------------------


def _require_pending(plan: TaskPlan, node_id: str) -> TaskNode:
    node = plan.get_node(node_id)
    if node is None:
        raise InvalidPlanModification(f"Task not found: {node_id}")
    if node.status != TaskNodeStatus.PENDING:
        raise InvalidPlanModification(f"Task is not pending: {node.status.value}")
    return node


def _check_dependencies_exist(plan: TaskPlan, dependencies: list[str]) -> None:
    known = {n.id for n in plan.nodes}
    for dep in dependencies:
        if dep not in known:
            raise InvalidPlanModification(f"Unknown dependency: {dep}")


def _with_node(plan: TaskPlan, node_id: str, **changes: Any) -> TaskPlan:
    nodes = [
        n.model_copy(update=changes) if n.id == node_id else n.model_copy()
        for n in plan.nodes
    ]
    return plan.model_copy(update={"nodes": nodes, "updated_at": time.time()})


def add_node(plan: TaskPlan, task: NewTaskInput) -> tuple[TaskPlan, TaskNode]:
    """Append a pending node whose dependencies already exist in the plan.

    Returns:
        The new plan and the created node.
    """
    _check_dependencies_exist(plan, task.dependencies)
    node = TaskNode(
        plan_id=plan.id,
        description=task.description,
        agent_type=task.agent_type,
        dependencies=list(task.dependencies),
    )
    nodes = [n.model_copy() for n in plan.nodes] + [node]
    return plan.model_copy(update={"nodes": nodes, "updated_at": time.time()}), node


def remove_node(plan: TaskPlan, node_id: str) -> TaskPlan:
    """Retire a pending node with no live dependents by marking it cancelled."""
    _require_pending(plan, node_id)
    live = [
        n for n in dependents_of(plan, node_id) if n.status != TaskNodeStatus.CANCELLED
    ]
    if live:
        names = ", ".join(n.description for n in live)
        raise InvalidPlanModification(f"Cannot remove task with dependents: {names}")
    return _with_node(
        plan,
        node_id,
        status=TaskNodeStatus.CANCELLED,
        result={"cancelled": True, "reason": "removed from plan"},
        completed_at=time.time(),
    )


def update_node(
    plan: TaskPlan,
    node_id: str,
    *,
    description: str | None = None,
    agent_type: AgentType | None = None,
) -> TaskPlan:
    """Change the description or agent type of a pending node."""
    node = _require_pending(plan, node_id)
    return _with_node(
        plan,
        node_id,
        description=description if description is not None else node.description,
        agent_type=agent_type if agent_type is not None else node.agent_type,
    )


def reorder_node(plan: TaskPlan, node_id: str, dependencies: list[str]) -> TaskPlan:
    """Replace a pending node's dependency list, rejecting cycles."""
    _require_pending(plan, node_id)
    _check_dependencies_exist(plan, dependencies)
    if node_id in dependencies:
        raise InvalidPlanModification(f"Task {node_id} depends on itself")

    graph = {n.id: list(n.dependencies) for n in plan.nodes}
    graph[node_id] = list(dependencies)
    if detect_cycle(graph):
        raise InvalidPlanModification("Plan modification would create a cycle")

    return _with_node(plan, node_id, dependencies=list(dependencies))

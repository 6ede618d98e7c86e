"""Pydantic schemas for the orchestration domain.

This module defines the task DAG, sub-agent and orchestrator state models that
flow between the engine, the sub-agent manager and both state stores.
All models use Pydantic v2; timestamps are Unix floats.
"""

import time
import uuid
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    """Generate a new opaque identifier (UUID4 string)."""
    return str(uuid.uuid4())


class AgentType(StrEnum):
    """Specialized sub-agent kinds. Each maps to a tool scope."""

    GENERAL = "general"
    RESEARCH = "research"
    CODING = "coding"
    SCHEDULING = "scheduling"
    PRODUCTIVITY = "productivity"
    MESSAGING = "messaging"


class TaskNodeStatus(StrEnum):
    """Lifecycle status of a node in the task DAG."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPlanStatus(StrEnum):
    """Lifecycle status of a task plan."""

    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubAgentStatus(StrEnum):
    """Sub-agent lifecycle status. Monotonic; terminal states are final."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True for completed, failed and cancelled."""
        return self in TERMINAL_AGENT_STATUSES


TERMINAL_AGENT_STATUSES = frozenset(
    {SubAgentStatus.COMPLETED, SubAgentStatus.FAILED, SubAgentStatus.CANCELLED}
)


class OrchestratorStatus(StrEnum):
    """Orchestrator state machine: idle -> planning -> executing <-> monitoring -> done."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"


class ReasoningStepType(StrEnum):
    THINKING = "thinking"
    DECISION = "decision"
    OBSERVATION = "observation"


class ArtifactType(StrEnum):
    TEXT = "text"
    CODE = "code"
    DATA = "data"
    FILE = "file"


class InterventionAction(StrEnum):
    GUIDE = "guide"
    REDIRECT = "redirect"
    CANCEL = "cancel"


class PlanModificationAction(StrEnum):
    ADD = "add"
    REMOVE = "remove"
    REORDER = "reorder"
    UPDATE = "update"


# ---------------------------------------------------------------------------
# Task DAG
# ---------------------------------------------------------------------------


class TaskNode(BaseModel):
    """A unit of work in the plan with explicit upstream dependencies."""

    id: str = Field(default_factory=new_id)
    plan_id: str
    description: str
    agent_type: AgentType
    status: TaskNodeStatus = TaskNodeStatus.PENDING
    dependencies: list[str] = Field(default_factory=list)
    assigned_agent_id: str | None = None
    result: Any = None
    retry_count: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None


class TaskPlan(BaseModel):
    """A DAG of task nodes owned by one orchestrator run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    nodes: list[TaskNode] = Field(default_factory=list)
    status: TaskPlanStatus = TaskPlanStatus.PLANNING
    reasoning: str = ""
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def get_node(self, node_id: str) -> TaskNode | None:
        """Return the node with the given id, if present."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class TaskInput(BaseModel):
    """One task as proposed by the planner, referencing siblings by temp id."""

    model_config = ConfigDict(populate_by_name=True)

    temp_id: str = Field(alias="tempId")
    description: str
    agent_type: str = Field(alias="agentType")
    dependencies: list[str] = Field(default_factory=list)


class NewTaskInput(BaseModel):
    """A task added to an existing plan; dependencies are real node ids."""

    model_config = ConfigDict(populate_by_name=True)

    description: str
    agent_type: AgentType = Field(alias="agentType")
    dependencies: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sub-agent execution records
# ---------------------------------------------------------------------------


class ReasoningStep(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: float = Field(default_factory=time.time)
    type: ReasoningStepType
    content: str


class Artifact(BaseModel):
    id: str = Field(default_factory=new_id)
    type: ArtifactType
    name: str
    content: Any = None
    created_at: float = Field(default_factory=time.time)


class AgentMessage(BaseModel):
    """A message in a sub-agent's conversation, in OpenAI chat shape."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None

    def to_llm_dict(self) -> dict[str, Any]:
        """Render as a plain dict for the inference port."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        return msg


class ToolCallRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    run_id: str
    tool_id: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    status: Literal["pending", "success", "error"] = "pending"
    duration_ms: int | None = None
    created_at: float = Field(default_factory=time.time)


class SubAgentState(BaseModel):
    """Full state of one sub-agent bound to one task node."""

    id: str = Field(default_factory=new_id)
    run_id: str
    task_node_id: str
    agent_type: AgentType
    status: SubAgentStatus = SubAgentStatus.INITIALIZING
    task_description: str
    upstream_context: str | None = None
    additional_tools: list[str] = Field(default_factory=list)
    messages: list[AgentMessage] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    reasoning_steps: list[ReasoningStep] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    pending_guidance: str | None = None
    total_tokens: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0.0)
    started_at: float = Field(default_factory=time.time)
    completed_at: float | None = None


class SpawnAgentConfig(BaseModel):
    """Parameters for spawning a sub-agent against a plan node."""

    task_node_id: str
    agent_type: AgentType
    task_description: str
    upstream_context: str | None = None
    additional_tools: list[str] = Field(default_factory=list)
    instructions: str | None = None
    user_id: str = "system"


class SubAgentResult(BaseModel):
    """Outcome a runner resolves with. Failures are values, not exceptions."""

    success: bool
    output: Any = None
    error: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class OrchestratorState(BaseModel):
    """Run-level orchestrator state mirrored in both stores."""

    id: str = Field(default_factory=new_id)
    run_id: str
    user_id: str
    status: OrchestratorStatus = OrchestratorStatus.IDLE
    plan: TaskPlan | None = None
    active_agent_ids: list[str] = Field(default_factory=list)
    loop_counters: dict[str, int] = Field(default_factory=dict)
    total_interventions: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0.0)
    started_at: float = Field(default_factory=time.time)
    completed_at: float | None = None


class OrchestratorRunResult(BaseModel):
    """Run-level outcome surfaced to callers; never carries stack traces."""

    success: bool
    run_id: str
    plan_id: str | None = None
    status: OrchestratorStatus
    error: str | None = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

"""Event type definitions for the orchestration event system.

Two vocabularies live here:

- SubAgentEvent: what a single runner emits on its own channel (internal).
- StreamEvent: the run-level vocabulary the EventDistributor fans out to
  observers and mirrors into the cache pub/sub channel.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StreamEventType(StrEnum):
    """All run-level stream event types.

    Events are categorized by:
    - Agent activity: Token deltas, reasoning, tool calls and termination
    - Agent control: Spawn and orchestrator interventions
    - Plan structure: Creation and modification of the task DAG
    - Task progress: Start, progress and completion of plan nodes
    - Orchestrator: Run-level status transitions
    """

    # Agent activity
    AGENT_TOKEN = "agent.token"
    AGENT_REASONING = "agent.reasoning"
    AGENT_TOOL_CALL = "agent.tool_call"
    AGENT_TOOL_RESULT = "agent.tool_result"
    AGENT_TERMINATED = "agent.terminated"
    AGENT_FINAL = "agent.final"
    AGENT_ERROR = "agent.error"
    AGENT_STATUS = "agent.status"

    # Agent control
    AGENT_SPAWNED = "agent.spawned"
    AGENT_INTERVENTION = "agent.intervention"

    # Plan structure
    PLAN_CREATED = "plan.created"
    PLAN_MODIFIED = "plan.modified"

    # Task progress
    TASK_STARTED = "task.started"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"

    # Orchestrator
    ORCHESTRATOR_STATUS = "orchestrator.status"


class StreamEvent(BaseModel):
    """An event delivered to run observers.

    Payload schemas by event type:

    AGENT_TOKEN:
        - token: str - Streamed text delta

    AGENT_REASONING:
        - agentId: str - Agent that reasoned
        - step: dict - ReasoningStep (id, timestamp, type, content)

    AGENT_TOOL_CALL:
        - toolId: str - Tool call id from the model
        - toolName: str - Tool being called
        - input: dict - Arguments

    AGENT_TOOL_RESULT:
        - toolId: str - Tool call id
        - output: Any - Tool output
        - success: bool

    AGENT_TERMINATED:
        - agentId: str
        - taskId: str
        - reason: str - completed | failed | cancelled

    AGENT_SPAWNED:
        - agentId, taskId, agentType, taskDescription

    AGENT_INTERVENTION:
        - agentId, taskId, reason, action (guide|redirect|cancel), guidance

    PLAN_CREATED:
        - planId, taskCount, structure (dag|sequential), tasks

    PLAN_MODIFIED:
        - planId, modification (task_added|task_removed|task_reordered|task_updated),
          reason, affectedTaskIds

    TASK_STARTED:
        - taskId, description, agentType, agentId

    TASK_COMPLETED:
        - taskId, success, result (optional), error (optional)

    ORCHESTRATOR_STATUS:
        - status: str - OrchestratorStatus value
        - message: str (optional)
    """

    type: StreamEventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "agent.spawned",
                    "timestamp": 1699876543.123,
                    "run_id": "5b0c7d5e-7d1c-4c55-9d7e-3f0b2c1a9e10",
                    "agent_id": "a1",
                    "data": {
                        "agentId": "a1",
                        "taskId": "t1",
                        "agentType": "research",
                        "taskDescription": "Find three sources",
                    },
                }
            ]
        }
    }


class SubAgentEventType(StrEnum):
    """Event types emitted by a single sub-agent runner."""

    TOKEN = "token"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ARTIFACT = "artifact"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"


class SubAgentEvent(BaseModel):
    """An event on one runner's channel.

    Payload schemas by event type:

    TOKEN: token
    REASONING: step (ReasoningStep dump)
    TOOL_CALL: toolId, toolName, input
    TOOL_RESULT: toolId, output, success
    ARTIFACT: artifact (Artifact dump)
    STATUS: status (SubAgentStatus value)
    COMPLETE: result (SubAgentResult dump)
    ERROR: error
    """

    type: SubAgentEventType
    agent_id: str
    timestamp: float = Field(default_factory=time.time)
    data: dict[str, Any] = Field(default_factory=dict)

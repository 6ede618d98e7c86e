"""Orchestration core: task plans, loop guard, sub-agent manager and engine."""

from orchestrator.engine import OrchestrationEngine, StepOutcome
from orchestrator.loop_guard import LoopGuard, LoopGuardConfig
from orchestrator.manager import AgentHandle, AgentSpawnError, SubAgentManager
from orchestrator.plan import InvalidPlanModification
from orchestrator.plan_service import TaskPlanService

__all__ = [
    "AgentHandle",
    "AgentSpawnError",
    "InvalidPlanModification",
    "LoopGuard",
    "LoopGuardConfig",
    "OrchestrationEngine",
    "StepOutcome",
    "SubAgentManager",
    "TaskPlanService",
]

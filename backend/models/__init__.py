"""Domain models and state stores.

This module exposes the orchestration schemas plus the durable repository and
cache adapters.
"""

from models.cache import (
    InMemoryOrchestratorCache,
    OrchestratorCache,
    RedisOrchestratorCache,
    create_cache,
)
from models.database import OrchestratorRepository, RepositoryError
from models.schemas import (
    AgentType,
    Artifact,
    OrchestratorRunResult,
    OrchestratorState,
    OrchestratorStatus,
    ReasoningStep,
    SpawnAgentConfig,
    SubAgentResult,
    SubAgentState,
    SubAgentStatus,
    TaskInput,
    TaskNode,
    TaskNodeStatus,
    TaskPlan,
    TaskPlanStatus,
)

__all__ = [
    "AgentType",
    "Artifact",
    "OrchestratorRunResult",
    "OrchestratorState",
    "OrchestratorStatus",
    "ReasoningStep",
    "SpawnAgentConfig",
    "SubAgentResult",
    "SubAgentState",
    "SubAgentStatus",
    "TaskInput",
    "TaskNode",
    "TaskNodeStatus",
    "TaskPlan",
    "TaskPlanStatus",
    # Stores
    "InMemoryOrchestratorCache",
    "OrchestratorCache",
    "OrchestratorRepository",
    "RedisOrchestratorCache",
    "RepositoryError",
    "create_cache",
]

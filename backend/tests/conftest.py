"""Shared test fixtures for backend tests.

Provides a temporary SQLite repository, the in-memory cache, the event
distributor, loop guard, sub-agent manager and engine. Sub-agents are driven
by ScriptedRunner so tests never touch LLM APIs.
"""

import asyncio
import sys
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from orchestrator.plan import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.distributor import EventDistributor  # noqa: E402
from events.types import StreamEvent, SubAgentEvent, SubAgentEventType  # noqa: E402
from metrics import RunMetricsCollector  # noqa: E402
from models.cache import InMemoryOrchestratorCache  # noqa: E402
from models.database import OrchestratorRepository  # noqa: E402
from models.schemas import (  # noqa: E402
    ReasoningStep,
    ReasoningStepType,
    SpawnAgentConfig,
    SubAgentResult,
    SubAgentState,
    SubAgentStatus,
    TaskInput,
    TaskPlan,
)
from orchestrator.engine import OrchestrationEngine  # noqa: E402
from orchestrator.loop_guard import LoopGuard, LoopGuardConfig  # noqa: E402
from orchestrator.manager import SubAgentManager  # noqa: E402
from orchestrator.plan_service import TaskPlanService  # noqa: E402

EventCallback = Callable[[SubAgentEvent], Any]


# ---------------------------------------------------------------------------
# Scripted runner
# ---------------------------------------------------------------------------


class ScriptedRunner:
    """Stand-in for SubAgentRunner with a scripted outcome.

    Outcomes:
        "complete": emits running, a reasoning step and completed
        "fail": emits running, failed and an error event
        "raise": raises out of run()
        "hang": waits until cancelled (or released via the gate)
    """

    def __init__(
        self,
        state: SubAgentState,
        config: SpawnAgentConfig,
        outcome: str = "complete",
        output: Any = "done",
        tokens: int = 0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.state = state
        self.config = config
        self.outcome = outcome
        self.output = output
        self.tokens = tokens
        self.gate = gate
        self.guidance: list[str] = []
        self.cancel_reasons: list[str] = []
        self._cancelled = asyncio.Event()
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def inject_guidance(self, guidance: str) -> None:
        self.guidance.append(guidance)
        self.state.pending_guidance = guidance

    async def cancel(self, reason: str) -> None:
        if self._cancelled.is_set() or self.state.status.is_terminal:
            return
        self.cancel_reasons.append(reason)
        self._cancelled.set()
        await self._status(SubAgentStatus.CANCELLED)

    def get_state(self) -> SubAgentState:
        return self.state.model_copy(deep=True)

    async def _emit(self, event_type: SubAgentEventType, data: dict[str, Any]) -> None:
        event = SubAgentEvent(type=event_type, agent_id=self.state.id, data=data)
        for callback in list(self._subscribers):
            await callback(event)

    async def _status(self, status: SubAgentStatus) -> None:
        if self.state.status.is_terminal:
            return
        self.state.status = status
        await self._emit(SubAgentEventType.STATUS, {"status": status.value})

    async def run(self) -> SubAgentResult:
        if self._cancelled.is_set():
            return SubAgentResult(success=False, error="Agent was cancelled")

        await self._status(SubAgentStatus.RUNNING)
        step = ReasoningStep(type=ReasoningStepType.THINKING, content=f"Processing task: {self.config.task_description}")
        self.state.reasoning_steps.append(step)
        await self._emit(SubAgentEventType.REASONING, {"step": step.model_dump(mode="json")})
        await self._emit(SubAgentEventType.TOKEN, {"token": "working "})

        if self.outcome == "hang" or self.gate is not None:
            waiters = [asyncio.create_task(self._cancelled.wait())]
            if self.gate is not None:
                waiters.append(asyncio.create_task(self.gate.wait()))
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()

        if self._cancelled.is_set():
            return SubAgentResult(success=False, error="Agent was cancelled")

        self.state.total_tokens += self.tokens
        if self.outcome == "raise":
            raise RuntimeError("runner exploded")
        if self.outcome == "fail":
            await self._status(SubAgentStatus.FAILED)
            await self._emit(SubAgentEventType.ERROR, {"error": "scripted failure"})
            return SubAgentResult(success=False, error="scripted failure", total_tokens=self.tokens)

        await self._status(SubAgentStatus.COMPLETED)
        return SubAgentResult(success=True, output=self.output, total_tokens=self.tokens)


@dataclass
class RunnerScript:
    """Maps task descriptions to per-attempt outcomes for ScriptedRunner.

    Attributes:
        outcomes: description -> outcomes consumed one per spawn; the last
            one repeats. Unknown descriptions complete.
        gates: description -> event the runner waits on before finishing
        tokens: tokens each runner reports
    """

    outcomes: dict[str, list[str]] = field(default_factory=dict)
    gates: dict[str, asyncio.Event] = field(default_factory=dict)
    tokens: int = 0
    runners: list[ScriptedRunner] = field(default_factory=list)

    def factory(self, state: SubAgentState, config: SpawnAgentConfig) -> ScriptedRunner:
        queue = self.outcomes.get(config.task_description, ["complete"])
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        runner = ScriptedRunner(
            state,
            config,
            outcome=outcome,
            output=f"result of {config.task_description}",
            tokens=self.tokens,
            gate=self.gates.get(config.task_description),
        )
        self.runners.append(runner)
        return runner

    def runner_for(self, agent_id: str) -> ScriptedRunner:
        return next(r for r in self.runners if r.state.id == agent_id)


class RecordingWriter:
    """EventWriter that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    async def write(self, event: StreamEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


# ---------------------------------------------------------------------------
# Stores and services
# ---------------------------------------------------------------------------


@pytest.fixture()
async def repository(tmp_path: Any) -> OrchestratorRepository:
    """Return an initialized repository backed by a temp SQLite file."""
    repo = OrchestratorRepository(str(tmp_path / "orchestrator.db"))
    await repo.init()
    return repo


@pytest.fixture()
def cache() -> InMemoryOrchestratorCache:
    return InMemoryOrchestratorCache()


@pytest.fixture()
def distributor(cache: InMemoryOrchestratorCache) -> EventDistributor:
    return EventDistributor(cache, write_timeout=0.5)


@pytest.fixture()
def loop_guard(cache: InMemoryOrchestratorCache, repository: OrchestratorRepository) -> LoopGuard:
    return LoopGuard(
        cache,
        repository,
        LoopGuardConfig(max_retries_per_task=3, max_total_interventions=10),
    )


@pytest.fixture()
def plan_service(repository: OrchestratorRepository) -> TaskPlanService:
    return TaskPlanService(repository)


@pytest.fixture()
def runner_script() -> RunnerScript:
    return RunnerScript()


@pytest.fixture()
def metrics_collector() -> RunMetricsCollector:
    return RunMetricsCollector()


@pytest.fixture()
async def manager(
    repository: OrchestratorRepository,
    cache: InMemoryOrchestratorCache,
    distributor: EventDistributor,
    runner_script: RunnerScript,
    metrics_collector: RunMetricsCollector,
) -> AsyncGenerator[SubAgentManager, None]:
    mgr = SubAgentManager(
        repository,
        cache,
        distributor,
        runner_factory=runner_script.factory,
        metrics_collector=metrics_collector,
    )
    yield mgr
    await mgr.shutdown()


@pytest.fixture()
def engine(
    repository: OrchestratorRepository,
    cache: InMemoryOrchestratorCache,
    distributor: EventDistributor,
    manager: SubAgentManager,
    loop_guard: LoopGuard,
    metrics_collector: RunMetricsCollector,
) -> OrchestrationEngine:
    return OrchestrationEngine(
        repository,
        cache,
        distributor,
        manager,
        loop_guard,
        metrics_collector=metrics_collector,
    )


# ---------------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------------


def make_tasks(*specs: tuple[str, str, list[str]]) -> list[TaskInput]:
    """Build planner input from (temp_id, description, dependencies) triples."""
    return [
        TaskInput(tempId=temp_id, description=description, agentType="general", dependencies=deps)
        for temp_id, description, deps in specs
    ]


@pytest.fixture()
def seed_plan(
    repository: OrchestratorRepository,
    plan_service: TaskPlanService,
) -> Callable[..., Any]:
    """Create a run plus an executing plan; returns the plan."""

    async def _seed(run_id: str, *specs: tuple[str, str, list[str]]) -> TaskPlan:
        await repository.create_orchestrator_state(run_id, "user_1")
        plan = await plan_service.create_plan(run_id, make_tasks(*specs), reasoning="test plan")
        await repository.update_orchestrator_plan(run_id, plan.id)
        return plan

    return _seed


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Poll an (optionally async) predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)

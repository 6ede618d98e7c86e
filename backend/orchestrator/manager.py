"""Sub-agent lifecycle: spawn, observe, steer, cancel and clean up.

The SubAgentManager owns an in-process arena of running agents. Each entry
pairs a runner with the asyncio task executing it and a caller-facing
AgentHandle. Runner events are forwarded in emission order to:

1. callbacks registered on the handle,
2. the cache (agent state and the run's active-set on status changes),
3. the EventDistributor, after mapping to the run-level vocabulary.

Thread Safety:
    An asyncio.Lock guards the arena. It is never held while an agent runs;
    tasks are extracted under the lock and awaited or cancelled outside it.
"""

import asyncio
import contextlib
import functools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Optional, Protocol

import structlog

from agents.llm import LLMClient
from agents.runner import SubAgentRunner
from agents.tools import ToolInvoker
from events.distributor import EventDistributor
from events.mapping import map_agent_event
from events.types import SubAgentEvent, SubAgentEventType
from models.cache import OrchestratorCache
from models.database import OrchestratorRepository
from models.schemas import (
    AgentType,
    SpawnAgentConfig,
    SubAgentResult,
    SubAgentState,
    SubAgentStatus,
    TaskNodeStatus,
)

if TYPE_CHECKING:
    from metrics import RunMetricsCollector
    from orchestrator.loop_guard import LoopGuard

logger = structlog.get_logger(__name__)

EventCallback = Callable[[SubAgentEvent], Awaitable[None]]


class AgentSpawnError(RuntimeError):
    """Raised when an agent cannot be spawned for a task node."""


class AgentRunner(Protocol):
    """What the manager needs from a runner."""

    state: SubAgentState

    async def run(self) -> SubAgentResult: ...

    async def cancel(self, reason: str) -> None: ...

    def inject_guidance(self, guidance: str) -> None: ...

    def get_state(self) -> SubAgentState: ...

    def subscribe(self, callback: EventCallback) -> Callable[[], None]: ...


RunnerFactory = Callable[[SubAgentState, SpawnAgentConfig], AgentRunner]


class RegistryState(StrEnum):
    REGISTERED = "registered"
    EVICTED = "evicted"


@dataclass
class RegistryEntry:
    """One live agent in the arena."""

    state: RegistryState
    runner: AgentRunner
    handle: "AgentHandle"
    task: asyncio.Task[SubAgentResult] | None = None
    unsubscribe: Callable[[], None] | None = None
    callbacks: list[EventCallback] = field(default_factory=list)


class AgentHandle:
    """Caller-facing view of one sub-agent.

    Live handles route every call through the manager. Handles rebuilt from
    the repository for evicted agents are read-only: control calls return
    False and on_event registers nothing.
    """

    def __init__(
        self,
        manager: "SubAgentManager",
        agent_id: str,
        run_id: str,
        task_node_id: str,
        agent_type: AgentType,
        read_only: bool = False,
    ) -> None:
        self._manager = manager
        self.id = agent_id
        self.run_id = run_id
        self.task_node_id = task_node_id
        self.agent_type = agent_type
        self.read_only = read_only

    async def get_state(self) -> SubAgentState | None:
        return await self._manager.get_agent_state(self.id)

    async def wait_for_completion(self) -> SubAgentResult | None:
        return await self._manager.wait_for_agent(self.id)

    async def send_guidance(self, guidance: str) -> bool:
        if self.read_only:
            return False
        return await self._manager.send_guidance(self.id, guidance)

    async def cancel(self, reason: str) -> bool:
        if self.read_only:
            return False
        return await self._manager.cancel_agent(self.id, reason)

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback for this agent's events; returns an unsubscribe function."""
        if self.read_only:
            return lambda: None
        return self._manager._add_callback(self.id, callback)

    def __repr__(self) -> str:
        return f"AgentHandle(id={self.id!r}, task_node_id={self.task_node_id!r}, read_only={self.read_only})"


def result_from_state(state: SubAgentState) -> SubAgentResult:
    """Rebuild a result for an agent that is no longer in the arena."""
    last_answer = next(
        (m.content for m in reversed(state.messages) if m.role == "assistant" and m.content),
        None,
    )
    error = None
    if state.status == SubAgentStatus.CANCELLED:
        error = "Agent was cancelled"
    elif state.status != SubAgentStatus.COMPLETED:
        error = f"Agent ended with status {state.status.value}"
    return SubAgentResult(
        success=state.status == SubAgentStatus.COMPLETED,
        output=last_answer if state.status == SubAgentStatus.COMPLETED else None,
        error=error,
        artifacts=list(state.artifacts),
        total_tokens=state.total_tokens,
        total_cost=state.total_cost,
    )


class SubAgentManager:
    """Spawns sub-agents and tracks them until they are cleaned up.

    Attributes:
        repository: Durable store for sub-agent records
        cache: Shared state cache (agent state, active-sets)
        distributor: Fan-out for run-level stream events
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        cache: OrchestratorCache,
        distributor: EventDistributor,
        llm_client: LLMClient | None = None,
        tool_invoker: ToolInvoker | None = None,
        runner_factory: RunnerFactory | None = None,
        metrics_collector: Optional["RunMetricsCollector"] = None,
    ) -> None:
        if runner_factory is None and (llm_client is None or tool_invoker is None):
            raise ValueError("llm_client and tool_invoker are required without a runner_factory")

        self.repository = repository
        self.cache = cache
        self.distributor = distributor
        self.llm_client = llm_client
        self.tool_invoker = tool_invoker
        self.metrics_collector = metrics_collector
        self._runner_factory = runner_factory or self._default_runner_factory
        self._registry: dict[str, RegistryEntry] = {}
        self._lock = asyncio.Lock()
        logger.info("sub_agent_manager_initialized")

    def _default_runner_factory(self, state: SubAgentState, config: SpawnAgentConfig) -> AgentRunner:
        if self.llm_client is None or self.tool_invoker is None:
            raise ValueError("llm_client and tool_invoker are required without a runner_factory")
        return SubAgentRunner(
            state,
            config,
            self.llm_client,
            self.tool_invoker,
            self.repository,
            metrics_collector=self.metrics_collector,
        )

    # -----------------------------------------------------------------
    # Spawning
    # -----------------------------------------------------------------

    async def spawn_agent(self, run_id: str, config: SpawnAgentConfig) -> AgentHandle:
        """Start a sub-agent for a plan node and return without awaiting it.

        Raises:
            AgentSpawnError: If the node does not exist in the run's plan or
                is not pending, or any of its dependencies is not completed.
        """
        plan = await self.repository.get_plan_by_run_id(run_id)
        node = plan.get_node(config.task_node_id) if plan else None
        if plan is None or node is None:
            raise AgentSpawnError(f"Task node not found: {config.task_node_id}")
        if node.status != TaskNodeStatus.PENDING:
            raise AgentSpawnError(f"Task node is not pending: {node.id} ({node.status.value})")

        unmet = [
            dep_id
            for dep_id in node.dependencies
            if (dep := plan.get_node(dep_id)) is None or dep.status != TaskNodeStatus.COMPLETED
        ]
        if unmet:
            raise AgentSpawnError(f"Dependencies not completed: {', '.join(unmet)}")

        state = SubAgentState(
            run_id=run_id,
            task_node_id=config.task_node_id,
            agent_type=config.agent_type,
            task_description=config.task_description,
            upstream_context=config.upstream_context,
            additional_tools=list(config.additional_tools),
        )
        await self.repository.create_sub_agent(state)
        await self._persist_cache_state(state)
        await self._persist_active_add(run_id, state.id)

        runner = self._runner_factory(state, config)
        handle = AgentHandle(self, state.id, run_id, config.task_node_id, config.agent_type)
        entry = RegistryEntry(state=RegistryState.REGISTERED, runner=runner, handle=handle)

        async with self._lock:
            self._registry[state.id] = entry
            entry.unsubscribe = runner.subscribe(functools.partial(self._forward_event, entry))
            entry.task = asyncio.create_task(self._run_agent(entry), name=f"sub_agent_{state.id}")

        if self.metrics_collector:
            self.metrics_collector.record_agent_spawned(run_id)

        logger.info(
            "agent_spawned",
            run_id=run_id,
            agent_id=state.id,
            task_node_id=config.task_node_id,
            agent_type=config.agent_type.value,
        )
        return handle

    async def _run_agent(self, entry: RegistryEntry) -> SubAgentResult:
        final_status: SubAgentStatus | None = None
        try:
            return await entry.runner.run()
        except asyncio.CancelledError:
            final_status = SubAgentStatus.CANCELLED
            raise
        except Exception as e:
            logger.error(
                "agent_run_failed",
                agent_id=entry.handle.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            final_status = SubAgentStatus.FAILED
            return SubAgentResult(success=False, error=str(e))
        finally:
            await self.cleanup_agent(entry.handle.id, final_status)

    # -----------------------------------------------------------------
    # Event forwarding
    # -----------------------------------------------------------------

    async def _forward_event(self, entry: RegistryEntry, event: SubAgentEvent) -> None:
        handle = entry.handle

        for callback in list(entry.callbacks):
            try:
                await callback(event)
            except Exception as e:
                logger.error(
                    "agent_event_callback_failed",
                    agent_id=handle.id,
                    event_type=event.type.value,
                    error=str(e),
                )

        if event.type == SubAgentEventType.STATUS:
            status = SubAgentStatus(event.data["status"])
            await self._persist_cache_state(entry.runner.get_state())
            await self._persist_agent_status(handle.id, status)
            if status.is_terminal:
                await self._persist_active_remove(handle.run_id, handle.id)

        stream_event = map_agent_event(event, handle.run_id, handle.task_node_id)
        if stream_event is not None:
            await self.distributor.publish(handle.run_id, stream_event)

    def _add_callback(self, agent_id: str, callback: EventCallback) -> Callable[[], None]:
        entry = self._registry.get(agent_id)
        if entry is None or entry.state != RegistryState.REGISTERED:
            return lambda: None
        entry.callbacks.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                entry.callbacks.remove(callback)

        return unsubscribe

    # -----------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------

    async def get_agent(self, agent_id: str) -> AgentHandle | None:
        async with self._lock:
            entry = self._registry.get(agent_id)
        if entry is not None:
            return entry.handle

        state = await self.repository.get_sub_agent(agent_id)
        if state is None:
            return None
        return AgentHandle(
            self,
            state.id,
            state.run_id,
            state.task_node_id,
            state.agent_type,
            read_only=True,
        )

    async def get_agent_state(self, agent_id: str) -> SubAgentState | None:
        """Registry first, then the repository."""
        async with self._lock:
            entry = self._registry.get(agent_id)
        if entry is not None:
            return entry.runner.get_state()
        return await self.repository.get_sub_agent(agent_id)

    async def get_active_agents(self, run_id: str) -> list[AgentHandle]:
        async with self._lock:
            return [
                entry.handle
                for entry in self._registry.values()
                if entry.handle.run_id == run_id and entry.state == RegistryState.REGISTERED
            ]

    async def has_active_agents(self, run_id: str) -> bool:
        async with self._lock:
            return any(
                entry.handle.run_id == run_id and entry.task is not None and not entry.task.done()
                for entry in self._registry.values()
            )

    def in_process_agent_count(self) -> int:
        return len(self._registry)

    # -----------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------

    async def send_guidance(self, agent_id: str, guidance: str) -> bool:
        async with self._lock:
            entry = self._registry.get(agent_id)
        if entry is None or entry.runner.state.status.is_terminal:
            return False

        entry.runner.inject_guidance(guidance)
        try:
            await self.repository.set_guidance(agent_id, guidance)
        except Exception as e:
            logger.error("persist_guidance_failed", agent_id=agent_id, error=str(e))

        logger.info("agent_guidance_sent", agent_id=agent_id, run_id=entry.handle.run_id)
        return True

    async def cancel_agent(self, agent_id: str, reason: str) -> bool:
        async with self._lock:
            entry = self._registry.get(agent_id)
        if entry is None:
            return False

        await entry.runner.cancel(reason)
        logger.info("agent_cancelled", agent_id=agent_id, run_id=entry.handle.run_id, reason=reason)
        return True

    async def cancel_all_agents(self, run_id: str, reason: str) -> int:
        """Cancel every agent in the run's cache active-set. Returns how many were cancelled."""
        cancelled = 0
        for agent_id in await self.cache.get_active_agents(run_id):
            if await self.cancel_agent(agent_id, reason):
                cancelled += 1
        return cancelled

    # -----------------------------------------------------------------
    # Waiting
    # -----------------------------------------------------------------

    async def wait_for_agent(self, agent_id: str) -> SubAgentResult | None:
        async with self._lock:
            entry = self._registry.get(agent_id)

        if entry is not None and entry.task is not None:
            try:
                return await asyncio.shield(entry.task)
            except asyncio.CancelledError:
                if entry.task.cancelled():
                    return SubAgentResult(success=False, error="Agent task was cancelled")
                raise

        state = await self.repository.get_sub_agent(agent_id)
        if state is None:
            return None
        return result_from_state(state)

    async def wait_for_agents(self, agent_ids: list[str]) -> dict[str, SubAgentResult]:
        outcomes = await asyncio.gather(
            *(self.wait_for_agent(agent_id) for agent_id in agent_ids),
            return_exceptions=True,
        )
        results: dict[str, SubAgentResult] = {}
        for agent_id, outcome in zip(agent_ids, outcomes):
            if isinstance(outcome, BaseException):
                results[agent_id] = SubAgentResult(success=False, error=str(outcome))
            elif outcome is None:
                results[agent_id] = SubAgentResult(success=False, error=f"Agent not found: {agent_id}")
            else:
                results[agent_id] = outcome
        return results

    # -----------------------------------------------------------------
    # Summaries
    # -----------------------------------------------------------------

    async def get_run_summary(self, run_id: str) -> dict[str, Any]:
        agents = await self.repository.get_sub_agents_by_run(run_id)
        counts = {status: 0 for status in SubAgentStatus}
        for agent in agents:
            counts[agent.status] += 1

        return {
            "total": len(agents),
            "active": counts[SubAgentStatus.INITIALIZING] + counts[SubAgentStatus.RUNNING],
            "completed": counts[SubAgentStatus.COMPLETED],
            "failed": counts[SubAgentStatus.FAILED],
            "cancelled": counts[SubAgentStatus.CANCELLED],
            "agents": [
                {
                    "id": agent.id,
                    "taskNodeId": agent.task_node_id,
                    "agentType": agent.agent_type.value,
                    "status": agent.status.value,
                    "totalTokens": agent.total_tokens,
                    "totalCost": agent.total_cost,
                }
                for agent in agents
            ],
        }

    # -----------------------------------------------------------------
    # Cleanup and recovery
    # -----------------------------------------------------------------

    async def cleanup_agent(self, agent_id: str, final_status: SubAgentStatus | None = None) -> bool:
        """Persist the final state and evict the agent from the arena.

        Args:
            agent_id: Agent to clean up.
            final_status: Status to record if the runner never reached a
                terminal one (e.g. its task was cancelled).

        Returns:
            True if this call performed the cleanup, False if it already ran.
        """
        async with self._lock:
            entry = self._registry.get(agent_id)
            if entry is None or entry.state == RegistryState.EVICTED:
                return False
            entry.state = RegistryState.EVICTED
            del self._registry[agent_id]

        handle = entry.handle
        state = entry.runner.get_state()
        if not state.status.is_terminal:
            state.status = final_status or SubAgentStatus.FAILED
            state.completed_at = time.time()

        if entry.unsubscribe is not None:
            entry.unsubscribe()
        entry.callbacks.clear()

        await self._persist_agent_status(agent_id, state.status)
        await self._persist_cache_state(state)
        await self._persist_active_remove(handle.run_id, agent_id)

        if self.metrics_collector:
            self.metrics_collector.record_agent_finished(handle.run_id, state.status)

        logger.info(
            "agent_cleaned_up",
            agent_id=agent_id,
            run_id=handle.run_id,
            status=state.status.value,
            total_tokens=state.total_tokens,
        )
        return True

    async def reconcile_on_startup(self, loop_guard: Optional["LoopGuard"] = None) -> int:
        """Repair state left behind by a previous process.

        Non-terminal sub-agents with no in-process runner are marked failed,
        stale active-set members are removed and, when a loop guard is given,
        its counters are re-seeded for every live run.

        Returns:
            Number of orphaned sub-agents marked failed.
        """
        orphaned = 0
        for state in await self.repository.get_active_sub_agents():
            if state.id in self._registry:
                continue
            await self._persist_agent_status(state.id, SubAgentStatus.FAILED)
            state.status = SubAgentStatus.FAILED
            state.completed_at = time.time()
            await self._persist_cache_state(state)
            await self._persist_active_remove(state.run_id, state.id)
            orphaned += 1
            logger.warning("orphaned_agent_failed", agent_id=state.id, run_id=state.run_id)

        for run_id in await self.repository.get_live_run_ids():
            try:
                for agent_id in await self.cache.get_active_agents(run_id):
                    if agent_id not in self._registry:
                        await self.cache.remove_active_agent(run_id, agent_id)
            except Exception as e:
                logger.error("reconcile_active_set_failed", run_id=run_id, error=str(e))
            if loop_guard is not None:
                await loop_guard.reconcile(run_id)

        logger.info("sub_agent_manager_reconciled", orphaned=orphaned)
        return orphaned

    async def shutdown(self, reason: str = "Manager shutting down") -> None:
        """Cancel every registered agent and await its task."""
        async with self._lock:
            entries = list(self._registry.values())

        logger.info("sub_agent_manager_shutdown_start", agent_count=len(entries))

        for entry in entries:
            try:
                await entry.runner.cancel(reason)
            except Exception as e:
                logger.warning("shutdown_cancel_failed", agent_id=entry.handle.id, error=str(e))

        for entry in entries:
            task = entry.task
            if task is None:
                continue
            if not task.done():
                task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception) as e:
                if not isinstance(e, asyncio.CancelledError):
                    logger.error("shutdown_task_failed", agent_id=entry.handle.id, error=str(e))
            # A task cancelled before its first step never reaches its finally block
            await self.cleanup_agent(entry.handle.id, SubAgentStatus.CANCELLED)

        logger.info("sub_agent_manager_shutdown_complete")

    # -----------------------------------------------------------------
    # Fire-and-forget persistence
    # -----------------------------------------------------------------

    async def _persist_cache_state(self, state: SubAgentState) -> None:
        try:
            await self.cache.set_agent_state(state)
        except Exception as e:
            logger.error("persist_agent_cache_state_failed", agent_id=state.id, error=str(e))

    async def _persist_agent_status(self, agent_id: str, status: SubAgentStatus) -> None:
        try:
            await self.repository.update_sub_agent_status(agent_id, status)
        except Exception as e:
            logger.error(
                "persist_agent_status_failed",
                agent_id=agent_id,
                status=status.value,
                error=str(e),
            )

    async def _persist_active_add(self, run_id: str, agent_id: str) -> None:
        try:
            await self.cache.add_active_agent(run_id, agent_id)
            await self.repository.add_active_agent(run_id, agent_id)
        except Exception as e:
            logger.error("persist_active_add_failed", run_id=run_id, agent_id=agent_id, error=str(e))

    async def _persist_active_remove(self, run_id: str, agent_id: str) -> None:
        try:
            await self.cache.remove_active_agent(run_id, agent_id)
            await self.repository.remove_active_agent(run_id, agent_id)
        except Exception as e:
            logger.error(
                "persist_active_remove_failed",
                run_id=run_id,
                agent_id=agent_id,
                error=str(e),
            )

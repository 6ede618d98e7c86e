"""Top-level orchestration state machine.

    idle -> planning -> executing <-> monitoring -> completed | failed

The engine owns the run's task plan, asks the LoopGuard before any retry or
intervention, and drives the SubAgentManager to realize ready tasks. It does
not plan: the task list comes from the caller and every other control action
(guide, cancel, mark complete/failed, modify plan) arrives as a directive via
handle_directive().

Every status transition is written to both stores and emitted as an
orchestrator.status stream event.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog

from events.distributor import EventDistributor
from events.types import StreamEvent, StreamEventType
from models.cache import OrchestratorCache
from models.database import OrchestratorRepository
from models.schemas import (
    AgentType,
    InterventionAction,
    NewTaskInput,
    OrchestratorRunResult,
    OrchestratorState,
    OrchestratorStatus,
    PlanModificationAction,
    SpawnAgentConfig,
    SubAgentResult,
    SubAgentStatus,
    TaskInput,
    TaskNode,
    TaskNodeStatus,
    TaskPlan,
    TaskPlanStatus,
    new_id,
)
from orchestrator import plan as plan_model
from orchestrator.loop_guard import LoopGuard
from orchestrator.manager import AgentHandle, SubAgentManager
from orchestrator.plan import InvalidPlanModification
from orchestrator.plan_service import TaskPlanService

if TYPE_CHECKING:
    from metrics import RunMetricsCollector

logger = structlog.get_logger(__name__)

DirectiveHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]

TERMINAL_RUN_STATUSES = frozenset({OrchestratorStatus.COMPLETED, OrchestratorStatus.FAILED})

_MODIFICATION_NAMES = {
    PlanModificationAction.ADD: "task_added",
    PlanModificationAction.REMOVE: "task_removed",
    PlanModificationAction.UPDATE: "task_updated",
    PlanModificationAction.REORDER: "task_reordered",
}


@dataclass
class StepOutcome:
    """What one scheduling step did and where it left the run.

    Attributes:
        status: Run status after the step
        spawned: Agent ids started by this step
        blocked: Node ids that were ready but refused by the loop guard
        message: Why the run ended, when it did
    """

    status: OrchestratorStatus
    spawned: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    message: str | None = None


class OrchestrationEngine:
    """Drives one or more runs from a task list to a terminal status.

    Usage:
        >>> engine = OrchestrationEngine(repository, cache, distributor, manager, loop_guard)
        >>> result = await engine.execute(user_id="user_1", tasks=[...])
        >>> result.status
        <OrchestratorStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        cache: OrchestratorCache,
        distributor: EventDistributor,
        manager: SubAgentManager,
        loop_guard: LoopGuard,
        plan_service: TaskPlanService | None = None,
        metrics_collector: Optional["RunMetricsCollector"] = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.distributor = distributor
        self.manager = manager
        self.loop_guard = loop_guard
        self.plan_service = plan_service or TaskPlanService(repository)
        self.metrics_collector = metrics_collector

        self._watchers: dict[str, dict[str, asyncio.Task[None]]] = {}
        self._plan_versions: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._directives: dict[str, DirectiveHandler] = {
            "create_task_plan": self._handle_create_task_plan,
            "modify_plan": self._handle_modify_plan,
            "start_agent": self._handle_start_agent,
            "monitor_agent": self._handle_monitor_agent,
            "intervene_agent": self._handle_intervene_agent,
            "cancel_agent": self._handle_cancel_agent,
            "mark_task_complete": self._handle_mark_task_complete,
            "mark_task_failed": self._handle_mark_task_failed,
            "get_plan_status": self._handle_get_plan_status,
            "get_run_health": self._handle_get_run_health,
            "get_run_summary": self._handle_get_run_summary,
        }
        logger.info("orchestration_engine_initialized")

    # -----------------------------------------------------------------
    # Run lifecycle
    # -----------------------------------------------------------------

    async def start_run(self, run_id: str | None = None, user_id: str = "system") -> OrchestratorState:
        """Create an idle run in both stores."""
        run_id = run_id or new_id()
        state = await self.repository.create_orchestrator_state(run_id, user_id)
        await self._persist_cache_state(state)
        if self.metrics_collector:
            self.metrics_collector.start(run_id)
        logger.info("run_started", run_id=run_id, user_id=user_id)
        return state

    async def create_plan(
        self,
        run_id: str,
        tasks: list[TaskInput],
        reasoning: str = "",
    ) -> TaskPlan:
        """Validate and persist the task DAG, moving the run to executing.

        Raises:
            InvalidPlanModification: If the input is invalid. The run goes back
                to idle and nothing is persisted.
        """
        state = await self._load_state(run_id)
        if state is None:
            raise ValueError(f"Run not found: {run_id}")
        if state.status != OrchestratorStatus.IDLE:
            raise InvalidPlanModification(f"Run cannot be planned from status: {state.status.value}")

        await self._set_status(run_id, OrchestratorStatus.PLANNING)
        try:
            plan = await self.plan_service.create_plan(run_id, tasks, reasoning)
        except InvalidPlanModification as e:
            logger.warning("plan_rejected", run_id=run_id, error=str(e))
            await self._set_status(run_id, OrchestratorStatus.IDLE, str(e))
            raise

        await self.repository.update_orchestrator_plan(run_id, plan.id)
        state = await self._load_state(run_id)
        if state is not None:
            state.plan = plan
            await self._persist_cache_state(state)
        self._plan_versions[run_id] = plan.updated_at

        await self._emit(
            run_id,
            StreamEventType.PLAN_CREATED,
            {
                "planId": plan.id,
                "taskCount": len(plan.nodes),
                "structure": plan_model.plan_structure(plan),
                "tasks": [
                    {
                        "id": n.id,
                        "description": n.description,
                        "agentType": n.agent_type.value,
                        "dependencies": n.dependencies,
                    }
                    for n in plan.nodes
                ],
            },
        )
        await self._set_status(run_id, OrchestratorStatus.EXECUTING)
        return plan

    async def step(self, run_id: str) -> StepOutcome:
        """Spawn agents for every ready node and re-evaluate the run status."""
        async with self._lock:
            state = await self._load_state(run_id)
            if state is None:
                raise ValueError(f"Run not found: {run_id}")
            if state.status in TERMINAL_RUN_STATUSES:
                return StepOutcome(status=state.status)

            plan = await self.plan_service.get_plan_by_run_id(run_id)
            if plan is None:
                return StepOutcome(status=state.status, message="No plan exists for this run")

            live_nodes = {h.task_node_id for h in await self.manager.get_active_agents(run_id)}
            spawned: list[str] = []
            blocked: list[str] = []

            for node in plan_model.ready_nodes(plan):
                if node.id in live_nodes:
                    continue
                if node.retry_count > 0 and not await self._retry_admitted(run_id, node):
                    blocked.append(node.id)
                    continue
                handle = await self._start_agent(run_id, state.user_id, plan, node)
                spawned.append(handle.id)

            plan = await self.plan_service.get_plan(plan.id) or plan
            shape_changed = self._plan_versions.get(run_id) != plan.updated_at
            self._plan_versions[run_id] = plan.updated_at
            has_live_work = await self._has_live_work(run_id)

            status, message = self._next_status(plan, spawned, shape_changed, has_live_work)

        await self._set_status(run_id, status, message)
        return StepOutcome(status=status, spawned=spawned, blocked=blocked, message=message)

    def _next_status(
        self,
        plan: TaskPlan,
        spawned: list[str],
        shape_changed: bool,
        has_live_work: bool,
    ) -> tuple[OrchestratorStatus, str | None]:
        unfinished = [
            n for n in plan.nodes if n.status in (TaskNodeStatus.PENDING, TaskNodeStatus.IN_PROGRESS)
        ]
        if not unfinished:
            completion = plan_model.completion_status(plan)
            if not completion.success:
                failed = completion.summary["failed"]
                return OrchestratorStatus.FAILED, f"{failed} task(s) failed or were cancelled"
            return OrchestratorStatus.COMPLETED, None

        if spawned or (shape_changed and has_live_work):
            return OrchestratorStatus.EXECUTING, None
        if has_live_work:
            return OrchestratorStatus.MONITORING, None
        return OrchestratorStatus.FAILED, "A failed task blocks every remaining task"

    async def run_until_complete(self, run_id: str) -> OrchestratorStatus:
        """Alternate step() with waiting for any agent to finish until the run is terminal."""
        while True:
            outcome = await self.step(run_id)
            if outcome.status in TERMINAL_RUN_STATUSES:
                return outcome.status

            watchers = [t for t in self._watchers.get(run_id, {}).values() if not t.done()]
            if watchers:
                await asyncio.wait(watchers, return_when=asyncio.FIRST_COMPLETED)
            else:
                await asyncio.sleep(0.01)

    async def execute(
        self,
        run_id: str | None = None,
        user_id: str = "system",
        tasks: list[TaskInput] | None = None,
        reasoning: str = "",
    ) -> OrchestratorRunResult:
        """Start a run, create its plan and drive it to completion.

        Never raises. Failures are reported in the returned result without
        internal details beyond the error message.
        """
        run_id = run_id or new_id()
        try:
            await self.start_run(run_id, user_id)
            await self.create_plan(run_id, tasks or [], reasoning)
            await self.run_until_complete(run_id)
        except InvalidPlanModification as e:
            await self._set_status(run_id, OrchestratorStatus.FAILED, str(e))
            return await self._build_result(run_id, error=str(e))
        except Exception as e:
            logger.error(
                "run_failed",
                run_id=run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            try:
                await self.manager.cancel_all_agents(run_id, "Run failed")
                await self._set_status(run_id, OrchestratorStatus.FAILED, "Run failed")
                await self._emit(run_id, StreamEventType.AGENT_ERROR, {"error": str(e)})
            except Exception as cleanup_error:
                logger.error("run_failure_cleanup_failed", run_id=run_id, error=str(cleanup_error))
            return await self._build_result(run_id, error=str(e))
        finally:
            await self.distributor.close_run(run_id)

        return await self._build_result(run_id)

    async def _build_result(self, run_id: str, error: str | None = None) -> OrchestratorRunResult:
        try:
            state = await self.repository.get_orchestrator_state(run_id)
        except Exception as e:
            logger.error("build_result_failed", run_id=run_id, error=str(e))
            state = None
        if state is None:
            return OrchestratorRunResult(
                success=False,
                run_id=run_id,
                status=OrchestratorStatus.FAILED,
                error=error or "Run not found",
            )

        completed = failed = 0
        if state.plan is not None:
            summary = plan_model.completion_status(state.plan).summary
            completed, failed = summary["completed"], summary["failed"]

        return OrchestratorRunResult(
            success=state.status == OrchestratorStatus.COMPLETED and error is None,
            run_id=run_id,
            plan_id=state.plan.id if state.plan else None,
            status=state.status,
            error=error,
            tasks_completed=completed,
            tasks_failed=failed,
            total_tokens=state.total_tokens,
            total_cost=state.total_cost,
        )

    # -----------------------------------------------------------------
    # Agents
    # -----------------------------------------------------------------

    async def _start_agent(
        self,
        run_id: str,
        user_id: str,
        plan: TaskPlan,
        node: TaskNode,
        additional_tools: list[str] | None = None,
        instructions: str | None = None,
    ) -> AgentHandle:
        context = plan_model.upstream_context(plan, node.id)
        handle = await self.manager.spawn_agent(
            run_id,
            SpawnAgentConfig(
                task_node_id=node.id,
                agent_type=node.agent_type,
                task_description=node.description,
                upstream_context=context or None,
                additional_tools=additional_tools or [],
                instructions=instructions,
                user_id=user_id,
            ),
        )
        await self.plan_service.start_task(node.id, handle.id)

        await self._emit(
            run_id,
            StreamEventType.TASK_STARTED,
            {
                "taskId": node.id,
                "description": node.description,
                "agentType": node.agent_type.value,
                "agentId": handle.id,
            },
            agent_id=handle.id,
        )
        await self._emit(
            run_id,
            StreamEventType.AGENT_SPAWNED,
            {
                "agentId": handle.id,
                "taskId": node.id,
                "agentType": node.agent_type.value,
                "taskDescription": node.description,
            },
            agent_id=handle.id,
        )

        watcher = asyncio.create_task(
            self._watch_agent(run_id, node.id, handle), name=f"watch_{handle.id}"
        )
        self._watchers.setdefault(run_id, {})[handle.id] = watcher

        def _remove_watcher(t: asyncio.Task[None], rid: str = run_id, aid: str = handle.id) -> None:
            self._watchers.get(rid, {}).pop(aid, None)

        watcher.add_done_callback(_remove_watcher)
        return handle

    async def _watch_agent(self, run_id: str, node_id: str, handle: AgentHandle) -> None:
        try:
            result = await handle.wait_for_completion()
            if result is None:
                result = SubAgentResult(success=False, error=f"Agent not found: {handle.id}")
            await self._on_agent_finished(run_id, node_id, handle.id, result)
        except Exception as e:
            logger.error(
                "agent_completion_handler_failed",
                run_id=run_id,
                agent_id=handle.id,
                task_id=node_id,
                error=str(e),
            )

    async def _on_agent_finished(
        self,
        run_id: str,
        node_id: str,
        agent_id: str,
        result: SubAgentResult,
    ) -> None:
        state = await self.manager.get_agent_state(agent_id)
        status = state.status if state else None

        await self._record_agent_metrics(run_id, result)

        if result.success:
            await self.plan_service.complete_task(node_id, result.output)
            await self._emit(
                run_id,
                StreamEventType.TASK_COMPLETED,
                {"taskId": node_id, "success": True, "result": result.output},
                agent_id=agent_id,
            )
        elif status == SubAgentStatus.CANCELLED:
            reason = result.error or "Agent was cancelled"
            await self.plan_service.cancel_task(node_id, reason)
            await self._emit(
                run_id,
                StreamEventType.TASK_COMPLETED,
                {"taskId": node_id, "success": False, "error": reason},
                agent_id=agent_id,
            )
        else:
            await self._fail_or_retry(run_id, node_id, result.error or "Unknown error")

        logger.info(
            "agent_finished",
            run_id=run_id,
            agent_id=agent_id,
            task_id=node_id,
            success=result.success,
        )

    async def _fail_or_retry(self, run_id: str, node_id: str, error: str) -> bool:
        """Send a failed node back to pending if the loop guard allows it.

        Returns:
            True if the node will be retried.
        """
        check = await self.loop_guard.can_retry_task(run_id, node_id)
        if not check.allowed:
            await self.plan_service.fail_task(node_id, error)
            await self._emit(
                run_id,
                StreamEventType.TASK_COMPLETED,
                {"taskId": node_id, "success": False, "error": f"{error} (max retries reached)"},
            )
            return False

        record = await self.loop_guard.record_task_retry(run_id, node_id)
        await self.plan_service.reset_task(node_id)
        await self._emit(
            run_id,
            StreamEventType.TASK_PROGRESS,
            {
                "taskId": node_id,
                "message": f"Retrying task ({record.new_count}/{record.max_retries})",
                "error": error,
            },
        )
        return True

    async def _retry_admitted(self, run_id: str, node: TaskNode) -> bool:
        """A retried node may only run while its recorded retries stay within the ceiling."""
        count = await self.loop_guard.get_task_retry_count(run_id, node.id)
        if count <= self.loop_guard.get_config().max_retries_per_task:
            return True
        await self.plan_service.fail_task(node.id, "Retry limit exceeded (max retries reached)")
        logger.warning("retry_refused", run_id=run_id, task_id=node.id, retries=count)
        return False

    async def _has_live_work(self, run_id: str) -> bool:
        if any(not t.done() for t in self._watchers.get(run_id, {}).values()):
            return True
        return await self.manager.has_active_agents(run_id)

    async def _record_agent_metrics(self, run_id: str, result: SubAgentResult) -> None:
        if not result.total_tokens and not result.total_cost:
            return
        try:
            await self.repository.update_orchestrator_metrics(
                run_id, result.total_tokens, result.total_cost
            )
        except Exception as e:
            logger.error("persist_run_metrics_failed", run_id=run_id, error=str(e))

        state = await self._load_state(run_id)
        if state is not None:
            state.total_tokens += result.total_tokens
            state.total_cost += result.total_cost
            await self._persist_cache_state(state)

    # -----------------------------------------------------------------
    # Directives
    # -----------------------------------------------------------------

    async def handle_directive(self, run_id: str, name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Dispatch an orchestrator directive. Always returns a dict with "success"."""
        handler = self._directives.get(name)
        if handler is None:
            return {"success": False, "error": f"Unknown directive: {name}"}

        logger.debug("directive_received", run_id=run_id, directive=name)
        try:
            return await handler(run_id, args)
        except Exception as e:
            logger.warning(
                "directive_failed",
                run_id=run_id,
                directive=name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return {"success": False, "error": str(e)}

    async def _handle_create_task_plan(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        tasks = [TaskInput.model_validate(t) for t in args.get("tasks", [])]
        plan = await self.create_plan(run_id, tasks, args.get("reasoning", ""))
        return {"success": True, "planId": plan.id}

    async def _handle_modify_plan(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        plan = await self.plan_service.get_plan_by_run_id(run_id)
        if plan is None:
            return {"success": False, "error": "No plan exists for this run"}

        action = PlanModificationAction(args["action"])
        task_id = args.get("taskId")
        if action != PlanModificationAction.ADD and not task_id:
            raise InvalidPlanModification("taskId is required")

        if action == PlanModificationAction.ADD:
            node = await self.plan_service.add_task(plan.id, NewTaskInput.model_validate(args["newTask"]))
            task_id = node.id
        elif action == PlanModificationAction.REMOVE:
            await self.plan_service.remove_task(plan.id, task_id)
        elif action == PlanModificationAction.UPDATE:
            agent_type = args.get("agentType")
            await self.plan_service.update_task(
                plan.id,
                task_id,
                description=args.get("description"),
                agent_type=AgentType(agent_type) if agent_type else None,
            )
        else:
            await self.plan_service.reorder_task(plan.id, task_id, list(args.get("dependencies", [])))

        await self._emit(
            run_id,
            StreamEventType.PLAN_MODIFIED,
            {
                "planId": plan.id,
                "modification": _MODIFICATION_NAMES[action],
                "reason": args.get("reason", ""),
                "affectedTaskIds": [task_id],
            },
        )
        return {"success": True, "taskId": task_id}

    async def _handle_start_agent(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        task_id = args["taskId"]
        async with self._lock:
            state = await self._load_state(run_id)
            if state is None:
                return {"success": False, "error": f"Run not found: {run_id}"}
            plan = await self.plan_service.get_plan_by_run_id(run_id)
            if plan is None:
                return {"success": False, "error": "No plan exists for this run"}

            node = plan.get_node(task_id)
            if node is None:
                return {"success": False, "error": f"Task not found: {task_id}"}
            if node.status != TaskNodeStatus.PENDING:
                return {"success": False, "error": f"Task is not pending: {node.status.value}"}
            if node not in plan_model.ready_nodes(plan):
                return {"success": False, "error": f"Task dependencies are not completed: {task_id}"}
            live_nodes = {h.task_node_id for h in await self.manager.get_active_agents(run_id)}
            if task_id in live_nodes:
                return {"success": False, "error": f"Task already has a live agent: {task_id}"}

            handle = await self._start_agent(
                run_id,
                state.user_id,
                plan,
                node,
                additional_tools=args.get("additionalTools"),
                instructions=args.get("instructions"),
            )
        await self._set_status(run_id, OrchestratorStatus.EXECUTING)
        return {"success": True, "agentId": handle.id}

    async def _handle_monitor_agent(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        agent_id = args["agentId"]
        state = await self.manager.get_agent_state(agent_id)
        if state is None:
            return {"success": False, "error": f"Agent not found: {agent_id}"}

        return {
            "success": True,
            "state": {
                "id": state.id,
                "status": state.status.value,
                "taskDescription": state.task_description,
                "messageCount": len(state.messages),
                "toolCallCount": len(state.tool_calls),
                "recentReasoning": [s.content for s in state.reasoning_steps[-3:]],
                "tokens": state.total_tokens,
                "cost": state.total_cost,
            },
        }

    async def _handle_intervene_agent(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        action = InterventionAction(args["action"])
        agent_id = args["agentId"]
        reason = args.get("reason", "")
        guidance = args.get("guidance")

        check = await self.loop_guard.can_intervene(run_id)
        if not check.allowed:
            await self._check_intervention_ceiling(run_id)
            return {"success": False, "error": check.reason}

        handle = await self.manager.get_agent(agent_id)
        if handle is None or handle.read_only:
            return {"success": False, "error": f"Agent not active: {agent_id}"}

        record = await self.loop_guard.record_intervention(run_id)

        if action in (InterventionAction.GUIDE, InterventionAction.REDIRECT):
            if guidance:
                await handle.send_guidance(guidance)
        else:
            await handle.cancel(reason)

        await self._emit(
            run_id,
            StreamEventType.AGENT_INTERVENTION,
            {
                "agentId": agent_id,
                "taskId": handle.task_node_id,
                "reason": reason,
                "action": action.value,
                "guidance": guidance,
            },
            agent_id=agent_id,
        )

        if record.is_at_limit:
            await self._check_intervention_ceiling(run_id)

        return {
            "success": True,
            "interventionCount": record.new_count,
            "nearLimit": record.is_near_limit,
        }

    async def _check_intervention_ceiling(self, run_id: str) -> None:
        """Fail the run at the intervention ceiling only when nothing can still progress."""
        plan = await self.plan_service.get_plan_by_run_id(run_id)
        if plan is not None and plan_model.ready_nodes(plan):
            return
        if await self._has_live_work(run_id):
            return
        await self._set_status(run_id, OrchestratorStatus.FAILED, "Intervention limit reached")

    async def _handle_cancel_agent(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        agent_id = args["agentId"]
        if not await self.manager.cancel_agent(agent_id, args.get("reason", "Cancelled by orchestrator")):
            return {"success": False, "error": f"Agent not active: {agent_id}"}
        return {"success": True}

    async def _handle_mark_task_complete(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        task_id = args["taskId"]
        if await self.repository.get_task_node(task_id) is None:
            return {"success": False, "error": f"Task not found: {task_id}"}

        result = args.get("result") or {"summary": args.get("summary", "")}
        await self.plan_service.complete_task(task_id, result)
        await self._emit(
            run_id,
            StreamEventType.TASK_COMPLETED,
            {"taskId": task_id, "success": True, "result": result},
        )
        return {"success": True}

    async def _handle_mark_task_failed(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        task_id = args["taskId"]
        error = args.get("error", "Unknown error")
        if await self.repository.get_task_node(task_id) is None:
            return {"success": False, "error": f"Task not found: {task_id}"}

        if args.get("shouldRetry"):
            can_retry = await self._fail_or_retry(run_id, task_id, error)
            return {"success": True, "canRetry": can_retry}

        await self.plan_service.fail_task(task_id, error)
        await self._emit(
            run_id,
            StreamEventType.TASK_COMPLETED,
            {"taskId": task_id, "success": False, "error": error},
        )
        return {"success": True, "canRetry": False}

    async def _handle_get_plan_status(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        plan = await self.plan_service.get_plan_by_run_id(run_id)
        if plan is None:
            return {"success": False, "error": "No plan exists for this run"}

        completion = plan_model.completion_status(plan)
        return {
            "success": True,
            "status": {
                "planId": plan.id,
                "status": plan.status.value,
                "totalTasks": len(plan.nodes),
                "completed": completion.summary["completed"],
                "failed": completion.summary["failed"],
                "pending": completion.summary["pending"],
                "readyToStart": [
                    {"id": n.id, "description": n.description, "agentType": n.agent_type.value}
                    for n in plan_model.ready_nodes(plan)
                ],
                "isComplete": completion.complete,
                "isSuccess": completion.success,
            },
        }

    async def _handle_get_run_health(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        plan = await self.plan_service.get_plan_by_run_id(run_id)
        task_ids = [n.id for n in plan.nodes] if plan else []
        health = await self.loop_guard.get_run_health(run_id, task_ids)
        return {"success": True, "health": asdict(health)}

    async def _handle_get_run_summary(self, run_id: str, args: dict[str, Any]) -> dict[str, Any]:
        return {"success": True, "summary": await self.manager.get_run_summary(run_id)}

    # -----------------------------------------------------------------
    # Status and events
    # -----------------------------------------------------------------

    async def get_status(self, run_id: str) -> OrchestratorStatus | None:
        state = await self._load_state(run_id)
        return state.status if state else None

    async def _load_state(self, run_id: str) -> OrchestratorState | None:
        """Cache first, then the repository."""
        try:
            cached = await self.cache.get_orchestrator_state(run_id)
        except Exception as e:
            logger.warning("orchestrator_cache_read_failed", run_id=run_id, error=str(e))
            cached = None
        if cached is not None:
            return cached
        return await self.repository.get_orchestrator_state(run_id)

    async def _set_status(
        self,
        run_id: str,
        status: OrchestratorStatus,
        message: str | None = None,
    ) -> None:
        state = await self._load_state(run_id)
        if state is None:
            raise ValueError(f"Run not found: {run_id}")
        if state.status == status:
            return
        if state.status in TERMINAL_RUN_STATUSES:
            logger.warning(
                "status_transition_ignored",
                run_id=run_id,
                current=state.status.value,
                requested=status.value,
            )
            return

        previous = state.status
        state.status = status
        if status in TERMINAL_RUN_STATUSES:
            state.completed_at = time.time()
        await self.repository.update_orchestrator_status(run_id, status)
        await self._persist_cache_state(state)

        data: dict[str, Any] = {"status": status.value}
        if message:
            data["message"] = message
        await self._emit(run_id, StreamEventType.ORCHESTRATOR_STATUS, data)

        logger.info(
            "run_status_changed",
            run_id=run_id,
            previous=previous.value,
            status=status.value,
            message=message,
        )

        if status in TERMINAL_RUN_STATUSES:
            await self._finish_run(run_id, status)

    async def _finish_run(self, run_id: str, status: OrchestratorStatus) -> None:
        plan = await self.plan_service.get_plan_by_run_id(run_id)
        if plan is not None:
            plan_status = (
                TaskPlanStatus.COMPLETED if status == OrchestratorStatus.COMPLETED else TaskPlanStatus.FAILED
            )
            await self.plan_service.set_plan_status(plan.id, plan_status)
        self._plan_versions.pop(run_id, None)
        if self.metrics_collector:
            self.metrics_collector.finish(run_id)

    async def _emit(
        self,
        run_id: str,
        event_type: StreamEventType,
        data: dict[str, Any],
        agent_id: str | None = None,
    ) -> None:
        await self.distributor.publish(
            run_id,
            StreamEvent(type=event_type, run_id=run_id, agent_id=agent_id, data=data),
        )

    async def _persist_cache_state(self, state: OrchestratorState) -> None:
        try:
            await self.cache.set_orchestrator_state(state)
        except Exception as e:
            logger.error("persist_orchestrator_cache_state_failed", run_id=state.run_id, error=str(e))

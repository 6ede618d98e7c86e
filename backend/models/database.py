"""SQLite-backed durable repository for orchestration state using aiosqlite.

This module provides OrchestratorRepository, the authoritative store for task
plans, task nodes, sub-agent records and orchestrator run state. After a
process restart it is the single source of truth; the cache is re-seeded from
it.

Every operation opens its own connection. Database failures are logged and
re-raised as RepositoryError so callers decide whether a failed write is fatal
(plan creation) or fire-and-forget (sub-agent telemetry).

Tables:
    task_plans: One row per plan (run_id, status, reasoning, timestamps).
    task_nodes: DAG nodes with JSON dependency lists and retry counters.
    sub_agents: Sub-agent records with JSON message/tool/reasoning/artifact logs.
    orchestrator_states: Run-level status, active agent ids and totals.

Usage:
    >>> from models.database import OrchestratorRepository
    >>> repo = OrchestratorRepository("./data/orchestrator.db")
    >>> await repo.init()
    >>> state = await repo.create_orchestrator_state("run_1", "user_1")
    >>> plan = await repo.create_plan("run_1", reasoning="two parallel lookups")
"""

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    AgentMessage,
    AgentType,
    Artifact,
    OrchestratorState,
    OrchestratorStatus,
    ReasoningStep,
    SubAgentState,
    SubAgentStatus,
    TaskNode,
    TaskNodeStatus,
    TaskPlan,
    TaskPlanStatus,
    ToolCallRecord,
    new_id,
)

logger = structlog.get_logger(__name__)

_TERMINAL_NODE_STATUSES = (
    TaskNodeStatus.COMPLETED.value,
    TaskNodeStatus.FAILED.value,
    TaskNodeStatus.CANCELLED.value,
)
_TERMINAL_AGENT_STATUSES = (
    SubAgentStatus.COMPLETED.value,
    SubAgentStatus.FAILED.value,
    SubAgentStatus.CANCELLED.value,
)
_TERMINAL_RUN_STATUSES = (
    OrchestratorStatus.COMPLETED.value,
    OrchestratorStatus.FAILED.value,
)


class RepositoryError(RuntimeError):
    """Raised when a durable store operation fails."""


def _loads(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


class OrchestratorRepository:
    """Async SQLite repository for orchestration state.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the repository.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS task_plans (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'planning',
                        reasoning TEXT NOT NULL DEFAULT '',
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS task_nodes (
                        id TEXT PRIMARY KEY,
                        plan_id TEXT NOT NULL,
                        description TEXT NOT NULL,
                        agent_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        dependencies TEXT NOT NULL DEFAULT '[]',
                        assigned_agent_id TEXT,
                        result TEXT,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL,
                        completed_at REAL,
                        FOREIGN KEY (plan_id) REFERENCES task_plans(id)
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS sub_agents (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL,
                        task_node_id TEXT NOT NULL,
                        agent_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'initializing',
                        task_description TEXT NOT NULL,
                        upstream_context TEXT,
                        additional_tools TEXT NOT NULL DEFAULT '[]',
                        messages TEXT NOT NULL DEFAULT '[]',
                        tool_calls TEXT NOT NULL DEFAULT '[]',
                        reasoning_steps TEXT NOT NULL DEFAULT '[]',
                        artifacts TEXT NOT NULL DEFAULT '[]',
                        pending_guidance TEXT,
                        total_tokens INTEGER NOT NULL DEFAULT 0,
                        total_cost REAL NOT NULL DEFAULT 0,
                        started_at REAL NOT NULL,
                        completed_at REAL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS orchestrator_states (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL UNIQUE,
                        user_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'idle',
                        plan_id TEXT,
                        active_agent_ids TEXT NOT NULL DEFAULT '[]',
                        total_interventions INTEGER NOT NULL DEFAULT 0,
                        total_tokens INTEGER NOT NULL DEFAULT 0,
                        total_cost REAL NOT NULL DEFAULT 0,
                        started_at REAL NOT NULL,
                        completed_at REAL
                    )
                """)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_task_plans_run_id ON task_plans(run_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_task_nodes_plan_id ON task_nodes(plan_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sub_agents_run_id ON sub_agents(run_id)"
                )
                await db.commit()
            logger.info("orchestrator_repository_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "orchestrator_repository_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Low-level helpers
    # -----------------------------------------------------------------

    async def _execute(self, op: str, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount
        except Exception as e:
            logger.error("repository_write_failed", op=op, error=str(e))
            raise RepositoryError(f"{op} failed: {e}") from e

    async def _fetchone(
        self, op: str, sql: str, params: tuple[Any, ...] = ()
    ) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                row = await cursor.fetchone()
                return dict(row) if row is not None else None
        except Exception as e:
            logger.error("repository_read_failed", op=op, error=str(e))
            raise RepositoryError(f"{op} failed: {e}") from e

    async def _fetchall(
        self, op: str, sql: str, params: tuple[Any, ...] = ()
    ) -> list[dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
        except Exception as e:
            logger.error("repository_read_failed", op=op, error=str(e))
            raise RepositoryError(f"{op} failed: {e}") from e

    async def _append_json(self, op: str, agent_id: str, column: str, item: Any) -> None:
        """Append one JSON value to a JSON-array column of sub_agents."""
        await self._execute(
            op,
            f"UPDATE sub_agents SET {column} = json_insert({column}, '$[#]', json(?)) WHERE id = ?",
            (json.dumps(item, default=str), agent_id),
        )

    # -----------------------------------------------------------------
    # Task plans
    # -----------------------------------------------------------------

    async def create_plan(self, run_id: str, reasoning: str = "") -> TaskPlan:
        """Insert an empty plan in planning status."""
        plan = TaskPlan(run_id=run_id, reasoning=reasoning)
        await self._execute(
            "create_plan",
            """
            INSERT INTO task_plans (id, run_id, status, reasoning, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (plan.id, run_id, plan.status.value, reasoning, plan.created_at, plan.updated_at),
        )
        logger.debug("plan_created", plan_id=plan.id, run_id=run_id)
        return plan

    async def get_plan(self, plan_id: str) -> TaskPlan | None:
        """Load a plan with all of its nodes."""
        row = await self._fetchone("get_plan", "SELECT * FROM task_plans WHERE id = ?", (plan_id,))
        if row is None:
            return None
        nodes = await self.get_task_nodes_by_plan(plan_id)
        return self._row_to_plan(row, nodes)

    async def get_plan_by_run_id(self, run_id: str) -> TaskPlan | None:
        """Load the most recent plan for a run."""
        row = await self._fetchone(
            "get_plan_by_run_id",
            "SELECT * FROM task_plans WHERE run_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (run_id,),
        )
        if row is None:
            return None
        nodes = await self.get_task_nodes_by_plan(row["id"])
        return self._row_to_plan(row, nodes)

    async def update_plan_status(self, plan_id: str, status: TaskPlanStatus) -> None:
        await self._execute(
            "update_plan_status",
            "UPDATE task_plans SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, time.time(), plan_id),
        )

    async def touch_plan(self, plan_id: str) -> None:
        """Bump a plan's updated_at after a structural change."""
        await self._execute(
            "touch_plan",
            "UPDATE task_plans SET updated_at = ? WHERE id = ?",
            (time.time(), plan_id),
        )

    # -----------------------------------------------------------------
    # Task nodes
    # -----------------------------------------------------------------

    async def create_task_nodes(self, plan_id: str, nodes: list[TaskNode]) -> list[TaskNode]:
        """Insert several nodes in one transaction, preserving their order."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                for node in nodes:
                    await db.execute(
                        """
                        INSERT INTO task_nodes
                            (id, plan_id, description, agent_type, status, dependencies,
                             assigned_agent_id, result, retry_count, created_at, completed_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            node.id,
                            plan_id,
                            node.description,
                            node.agent_type.value,
                            node.status.value,
                            json.dumps(node.dependencies),
                            node.assigned_agent_id,
                            json.dumps(node.result, default=str) if node.result is not None else None,
                            node.retry_count,
                            node.created_at,
                            node.completed_at,
                        ),
                    )
                await db.commit()
        except Exception as e:
            logger.error("repository_write_failed", op="create_task_nodes", error=str(e))
            raise RepositoryError(f"create_task_nodes failed: {e}") from e
        return [node.model_copy(update={"plan_id": plan_id}) for node in nodes]

    async def create_task_node(
        self,
        plan_id: str,
        description: str,
        agent_type: AgentType,
        dependencies: list[str],
    ) -> TaskNode:
        node = TaskNode(
            plan_id=plan_id,
            description=description,
            agent_type=agent_type,
            dependencies=list(dependencies),
        )
        created = await self.create_task_nodes(plan_id, [node])
        return created[0]

    async def get_task_node(self, node_id: str) -> TaskNode | None:
        row = await self._fetchone("get_task_node", "SELECT * FROM task_nodes WHERE id = ?", (node_id,))
        return self._row_to_node(row) if row else None

    async def get_task_nodes_by_plan(self, plan_id: str) -> list[TaskNode]:
        rows = await self._fetchall(
            "get_task_nodes_by_plan",
            "SELECT * FROM task_nodes WHERE plan_id = ? ORDER BY created_at, rowid",
            (plan_id,),
        )
        return [self._row_to_node(row) for row in rows]

    async def update_task_node_status(self, node_id: str, status: TaskNodeStatus) -> None:
        """Set a node's status; terminal statuses stamp completed_at, pending clears it."""
        completed_at = time.time() if status.value in _TERMINAL_NODE_STATUSES else None
        await self._execute(
            "update_task_node_status",
            "UPDATE task_nodes SET status = ?, completed_at = ? WHERE id = ?",
            (status.value, completed_at, node_id),
        )

    async def update_task_node_result(self, node_id: str, result: Any) -> None:
        await self._execute(
            "update_task_node_result",
            "UPDATE task_nodes SET result = ? WHERE id = ?",
            (json.dumps(result, default=str), node_id),
        )

    async def update_task_node(
        self,
        node_id: str,
        *,
        description: str | None = None,
        agent_type: AgentType | None = None,
        dependencies: list[str] | None = None,
    ) -> None:
        """Update editable fields of a node. None leaves a field unchanged."""
        await self._execute(
            "update_task_node",
            """
            UPDATE task_nodes
            SET description = COALESCE(?, description),
                agent_type = COALESCE(?, agent_type),
                dependencies = COALESCE(?, dependencies)
            WHERE id = ?
            """,
            (
                description,
                agent_type.value if agent_type else None,
                json.dumps(dependencies) if dependencies is not None else None,
                node_id,
            ),
        )

    async def assign_agent_to_node(self, node_id: str, agent_id: str) -> None:
        await self._execute(
            "assign_agent_to_node",
            "UPDATE task_nodes SET assigned_agent_id = ? WHERE id = ?",
            (agent_id, node_id),
        )

    async def increment_retry_count(self, node_id: str) -> int:
        """Durably increment a node's retry counter and return the new value."""
        await self._execute(
            "increment_retry_count",
            "UPDATE task_nodes SET retry_count = retry_count + 1 WHERE id = ?",
            (node_id,),
        )
        row = await self._fetchone(
            "increment_retry_count",
            "SELECT retry_count FROM task_nodes WHERE id = ?",
            (node_id,),
        )
        return int(row["retry_count"]) if row else 0

    async def get_retry_count(self, node_id: str) -> int:
        row = await self._fetchone(
            "get_retry_count",
            "SELECT retry_count FROM task_nodes WHERE id = ?",
            (node_id,),
        )
        return int(row["retry_count"]) if row else 0

    async def get_retry_counts(self, run_id: str) -> dict[str, int]:
        """Retry counters for every node of every plan in a run."""
        rows = await self._fetchall(
            "get_retry_counts",
            """
            SELECT n.id AS node_id, n.retry_count AS retry_count
            FROM task_nodes n JOIN task_plans p ON p.id = n.plan_id
            WHERE p.run_id = ?
            """,
            (run_id,),
        )
        return {row["node_id"]: int(row["retry_count"]) for row in rows}

    # -----------------------------------------------------------------
    # Sub-agents
    # -----------------------------------------------------------------

    async def create_sub_agent(self, state: SubAgentState) -> SubAgentState:
        await self._execute(
            "create_sub_agent",
            """
            INSERT INTO sub_agents
                (id, run_id, task_node_id, agent_type, status, task_description,
                 upstream_context, additional_tools, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                state.id,
                state.run_id,
                state.task_node_id,
                state.agent_type.value,
                state.status.value,
                state.task_description,
                state.upstream_context,
                json.dumps(state.additional_tools),
                state.started_at,
            ),
        )
        logger.debug("sub_agent_record_created", agent_id=state.id, run_id=state.run_id)
        return state

    async def get_sub_agent(self, agent_id: str) -> SubAgentState | None:
        row = await self._fetchone("get_sub_agent", "SELECT * FROM sub_agents WHERE id = ?", (agent_id,))
        return self._row_to_sub_agent(row) if row else None

    async def get_sub_agents_by_run(self, run_id: str) -> list[SubAgentState]:
        rows = await self._fetchall(
            "get_sub_agents_by_run",
            "SELECT * FROM sub_agents WHERE run_id = ? ORDER BY started_at, rowid",
            (run_id,),
        )
        return [self._row_to_sub_agent(row) for row in rows]

    async def get_active_sub_agents(self, run_id: str | None = None) -> list[SubAgentState]:
        """Sub-agents not yet in a terminal status, optionally scoped to a run."""
        sql = "SELECT * FROM sub_agents WHERE status IN ('initializing', 'running')"
        params: tuple[Any, ...] = ()
        if run_id is not None:
            sql += " AND run_id = ?"
            params = (run_id,)
        rows = await self._fetchall("get_active_sub_agents", sql + " ORDER BY started_at", params)
        return [self._row_to_sub_agent(row) for row in rows]

    async def update_sub_agent_status(self, agent_id: str, status: SubAgentStatus) -> bool:
        """Advance a sub-agent's status.

        Terminal records are never overwritten, so status stays monotonic even
        when the runner and the manager's cleanup both persist a final value.

        Returns:
            True if a row was updated.
        """
        completed_at = time.time() if status.value in _TERMINAL_AGENT_STATUSES else None
        updated = await self._execute(
            "update_sub_agent_status",
            f"""
            UPDATE sub_agents SET status = ?, completed_at = COALESCE(?, completed_at)
            WHERE id = ? AND status NOT IN {_TERMINAL_AGENT_STATUSES!r}
            """,
            (status.value, completed_at, agent_id),
        )
        return updated > 0

    async def append_message(self, agent_id: str, message: AgentMessage) -> None:
        await self._append_json("append_message", agent_id, "messages", message.model_dump())

    async def append_tool_call(self, agent_id: str, record: ToolCallRecord) -> None:
        await self._append_json("append_tool_call", agent_id, "tool_calls", record.model_dump())

    async def append_reasoning_step(self, agent_id: str, step: ReasoningStep) -> None:
        await self._append_json("append_reasoning_step", agent_id, "reasoning_steps", step.model_dump())

    async def append_artifact(self, agent_id: str, artifact: Artifact) -> None:
        await self._append_json("append_artifact", agent_id, "artifacts", artifact.model_dump())

    async def set_guidance(self, agent_id: str, guidance: str) -> None:
        await self._execute(
            "set_guidance",
            "UPDATE sub_agents SET pending_guidance = ? WHERE id = ?",
            (guidance, agent_id),
        )

    async def clear_guidance(self, agent_id: str) -> None:
        await self._execute(
            "clear_guidance",
            "UPDATE sub_agents SET pending_guidance = NULL WHERE id = ?",
            (agent_id,),
        )

    async def update_sub_agent_metrics(self, agent_id: str, tokens: int, cost: float) -> None:
        """Add token and cost deltas to a sub-agent's totals."""
        await self._execute(
            "update_sub_agent_metrics",
            """
            UPDATE sub_agents
            SET total_tokens = total_tokens + ?, total_cost = total_cost + ?
            WHERE id = ?
            """,
            (tokens, cost, agent_id),
        )

    # -----------------------------------------------------------------
    # Orchestrator state
    # -----------------------------------------------------------------

    async def create_orchestrator_state(self, run_id: str, user_id: str) -> OrchestratorState:
        state = OrchestratorState(id=new_id(), run_id=run_id, user_id=user_id)
        await self._execute(
            "create_orchestrator_state",
            """
            INSERT INTO orchestrator_states (id, run_id, user_id, status, started_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (state.id, run_id, user_id, state.status.value, state.started_at),
        )
        logger.debug("orchestrator_state_created", run_id=run_id)
        return state

    async def get_orchestrator_state(self, run_id: str) -> OrchestratorState | None:
        """Load run state including its plan and per-node retry counters."""
        row = await self._fetchone(
            "get_orchestrator_state",
            "SELECT * FROM orchestrator_states WHERE run_id = ?",
            (run_id,),
        )
        if row is None:
            return None
        plan = await self.get_plan(row["plan_id"]) if row.get("plan_id") else None
        loop_counters = {n.id: n.retry_count for n in plan.nodes} if plan else {}
        return OrchestratorState(
            id=row["id"],
            run_id=row["run_id"],
            user_id=row["user_id"],
            status=OrchestratorStatus(row["status"]),
            plan=plan,
            active_agent_ids=_loads(row["active_agent_ids"], []),
            loop_counters=loop_counters,
            total_interventions=row["total_interventions"],
            total_tokens=row["total_tokens"],
            total_cost=row["total_cost"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    async def get_live_run_ids(self) -> list[str]:
        """Run ids whose orchestrator status is not terminal."""
        rows = await self._fetchall(
            "get_live_run_ids",
            f"SELECT run_id FROM orchestrator_states WHERE status NOT IN {_TERMINAL_RUN_STATUSES!r}",
        )
        return [row["run_id"] for row in rows]

    async def update_orchestrator_status(self, run_id: str, status: OrchestratorStatus) -> None:
        completed_at = time.time() if status.value in _TERMINAL_RUN_STATUSES else None
        await self._execute(
            "update_orchestrator_status",
            "UPDATE orchestrator_states SET status = ?, completed_at = ? WHERE run_id = ?",
            (status.value, completed_at, run_id),
        )

    async def update_orchestrator_plan(self, run_id: str, plan_id: str) -> None:
        await self._execute(
            "update_orchestrator_plan",
            "UPDATE orchestrator_states SET plan_id = ? WHERE run_id = ?",
            (plan_id, run_id),
        )

    async def add_active_agent(self, run_id: str, agent_id: str) -> None:
        await self._execute(
            "add_active_agent",
            """
            UPDATE orchestrator_states
            SET active_agent_ids = json_insert(active_agent_ids, '$[#]', ?)
            WHERE run_id = ?
              AND NOT EXISTS (SELECT 1 FROM json_each(active_agent_ids) WHERE value = ?)
            """,
            (agent_id, run_id, agent_id),
        )

    async def remove_active_agent(self, run_id: str, agent_id: str) -> None:
        await self._execute(
            "remove_active_agent",
            """
            UPDATE orchestrator_states
            SET active_agent_ids = (
                SELECT COALESCE(json_group_array(value), '[]')
                FROM json_each(active_agent_ids) WHERE value != ?
            )
            WHERE run_id = ?
            """,
            (agent_id, run_id),
        )

    async def increment_interventions(self, run_id: str) -> int:
        await self._execute(
            "increment_interventions",
            "UPDATE orchestrator_states SET total_interventions = total_interventions + 1 WHERE run_id = ?",
            (run_id,),
        )
        return await self.get_intervention_count(run_id)

    async def get_intervention_count(self, run_id: str) -> int:
        row = await self._fetchone(
            "get_intervention_count",
            "SELECT total_interventions FROM orchestrator_states WHERE run_id = ?",
            (run_id,),
        )
        return int(row["total_interventions"]) if row else 0

    async def update_orchestrator_metrics(self, run_id: str, tokens: int, cost: float) -> None:
        """Add token and cost deltas to a run's totals."""
        await self._execute(
            "update_orchestrator_metrics",
            """
            UPDATE orchestrator_states
            SET total_tokens = total_tokens + ?, total_cost = total_cost + ?
            WHERE run_id = ?
            """,
            (tokens, cost, run_id),
        )

    # -----------------------------------------------------------------
    # Row mapping
    # -----------------------------------------------------------------

    @staticmethod
    def _row_to_plan(row: dict[str, Any], nodes: list[TaskNode]) -> TaskPlan:
        return TaskPlan(
            id=row["id"],
            run_id=row["run_id"],
            nodes=nodes,
            status=TaskPlanStatus(row["status"]),
            reasoning=row["reasoning"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_node(row: dict[str, Any]) -> TaskNode:
        return TaskNode(
            id=row["id"],
            plan_id=row["plan_id"],
            description=row["description"],
            agent_type=AgentType(row["agent_type"]),
            status=TaskNodeStatus(row["status"]),
            dependencies=_loads(row["dependencies"], []),
            assigned_agent_id=row["assigned_agent_id"],
            result=_loads(row["result"], None),
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_sub_agent(row: dict[str, Any]) -> SubAgentState:
        return SubAgentState(
            id=row["id"],
            run_id=row["run_id"],
            task_node_id=row["task_node_id"],
            agent_type=AgentType(row["agent_type"]),
            status=SubAgentStatus(row["status"]),
            task_description=row["task_description"],
            upstream_context=row["upstream_context"],
            additional_tools=_loads(row["additional_tools"], []),
            messages=_loads(row["messages"], []),
            tool_calls=_loads(row["tool_calls"], []),
            reasoning_steps=_loads(row["reasoning_steps"], []),
            artifacts=_loads(row["artifacts"], []),
            pending_guidance=row["pending_guidance"],
            total_tokens=row["total_tokens"],
            total_cost=row["total_cost"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

"""In-memory metrics collection for live orchestration runs.

RunMetricsCollector accumulates token usage, LLM/tool call counts and agent
outcomes per run. The engine starts tracking when a run starts and finishes
it when the run reaches a terminal status; durable totals are written to the
repository separately via update_orchestrator_metrics.

Usage:
    >>> from metrics import RunMetricsCollector
    >>> collector = RunMetricsCollector()
    >>> collector.start("run_1")
    >>> collector.record_llm_call("run_1", prompt_tokens=100, completion_tokens=50)
    >>> collector.record_tool_call("run_1")
    >>> final = collector.finish("run_1")
"""

import time
from dataclasses import dataclass, field

import structlog

from models.schemas import SubAgentStatus

logger = structlog.get_logger(__name__)


@dataclass
class RunMetricsData:
    """Accumulated metrics for a single run.

    Attributes:
        total_tokens: Sum of prompt and completion tokens.
        prompt_tokens: Total input tokens across all LLM calls.
        completion_tokens: Total output tokens across all LLM calls.
        total_cost: Cost as reported by the inference backend.
        llm_calls: Number of LLM invocations.
        tool_calls: Number of tool executions.
        agents_spawned: Number of sub-agents started.
        agents_completed: Sub-agents that finished successfully.
        agents_failed: Sub-agents that failed or were cancelled.
        duration_ms: Total run time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: float = 0.0
    llm_calls: int = 0
    tool_calls: int = 0
    agents_spawned: int = 0
    agents_completed: int = 0
    agents_failed: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, int | float]:
        return {
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_cost": self.total_cost,
            "llm_calls": self.llm_calls,
            "tool_calls": self.tool_calls,
            "agents_spawned": self.agents_spawned,
            "agents_completed": self.agents_completed,
            "agents_failed": self.agents_failed,
            "duration_ms": self.duration_ms,
        }


class RunMetricsCollector:
    """In-memory collector that tracks per-run metrics.

    Recording against a run that is not being tracked is a logged no-op.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunMetricsData] = {}
        logger.info("run_metrics_collector_initialized")

    def start(self, run_id: str) -> None:
        """Begin tracking a run. Already-tracked runs are left untouched."""
        if run_id in self._runs:
            logger.debug("metrics_already_tracking", run_id=run_id)
            return
        self._runs[run_id] = RunMetricsData()
        logger.debug("metrics_tracking_started", run_id=run_id)

    def record_llm_call(
        self,
        run_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost: float = 0.0,
    ) -> None:
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_record_no_run", run_id=run_id)
            return

        data.prompt_tokens += prompt_tokens
        data.completion_tokens += completion_tokens
        data.total_tokens += prompt_tokens + completion_tokens
        data.total_cost += cost
        data.llm_calls += 1

        logger.debug(
            "metrics_llm_call_recorded",
            run_id=run_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_llm_calls=data.llm_calls,
        )

    def record_tool_call(self, run_id: str) -> None:
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_tool_no_run", run_id=run_id)
            return
        data.tool_calls += 1

    def record_agent_spawned(self, run_id: str) -> None:
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_agent_no_run", run_id=run_id)
            return
        data.agents_spawned += 1

    def record_agent_finished(self, run_id: str, status: SubAgentStatus) -> None:
        """Count a terminal agent outcome; cancelled agents count as failed."""
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_agent_no_run", run_id=run_id)
            return
        if status == SubAgentStatus.COMPLETED:
            data.agents_completed += 1
        else:
            data.agents_failed += 1

    def finish(self, run_id: str) -> RunMetricsData | None:
        """Finalize a run's metrics and stop tracking it.

        Returns:
            The final RunMetricsData with duration_ms set, or None if the run
            was not tracked.
        """
        data = self._runs.pop(run_id, None)
        if data is None:
            logger.warning("metrics_finish_no_run", run_id=run_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_run_finished",
            run_id=run_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            tool_calls=data.tool_calls,
            agents_spawned=data.agents_spawned,
            duration_ms=data.duration_ms,
        )
        return data

    def get(self, run_id: str) -> RunMetricsData | None:
        """Current metrics for a run without removing it."""
        return self._runs.get(run_id)

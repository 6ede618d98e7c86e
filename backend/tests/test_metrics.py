"""Tests for metrics.py -- per-run in-memory counters."""

from metrics import RunMetricsCollector
from models.schemas import SubAgentStatus


class TestRunMetricsCollector:
    def test_accumulates(self) -> None:
        collector = RunMetricsCollector()
        collector.start("run_1")
        collector.record_llm_call("run_1", prompt_tokens=100, completion_tokens=50, cost=0.01)
        collector.record_llm_call("run_1", prompt_tokens=10, completion_tokens=5)
        collector.record_tool_call("run_1")

        data = collector.get("run_1")
        assert data.total_tokens == 165
        assert data.prompt_tokens == 110
        assert data.llm_calls == 2
        assert data.tool_calls == 1

    def test_agent_outcomes(self) -> None:
        collector = RunMetricsCollector()
        collector.start("run_1")
        collector.record_agent_spawned("run_1")
        collector.record_agent_spawned("run_1")
        collector.record_agent_finished("run_1", SubAgentStatus.COMPLETED)
        collector.record_agent_finished("run_1", SubAgentStatus.CANCELLED)

        data = collector.get("run_1")
        assert data.agents_spawned == 2
        assert data.agents_completed == 1
        assert data.agents_failed == 1

    def test_finish_stops_tracking(self) -> None:
        collector = RunMetricsCollector()
        collector.start("run_1")
        collector.record_tool_call("run_1")

        final = collector.finish("run_1")

        assert final.tool_calls == 1
        assert final.duration_ms >= 0
        assert final.to_dict()["tool_calls"] == 1
        assert collector.get("run_1") is None
        assert collector.finish("run_1") is None

    def test_start_twice_keeps_counts(self) -> None:
        collector = RunMetricsCollector()
        collector.start("run_1")
        collector.record_tool_call("run_1")
        collector.start("run_1")
        assert collector.get("run_1").tool_calls == 1

    def test_untracked_run_is_noop(self) -> None:
        collector = RunMetricsCollector()
        collector.record_llm_call("ghost", 1, 1)
        collector.record_tool_call("ghost")
        collector.record_agent_spawned("ghost")
        collector.record_agent_finished("ghost", SubAgentStatus.FAILED)
        assert collector.get("ghost") is None

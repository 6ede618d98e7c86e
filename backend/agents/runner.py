"""Sub-agent runner: a LangGraph reasoning loop bound to one task node.

The graph is a two-node cycle:

    START -> reason -> [act -> reason ... | END]

1. REASON: inject pending orchestrator guidance, stream the model, record the
   assistant message and decide whether tools are needed.
2. ACT: execute each requested tool through the scoped tool port.

The loop ends when the model answers without tool calls (completed), when the
cancellation flag is observed (cancelled) or when max_iterations model calls
have been spent (failed).

Events emitted on the runner's own channel (SubAgentEventType):
- TOKEN, TOOL_CALL: while the model streams
- REASONING: thinking, decision and observation steps
- TOOL_RESULT: after each tool execution
- ARTIFACT: code/data blocks extracted from the final answer
- STATUS, COMPLETE, ERROR: lifecycle
"""

import contextlib
import json
import operator
import re
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Annotated, Any, Literal, Optional, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.llm import LLMClient, LLMResponse, ToolCallData
from agents.prompts import GUIDANCE_PREFIX, build_initial_message, build_system_prompt
from agents.tools import ScopedToolInvoker, ToolInvoker, ToolResult, get_tool_definitions_for_llm
from config import settings
from events.types import SubAgentEvent, SubAgentEventType
from models.database import OrchestratorRepository
from models.schemas import (
    AgentMessage,
    Artifact,
    ArtifactType,
    ReasoningStep,
    ReasoningStepType,
    SpawnAgentConfig,
    SubAgentResult,
    SubAgentState,
    SubAgentStatus,
    ToolCallRecord,
)

if TYPE_CHECKING:
    from metrics import RunMetricsCollector

logger = structlog.get_logger()

EventCallback = Callable[[SubAgentEvent], Awaitable[None]]

_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
_JSON_BLOCK_RE = re.compile(r"```json\n(.*?)```", re.DOTALL)


class RunnerState(TypedDict):
    """State flowing through the runner graph.

    Attributes:
        messages: Conversation sent to the model (append-only reducer)
        iteration: Number of model calls made so far
        tool_calls: Tool calls requested by the latest model turn
        content: Text of the latest model turn
        outcome: running until the loop decides how it ended
    """

    messages: Annotated[list[dict[str, Any]], operator.add]
    iteration: int
    tool_calls: list[ToolCallData]
    content: str
    outcome: Literal["running", "completed", "cancelled", "max_iterations"]


def extract_artifacts(content: str) -> list[Artifact]:
    """Pull fenced code blocks and JSON blocks out of a final answer.

    Every fenced block becomes a code artifact; ```json blocks that parse
    additionally become data artifacts.
    """
    artifacts: list[Artifact] = []

    for match in _CODE_BLOCK_RE.finditer(content):
        language = match.group(1) or "text"
        artifacts.append(
            Artifact(
                type=ArtifactType.CODE,
                name=f"code_{language}_{len(artifacts) + 1}",
                content={"language": language, "code": match.group(2)},
            )
        )

    for match in _JSON_BLOCK_RE.finditer(content):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        artifacts.append(
            Artifact(type=ArtifactType.DATA, name=f"data_{len(artifacts) + 1}", content=data)
        )

    return artifacts


class SubAgentRunner:
    """Runs one sub-agent to completion and exposes a narrow control surface.

    Control methods (inject_guidance, cancel) are cooperative: guidance is
    picked up by the next reason step and cancellation is observed before each
    model call, between streamed chunks and before each tool call.

    Attributes:
        state: Live SubAgentState, authoritative while the runner is alive
        max_iterations: Ceiling on model calls
    """

    def __init__(
        self,
        state: SubAgentState,
        config: SpawnAgentConfig,
        llm_client: LLMClient,
        tool_invoker: ToolInvoker,
        repository: OrchestratorRepository,
        metrics_collector: Optional["RunMetricsCollector"] = None,
        max_iterations: int | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.state = state
        self.config = config
        self.llm_client = llm_client
        self.tools = ScopedToolInvoker.for_agent(
            tool_invoker, config.agent_type, config.additional_tools
        )
        self.repository = repository
        self.metrics_collector = metrics_collector
        self.max_iterations = max_iterations or settings.runner_max_iterations
        self.temperature = temperature if temperature is not None else settings.runner_temperature
        self.max_tokens = max_tokens or settings.runner_max_tokens

        self._cancelled = False
        self._pending_guidance: str | None = None
        self._subscribers: list[EventCallback] = []
        self._system_prompt = ""
        self._tool_definitions: list[dict[str, Any]] = []
        self._compiled_graph = self._build_graph()

    @property
    def agent_id(self) -> str:
        return self.state.id

    def _build_graph(self) -> Any:
        graph = StateGraph(RunnerState)

        graph.add_node("reason", self._reason)
        graph.add_node("act", self._act)

        graph.add_edge(START, "reason")
        graph.add_conditional_edges(
            "reason",
            self._after_reason,
            {"act": "act", "end": END},
        )
        graph.add_conditional_edges(
            "act",
            self._after_act,
            {"continue": "reason", "end": END},
        )

        return graph.compile()

    # -----------------------------------------------------------------
    # Control surface
    # -----------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an event callback; returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    def inject_guidance(self, guidance: str) -> None:
        """Queue guidance for the next reason step. Later guidance replaces earlier."""
        self._pending_guidance = guidance
        self.state.pending_guidance = guidance

    async def cancel(self, reason: str) -> None:
        """Request cooperative cancellation."""
        if self._cancelled or self.state.status.is_terminal:
            return
        self._cancelled = True
        logger.info("sub_agent_cancel_requested", agent_id=self.agent_id, reason=reason)
        await self._emit_reasoning(ReasoningStepType.OBSERVATION, f"Cancelled: {reason}")
        await self._emit_status(SubAgentStatus.CANCELLED)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def get_state(self) -> SubAgentState:
        return self.state.model_copy(deep=True)

    # -----------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------

    async def run(self) -> SubAgentResult:
        """Run the reasoning loop. Never raises; failures become results."""
        if self._cancelled:
            return self._result(False, None, "Agent was cancelled")

        try:
            await self._emit_status(SubAgentStatus.RUNNING)

            self._system_prompt = build_system_prompt(
                self.config.agent_type,
                self.config.task_description,
                self.tools.allowed_tool_ids,
                self.config.instructions,
            )
            self._tool_definitions = get_tool_definitions_for_llm(
                await self.tools.get_tools(self.config.user_id)
            )

            opening = AgentMessage(
                role="user",
                content=build_initial_message(
                    self.config.task_description, self.config.upstream_context
                ),
            )
            await self._record_message(opening)

            initial: RunnerState = {
                "messages": [opening.to_llm_dict()],
                "iteration": 0,
                "tool_calls": [],
                "content": "",
                "outcome": "running",
            }
            final_state = await self._compiled_graph.ainvoke(
                initial,
                config={"recursion_limit": self.max_iterations * 2 + 5},
            )

            if self._cancelled or final_state["outcome"] == "cancelled":
                return self._result(False, None, "Agent was cancelled")

            if final_state["outcome"] == "max_iterations":
                error = f"Reached maximum iterations ({self.max_iterations})"
                logger.warning(
                    "sub_agent_max_iterations",
                    agent_id=self.agent_id,
                    max_iterations=self.max_iterations,
                )
                await self._emit_status(SubAgentStatus.FAILED)
                await self._emit(SubAgentEventType.ERROR, {"error": error})
                return self._result(False, None, error)

            for artifact in extract_artifacts(final_state["content"]):
                self.state.artifacts.append(artifact)
                await self._persist("append_artifact", self.repository.append_artifact(self.agent_id, artifact))
                await self._emit(SubAgentEventType.ARTIFACT, {"artifact": artifact.model_dump(mode="json")})

            last_answer = next(
                (m.content for m in reversed(self.state.messages) if m.role == "assistant" and m.content),
                None,
            )
            result = self._result(True, last_answer or "Task completed", None)
            await self._emit_status(SubAgentStatus.COMPLETED)
            await self._emit(SubAgentEventType.COMPLETE, {"result": result.model_dump(mode="json")})
            logger.info(
                "sub_agent_completed",
                agent_id=self.agent_id,
                run_id=self.state.run_id,
                total_tokens=self.state.total_tokens,
            )
            return result

        except Exception as e:
            logger.error(
                "sub_agent_failed",
                agent_id=self.agent_id,
                run_id=self.state.run_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._emit_status(SubAgentStatus.FAILED)
            await self._emit(SubAgentEventType.ERROR, {"error": str(e)})
            return self._result(False, None, str(e))

    async def _reason(self, state: RunnerState) -> dict[str, Any]:
        new_messages: list[dict[str, Any]] = []

        if self._pending_guidance:
            guidance = self._pending_guidance
            self._pending_guidance = None
            self.state.pending_guidance = None
            message = AgentMessage(role="system", content=f"{GUIDANCE_PREFIX}{guidance}")
            await self._record_message(message)
            new_messages.append(message.to_llm_dict())
            await self._persist("clear_guidance", self.repository.clear_guidance(self.agent_id))
            await self._emit_reasoning(
                ReasoningStepType.OBSERVATION, "Received guidance from orchestrator"
            )

        if self._cancelled:
            return {"messages": new_messages, "tool_calls": [], "outcome": "cancelled"}

        await self._emit_reasoning(
            ReasoningStepType.THINKING, f"Processing task: {self.config.task_description}"
        )

        content_parts: list[str] = []
        tool_calls: list[ToolCallData] = []
        response: LLMResponse | None = None

        stream = self.llm_client.stream(
            state["messages"] + new_messages,
            tools=self._tool_definitions or None,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self._system_prompt,
            run_id=self.state.run_id,
        )
        async with contextlib.aclosing(stream):
            async for chunk in stream:
                if self._cancelled:
                    break
                if chunk.type == "token" and chunk.token:
                    content_parts.append(chunk.token)
                    await self._emit(SubAgentEventType.TOKEN, {"token": chunk.token})
                elif chunk.type == "tool_call" and chunk.tool_call:
                    tool_calls.append(chunk.tool_call)
                    await self._emit(
                        SubAgentEventType.TOOL_CALL,
                        {
                            "toolId": chunk.tool_call.id,
                            "toolName": chunk.tool_call.name,
                            "input": chunk.tool_call.args,
                        },
                    )
                elif chunk.type == "done":
                    response = chunk.response

        if response is not None:
            tokens = response.usage.total_tokens
            cost = response.usage.cost
            self.state.total_tokens += tokens
            self.state.total_cost += cost
            await self._persist(
                "update_sub_agent_metrics",
                self.repository.update_sub_agent_metrics(self.agent_id, tokens, cost),
            )

        content = "".join(content_parts)
        if content or tool_calls:
            assistant = AgentMessage(
                role="assistant",
                content=content,
                tool_calls=[tc.to_llm_dict() for tc in tool_calls] or None,
            )
            await self._record_message(assistant)
            new_messages.append(assistant.to_llm_dict())

        if tool_calls:
            names = ", ".join(tc.name for tc in tool_calls)
            await self._emit_reasoning(ReasoningStepType.DECISION, f"Decided to use tools: {names}")
        elif content:
            await self._emit_reasoning(ReasoningStepType.DECISION, "Formulated response")

        if self._cancelled:
            outcome = "cancelled"
        elif tool_calls:
            outcome = "running"
        else:
            outcome = "completed"

        return {
            "messages": new_messages,
            "iteration": state["iteration"] + 1,
            "tool_calls": tool_calls,
            "content": content,
            "outcome": outcome,
        }

    async def _act(self, state: RunnerState) -> dict[str, Any]:
        new_messages: list[dict[str, Any]] = []
        for tool_call in state["tool_calls"]:
            if self._cancelled:
                break
            new_messages.append(await self._execute_tool_call(tool_call))

        if self._cancelled:
            outcome = "cancelled"
        elif state["iteration"] >= self.max_iterations:
            outcome = "max_iterations"
        else:
            outcome = "running"
        return {"messages": new_messages, "tool_calls": [], "outcome": outcome}

    def _after_reason(self, state: RunnerState) -> str:
        if state["outcome"] == "running" and state["tool_calls"]:
            return "act"
        return "end"

    def _after_act(self, state: RunnerState) -> str:
        return "continue" if state["outcome"] == "running" else "end"

    async def _execute_tool_call(self, tool_call: ToolCallData) -> dict[str, Any]:
        start = time.time()
        try:
            result = await self.tools.invoke(tool_call.name, tool_call.args, self.config.user_id)
        except Exception as e:
            logger.warning(
                "sub_agent_tool_invoke_failed",
                agent_id=self.agent_id,
                tool_id=tool_call.name,
                error=str(e),
            )
            result = ToolResult(success=False, error=str(e))

        output = result.output if result.success else {"error": result.error}
        record = ToolCallRecord(
            run_id=self.state.run_id,
            tool_id=tool_call.name,
            input=tool_call.args,
            output=output,
            status="success" if result.success else "error",
            duration_ms=int((time.time() - start) * 1000),
        )
        self.state.tool_calls.append(record)
        await self._persist("append_tool_call", self.repository.append_tool_call(self.agent_id, record))
        if self.metrics_collector:
            self.metrics_collector.record_tool_call(self.state.run_id)

        await self._emit(
            SubAgentEventType.TOOL_RESULT,
            {"toolId": tool_call.id, "output": output, "success": result.success},
        )
        await self._emit_reasoning(
            ReasoningStepType.OBSERVATION,
            f"Tool {tool_call.name} returned: {'success' if result.success else 'error'}",
        )

        message = AgentMessage(
            role="tool",
            content=json.dumps(output, default=str),
            tool_call_id=tool_call.id,
        )
        await self._record_message(message)
        return message.to_llm_dict()

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _emit(self, event_type: SubAgentEventType, data: dict[str, Any]) -> None:
        """Deliver an event to every subscriber, in registration order."""
        event = SubAgentEvent(type=event_type, agent_id=self.agent_id, data=data)
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.error(
                    "sub_agent_subscriber_failed",
                    agent_id=self.agent_id,
                    event_type=event_type.value,
                    error=str(e),
                )

    async def _emit_status(self, status: SubAgentStatus) -> None:
        if self.state.status.is_terminal:
            return
        self.state.status = status
        if status.is_terminal:
            self.state.completed_at = time.time()
        await self._emit(SubAgentEventType.STATUS, {"status": status.value})

    async def _emit_reasoning(self, step_type: ReasoningStepType, content: str) -> None:
        step = ReasoningStep(type=step_type, content=content)
        self.state.reasoning_steps.append(step)
        await self._persist(
            "append_reasoning_step", self.repository.append_reasoning_step(self.agent_id, step)
        )
        await self._emit(SubAgentEventType.REASONING, {"step": step.model_dump(mode="json")})

    async def _record_message(self, message: AgentMessage) -> None:
        self.state.messages.append(message)
        await self._persist("append_message", self.repository.append_message(self.agent_id, message))

    async def _persist(self, op: str, write: Awaitable[None]) -> None:
        """Await a repository write, logging failures without propagating them."""
        try:
            await write
        except Exception as e:
            logger.error(
                "sub_agent_persist_failed",
                agent_id=self.agent_id,
                op=op,
                error=str(e),
            )

    def _result(self, success: bool, output: Any, error: str | None) -> SubAgentResult:
        return SubAgentResult(
            success=success,
            output=output,
            error=error,
            artifacts=list(self.state.artifacts),
            total_tokens=self.state.total_tokens,
            total_cost=self.state.total_cost,
        )

"""Tool-execution port, in-process registry and per-agent-type scoping.

Sub-agents never see the full tool catalog. Each AgentType maps to a base
scope (AGENT_TOOL_SCOPES); the orchestrator may grant extra tool ids at spawn
time. Orchestrator-only tools are stripped from every sub-agent scope.

Components:
    ToolInvoker: protocol every tool backend implements.
    ToolRegistry: in-process async handlers with an optional deny list per
        principal.
    ScopedToolInvoker: wraps an invoker and refuses calls outside a scope.
"""

import ast
import operator
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from models.schemas import AgentType

logger = structlog.get_logger()

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


AGENT_TOOL_SCOPES: dict[AgentType, list[str]] = {
    AgentType.GENERAL: [
        "recall",
        "kg_query",
        "get_current_time",
        "calculate",
        "web_search",
    ],
    AgentType.RESEARCH: [
        "recall",
        "kg_query",
        "web_search",
        "web_fetch",
        "web_scrape",
        "summarize",
        "extract_entities",
        "compare_sources",
    ],
    AgentType.CODING: [
        "recall",
        "file_read",
        "file_write",
        "file_list",
        "file_delete",
        "code_execute",
        "code_analyze",
        "code_format",
        "code_lint",
        "git_status",
        "git_diff",
        "git_commit",
    ],
    AgentType.SCHEDULING: [
        "recall",
        "get_current_time",
        "calculate",
        "calendar_list",
        "calendar_get",
        "calendar_create",
        "calendar_update",
        "calendar_delete",
        "reminder_list",
        "reminder_create",
        "reminder_update",
        "reminder_delete",
    ],
    AgentType.PRODUCTIVITY: [
        "recall",
        "get_current_time",
        "task_list",
        "task_get",
        "task_create",
        "task_update",
        "task_delete",
        "task_complete",
        "note_list",
        "note_get",
        "note_create",
        "note_update",
        "note_delete",
        "note_search",
        "document_create",
        "document_update",
    ],
    AgentType.MESSAGING: [
        "recall",
        "email_list",
        "email_get",
        "email_send",
        "email_draft",
        "email_reply",
        "sms_send",
        "notification_send",
        "contact_search",
        "contact_get",
    ],
}

# Directive tools the orchestrator itself uses; never granted to sub-agents.
ORCHESTRATOR_ONLY_TOOL_IDS = frozenset({
    "create_task_plan",
    "modify_plan",
    "start_agent",
    "monitor_agent",
    "intervene_agent",
    "cancel_agent",
    "mark_task_complete",
    "mark_task_failed",
    "get_plan_status",
    "get_run_health",
    "get_run_summary",
    "store_memory",
    "respond_to_user",
})


def get_agent_tools(agent_type: AgentType, additional_tools: list[str] | None = None) -> list[str]:
    """Tool ids an agent of this type may use, base scope first, deduplicated."""
    combined = list(dict.fromkeys([*AGENT_TOOL_SCOPES.get(agent_type, []), *(additional_tools or [])]))
    return [tool_id for tool_id in combined if tool_id not in ORCHESTRATOR_ONLY_TOOL_IDS]


def can_agent_use_tool(
    agent_type: AgentType,
    tool_id: str,
    additional_tools: list[str] | None = None,
) -> bool:
    return tool_id in get_agent_tools(agent_type, additional_tools)


@dataclass
class ToolResult:
    """Result of invoking a tool.

    Attributes:
        success: Whether the tool execution succeeded
        output: Tool output on success
        error: Error message if execution failed
    """

    success: bool
    output: Any = None
    error: str | None = None


@dataclass
class ToolDefinition:
    id: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )


def get_tool_definitions_for_llm(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """Format tool definitions for LLM function calling."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.id,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


class ToolInvoker(Protocol):
    """Port for executing tools on behalf of a principal (user id)."""

    async def get_tools(self, principal: str) -> list[ToolDefinition]: ...

    async def invoke(self, tool_id: str, args: dict[str, Any], principal: str) -> ToolResult: ...

    async def has_permission(self, principal: str, tool_id: str) -> bool: ...


class ToolRegistry:
    """In-process tool backend.

    Handlers are async callables taking the argument dict. Exceptions raised by
    a handler become failed ToolResults.
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDefinition, ToolHandler]] = {}
        self._denied: dict[str, set[str]] = defaultdict(set)

    def register(
        self,
        tool_id: str,
        handler: ToolHandler,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> None:
        definition = ToolDefinition(id=tool_id, description=description)
        if parameters is not None:
            definition.parameters = parameters
        self._tools[tool_id] = (definition, handler)
        logger.debug("tool_registered", tool_id=tool_id)

    def deny(self, principal: str, tool_id: str) -> None:
        """Block one tool for one principal."""
        self._denied[principal].add(tool_id)

    async def get_tools(self, principal: str) -> list[ToolDefinition]:
        denied = self._denied.get(principal, set())
        return [definition for tool_id, (definition, _) in self._tools.items() if tool_id not in denied]

    async def has_permission(self, principal: str, tool_id: str) -> bool:
        return tool_id in self._tools and tool_id not in self._denied.get(principal, set())

    async def invoke(self, tool_id: str, args: dict[str, Any], principal: str) -> ToolResult:
        entry = self._tools.get(tool_id)
        if entry is None:
            return ToolResult(success=False, error=f"Unknown tool: {tool_id}")
        if not await self.has_permission(principal, tool_id):
            logger.warning("tool_permission_denied", tool_id=tool_id, principal=principal)
            return ToolResult(success=False, error=f"Permission denied for tool: {tool_id}")

        _, handler = entry
        start = time.time()
        try:
            output = await handler(args)
        except Exception as e:
            logger.warning(
                "tool_execution_failed",
                tool_id=tool_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ToolResult(success=False, error=str(e))

        logger.debug(
            "tool_executed",
            tool_id=tool_id,
            duration_ms=int((time.time() - start) * 1000),
        )
        return ToolResult(success=True, output=output)


class ScopedToolInvoker:
    """Restricts an invoker to a fixed set of tool ids.

    Usage:
        >>> scoped = ScopedToolInvoker.for_agent(registry, AgentType.RESEARCH)
        >>> await scoped.invoke("email_send", {}, "user_1")
        ToolResult(success=False, output=None, error='Tool not available to this agent: email_send')
    """

    def __init__(self, inner: ToolInvoker, allowed_tool_ids: list[str]) -> None:
        self.inner = inner
        self.allowed_tool_ids = list(allowed_tool_ids)
        self._allowed = set(allowed_tool_ids)

    @classmethod
    def for_agent(
        cls,
        inner: ToolInvoker,
        agent_type: AgentType,
        additional_tools: list[str] | None = None,
    ) -> "ScopedToolInvoker":
        return cls(inner, get_agent_tools(agent_type, additional_tools))

    async def get_tools(self, principal: str) -> list[ToolDefinition]:
        return [t for t in await self.inner.get_tools(principal) if t.id in self._allowed]

    async def has_permission(self, principal: str, tool_id: str) -> bool:
        return tool_id in self._allowed and await self.inner.has_permission(principal, tool_id)

    async def invoke(self, tool_id: str, args: dict[str, Any], principal: str) -> ToolResult:
        if tool_id not in self._allowed:
            logger.warning("tool_out_of_scope", tool_id=tool_id, principal=principal)
            return ToolResult(success=False, error=f"Tool not available to this agent: {tool_id}")
        return await self.inner.invoke(tool_id, args, principal)


# ---------------------------------------------------------------------------
# Built-in utility tools
# ---------------------------------------------------------------------------

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _eval_arithmetic(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_arithmetic(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, int | float):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_eval_arithmetic(node.left), _eval_arithmetic(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_arithmetic(node.operand))
    raise ValueError("Unsupported expression")


async def _get_current_time(args: dict[str, Any]) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {"iso": now.isoformat(), "unix": now.timestamp()}


async def _calculate(args: dict[str, Any]) -> dict[str, Any]:
    expression = str(args.get("expression", ""))
    if not expression.strip():
        raise ValueError("Missing 'expression'")
    return {"expression": expression, "result": _eval_arithmetic(ast.parse(expression, mode="eval"))}


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register the dependency-free utility tools."""
    registry.register(
        "get_current_time",
        _get_current_time,
        description="Get the current UTC time.",
    )
    registry.register(
        "calculate",
        _calculate,
        description="Evaluate an arithmetic expression using + - * / // % and **.",
        parameters={
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "Arithmetic expression, e.g. '(2 + 3) * 4'",
                },
            },
            "required": ["expression"],
        },
    )

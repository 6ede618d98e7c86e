"""Sub-agent execution: inference port, tool port, prompts and the runner graph.

This module exports the key components needed for agent execution:
- LLM client with retry, fallback and streaming, plus a scripted mock
- Tool port, in-process registry and per-agent-type scoping
- System prompt builders for specialized sub-agents
- SubAgentRunner, the LangGraph reasoning loop
"""

from agents.llm import (
    LLMClient,
    LLMResponse,
    LLMUsage,
    MockLLMClient,
    StreamChunk,
    ToolCallData,
)
from agents.prompts import build_initial_message, build_system_prompt
from agents.runner import SubAgentRunner, extract_artifacts
from agents.tools import (
    AGENT_TOOL_SCOPES,
    ScopedToolInvoker,
    ToolDefinition,
    ToolInvoker,
    ToolRegistry,
    ToolResult,
    get_agent_tools,
    get_tool_definitions_for_llm,
)

__all__ = [
    # LLM
    "LLMClient",
    "LLMResponse",
    "LLMUsage",
    "MockLLMClient",
    "StreamChunk",
    "ToolCallData",
    # Tools
    "AGENT_TOOL_SCOPES",
    "ScopedToolInvoker",
    "ToolDefinition",
    "ToolInvoker",
    "ToolRegistry",
    "ToolResult",
    "get_agent_tools",
    "get_tool_definitions_for_llm",
    # Prompts
    "build_initial_message",
    "build_system_prompt",
    # Runner
    "SubAgentRunner",
    "extract_artifacts",
]

"""System prompts and opening messages for specialized sub-agents.

Each sub-agent gets a system prompt composed of:
- a role line naming its agent type,
- the capability blurb for that type (AGENT_CAPABILITIES),
- its task, the shared guidelines and the tool ids it may call,
- optional special instructions from the orchestrator.

The first user message carries the task again plus the results of upstream
tasks it depends on.
"""

from models.schemas import AgentType

AGENT_CAPABILITIES: dict[AgentType, str] = {
    AgentType.GENERAL: """\
You are a general-purpose assistant capable of:
- Searching and recalling information from memory
- Performing calculations
- Getting current time
- Basic web searches
Use this versatility to handle tasks that don't fit other specialized agents.""",
    AgentType.RESEARCH: """\
You are a research specialist capable of:
- Searching the web for information
- Fetching and analyzing web pages
- Summarizing content
- Extracting entities and facts
- Comparing multiple sources
Focus on gathering accurate, comprehensive information.""",
    AgentType.CODING: """\
You are a coding specialist capable of:
- Reading, writing and listing project files
- Executing, analyzing, formatting and linting code
- Inspecting and committing changes with git
Verify your changes before reporting completion.""",
    AgentType.SCHEDULING: """\
You are a scheduling specialist capable of:
- Managing calendar events
- Creating and updating appointments
- Setting reminders
- Time calculations
Focus on efficient time management and avoiding conflicts.""",
    AgentType.PRODUCTIVITY: """\
You are a productivity specialist capable of:
- Managing tasks and todo lists
- Creating and organizing notes
- Working with documents
- Tracking task completion
Focus on helping the user stay organized and productive.""",
    AgentType.MESSAGING: """\
You are a messaging specialist capable of:
- Sending and drafting emails
- Sending SMS messages
- Managing notifications
- Looking up contacts
Focus on clear, professional communication.""",
}

SUB_AGENT_GUIDELINES = """\
## Guidelines
1. Focus exclusively on completing the assigned task
2. Use available tools when needed
3. Be concise and efficient
4. Report completion or issues clearly
5. Do not attempt to do more than the task requires"""

GUIDANCE_PREFIX = "[ORCHESTRATOR GUIDANCE]: "


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_system_prompt(
    agent_type: AgentType,
    task_description: str,
    tool_ids: list[str],
    instructions: str | None = None,
) -> str:
    """Build the system prompt for a sub-agent.

    Args:
        agent_type: The agent's specialization.
        task_description: What the agent must accomplish.
        tool_ids: Tool ids in the agent's scope.
        instructions: Optional extra direction from the orchestrator.
    """
    special = ""
    if instructions:
        special = f"## Special Instructions from Orchestrator\n{instructions}"

    return compose_prompt_sections(
        f"You are a specialized {agent_type.value} agent working on a specific task.",
        AGENT_CAPABILITIES[agent_type],
        f"## Your Task\n{task_description}",
        SUB_AGENT_GUIDELINES,
        f"## Available Tools\n{', '.join(tool_ids) if tool_ids else '(none)'}",
        special,
    )


def build_initial_message(task_description: str, upstream_context: str | None = None) -> str:
    message = f"Please complete this task: {task_description}"
    if upstream_context:
        message += f"\n\n## Context from Previous Tasks\n{upstream_context}"
    return message

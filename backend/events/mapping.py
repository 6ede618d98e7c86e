"""Translation from a runner's event vocabulary to run-level stream events.

map_agent_event is total over SubAgentEventType: every internal event maps to
exactly zero or one StreamEvent. Non-terminal status updates, artifacts,
completion and error events produce nothing here; completion and failure are
surfaced by the terminal status event instead.
"""

from events.types import StreamEvent, StreamEventType, SubAgentEvent, SubAgentEventType
from models.schemas import TERMINAL_AGENT_STATUSES, SubAgentStatus


def map_agent_event(
    event: SubAgentEvent,
    run_id: str,
    task_node_id: str,
) -> StreamEvent | None:
    """Map one runner event onto the stream vocabulary.

    Args:
        event: The runner event.
        run_id: Run the agent belongs to.
        task_node_id: Plan node the agent is executing.

    Returns:
        The StreamEvent to distribute, or None if the event is not surfaced.
    """
    agent_id = event.agent_id
    data = event.data

    if event.type == SubAgentEventType.TOKEN:
        return StreamEvent(
            type=StreamEventType.AGENT_TOKEN,
            run_id=run_id,
            agent_id=agent_id,
            data={"token": data.get("token", "")},
        )
    elif event.type == SubAgentEventType.REASONING:
        return StreamEvent(
            type=StreamEventType.AGENT_REASONING,
            run_id=run_id,
            agent_id=agent_id,
            data={"agentId": agent_id, "step": data.get("step")},
        )
    elif event.type == SubAgentEventType.TOOL_CALL:
        return StreamEvent(
            type=StreamEventType.AGENT_TOOL_CALL,
            run_id=run_id,
            agent_id=agent_id,
            data={
                "toolId": data.get("toolId"),
                "toolName": data.get("toolName"),
                "input": data.get("input", {}),
            },
        )
    elif event.type == SubAgentEventType.TOOL_RESULT:
        return StreamEvent(
            type=StreamEventType.AGENT_TOOL_RESULT,
            run_id=run_id,
            agent_id=agent_id,
            data={
                "toolId": data.get("toolId"),
                "output": data.get("output"),
                "success": bool(data.get("success")),
            },
        )
    elif event.type == SubAgentEventType.STATUS:
        status = SubAgentStatus(data["status"])
        if status not in TERMINAL_AGENT_STATUSES:
            return None
        return StreamEvent(
            type=StreamEventType.AGENT_TERMINATED,
            run_id=run_id,
            agent_id=agent_id,
            data={
                "agentId": agent_id,
                "taskId": task_node_id,
                "reason": status.value,
            },
        )

    # ARTIFACT, COMPLETE and ERROR are not surfaced at run level
    return None

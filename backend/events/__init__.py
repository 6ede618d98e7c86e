"""Event system for orchestration runs.

Runners emit SubAgentEvents on their own channel; the sub-agent manager maps
them to run-level StreamEvents (events.mapping) and hands them to the
EventDistributor, which writes the cache pub/sub channel and every live
writer registered for the run.

Usage:
    >>> from events import EventDistributor, StreamEvent, StreamEventType
    >>> distributor = EventDistributor(cache)
    >>> writer = distributor.subscribe("run_1")
    >>> await distributor.publish("run_1", StreamEvent(
    ...     type=StreamEventType.PLAN_CREATED,
    ...     run_id="run_1",
    ...     data={"planId": "p1", "taskCount": 2},
    ... ))
    >>> event = await writer.queue.get()
"""

from events.distributor import (
    EventDistributor,
    EventWriter,
    QueueWriter,
    format_sse,
)
from events.mapping import map_agent_event
from events.types import (
    StreamEvent,
    StreamEventType,
    SubAgentEvent,
    SubAgentEventType,
)

__all__ = [
    # Event types
    "StreamEvent",
    "StreamEventType",
    "SubAgentEvent",
    "SubAgentEventType",
    "map_agent_event",
    # Distribution
    "EventDistributor",
    "EventWriter",
    "QueueWriter",
    "format_sse",
]

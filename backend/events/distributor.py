"""Run-scoped event distribution to live writers and the durable cache channel.

The EventDistributor fans each StreamEvent out to:

1. The cache pub/sub channel for the run (durable history, cross-process).
2. Every live writer registered for the run (in-process observers such as an
   SSE or WebSocket transport draining a QueueWriter).

Writers are delivered to concurrently, each under its own write timeout, so
a failing or stalled writer is logged and skipped without delaying the
others. Writers are never removed implicitly.

Usage:
    >>> distributor = EventDistributor(cache)
    >>> writer = distributor.subscribe("run_1")
    >>> await distributor.publish("run_1", StreamEvent(
    ...     type=StreamEventType.ORCHESTRATOR_STATUS,
    ...     run_id="run_1",
    ...     data={"status": "planning"},
    ... ))
    >>> event = await writer.queue.get()
    >>> await distributor.close_run("run_1")
"""

import asyncio
import json
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Protocol

import structlog

from events.types import StreamEvent

if TYPE_CHECKING:
    from models.cache import OrchestratorCache

logger = structlog.get_logger()


class EventWriter(Protocol):
    """Anything that can accept a stream event for one observer."""

    async def write(self, event: StreamEvent) -> None: ...


class QueueWriter:
    """Writer backed by an asyncio.Queue that a transport drains.

    write() never blocks: when a bounded queue is full the event is dropped
    and logged. A None item marks the end of the run's stream.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def write(self, event: StreamEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "queue_full_event_dropped",
                run_id=event.run_id,
                event_type=event.type.value,
                dropped=self.dropped,
            )

    async def close(self) -> None:
        # The end marker displaces the oldest event rather than being lost
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(None)


def format_sse(event: StreamEvent) -> str:
    """Frame a stream event as a Server-Sent Events message."""
    payload = json.dumps(event.model_dump(mode="json"))
    return f"event: {event.type.value}\ndata: {payload}\n\n"


class EventDistributor:
    """Fan-out of run events to registered writers plus the cache channel.

    Attributes:
        write_timeout: Seconds to wait on a single writer before giving up.
    """

    def __init__(self, cache: "OrchestratorCache", write_timeout: float = 5.0) -> None:
        self._cache = cache
        self.write_timeout = write_timeout
        self._writers: dict[str, list[EventWriter]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_distributor_initialized")

    def register_writer(self, run_id: str, writer: EventWriter) -> None:
        with self._lock:
            self._writers[run_id].append(writer)
            writer_count = len(self._writers[run_id])
        logger.info("writer_registered", run_id=run_id, writer_count=writer_count)

    def unregister_writer(self, run_id: str, writer: EventWriter) -> None:
        """Remove a writer. Unknown writers are a no-op."""
        with self._lock:
            writers = self._writers.get(run_id)
            if not writers or writer not in writers:
                logger.debug("unregister_writer_not_found", run_id=run_id)
                return
            writers.remove(writer)
            writer_count = len(writers)
            if not writers:
                del self._writers[run_id]
        logger.info("writer_unregistered", run_id=run_id, writer_count=writer_count)

    def subscribe(self, run_id: str) -> QueueWriter:
        """Register and return a new queue-backed writer for a run."""
        writer = QueueWriter()
        self.register_writer(run_id, writer)
        return writer

    async def publish(self, run_id: str, event: StreamEvent) -> None:
        """Deliver an event to the cache channel and then to every live writer.

        Args:
            run_id: Run the event belongs to.
            event: The event to deliver.
        """
        try:
            await self._cache.publish_event(run_id, event)
        except Exception as e:
            logger.error(
                "event_cache_publish_failed",
                run_id=run_id,
                event_type=event.type.value,
                error=str(e),
            )

        with self._lock:
            writers = list(self._writers.get(run_id, []))

        if writers:
            await asyncio.gather(
                *(self._deliver(run_id, writer, event) for writer in writers),
                return_exceptions=True,
            )

        logger.debug(
            "event_published",
            run_id=run_id,
            event_type=event.type.value,
            writer_count=len(writers),
            agent_id=event.agent_id,
        )

    async def _deliver(self, run_id: str, writer: EventWriter, event: StreamEvent) -> None:
        try:
            await asyncio.wait_for(writer.write(event), timeout=self.write_timeout)
        except TimeoutError:
            logger.warning(
                "event_delivery_timeout",
                run_id=run_id,
                event_type=event.type.value,
            )
        except Exception as e:
            logger.warning(
                "event_delivery_failed",
                run_id=run_id,
                event_type=event.type.value,
                error=str(e),
            )

    async def close_run(self, run_id: str) -> None:
        """Signal end-of-stream to queue writers and drop every writer of a run."""
        with self._lock:
            writers = self._writers.pop(run_id, [])

        for writer in writers:
            if isinstance(writer, QueueWriter):
                try:
                    await asyncio.wait_for(writer.close(), timeout=self.write_timeout)
                except Exception as e:
                    logger.warning("writer_close_failed", run_id=run_id, error=str(e))

        if writers:
            logger.info("run_writers_closed", run_id=run_id, writers_removed=len(writers))

    def get_writer_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._writers.get(run_id, []))

    def get_active_runs(self) -> list[str]:
        """Runs with at least one registered writer."""
        with self._lock:
            return list(self._writers.keys())

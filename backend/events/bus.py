"""Async event bus for FlowCoder session events.

Turn execution publishes AgentEvents; WebSocket handlers and history
endpoints consume them. Each session has:
- any number of live subscriber queues
- a buffer for events published before the first subscriber connects
- a bounded history used to replay the stream on reconnect

Engine status callbacks fire from synchronous code, so `publish_sync` hands
delivery to the loop thread.
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Per-session pub/sub with buffering and replay history.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("sess_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.PHASE_ACTIVE,
        ...     session_id="sess_123",
        ...     data={"phase": "plan", "phase_count": 1},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("sess_123", queue)
        >>> await bus.close_session("sess_123")

    A threading.Lock guards the registries because `publish_sync` may be
    called from outside the loop thread.
    """

    # Events kept per session for replay on reconnect.
    MAX_HISTORY_PER_SESSION = 5000

    # Seconds a stalled subscriber may block delivery of one event.
    DELIVERY_TIMEOUT = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._sequences: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, session_id: str) -> asyncio.Queue[AgentEvent]:
        """Register a new subscriber queue for a session.

        Events buffered while nobody was listening are delivered to the new
        queue right away.
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[session_id].append(queue)
            subscriber_count = len(self._subscribers[session_id])
            buffered_events = self._event_buffer.pop(session_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[session_id]
            subscriber_count = len(queues)

        logger.info("subscriber_removed", session_id=session_id, subscriber_count=subscriber_count)

    def _record(self, event: AgentEvent) -> list[asyncio.Queue[AgentEvent]]:
        """Number the event, store it in history and return its subscribers.

        With no subscribers the event is buffered instead. Caller holds
        the lock.
        """
        if event.type != EventType.SESSION_CLOSED:
            self._sequences[event.session_id] += 1
            event.sequence = self._sequences[event.session_id]
            history = self._event_history[event.session_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_SESSION:
                del history[: len(history) - self.MAX_HISTORY_PER_SESSION]

        subscribers = list(self._subscribers.get(event.session_id, []))
        if not subscribers:
            self._event_buffer[event.session_id].append(event)
            logger.debug(
                "event_buffered",
                session_id=event.session_id,
                event_type=event.type.value,
                buffer_size=len(self._event_buffer[event.session_id]),
            )
        return subscribers

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to every subscriber of its session."""
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    session_id=event.session_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                # One broken subscriber must not starve the others.
                logger.warning(
                    "event_delivery_failed",
                    session_id=event.session_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        if subscribers:
            logger.debug(
                "event_published",
                session_id=event.session_id,
                event_type=event.type.value,
                subscriber_count=len(subscribers),
                agent_id=event.agent_id,
            )

    def publish_sync(self, event: AgentEvent) -> None:
        """Publish from synchronous code.

        asyncio.Queue is not thread-safe, so puts are scheduled on the loop
        thread with call_soon_threadsafe once a loop is known.
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop

        if not subscribers:
            return

        if loop is not None and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                queue.put_nowait(event)

        logger.debug(
            "event_published_sync",
            session_id=event.session_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, session_id: str) -> list[AgentEvent]:
        """Events published for a session, oldest first."""
        with self._lock:
            return list(self._event_history.get(session_id, []))

    async def close_session(self, session_id: str) -> None:
        """Signal SESSION_CLOSED to every subscriber and drop them.

        Buffered events are cleared; history is kept for replay.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(session_id, [])
            buffer_count = len(self._event_buffer.pop(session_id, []))

        sentinel = AgentEvent(
            type=EventType.SESSION_CLOSED,
            session_id=session_id,
            data={"reason": "session_closed"},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        logger.info(
            "session_event_stream_closed",
            session_id=session_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def clear_event_history(self, session_id: str) -> None:
        """Forget a session's history once it can no longer be replayed."""
        with self._lock:
            self._event_history.pop(session_id, None)
            self._sequences.pop(session_id, None)


_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide EventBus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide EventBus (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")

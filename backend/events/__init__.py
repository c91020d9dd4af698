"""Session event stream for FlowCoder.

Everything observable about a session (turn and phase transitions, agent
output, tool calls, approvals, verification, human prompts and engine
residency) is published as an AgentEvent on the EventBus. Transports
(WebSocket, HTTP history) subscribe per session.

Usage:
    >>> from events import AgentEvent, EventType, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("sess_123")
    >>> await bus.publish(AgentEvent(
    ...     type=EventType.TURN_STARTED,
    ...     session_id="sess_123",
    ...     data={"request": "list the files"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentEvent,
    EventType,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]

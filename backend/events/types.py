"""Event type definitions for the FlowCoder event system.

This module defines all event types that flow from turn execution to
presentation clients. Every meaningful state change of a turn produces an
event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the FlowCoder system.

    Events are categorized by:
    - Session lifecycle: Creation, closure
    - Turn lifecycle: Start, phase transitions, completion, interruption
    - Agents: Output produced by each role
    - Tools: Calls, results, guard rejections, user skips
    - Queue: Approval and discard decisions
    - Verification: Lint/build runs and diagnostic escalation
    - Human interaction: Pending prompts and free-form messages
    - Engines: Load state changes
    """

    # Session lifecycle
    SESSION_CREATED = "session_created"
    SESSION_ERROR = "session_error"
    SESSION_CLOSED = "session_closed"

    # Turn lifecycle
    TURN_STARTED = "turn_started"
    TURN_COMPLETE = "turn_complete"
    TURN_INTERRUPTED = "turn_interrupted"
    TURN_ERROR = "turn_error"
    PHASE_ACTIVE = "phase_active"
    PHASE_COMPLETE = "phase_complete"

    # Agents
    AGENT_OUTPUT = "agent_output"
    AGENT_MESSAGE = "agent_message"

    # Tools
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_REJECTED = "tool_rejected"
    TOOL_SKIPPED = "tool_skipped"

    # Queue
    QUEUE_APPROVAL = "queue_approval"
    QUEUE_DISCARDED = "queue_discarded"

    # Verification
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_RESULT = "verification_result"
    DIAGNOSIS_COMPLETE = "diagnosis_complete"

    # Human interaction
    HUMAN_INPUT_REQUESTED = "human_input_requested"
    HUMAN_INPUT_RECEIVED = "human_input_received"

    # Engines
    ENGINE_LOADING = "engine_loading"
    ENGINE_LOADED = "engine_loaded"
    ENGINE_UNLOADED = "engine_unloaded"


class AgentEvent(BaseModel):
    """An event emitted during turn execution.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - session_id: Which session this event belongs to
    - agent_id: Which agent role produced this event (if applicable)
    - agent_role: Human-readable role name (e.g., "Dispatcher", "Debugger")
    - data: Event-specific payload
    - sequence: Per-session position assigned by the EventBus (0 until published)

    Payload schemas by event type:

    PHASE_ACTIVE / PHASE_COMPLETE:
        - phase: str - Phase name (intent, context, plan, delegate, approval, execute)
        - phase_count: int - Planning phases entered so far

    AGENT_OUTPUT:
        - content: str - Text produced by the agent

    TOOL_CALL:
        - tool: str - Tool name being called
        - args: dict - Arguments passed to the tool

    TOOL_RESULT:
        - tool: str - Tool that was called
        - result: str - Result returned from the tool (truncated)
        - success: bool - Whether the tool call succeeded

    TOOL_REJECTED / TOOL_SKIPPED:
        - tool: str - Tool that was not executed
        - reason: str - Why

    QUEUE_APPROVAL:
        - mode: str - all, step or abort
        - size: int - Number of queued calls

    QUEUE_DISCARDED:
        - discarded: int - Number of calls dropped
        - reason: str - abort or verification_failed

    VERIFICATION_RESULT:
        - success: bool
        - skipped: bool
        - output: str - Lint/build transcript (truncated)

    HUMAN_INPUT_REQUESTED:
        - request_id: str - Identifier to answer with
        - question: str - What is being asked
        - kind: str - prompt or confirm

    TURN_COMPLETE:
        - status: str - complete, cancelled or phase_limit
        - executed_calls: int
        - phases: int
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    sequence: int = 0

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "tool_call",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123",
                    "agent_id": "patcher",
                    "agent_role": "Patcher",
                    "data": {
                        "tool": "patch_file",
                        "args": {"path": "src/app.py"},
                    },
                    "sequence": 42,
                }
            ]
        }
    }

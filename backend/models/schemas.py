"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket handlers.
All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field


class SessionStatus(StrEnum):
    """Session status as seen by clients.

    A session is idle between turns, running while a turn executes,
    interrupted when the last turn was stopped by the user, and in error
    when the last turn failed. Every status except closed accepts new input.
    """

    IDLE = "idle"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    ERROR = "error"
    CLOSED = "closed"


class ModelOverrides(BaseModel):
    """Per-session engine model overrides."""

    default_model: str | None = Field(
        default=None,
        description="Model for the dispatcher, builder and refactor roles",
        examples=["lm_studio/qwen2.5-coder-7b-instruct"],
    )
    tiny_model: str | None = Field(
        default=None,
        description="Model for intent, context, patch, template and debug roles",
        examples=["lm_studio/qwen2.5-coder-1.5b-instruct"],
    )


class CreateSessionRequest(BaseModel):
    """Request body for creating a new session."""

    project_root: str | None = Field(
        default=None,
        description="Project directory the session works in (defaults to the configured root)",
        examples=["/home/dev/my-crate"],
    )
    models: ModelOverrides | None = Field(
        default=None,
        description="Optional engine model overrides",
    )


class SessionResponse(BaseModel):
    """Response for session creation."""

    session_id: str = Field(
        description="Unique session identifier",
        examples=["sess_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/sess_abc123def456"],
    )
    status: SessionStatus = Field(description="Current session status")


class TurnSummary(BaseModel):
    """Outcome of the most recent completed turn."""

    status: Literal["complete", "cancelled", "phase_limit"]
    intent: str
    plan: str
    response: str
    executed_calls: int
    phases: int


class SessionDetailResponse(BaseModel):
    """Detailed session information."""

    session_id: str = Field(description="Unique session identifier")
    project_root: str = Field(description="Absolute project directory")
    status: SessionStatus = Field(description="Current session status")
    created_at: float = Field(description="Unix timestamp of session creation")
    turn_count: int = Field(default=0, description="Turns started in this session")
    error_message: str | None = Field(
        default=None,
        description="Error message if the last turn failed",
    )
    pending_request: str | None = Field(
        default=None,
        description="Question currently awaiting a human answer",
    )
    last_turn: TurnSummary | None = Field(
        default=None,
        description="Outcome of the most recent completed turn",
    )
    default_model: str = Field(description="Engine model for heavyweight roles")
    tiny_model: str = Field(description="Engine model for lightweight roles")


class InputRequest(BaseModel):
    """A user message that starts a new turn."""

    text: str = Field(
        min_length=1,
        max_length=20000,
        description="The user's request",
        examples=["Add a --verbose flag to the CLI"],
    )


class InputResponse(BaseModel):
    session_id: str
    status: SessionStatus
    turn: int = Field(description="1-based index of the turn that was started")


class RespondRequest(BaseModel):
    """Answer to a pending human-input request."""

    answer: str = Field(
        max_length=20000,
        description="The answer text (for confirmations: y/yes allows)",
    )
    request_id: str | None = Field(
        default=None,
        description="Request to answer; defaults to the oldest pending one",
    )


class RespondResponse(BaseModel):
    request_id: str


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class HistoryResponse(BaseModel):
    session_id: str
    messages: list[HistoryMessage]


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(description="Overall health status")
    timestamp: float = Field(description="Current server timestamp")
    version: str = Field(default="0.1.0", description="API version")
    active_sessions: int = Field(default=0, description="Number of open sessions")
    mock_llm: bool = Field(default=False, description="Whether scripted mock engines are in use")

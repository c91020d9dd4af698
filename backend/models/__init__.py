"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    CreateSessionRequest,
    HealthResponse,
    HistoryMessage,
    HistoryResponse,
    InputRequest,
    InputResponse,
    ModelOverrides,
    RespondRequest,
    RespondResponse,
    SessionDetailResponse,
    SessionResponse,
    SessionStatus,
    TurnSummary,
)

__all__ = [
    "CreateSessionRequest",
    "HealthResponse",
    "HistoryMessage",
    "HistoryResponse",
    "InputRequest",
    "InputResponse",
    "ModelOverrides",
    "RespondRequest",
    "RespondResponse",
    "SessionDetailResponse",
    "SessionResponse",
    "SessionStatus",
    "TurnSummary",
]

"""HTTP API routes for the FlowCoder backend.

This module defines the HTTP endpoints for session management, turn input,
human-request answers and health checks. Real-time events are handled via
WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status

from agents.human import NoPendingRequestError
from config import settings
from models.schemas import (
    CreateSessionRequest,
    HealthResponse,
    HistoryMessage,
    HistoryResponse,
    InputRequest,
    InputResponse,
    RespondRequest,
    RespondResponse,
    SessionDetailResponse,
    SessionResponse,
    TurnSummary,
)
from session_manager import SessionBusyError, SessionInfo, SessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()


# Session manager dependency (set during application startup)
_session_manager: SessionManager | None = None


def set_session_manager(manager: SessionManager) -> None:
    """Set the session manager instance for the routes.

    This should be called during application startup to inject the session
    manager dependency.
    """
    global _session_manager
    _session_manager = manager
    logger.info("session_manager_configured")


def get_session_manager() -> SessionManager:
    """Get the session manager instance.

    Raises:
        RuntimeError: If the session manager has not been configured.
    """
    if _session_manager is None:
        logger.error("session_manager_not_configured")
        raise RuntimeError(
            "SessionManager not configured. Call set_session_manager() during startup."
        )
    return _session_manager


def _not_found(session_id: str) -> HTTPException:
    logger.warning("session_not_found", session_id=session_id)
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Session {session_id} not found",
    )


def _to_detail(session: SessionInfo) -> SessionDetailResponse:
    pending = session.human.pending
    last = session.last_result
    return SessionDetailResponse(
        session_id=session.session_id,
        project_root=session.project_root,
        status=session.status,
        created_at=session.created_at,
        turn_count=session.turn_count,
        error_message=session.error_message,
        pending_request=pending[0].question if pending else None,
        last_turn=(
            TurnSummary(
                status=last.status,
                intent=last.intent,
                plan=last.plan,
                response=last.response,
                executed_calls=last.executed_calls,
                phases=last.phases,
            )
            if last is not None
            else None
        ),
        default_model=session.default_model,
        tiny_model=session.tiny_model,
    )


@router.post(
    "/api/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new session",
    description="Create a session bound to a project directory.",
)
async def create_session(request: CreateSessionRequest | None = None) -> SessionResponse:
    """Create a new session.

    Raises:
        HTTPException: 400 if the project root is not a directory, 500 if
            setup fails otherwise.
    """
    session_manager = get_session_manager()
    request = request or CreateSessionRequest()
    models = request.models

    try:
        session_id = await session_manager.create_session(
            request.project_root,
            default_model=models.default_model if models else None,
            tiny_model=models.tiny_model if models else None,
        )
    except NotADirectoryError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error("session_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create session: {e}",
        ) from e

    session = session_manager.get_session(session_id)
    logger.info("session_created", session_id=session_id)
    return SessionResponse(
        session_id=session_id,
        websocket_url=f"/ws/{session_id}",
        status=session.status,
    )


@router.get(
    "/api/sessions",
    response_model=list[SessionDetailResponse],
    summary="List sessions",
)
async def list_sessions() -> list[SessionDetailResponse]:
    session_manager = get_session_manager()
    sessions = sorted(session_manager.get_all_sessions(), key=lambda s: s.created_at, reverse=True)
    return [_to_detail(s) for s in sessions]


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get session details",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> SessionDetailResponse:
    session = get_session_manager().get_session(session_id)
    if session is None:
        raise _not_found(session_id)
    return _to_detail(session)


@router.post(
    "/api/sessions/{session_id}/input",
    response_model=InputResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a turn",
    description="Start a turn for the user's input. Progress is streamed over the WebSocket.",
)
async def submit_input(
    session_id: Annotated[str, Path(description="The session ID")],
    request: InputRequest,
) -> InputResponse:
    """Start a turn in the background.

    Raises:
        HTTPException: 404 for unknown sessions, 409 while a turn runs.
    """
    session_manager = get_session_manager()
    try:
        turn = await session_manager.submit_input(session_id, request.text)
    except KeyError:
        raise _not_found(session_id) from None
    except SessionBusyError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    session = session_manager.get_session(session_id)
    logger.info("turn_submitted", session_id=session_id, turn=turn, text_length=len(request.text))
    return InputResponse(session_id=session_id, status=session.status, turn=turn)


@router.post(
    "/api/sessions/{session_id}/interrupt",
    summary="Interrupt the running turn",
)
async def interrupt_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> dict[str, bool]:
    try:
        interrupted = await get_session_manager().interrupt(session_id)
    except KeyError:
        raise _not_found(session_id) from None
    return {"interrupted": interrupted}


@router.post(
    "/api/sessions/{session_id}/respond",
    response_model=RespondResponse,
    summary="Answer a pending request",
    description="Answer the pending batch approval, confirmation or question.",
)
async def respond(
    session_id: Annotated[str, Path(description="The session ID")],
    request: RespondRequest,
) -> RespondResponse:
    """Answer a pending human request.

    Raises:
        HTTPException: 404 for unknown sessions, 409 when nothing is pending.
    """
    try:
        request_id = await get_session_manager().respond(session_id, request.answer, request.request_id)
    except KeyError:
        raise _not_found(session_id) from None
    except NoPendingRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return RespondResponse(request_id=request_id)


@router.get(
    "/api/sessions/{session_id}/history",
    response_model=HistoryResponse,
    summary="Get session history",
)
async def get_history(
    session_id: Annotated[str, Path(description="The session ID")]
) -> HistoryResponse:
    try:
        messages = get_session_manager().get_history(session_id)
    except KeyError:
        raise _not_found(session_id) from None
    return HistoryResponse(
        session_id=session_id,
        messages=[HistoryMessage(role=m["role"], content=m["content"]) for m in messages],
    )


@router.delete(
    "/api/sessions/{session_id}",
    status_code=status.HTTP_200_OK,
    summary="Close a session",
    description="Stop any running turn, unload engines and close the tool host.",
)
async def close_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> dict[str, str]:
    try:
        await get_session_manager().close_session(session_id)
    except KeyError:
        raise _not_found(session_id) from None
    logger.info("session_closed", session_id=session_id)
    return {"message": f"Session {session_id} closed"}


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    active_sessions = 0
    overall_status = "healthy"
    try:
        active_sessions = len(get_session_manager().get_all_sessions())
    except RuntimeError:
        # SessionManager not configured yet (e.g., during startup)
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        active_sessions=active_sessions,
        mock_llm=settings.use_mock_llm,
    )

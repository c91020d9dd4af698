"""WebSocket handler for real-time session event streaming.

Clients receive every AgentEvent of a session (history replayed first) and
may send commands:
- ``{"type": "interrupt"}``: stop the running turn
- ``{"type": "respond", "answer": "...", "request_id": "..."}``: answer a
  pending approval, confirmation or question
- ``{"type": "ping"}``: liveness check
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agents.human import NoPendingRequestError
from events import AgentEvent, EventType, get_event_bus

if TYPE_CHECKING:
    from session_manager import SessionManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_session_manager: "SessionManager | None" = None


def set_session_manager(manager: "SessionManager") -> None:
    """Set the session manager used by WebSocket command handlers."""
    global _session_manager
    _session_manager = manager
    logger.info("websocket_session_manager_configured")


def get_session_manager() -> "SessionManager":
    """Return configured session manager for WebSocket command handlers."""
    if _session_manager is None:
        raise RuntimeError(
            "SessionManager not configured for WebSocket handlers. "
            "Call set_session_manager() during startup."
        )
    return _session_manager


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
    """Stream a session's events and accept client commands.

    Args:
        websocket: The WebSocket connection.
        session_id: The session to stream events for.
    """
    await websocket.accept()
    logger.info("websocket_connected", session_id=session_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so nothing published in between is
    # lost; duplicates are filtered by sequence number below.
    queue = event_bus.subscribe(session_id)

    try:
        last_replayed: int = 0
        history = event_bus.get_event_history(session_id)
        if history:
            logger.info("replaying_event_history", session_id=session_id, event_count=len(history))
            for event in history:
                await websocket.send_json(event.model_dump(mode="json"))
                last_replayed = event.sequence

        async def send_events() -> None:
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.SESSION_CLOSED:
                        await websocket.send_json(event.model_dump(mode="json"))
                        logger.info("session_closed_sentinel", session_id=session_id)
                        break
                    if event.sequence <= last_replayed:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", session_id=session_id)

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", session_id=session_id)
                        continue
                    command_type = data.get("type")
                    logger.info("command_received", session_id=session_id, command_type=command_type)

                    if command_type == "interrupt":
                        await handle_interrupt_command(session_id)
                    elif command_type == "respond":
                        await handle_respond_command(session_id, data)
                    elif command_type == "ping":
                        await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
                    else:
                        logger.warning("unknown_command", session_id=session_id, command_type=command_type)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", session_id=session_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if task.exception() is not None:
                logger.error("websocket_task_failed", session_id=session_id, error=str(task.exception()))

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    finally:
        event_bus.unsubscribe(session_id, queue)
        logger.info("websocket_cleanup_complete", session_id=session_id)


async def _publish_command_error(session_id: str, phase: str, error: str) -> None:
    await get_event_bus().publish(
        AgentEvent(
            type=EventType.SESSION_ERROR,
            session_id=session_id,
            data={"error": error, "phase": phase},
        )
    )


async def handle_interrupt_command(session_id: str) -> None:
    """Interrupt the session's running turn."""
    session_manager = get_session_manager()
    try:
        interrupted = await session_manager.interrupt(session_id)
    except KeyError:
        logger.warning("interrupt_command_session_not_found", session_id=session_id)
        await _publish_command_error(session_id, "interrupt", f"Session {session_id} not found")
        return
    if not interrupted:
        logger.info("interrupt_command_no_running_turn", session_id=session_id)


async def handle_respond_command(session_id: str, data: dict[str, Any]) -> None:
    """Answer a pending human request from a ``respond`` command."""
    answer = data.get("answer")
    if not isinstance(answer, str):
        await _publish_command_error(session_id, "respond", "respond requires a string 'answer'")
        return
    request_id = data.get("request_id")

    session_manager = get_session_manager()
    try:
        await session_manager.respond(
            session_id,
            answer,
            request_id if isinstance(request_id, str) else None,
        )
    except (KeyError, NoPendingRequestError) as e:
        logger.warning("respond_command_failed", session_id=session_id, error=str(e))
        await _publish_command_error(session_id, "respond", str(e))

"""Tests for api/websocket.py command handlers."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agents.human import NoPendingRequestError
from api import websocket
from events.bus import get_event_bus, reset_event_bus
from events.types import AgentEvent, EventType

SESSION_ID = "sess_ws"


@pytest.fixture()
def manager() -> MagicMock:
    reset_event_bus()
    mgr = MagicMock()
    mgr.interrupt = AsyncMock(return_value=True)
    mgr.respond = AsyncMock(return_value="req_1")
    websocket.set_session_manager(mgr)  # type: ignore[arg-type]
    return mgr


def _errors() -> list[dict]:
    return [
        e.data
        for e in get_event_bus().get_event_history(SESSION_ID)
        if e.type == EventType.SESSION_ERROR
    ]


async def test_interrupt_command(manager: MagicMock) -> None:
    await websocket.handle_interrupt_command(SESSION_ID)
    manager.interrupt.assert_awaited_once_with(SESSION_ID)
    assert _errors() == []


async def test_interrupt_unknown_session(manager: MagicMock) -> None:
    manager.interrupt.side_effect = KeyError(SESSION_ID)
    await websocket.handle_interrupt_command(SESSION_ID)
    assert _errors() == [{"error": f"Session {SESSION_ID} not found", "phase": "interrupt"}]


async def test_respond_command(manager: MagicMock) -> None:
    await websocket.handle_respond_command(SESSION_ID, {"answer": "s", "request_id": "req_1"})
    manager.respond.assert_awaited_once_with(SESSION_ID, "s", "req_1")


async def test_respond_ignores_non_string_request_id(manager: MagicMock) -> None:
    await websocket.handle_respond_command(SESSION_ID, {"answer": "all", "request_id": 7})
    manager.respond.assert_awaited_once_with(SESSION_ID, "all", None)


async def test_respond_requires_answer(manager: MagicMock) -> None:
    await websocket.handle_respond_command(SESSION_ID, {})
    manager.respond.assert_not_awaited()
    assert _errors()[0]["phase"] == "respond"


async def test_respond_nothing_pending(manager: MagicMock) -> None:
    manager.respond.side_effect = NoPendingRequestError("No pending request")
    await websocket.handle_respond_command(SESSION_ID, {"answer": "all"})
    assert _errors() == [{"error": "No pending request", "phase": "respond"}]


def test_unconfigured_manager(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(websocket, "_session_manager", None)
    with pytest.raises(RuntimeError):
        websocket.get_session_manager()


def test_replay_then_live_events(manager: MagicMock) -> None:
    # Replayed events carry a clock far ahead of the live ones, so only the
    # sequence number can tell a duplicate from a new event.
    get_event_bus().publish_sync(
        AgentEvent(type=EventType.TURN_STARTED, session_id=SESSION_ID, timestamp=9e9)
    )
    app = FastAPI()
    app.include_router(websocket.websocket_router)

    with TestClient(app) as client, client.websocket_connect(f"/ws/{SESSION_ID}") as ws:
        replayed = ws.receive_json()
        assert replayed["type"] == "turn_started"
        assert replayed["sequence"] == 1

        ws.send_json({"type": "respond"})
        live = ws.receive_json()
        assert live["type"] == "session_error"
        assert live["sequence"] == 2

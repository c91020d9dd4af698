"""Tests for session_manager.py -- session lifecycle and background turns.

Sessions run against scripted mock engines and no tool-provider servers.
Answers to approval prompts are delivered through `respond`, exactly as the
HTTP and WebSocket transports do.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agents.human import NoPendingRequestError
from agents.turn_graph import INTERRUPTION_NOTE
from config import settings
from engines.backends import MockBackend
from events.bus import EventBus
from events.types import EventType
from models.schemas import SessionStatus
import session_manager
from session_manager import MOCK_ENGINE_RESPONSE, SessionBusyError, SessionInfo, SessionManager
from tests.conftest import tool_call
from toolhost.host import McpToolHost

DEFAULT_MODEL = "mock/default"
TINY_MODEL = "mock/tiny"

LIST_FILES_PLAN = (
    "<plan>List the project root</plan>\n<delegate>none</delegate>\n" + tool_call("list_files")
)


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "use_mock_llm", True)
    monkeypatch.setattr(settings, "mcp_servers", {})
    monkeypatch.setattr(settings, "build_command", None)
    monkeypatch.setattr(settings, "lint_command", None)


@pytest.fixture()
def manager(event_bus: EventBus) -> SessionManager:
    return SessionManager(event_bus)


def _script_default_model(manager: SessionManager, monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the dispatcher's first plan run one list_files call."""

    def factory(model: str) -> MockBackend:
        responses = [LIST_FILES_PLAN] if model == DEFAULT_MODEL else None
        return MockBackend(model, responses=responses, default_response=MOCK_ENGINE_RESPONSE)

    monkeypatch.setattr(manager, "_create_backend", factory)


async def _create(manager: SessionManager, project_dir: Path) -> SessionInfo:
    session_id = await manager.create_session(
        str(project_dir), default_model=DEFAULT_MODEL, tiny_model=TINY_MODEL
    )
    session = manager.get_session(session_id)
    assert session is not None
    return session


async def _wait_for_pending(session: SessionInfo) -> None:
    for _ in range(200):
        if session.human.pending:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("turn never asked for approval")


# =========================================================================
# Creation
# =========================================================================


class TestCreateSession:
    async def test_create(self, manager: SessionManager, project_dir: Path, event_bus: EventBus) -> None:
        session = await _create(manager, project_dir)

        assert session.session_id.startswith("sess_")
        assert session.status == SessionStatus.IDLE
        assert session.project_root == str(project_dir.resolve())
        assert session.tiny_model == TINY_MODEL

        created = event_bus.get_event_history(session.session_id)[0]
        assert created.type == EventType.SESSION_CREATED
        assert created.data["toolchain"] == "unknown"
        assert created.data["build_command"] is None
        assert created.data["tool_servers"] == []

    async def test_discovers_toolchain(
        self, manager: SessionManager, project_dir: Path, event_bus: EventBus
    ) -> None:
        (project_dir / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
        session = await _create(manager, project_dir)
        created = event_bus.get_event_history(session.session_id)[0]
        assert created.data["toolchain"] == "rust"
        assert created.data["build_command"] == "cargo check"

    async def test_default_models(self, manager: SessionManager, project_dir: Path) -> None:
        session_id = await manager.create_session(str(project_dir))
        session = manager.get_session(session_id)
        assert session.default_model == settings.default_model

    async def test_bad_project_root(self, manager: SessionManager, tmp_path: Path) -> None:
        with pytest.raises(NotADirectoryError):
            await manager.create_session(str(tmp_path / "missing"))
        assert manager.get_all_sessions() == []

    async def test_failed_wiring_closes_tool_host(
        self, manager: SessionManager, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        close = AsyncMock()
        monkeypatch.setattr(McpToolHost, "close", close)

        def broken_discovery(*args: object, **kwargs: object) -> None:
            raise PermissionError("cannot read Cargo.toml")

        monkeypatch.setattr(session_manager, "discover_project_commands", broken_discovery)

        with pytest.raises(PermissionError):
            await manager.create_session(str(project_dir))
        close.assert_awaited_once()
        assert manager.get_all_sessions() == []


# =========================================================================
# Turns
# =========================================================================


class TestTurns:
    async def test_mock_turn_completes(
        self, manager: SessionManager, project_dir: Path, event_bus: EventBus
    ) -> None:
        session = await _create(manager, project_dir)
        assert await manager.submit_input(session.session_id, "hello") == 1
        assert session.status == SessionStatus.RUNNING

        await session.task
        assert session.status == SessionStatus.IDLE
        assert session.last_result is not None
        assert session.last_result.status == "complete"
        assert manager.get_history(session.session_id)[0] == {"role": "user", "content": "hello"}

        types = [e.type for e in event_bus.get_event_history(session.session_id)]
        assert EventType.ENGINE_LOADING in types
        assert EventType.ENGINE_LOADED in types
        assert types[-1] == EventType.TURN_COMPLETE

    async def test_approval_through_respond(
        self, manager: SessionManager, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _script_default_model(manager, monkeypatch)
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "list files")

        await _wait_for_pending(session)
        assert session.human.pending[0].question.startswith("The agent wants to run 1 tool call(s):")
        await manager.respond(session.session_id, "all")
        await session.task

        assert session.status == SessionStatus.IDLE
        assert session.last_result.executed_calls == 1

    async def test_busy_session_rejects_input(
        self, manager: SessionManager, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _script_default_model(manager, monkeypatch)
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "list files")
        await _wait_for_pending(session)

        with pytest.raises(SessionBusyError):
            await manager.submit_input(session.session_id, "another")
        assert session.turn_count == 1

        await manager.respond(session.session_id, "abort")
        await session.task
        assert session.last_result.status == "cancelled"
        assert await manager.submit_input(session.session_id, "another") == 2
        await session.task

    async def test_interrupt_while_awaiting_approval(
        self, manager: SessionManager, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _script_default_model(manager, monkeypatch)
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "list files")
        await _wait_for_pending(session)

        assert await manager.interrupt(session.session_id) is True
        await session.task

        assert session.status == SessionStatus.INTERRUPTED
        assert manager.get_history(session.session_id)[-1]["content"] == INTERRUPTION_NOTE

        # The session accepts the next turn.
        await manager.submit_input(session.session_id, "try again")
        await session.task
        assert session.status == SessionStatus.IDLE

    async def test_interrupt_idle_session(self, manager: SessionManager, project_dir: Path) -> None:
        session = await _create(manager, project_dir)
        assert await manager.interrupt(session.session_id) is False

    async def test_failed_turn(
        self,
        manager: SessionManager,
        project_dir: Path,
        event_bus: EventBus,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(
            manager,
            "_create_backend",
            lambda model: MockBackend(model, load_error=RuntimeError("model not found")),
        )
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "hello")
        await session.task

        assert session.status == SessionStatus.ERROR
        assert session.error_message == "model not found"
        error_event = event_bus.get_event_history(session.session_id)[-1]
        assert error_event.type == EventType.TURN_ERROR
        assert error_event.data == {"error": "model not found", "error_type": "RuntimeError"}

    async def test_respond_without_pending(self, manager: SessionManager, project_dir: Path) -> None:
        session = await _create(manager, project_dir)
        with pytest.raises(NoPendingRequestError):
            await manager.respond(session.session_id, "all")

    async def test_unknown_session(self, manager: SessionManager) -> None:
        with pytest.raises(KeyError):
            await manager.submit_input("sess_missing", "hi")
        with pytest.raises(KeyError):
            manager.get_history("sess_missing")
        with pytest.raises(KeyError):
            await manager.interrupt("sess_missing")
        assert manager.get_session("sess_missing") is None


# =========================================================================
# Teardown
# =========================================================================


class TestClose:
    async def test_close_idle_session(
        self, manager: SessionManager, project_dir: Path, event_bus: EventBus
    ) -> None:
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "hello")
        await session.task
        queue = event_bus.subscribe(session.session_id)
        while not queue.empty():
            queue.get_nowait()

        await manager.close_session(session.session_id)

        assert manager.get_session(session.session_id) is None
        assert session.status == SessionStatus.CLOSED
        assert session.pool.resident_count() == 0
        sentinel = queue.get_nowait()
        while sentinel.type != EventType.SESSION_CLOSED:
            sentinel = queue.get_nowait()
        assert sentinel.type == EventType.SESSION_CLOSED

    async def test_close_releases_event_history(
        self, manager: SessionManager, project_dir: Path, event_bus: EventBus
    ) -> None:
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "hello")
        await session.task
        assert event_bus.get_event_history(session.session_id)

        await manager.close_session(session.session_id)
        assert event_bus.get_event_history(session.session_id) == []

    async def test_close_cancels_running_turn(
        self, manager: SessionManager, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _script_default_model(manager, monkeypatch)
        session = await _create(manager, project_dir)
        await manager.submit_input(session.session_id, "list files")
        await _wait_for_pending(session)

        await manager.close_session(session.session_id)
        assert session.task.done()
        assert session.status == SessionStatus.CLOSED

    async def test_close_unknown(self, manager: SessionManager) -> None:
        with pytest.raises(KeyError):
            await manager.close_session("sess_missing")

    async def test_cleanup_all(self, manager: SessionManager, project_dir: Path) -> None:
        await _create(manager, project_dir)
        await _create(manager, project_dir)
        await manager.cleanup_all()
        assert manager.get_all_sessions() == []

"""Session manager for FlowCoder coding sessions.

A session binds one project directory to one TurnOrchestrator and the
collaborators it needs: the command guard, workspace, scratchpad store,
engine pool, tool host, verification loop and a human interface whose
questions are answered over HTTP or WebSocket.

Turns run as background tasks. One turn at a time per session; the session
stays usable after an interrupted or failed turn.

Usage:
    >>> from events import get_event_bus
    >>> from session_manager import SessionManager
    >>>
    >>> manager = SessionManager(get_event_bus())
    >>> session_id = await manager.create_session(project_root="/path/to/crate")
    >>> turn = await manager.submit_input(session_id, "list the files")
    >>> await manager.respond(session_id, "all")  # answer the batch approval
    >>> await manager.close_session(session_id)
"""

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from agents.human import EventBusHumanInterface
from agents.prompts import build_system_prompt
from agents.protocol import Message
from agents.registry import create_agent_registry
from agents.tools import ToolExecutor, get_tool_definitions
from agents.turn_graph import TurnInterrupted, TurnOrchestrator, TurnResult
from agents.verification import VerificationLoop, Verifier
from config import settings
from engines.backends import LiteLLMBackend, MockBackend, ModelBackend
from engines.lifecycle import EnginePool, EngineStatus, StatusListener
from events import EventBus
from events.types import AgentEvent, EventType
from models.schemas import SessionStatus
from toolhost.host import McpToolHost
from workspace.discovery import discover_project_commands
from workspace.project import ProjectWorkspace
from workspace.security import CommandGuard
from workspace.store import FileSessionStore

logger = structlog.get_logger()

# Reply of the scripted engines used when USE_MOCK_LLM is set: a plan with
# no delegate and no tool calls, so every turn completes in one phase.
MOCK_ENGINE_RESPONSE = (
    "<plan>Mock engine: no model server configured, nothing to change.</plan>\n"
    "<delegate>none</delegate>\n"
    "Mock engine response: set USE_MOCK_LLM=false to use a real model."
)

_ENGINE_EVENT_TYPES: dict[EngineStatus, EventType] = {
    EngineStatus.LOADING: EventType.ENGINE_LOADING,
    EngineStatus.LOADED: EventType.ENGINE_LOADED,
    EngineStatus.IDLE: EventType.ENGINE_UNLOADED,
}


class SessionBusyError(RuntimeError):
    """Raised when input arrives while a turn is still running."""


@dataclass
class SessionInfo:
    """State and collaborators of one coding session.

    Attributes:
        session_id: Unique identifier (e.g., "sess_abc123def456")
        project_root: Absolute project directory
        status: Current session status
        created_at: Unix timestamp when the session was created
        default_model: Engine model for heavyweight roles
        tiny_model: Engine model for lightweight roles
        orchestrator: Drives turns for this session
        human: Answers to its pending requests arrive through `respond`
        pool: Engines owned by this session
        tool_host: External tool provider, closed with the session
        turn_count: Turns started so far
        error_message: Error of the last failed turn, if any
        last_result: Outcome of the last completed turn
    """

    session_id: str
    project_root: str
    status: SessionStatus
    created_at: float
    default_model: str
    tiny_model: str
    orchestrator: TurnOrchestrator
    human: EventBusHumanInterface
    pool: EnginePool
    tool_host: McpToolHost
    turn_count: int = 0
    error_message: str | None = None
    last_result: TurnResult | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def is_busy(self) -> bool:
        return self.task is not None and not self.task.done()


class SessionManager:
    """Creates sessions, runs their turns and tears them down.

    All registry mutations go through an asyncio.Lock.

    Attributes:
        event_bus: Event bus every session publishes to
    """

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self._sessions: dict[str, SessionInfo] = {}
        self._lock = asyncio.Lock()
        logger.info("session_manager_initialized", mock_llm=settings.use_mock_llm)

    def _generate_session_id(self) -> str:
        return f"sess_{uuid.uuid4().hex[:12]}"

    def _create_backend(self, model: str) -> ModelBackend:
        if settings.use_mock_llm:
            return MockBackend(model, default_response=MOCK_ENGINE_RESPONSE)
        return LiteLLMBackend(model)

    def _engine_listener(self, session_id: str) -> StatusListener:
        def _on_status_change(model: str, engine_status: EngineStatus) -> None:
            self.event_bus.publish_sync(
                AgentEvent(
                    type=_ENGINE_EVENT_TYPES[engine_status],
                    session_id=session_id,
                    data={"model": model, "status": engine_status.value},
                )
            )

        return _on_status_change

    def _require(self, session_id: str) -> SessionInfo:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Session '{session_id}' not found")
        return session

    async def create_session(
        self,
        project_root: str | None = None,
        *,
        default_model: str | None = None,
        tiny_model: str | None = None,
    ) -> str:
        """Create a session for a project directory.

        Args:
            project_root: Project directory; defaults to `settings.project_root`
            default_model: Override for the heavyweight engine model
            tiny_model: Override for the lightweight engine model

        Returns:
            The new session ID

        Raises:
            NotADirectoryError: If the project root is not a directory
        """
        root = Path(project_root or settings.project_root).expanduser().resolve()
        if not root.is_dir():
            raise NotADirectoryError(f"Project root is not a directory: {root}")

        session_id = self._generate_session_id()
        default_model = default_model or settings.default_model
        tiny_model = tiny_model or settings.tiny_model
        logger.info("create_session_start", session_id=session_id, project_root=str(root))

        human = EventBusHumanInterface(session_id, self.event_bus)
        guard = CommandGuard(root, human)
        workspace = ProjectWorkspace(root, max_output_chars=settings.max_tool_output_chars)
        store = FileSessionStore(root, settings.state_dir_name)

        tool_host = McpToolHost(settings.mcp_servers)
        await tool_host.start()

        try:
            pool = EnginePool(
                self._create_backend,
                max_resident=settings.max_resident_engines,
                on_status_change=self._engine_listener(session_id),
            )
            registry = create_agent_registry(
                pool,
                default_model=default_model,
                tiny_model=tiny_model,
                system_prompt=build_system_prompt(get_tool_definitions(tool_host)),
                max_history_chars=settings.max_history_chars,
            )
            executor = ToolExecutor(workspace, self.event_bus, session_id, tool_host)

            commands = discover_project_commands(
                root,
                build_override=settings.build_command,
                lint_override=settings.lint_command,
            )
            verification = VerificationLoop(
                Verifier(workspace, commands, timeout=settings.verification_timeout_seconds),
                registry,
                workspace,
                store,
                self.event_bus,
                session_id,
                metrics_top_n=settings.metrics_top_n,
            )
            orchestrator = TurnOrchestrator(
                session_id,
                registry,
                executor,
                guard,
                human,
                verification,
                store,
                self.event_bus,
                max_phases=settings.max_turn_phases,
            )
        except Exception as e:
            logger.error("create_session_failed", session_id=session_id, error=str(e))
            await tool_host.close()
            raise

        session = SessionInfo(
            session_id=session_id,
            project_root=str(root),
            status=SessionStatus.IDLE,
            created_at=time.time(),
            default_model=default_model,
            tiny_model=tiny_model,
            orchestrator=orchestrator,
            human=human,
            pool=pool,
            tool_host=tool_host,
        )
        async with self._lock:
            self._sessions[session_id] = session

        await self.event_bus.publish(
            AgentEvent(
                type=EventType.SESSION_CREATED,
                session_id=session_id,
                data={
                    "project_root": str(root),
                    "default_model": default_model,
                    "tiny_model": tiny_model,
                    "toolchain": commands.toolchain,
                    "build_command": commands.build,
                    "tool_servers": tool_host.connected_servers,
                },
            )
        )
        logger.info(
            "create_session_complete",
            session_id=session_id,
            toolchain=commands.toolchain,
            tool_servers=len(tool_host.connected_servers),
        )
        return session_id

    async def submit_input(self, session_id: str, text: str) -> int:
        """Start a turn for `text` in the background.

        Returns:
            The 1-based index of the started turn

        Raises:
            KeyError: If the session does not exist
            SessionBusyError: If a turn is already running
        """
        async with self._lock:
            session = self._require(session_id)
            if session.is_busy:
                raise SessionBusyError(f"Session '{session_id}' is already running a turn")
            session.turn_count += 1
            session.status = SessionStatus.RUNNING
            session.error_message = None
            session.task = asyncio.create_task(
                self._run_turn(session, text),
                name=f"turn_{session_id}_{session.turn_count}",
            )
            return session.turn_count

    async def _run_turn(self, session: SessionInfo, text: str) -> None:
        try:
            result = await session.orchestrator.process_input(text)
        except TurnInterrupted:
            session.status = SessionStatus.INTERRUPTED
        except asyncio.CancelledError:
            session.status = SessionStatus.INTERRUPTED
            raise
        except Exception as e:
            logger.error("turn_failed", session_id=session.session_id, error=str(e), exc_info=True)
            session.status = SessionStatus.ERROR
            session.error_message = str(e)
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.TURN_ERROR,
                    session_id=session.session_id,
                    data={"error": str(e), "error_type": type(e).__name__},
                )
            )
        else:
            session.last_result = result
            session.status = SessionStatus.IDLE

    async def interrupt(self, session_id: str) -> bool:
        """Ask the running turn to stop at its next boundary.

        A turn blocked on a human question stops right away: the question
        is aborted with TurnInterrupted.

        Returns:
            False when no turn was running.
        """
        session = self._require(session_id)
        if not session.is_busy:
            return False
        session.orchestrator.interrupt()
        session.human.abort_pending(TurnInterrupted("awaiting_input"))
        return True

    async def respond(self, session_id: str, answer: str, request_id: str | None = None) -> str:
        """Answer a pending human request; returns the answered request id.

        Raises:
            KeyError: If the session does not exist
            NoPendingRequestError: If nothing matching is pending
        """
        session = self._require(session_id)
        return await session.human.resolve(answer, request_id)

    def get_history(self, session_id: str) -> list[Message]:
        return self._require(session_id).orchestrator.history

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[SessionInfo]:
        return list(self._sessions.values())

    async def close_session(self, session_id: str) -> None:
        """Stop any running turn, unload engines and release the session.

        Raises:
            KeyError: If the session does not exist
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise KeyError(f"Session '{session_id}' not found")

        logger.info("close_session_start", session_id=session_id, status=session.status.value)
        session.human.cancel_pending()
        if session.task is not None and not session.task.done():
            session.task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TurnInterrupted):
                await session.task

        await session.pool.close()
        await session.tool_host.close()
        session.status = SessionStatus.CLOSED
        await self.event_bus.close_session(session_id)
        # Subscribers already hold the sentinel; nothing can replay a closed session.
        self.event_bus.clear_event_history(session_id)
        logger.info("close_session_complete", session_id=session_id)

    async def cleanup_all(self) -> None:
        """Close every session; called at application shutdown."""
        session_ids = list(self._sessions)
        logger.info("cleanup_all_start", session_count=len(session_ids))
        for session_id in session_ids:
            try:
                await self.close_session(session_id)
            except KeyError:
                continue
            except Exception as e:
                logger.error("cleanup_session_failed", session_id=session_id, error=str(e))
        logger.info("cleanup_all_complete")

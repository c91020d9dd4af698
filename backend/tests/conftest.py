"""Shared test fixtures for backend tests.

Provides a fresh EventBus, a scripted human, scripted engine backends per
agent role and a builder for a fully wired TurnOrchestrator over a temporary
project directory, so tests never touch a model server or a real terminal.
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from agents.protocol import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.prompts import build_system_prompt  # noqa: E402
from agents.registry import (  # noqa: E402
    ROLE_TEMPLATES,
    AgentDescriptor,
    AgentRegistry,
    AgentRole,
)
from agents.tools import TOOL_DEFINITIONS, ToolExecutor  # noqa: E402
from agents.turn_graph import TurnOrchestrator  # noqa: E402
from agents.verification import VerificationLoop, Verifier  # noqa: E402
from engines.backends import MockBackend  # noqa: E402
from engines.lifecycle import EngineHandle  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentEvent  # noqa: E402
from workspace.discovery import ProjectCommands  # noqa: E402
from workspace.project import ProjectWorkspace  # noqa: E402
from workspace.security import CommandGuard  # noqa: E402
from workspace.store import FileSessionStore  # noqa: E402

SESSION_ID = "sess_test"

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


def drain_events(event_bus: EventBus, session_id: str = SESSION_ID) -> list[AgentEvent]:
    """Everything published for a session so far."""
    return event_bus.get_event_history(session_id)


# ---------------------------------------------------------------------------
# Scripted human
# ---------------------------------------------------------------------------

Answer = str | Callable[[str], str]


class ScriptedHuman:
    """HumanInterface answering from scripts.

    `prompt` answers come from `answers` in order (a callable answer gets the
    question), falling back to `default_answer`. `confirm` answers come from
    `confirmations`, falling back to True.
    """

    def __init__(
        self,
        answers: list[Answer] | None = None,
        confirmations: list[bool] | None = None,
        default_answer: str = "all",
    ) -> None:
        self.answers = list(answers or [])
        self.confirmations = list(confirmations or [])
        self.default_answer = default_answer
        self.written: list[str] = []
        self.questions: list[str] = []
        self.confirm_questions: list[str] = []

    async def write(self, text: str) -> None:
        self.written.append(text)

    async def prompt(self, question: str) -> str:
        self.questions.append(question)
        if not self.answers:
            return self.default_answer
        answer = self.answers.pop(0)
        return answer(question) if callable(answer) else answer

    async def confirm(self, question: str) -> bool:
        self.confirm_questions.append(question)
        return self.confirmations.pop(0) if self.confirmations else True


@pytest.fixture()
def human() -> ScriptedHuman:
    return ScriptedHuman()


# ---------------------------------------------------------------------------
# Scripted engines
# ---------------------------------------------------------------------------

DEFAULT_ROLE_RESPONSES: dict[AgentRole, str] = {
    AgentRole.INTENT: "feature",
    AgentRole.CONTEXT: "No extra context needed.",
    AgentRole.DISPATCHER: "<plan>Nothing left to do.</plan>\n<delegate>none</delegate>\nAll done.",
    AgentRole.PATCHER: "Nothing to patch.",
    AgentRole.BOILERPLATE: "Nothing to scaffold.",
    AgentRole.TEMPLATE: "Nothing to render.",
    AgentRole.REFACTOR: "Nothing to refactor.",
    AgentRole.DEBUGGER: "No diagnosis.",
}


def make_backends(
    scripts: dict[AgentRole, list[Any]] | None = None,
) -> dict[AgentRole, MockBackend]:
    """One MockBackend per role, scripted from `scripts`."""
    scripts = scripts or {}
    return {
        role: MockBackend(
            f"mock/{role.value}",
            responses=scripts.get(role),
            default_response=DEFAULT_ROLE_RESPONSES[role],
        )
        for role in AgentRole
    }


def make_registry(backends: dict[AgentRole, MockBackend]) -> AgentRegistry:
    descriptors = {
        role: AgentDescriptor(role=role, engine=EngineHandle(backend), template=ROLE_TEMPLATES[role])
        for role, backend in backends.items()
    }
    return AgentRegistry(descriptors, system_prompt=build_system_prompt(TOOL_DEFINITIONS))


# ---------------------------------------------------------------------------
# Project + orchestrator
# ---------------------------------------------------------------------------


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n", encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("print('hello')\n", encoding="utf-8")
    return root


def tool_call(name: str, **parameters: Any) -> str:
    import json

    return f"<tool_call>\n{json.dumps({'name': name, 'parameters': parameters})}\n</tool_call>"


def build_orchestrator(
    project_root: Path,
    event_bus: EventBus,
    human: ScriptedHuman,
    scripts: dict[AgentRole, list[Any]] | None = None,
    *,
    commands: ProjectCommands | None = None,
    max_phases: int = 12,
) -> tuple[TurnOrchestrator, dict[AgentRole, MockBackend], FileSessionStore]:
    """Wire a TurnOrchestrator the way the session manager does."""
    backends = make_backends(scripts)
    registry = make_registry(backends)
    workspace = ProjectWorkspace(project_root)
    store = FileSessionStore(project_root)
    guard = CommandGuard(project_root, human)
    executor = ToolExecutor(workspace, event_bus, SESSION_ID, max_output_chars=20000, command_timeout=30)
    verification = VerificationLoop(
        Verifier(workspace, commands or ProjectCommands(), timeout=30),
        registry,
        workspace,
        store,
        event_bus,
        SESSION_ID,
    )
    orchestrator = TurnOrchestrator(
        SESSION_ID,
        registry,
        executor,
        guard,
        human,
        verification,
        store,
        event_bus,
        max_phases=max_phases,
    )
    return orchestrator, backends, store

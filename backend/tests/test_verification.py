"""Tests for agents/verification.py -- lint/build checks and debugger escalation."""

from pathlib import Path

from agents.registry import AgentRole
from agents.verification import VerificationLoop, Verifier
from engines.lifecycle import EngineStatus
from events.bus import EventBus
from events.types import EventType
from tests.conftest import SESSION_ID, drain_events, make_backends, make_registry
from workspace.discovery import ProjectCommands
from workspace.project import ProjectWorkspace
from workspace.store import FileSessionStore


class TestVerifier:
    async def test_skipped_without_build(self, project_dir: Path) -> None:
        verifier = Verifier(ProjectWorkspace(project_dir), ProjectCommands())
        report = await verifier.run()
        assert not verifier.enabled
        assert report.success and report.skipped

    async def test_build_passes(self, project_dir: Path) -> None:
        verifier = Verifier(ProjectWorkspace(project_dir), ProjectCommands(build="echo built"))
        report = await verifier.run()
        assert report.success
        assert report.output == "[build] $ echo built (exit code 0)\nbuilt"

    async def test_lint_failure_not_authoritative(self, project_dir: Path) -> None:
        commands = ProjectCommands(build="true", lint="echo style >&2; exit 1")
        report = await Verifier(ProjectWorkspace(project_dir), commands).run()
        assert report.success
        assert report.output.startswith("[lint] $ echo style >&2; exit 1 (exit code 1)\nstyle")
        assert "[build] $ true (exit code 0)\n(no output)" in report.output

    async def test_build_failure(self, project_dir: Path) -> None:
        commands = ProjectCommands(build="echo 'error: E0425' >&2; exit 101")
        report = await Verifier(ProjectWorkspace(project_dir), commands).run()
        assert not report.success
        assert "exit code 101" in report.output
        assert "E0425" in report.output


def _loop(
    project_dir: Path, event_bus: EventBus, build: str | None, debugger_reply: str = "Missing import."
):
    backends = make_backends({AgentRole.DEBUGGER: [debugger_reply]})
    registry = make_registry(backends)
    workspace = ProjectWorkspace(project_dir)
    store = FileSessionStore(project_dir)
    loop = VerificationLoop(
        Verifier(workspace, ProjectCommands(build=build)),
        registry,
        workspace,
        store,
        event_bus,
        SESSION_ID,
    )
    return loop, backends, registry, store


class TestVerificationLoop:
    async def test_pass_does_not_invoke_debugger(self, project_dir: Path, event_bus: EventBus) -> None:
        loop, backends, _, _ = _loop(project_dir, event_bus, build="true")
        outcome = await loop.verify("add flag", "write_file(path='a.py')")
        assert not outcome.failed
        assert outcome.diagnosis is None
        assert backends[AgentRole.DEBUGGER].prompts == []
        types = [e.type for e in drain_events(event_bus)]
        assert types == [EventType.VERIFICATION_STARTED, EventType.VERIFICATION_RESULT]

    async def test_skipped_does_not_prefetch_debugger(self, project_dir: Path, event_bus: EventBus) -> None:
        loop, _, registry, _ = _loop(project_dir, event_bus, build=None)
        outcome = await loop.verify("add flag", "patch_file(path='a.py')")
        assert outcome.report.skipped
        assert registry.engine_for(AgentRole.DEBUGGER).status == EngineStatus.IDLE

    async def test_failure_escalates_to_debugger(self, project_dir: Path, event_bus: EventBus) -> None:
        loop, backends, _, store = _loop(project_dir, event_bus, build="echo boom >&2; exit 2")
        outcome = await loop.verify("add flag", "write_file(path='src/main.py')")

        assert outcome.failed
        assert outcome.diagnosis == "Missing import."
        assert outcome.metrics is not None and outcome.metrics.total_lines == 1

        prompt = backends[AgentRole.DEBUGGER].prompts[0]
        assert "Task: add flag" in prompt
        assert "boom" in prompt
        assert "Code Metrics:" in prompt

        assert await store.read_scratchpad() == "## Debugger Analysis\n\nMissing import.\n"
        events = drain_events(event_bus)
        assert events[-1].type == EventType.DIAGNOSIS_COMPLETE
        assert events[-1].agent_id == "debugger"

    async def test_diagnosis_appended_to_scratchpad(self, project_dir: Path, event_bus: EventBus) -> None:
        loop, _, _, store = _loop(project_dir, event_bus, build="false", debugger_reply="Second look.")
        await store.write_scratchpad("## Notes\nkeep me")
        await loop.verify("req", "patch_file(path='x')")
        assert await store.read_scratchpad() == (
            "## Notes\nkeep me\n\n## Debugger Analysis\n\nSecond look.\n"
        )

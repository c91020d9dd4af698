"""Verification and escalation after a file mutation.

After every successful `write_file`/`patch_file` the project's lint command
runs (captured, not authoritative) followed by the build command
(authoritative). A failing build is escalated to the debugger agent together
with a code-metrics report; its analysis is recorded in the scratchpad and
returned to the orchestrator, which discards the rest of the queue.
"""

from dataclasses import dataclass

import structlog

from agents.registry import AgentRegistry, AgentRole
from events.bus import EventBus
from events.types import AgentEvent, EventType
from workspace.code_metrics import CodeMetricsReport, collect_code_metrics
from workspace.discovery import ProjectCommands
from workspace.project import CommandResult, ProjectWorkspace
from workspace.store import SessionContextStore

logger = structlog.get_logger()


@dataclass
class VerificationReport:
    success: bool
    output: str
    skipped: bool = False


@dataclass
class VerificationOutcome:
    """What the orchestrator needs after verification."""

    report: VerificationReport
    diagnosis: str | None = None
    metrics: CodeMetricsReport | None = None

    @property
    def failed(self) -> bool:
        return not self.report.success


def _format_step(label: str, command: str, result: CommandResult) -> str:
    status = "timed out" if result.timed_out else f"exit code {result.exit_code}"
    body = result.combined_output() or "(no output)"
    return f"[{label}] $ {command} ({status})\n{body}"


class Verifier:
    """Runs lint then build for the project."""

    def __init__(
        self,
        workspace: ProjectWorkspace,
        commands: ProjectCommands,
        timeout: int = 300,
    ) -> None:
        self.workspace = workspace
        self.commands = commands
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.commands.build)

    async def run(self) -> VerificationReport:
        if not self.commands.build:
            return VerificationReport(
                success=True,
                output="No build command detected; verification skipped.",
                skipped=True,
            )

        sections: list[str] = []
        if self.commands.lint:
            lint = await self.workspace.run_command(self.commands.lint, timeout=self.timeout)
            sections.append(_format_step("lint", self.commands.lint, lint))
            if not lint.success:
                logger.info("lint_failed", command=self.commands.lint, exit_code=lint.exit_code)

        build = await self.workspace.run_command(self.commands.build, timeout=self.timeout)
        sections.append(_format_step("build", self.commands.build, build))
        return VerificationReport(success=build.success, output="\n\n".join(sections))


class VerificationLoop:
    """Verification plus debugger escalation for one session.

    Attributes:
        verifier: Runs the lint/build commands.
        registry: Used to prefetch and invoke the debugger.
        workspace: Source for code metrics.
        store: Scratchpad the analysis is written to.
    """

    def __init__(
        self,
        verifier: Verifier,
        registry: AgentRegistry,
        workspace: ProjectWorkspace,
        store: SessionContextStore,
        event_bus: EventBus,
        session_id: str,
        *,
        metrics_top_n: int = 5,
    ) -> None:
        self.verifier = verifier
        self.registry = registry
        self.workspace = workspace
        self.store = store
        self.event_bus = event_bus
        self.session_id = session_id
        self.metrics_top_n = metrics_top_n

    async def _emit(self, event_type: EventType, data: dict) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                session_id=self.session_id,
                agent_id=AgentRole.DEBUGGER.value if event_type == EventType.DIAGNOSIS_COMPLETE else None,
                data=data,
            )
        )

    async def verify(self, request: str, trigger: str) -> VerificationOutcome:
        """Verify the project after `trigger` mutated it.

        Args:
            request: The user's request, given to the debugger for context.
            trigger: Description of the mutating call, for events and logs.
        """
        await self._emit(EventType.VERIFICATION_STARTED, {"trigger": trigger})
        if self.verifier.enabled:
            # Hide debugger load latency behind lint/build.
            self.registry.prefetch(AgentRole.DEBUGGER)

        report = await self.verifier.run()
        await self._emit(
            EventType.VERIFICATION_RESULT,
            {"success": report.success, "skipped": report.skipped, "output": report.output[:4000]},
        )

        if report.success:
            logger.info("verification_passed", session_id=self.session_id, skipped=report.skipped)
            return VerificationOutcome(report=report)

        logger.warning("verification_failed", session_id=self.session_id, trigger=trigger)
        metrics = await collect_code_metrics(self.workspace)
        diagnosis = await self.registry.invoke(
            AgentRole.DEBUGGER,
            request=request,
            transcript=report.output,
            metrics=metrics.format(self.metrics_top_n),
        )
        await self._record_diagnosis(diagnosis)
        await self._emit(EventType.DIAGNOSIS_COMPLETE, {"content": diagnosis})
        return VerificationOutcome(report=report, diagnosis=diagnosis, metrics=metrics)

    async def _record_diagnosis(self, diagnosis: str) -> None:
        try:
            existing = await self.store.read_scratchpad()
            section = f"## Debugger Analysis\n\n{diagnosis.strip()}\n"
            await self.store.write_scratchpad(f"{existing.rstrip()}\n\n{section}" if existing.strip() else section)
        except OSError as e:
            logger.error("scratchpad_write_failed", session_id=self.session_id, error=str(e))

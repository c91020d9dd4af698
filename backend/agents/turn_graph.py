"""Turn orchestration graph.

One call to `TurnOrchestrator.process_input` drives a bounded, multi-phase
turn through a LangGraph StateGraph:

    START -> classify_intent -> gather_context -> dispatch -> delegate_work
    delegate_work -> [approve_batch | END]
    approve_batch -> [execute_queue | END]
    execute_queue -> [dispatch | END]

1. INTENT: classify the request (recorded, never a gate)
2. CONTEXT: gather read-only context; those calls run without approval
3. PLAN: the dispatcher writes a plan to the scratchpad and names a delegate
4. DELEGATE: the named specialist (or the dispatcher itself) produces the
   tool-call-bearing response
5. APPROVE: one batch decision for all parsed calls
6. EXECUTE: drain the queue, verifying after every mutation

The turn ends when a response carries no tool calls, when the batch is
aborted, or when the planning-phase counter reaches its bound. Session
history lives on the orchestrator, not in graph state, so it survives an
interrupted turn.

Events emitted:
- TURN_STARTED / TURN_COMPLETE / TURN_INTERRUPTED
- PHASE_ACTIVE / PHASE_COMPLETE: When entering/exiting a phase
- AGENT_OUTPUT: Raw output of each agent
- TOOL_REJECTED / TOOL_SKIPPED: Calls that were not executed
- QUEUE_APPROVAL / QUEUE_DISCARDED: Batch decisions and drops
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.approval import ApprovalMode, CommandQueue, request_batch_approval
from agents.human import HumanInterface
from agents.protocol import Message, ToolCall, format_tool_result, parse_plan_tag, parse_tool_calls
from agents.registry import AgentRegistry, AgentRole, DelegateRole, parse_delegate_tag
from agents.tools import MUTATING_TOOLS, READ_ONLY_TOOLS, ToolExecutor
from agents.verification import VerificationLoop
from events.bus import EventBus
from events.types import AgentEvent, EventType
from workspace.security import CommandGuard
from workspace.store import SessionContextStore

logger = structlog.get_logger()

DEFAULT_MAX_PHASES = 12

CANCELLATION_MESSAGE = "Cancelled: the queued tool calls were aborted by the user."
INTERRUPTION_NOTE = "Turn interrupted by the user. Work so far is kept; continue from here."


class TurnPhase(StrEnum):
    INTENT = "intent"
    CONTEXT = "context"
    PLAN = "plan"
    DELEGATE = "delegate"
    APPROVE = "approve"
    EXECUTE = "execute"


TurnStatus = Literal["running", "complete", "cancelled", "phase_limit"]


class TurnInterrupted(Exception):
    """Raised when the interruption flag is seen at a phase boundary."""

    def __init__(self, phase: str) -> None:
        super().__init__(f"Turn interrupted during {phase}")
        self.phase = phase


class TurnState(TypedDict):
    """State for one turn.

    Attributes:
        request: The user's input for this turn
        intent: Intent classification output
        plan: Latest dispatcher plan
        delegate: Delegate named by the latest plan
        dispatcher_output: Raw dispatcher output of the latest plan phase
        response: The latest tool-call-bearing candidate response
        calls: Tool calls parsed from `response`
        approval_mode: Decision for the current batch
        phase_count: Planning phases entered so far
        max_phases: Bound on planning phases
        executed_calls: Tool executions so far this turn
        status: Terminal status once the turn ends
    """

    request: str
    intent: str
    plan: str
    delegate: str
    dispatcher_output: str
    response: str
    calls: list[ToolCall]
    approval_mode: str
    phase_count: int
    max_phases: int
    executed_calls: int
    status: TurnStatus


@dataclass
class TurnResult:
    status: TurnStatus
    intent: str
    plan: str
    response: str
    executed_calls: int
    phases: int


class TurnOrchestrator:
    """Drives turns for one session.

    Usage:
        >>> orchestrator = TurnOrchestrator(session_id, registry, executor, guard,
        ...                                 human, verification, store, event_bus)
        >>> result = await orchestrator.process_input("add a --verbose flag")
        >>> result.status
        'complete'
    """

    def __init__(
        self,
        session_id: str,
        registry: AgentRegistry,
        executor: ToolExecutor,
        guard: CommandGuard,
        human: HumanInterface,
        verification: VerificationLoop,
        store: SessionContextStore,
        event_bus: EventBus,
        *,
        max_phases: int = DEFAULT_MAX_PHASES,
    ) -> None:
        if max_phases < 1:
            raise ValueError("max_phases must be at least 1")
        self.session_id = session_id
        self.registry = registry
        self.executor = executor
        self.guard = guard
        self.human = human
        self.verification = verification
        self.store = store
        self.event_bus = event_bus
        self.max_phases = max_phases
        self._history: list[Message] = []
        self._interrupt_requested = False
        self._compiled_graph = self._build_graph()

    @property
    def history(self) -> list[Message]:
        """A copy of the session history."""
        return [Message(role=m["role"], content=m["content"]) for m in self._history]

    def interrupt(self) -> None:
        """Request a cooperative stop at the next phase boundary or tool call."""
        self._interrupt_requested = True
        logger.info("turn_interrupt_requested", session_id=self.session_id)

    def _build_graph(self) -> Any:
        graph = StateGraph(TurnState)

        graph.add_node("classify_intent", self._intent_phase)
        graph.add_node("gather_context", self._context_phase)
        graph.add_node("dispatch", self._plan_phase)
        graph.add_node("delegate_work", self._delegate_phase)
        graph.add_node("approve_batch", self._approval_phase)
        graph.add_node("execute_queue", self._execution_phase)

        graph.add_edge(START, "classify_intent")
        graph.add_edge("classify_intent", "gather_context")
        graph.add_edge("gather_context", "dispatch")
        graph.add_edge("dispatch", "delegate_work")
        graph.add_conditional_edges(
            "delegate_work",
            self._after_delegate,
            {"approve": "approve_batch", "end": END},
        )
        graph.add_conditional_edges(
            "approve_batch",
            self._after_approval,
            {"execute": "execute_queue", "end": END},
        )
        graph.add_conditional_edges(
            "execute_queue",
            self._after_execution,
            {"plan": "dispatch", "end": END},
        )

        return graph.compile()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _append(self, role: Literal["user", "assistant", "system"], content: str) -> None:
        self._history.append(Message(role=role, content=content))

    def _check_interrupt(self, phase: str) -> None:
        if self._interrupt_requested:
            raise TurnInterrupted(phase)

    async def _emit(
        self,
        event_type: EventType,
        data: dict[str, Any],
        role: AgentRole | None = None,
    ) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                session_id=self.session_id,
                agent_id=role.value if role else None,
                agent_role=self.registry.descriptor(role).display_name if role else None,
                data=data,
            )
        )

    async def _enter_phase(self, state: TurnState, phase: TurnPhase) -> None:
        self._check_interrupt(phase.value)
        await self._emit(EventType.PHASE_ACTIVE, {"phase": phase.value, "phase_count": state["phase_count"]})

    async def _exit_phase(self, phase: TurnPhase, phase_count: int) -> None:
        await self._emit(EventType.PHASE_COMPLETE, {"phase": phase.value, "phase_count": phase_count})

    async def _invoke(self, role: AgentRole, **fields: Any) -> str:
        output = await self.registry.invoke(role, **fields)
        await self._emit(EventType.AGENT_OUTPUT, {"content": output}, role)
        return output

    async def _reject(self, call: ToolCall, reason: str) -> None:
        self._append("system", f"Error: Tool call rejected. {reason}")
        await self._emit(EventType.TOOL_REJECTED, {"tool": call.name, "reason": reason})
        logger.info("tool_call_rejected", session_id=self.session_id, tool=call.name, reason=reason)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _intent_phase(self, state: TurnState) -> dict[str, Any]:
        await self._enter_phase(state, TurnPhase.INTENT)
        intent = (await self._invoke(AgentRole.INTENT, request=state["request"])).strip()
        # Load the dispatcher while the context phase runs its tools.
        self.registry.prefetch(AgentRole.DISPATCHER)
        await self._exit_phase(TurnPhase.INTENT, state["phase_count"])
        return {"intent": intent}

    async def _context_phase(self, state: TurnState) -> dict[str, Any]:
        await self._enter_phase(state, TurnPhase.CONTEXT)
        output = await self._invoke(
            AgentRole.CONTEXT,
            request=state["request"],
            intent=state["intent"],
            project_summary=await self.store.get_project_summary(),
        )
        self._append("assistant", output)

        executed = state["executed_calls"]
        for call in parse_tool_calls(output):
            self._check_interrupt(TurnPhase.CONTEXT.value)
            if call.name not in READ_ONLY_TOOLS:
                await self._reject(call, f"Tool {call.name} is not available while gathering context.")
                continue
            validation = self.guard.validate(call.name, call.parameters)
            if not validation.safe:
                await self._reject(call, validation.reason)
                continue
            result = await self.executor.execute(
                call,
                AgentRole.CONTEXT.value,
                self.registry.descriptor(AgentRole.CONTEXT).display_name,
            )
            self._append("system", format_tool_result(result.content))
            executed += 1

        await self._exit_phase(TurnPhase.CONTEXT, state["phase_count"])
        return {"executed_calls": executed}

    async def _plan_phase(self, state: TurnState) -> dict[str, Any]:
        phase_count = state["phase_count"] + 1
        self._check_interrupt(TurnPhase.PLAN.value)
        await self._emit(EventType.PHASE_ACTIVE, {"phase": TurnPhase.PLAN.value, "phase_count": phase_count})

        output = await self._invoke(
            AgentRole.DISPATCHER,
            history=self._history,
            request=state["request"],
            intent=state["intent"],
            scratchpad=await self.store.read_scratchpad(),
            project_summary=await self.store.get_project_summary(),
        )
        self._append("assistant", output)

        plan = parse_plan_tag(output)
        delegate = parse_delegate_tag(output)
        try:
            await self.store.write_scratchpad(f"# Execution Plan\n\n{plan}\n")
        except OSError as e:
            logger.error("scratchpad_write_failed", session_id=self.session_id, error=str(e))

        logger.info("plan_ready", session_id=self.session_id, phase_count=phase_count, delegate=delegate.value)
        await self._exit_phase(TurnPhase.PLAN, phase_count)
        return {
            "plan": plan,
            "delegate": delegate.value,
            "dispatcher_output": output,
            "phase_count": phase_count,
        }

    async def _delegate_phase(self, state: TurnState) -> dict[str, Any]:
        await self._enter_phase(state, TurnPhase.DELEGATE)
        role = DelegateRole(state["delegate"]).to_agent_role()
        if role is None:
            response = state["dispatcher_output"]
        else:
            response = await self._invoke(
                role,
                history=self._history,
                request=state["request"],
                plan=state["plan"],
            )
            self._append("assistant", response)

        calls = parse_tool_calls(response)
        await self._exit_phase(TurnPhase.DELEGATE, state["phase_count"])
        return {"response": response, "calls": calls}

    async def _approval_phase(self, state: TurnState) -> dict[str, Any]:
        await self._enter_phase(state, TurnPhase.APPROVE)
        queue = CommandQueue(state["calls"])
        self._check_interrupt(TurnPhase.APPROVE.value)
        mode = await request_batch_approval(queue, self.human)
        await self._emit(EventType.QUEUE_APPROVAL, {"mode": mode.value, "size": len(queue)})

        update: dict[str, Any] = {"approval_mode": mode.value}
        if mode == ApprovalMode.ABORT:
            dropped = queue.discard_remaining()
            self._append("system", CANCELLATION_MESSAGE)
            await self._emit(EventType.QUEUE_DISCARDED, {"discarded": len(dropped), "reason": "abort"})
            await self.human.write(CANCELLATION_MESSAGE)
            update["status"] = "cancelled"

        await self._exit_phase(TurnPhase.APPROVE, state["phase_count"])
        return update

    async def _execution_phase(self, state: TurnState) -> dict[str, Any]:
        await self._enter_phase(state, TurnPhase.EXECUTE)
        mode = ApprovalMode(state["approval_mode"])
        actor = DelegateRole(state["delegate"]).to_agent_role() or AgentRole.DISPATCHER
        queue = CommandQueue(state["calls"])
        executed = state["executed_calls"]

        while (call := queue.pop_next()) is not None:
            self._check_interrupt(TurnPhase.EXECUTE.value)

            validation = self.guard.validate(call.name, call.parameters)
            if not validation.safe:
                await self._reject(call, validation.reason)
                continue

            if mode == ApprovalMode.STEP and self.guard.is_dangerous(call.name):
                if not await self.guard.confirm(call.describe()):
                    self._append("system", f"Skipped: the user declined {call.describe()}")
                    await self._emit(EventType.TOOL_SKIPPED, {"tool": call.name, "reason": "declined"})
                    continue

            result = await self.executor.execute(
                call, actor.value, self.registry.descriptor(actor).display_name
            )
            executed += 1
            self._append("system", format_tool_result(result.content))

            if result.pause_question is not None:
                self._check_interrupt(TurnPhase.EXECUTE.value)
                answer = await self.human.prompt(result.pause_question)
                self._append("system", f"User answer: {answer}")
                continue

            if result.success and call.name in MUTATING_TOOLS:
                outcome = await self.verification.verify(state["request"], call.describe())
                if outcome.failed:
                    self._append("system", f"Verification failed:\n{outcome.report.output}")
                    self._append(
                        "system",
                        f"Debugger Analysis: {outcome.diagnosis}\nPlease fix and verify again.",
                    )
                    dropped = queue.discard_remaining()
                    await self._emit(
                        EventType.QUEUE_DISCARDED,
                        {"discarded": len(dropped), "reason": "verification_failed"},
                    )
                    logger.info(
                        "queue_discarded_after_verification",
                        session_id=self.session_id,
                        discarded=len(dropped),
                    )
                    break

        await self._exit_phase(TurnPhase.EXECUTE, state["phase_count"])
        update: dict[str, Any] = {"executed_calls": executed, "calls": []}
        if state["phase_count"] >= state["max_phases"]:
            logger.warning(
                "turn_phase_limit_reached",
                session_id=self.session_id,
                phase_count=state["phase_count"],
            )
            update["status"] = "phase_limit"
        return update

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _after_delegate(self, state: TurnState) -> Literal["approve", "end"]:
        return "approve" if state["calls"] else "end"

    def _after_approval(self, state: TurnState) -> Literal["execute", "end"]:
        return "end" if state["status"] == "cancelled" else "execute"

    def _after_execution(self, state: TurnState) -> Literal["plan", "end"]:
        return "end" if state["status"] == "phase_limit" else "plan"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_input(self, text: str) -> TurnResult:
        """Run one full turn for the user's input.

        Raises:
            TurnInterrupted: If `interrupt` was called mid-turn. History up
                to that point, including a system note, is kept.
            Exception: Engine load/generation failures propagate; the
                orchestrator stays usable for the next turn.
        """
        self._interrupt_requested = False
        self._append("user", text)
        await self._emit(EventType.TURN_STARTED, {"request": text})
        logger.info("turn_started", session_id=self.session_id, request_preview=text[:100])

        initial_state = TurnState(
            request=text,
            intent="",
            plan="",
            delegate=DelegateRole.NONE.value,
            dispatcher_output="",
            response="",
            calls=[],
            approval_mode=ApprovalMode.ALL.value,
            phase_count=0,
            max_phases=self.max_phases,
            executed_calls=0,
            status="running",
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state,
                config={"recursion_limit": 4 * self.max_phases + 10},
            )
        except TurnInterrupted as e:
            self._append("system", INTERRUPTION_NOTE)
            logger.info("turn_interrupted", session_id=self.session_id, phase=e.phase)
            await self._emit(EventType.TURN_INTERRUPTED, {"phase": e.phase})
            raise

        status: TurnStatus = final_state["status"]
        if status == "running":
            status = "complete"
            await self.human.write(final_state["response"])

        result = TurnResult(
            status=status,
            intent=final_state["intent"],
            plan=final_state["plan"],
            response=final_state["response"],
            executed_calls=final_state["executed_calls"],
            phases=final_state["phase_count"],
        )
        await self._emit(
            EventType.TURN_COMPLETE,
            {"status": result.status, "executed_calls": result.executed_calls, "phases": result.phases},
        )
        logger.info(
            "turn_complete",
            session_id=self.session_id,
            status=result.status,
            executed_calls=result.executed_calls,
            phases=result.phases,
        )
        return result

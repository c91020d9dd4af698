"""Agent registry: role to (engine, instruction template) bindings.

Agents hold no state. Invoking a role fills its fixed template with the
supplied fields and a read-only rendering of the session history, then
delegates to the bound engine's `generate`. All continuity lives in the
orchestrator's history and the scratchpad.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from agents.prompts import (
    BOILERPLATE_PROMPT,
    CONTEXT_PROMPT,
    DEBUGGER_PROMPT,
    DISPATCHER_PROMPT,
    INTENT_PROMPT,
    PATCHER_PROMPT,
    REFACTOR_PROMPT,
    TEMPLATE_PROMPT,
    compose_prompt_sections,
    render_template,
)
from agents.protocol import Message
from engines.lifecycle import EngineHandle, EnginePool

logger = structlog.get_logger()

_DELEGATE_PATTERN = re.compile(r"<delegate>\s*([A-Za-z_-]*)\s*</delegate>", re.IGNORECASE)


class AgentRole(StrEnum):
    INTENT = "intent"
    CONTEXT = "context"
    DISPATCHER = "dispatcher"
    PATCHER = "patcher"
    BOILERPLATE = "boilerplate"
    TEMPLATE = "template"
    REFACTOR = "refactor"
    DEBUGGER = "debugger"


class DelegateRole(StrEnum):
    """Who carries out the dispatcher's plan."""

    NONE = "none"
    PATCHER = "patcher"
    BOILERPLATE = "boilerplate"
    TEMPLATE = "template"
    REFACTOR = "refactor"

    def to_agent_role(self) -> AgentRole | None:
        if self is DelegateRole.NONE:
            return None
        return AgentRole(self.value)


ROLE_DISPLAY_NAMES: dict[AgentRole, str] = {
    AgentRole.INTENT: "Intent Analyst",
    AgentRole.CONTEXT: "Context Gatherer",
    AgentRole.DISPATCHER: "Lead Dispatcher",
    AgentRole.PATCHER: "Sniper Coder",
    AgentRole.BOILERPLATE: "Builder",
    AgentRole.TEMPLATE: "Weaver",
    AgentRole.REFACTOR: "Semanticist",
    AgentRole.DEBUGGER: "Debugger",
}

ROLE_TEMPLATES: dict[AgentRole, str] = {
    AgentRole.INTENT: INTENT_PROMPT,
    AgentRole.CONTEXT: CONTEXT_PROMPT,
    AgentRole.DISPATCHER: DISPATCHER_PROMPT,
    AgentRole.PATCHER: PATCHER_PROMPT,
    AgentRole.BOILERPLATE: BOILERPLATE_PROMPT,
    AgentRole.TEMPLATE: TEMPLATE_PROMPT,
    AgentRole.REFACTOR: REFACTOR_PROMPT,
    AgentRole.DEBUGGER: DEBUGGER_PROMPT,
}

# Roles bound to the small model; everything else uses the default model.
TINY_ENGINE_ROLES: frozenset[AgentRole] = frozenset(
    {
        AgentRole.INTENT,
        AgentRole.CONTEXT,
        AgentRole.PATCHER,
        AgentRole.TEMPLATE,
        AgentRole.DEBUGGER,
    }
)

# Roles that see the tool-call contract.
TOOL_USING_ROLES: frozenset[AgentRole] = frozenset(
    {
        AgentRole.CONTEXT,
        AgentRole.DISPATCHER,
        AgentRole.PATCHER,
        AgentRole.BOILERPLATE,
        AgentRole.TEMPLATE,
        AgentRole.REFACTOR,
    }
)


@dataclass(frozen=True)
class AgentDescriptor:
    """Immutable binding of a role to its engine and template."""

    role: AgentRole
    engine: EngineHandle
    template: str

    @property
    def display_name(self) -> str:
        return ROLE_DISPLAY_NAMES[self.role]

    @property
    def uses_tools(self) -> bool:
        return self.role in TOOL_USING_ROLES


def parse_delegate_tag(response: str) -> DelegateRole:
    """Read the delegate from a ``<delegate>ROLE</delegate>`` tag.

    Missing tags and unknown values both mean DelegateRole.NONE.
    """
    match = _DELEGATE_PATTERN.search(response or "")
    if not match:
        return DelegateRole.NONE
    value = match.group(1).strip().lower()
    try:
        return DelegateRole(value)
    except ValueError:
        logger.warning("unknown_delegate", value=value)
        return DelegateRole.NONE


def render_history(history: Sequence[Message], max_chars: int) -> str:
    """Render history for a prompt, keeping the newest messages that fit.

    Messages are selected newest-first until `max_chars` is reached and then
    rendered in chronological order.
    """
    kept: list[str] = []
    used = 0
    for message in reversed(history):
        entry = f"[{message['role']}] {message['content'].strip()}"
        if kept and used + len(entry) > max_chars:
            break
        if not kept and len(entry) > max_chars:
            entry = entry[-max_chars:]
        kept.append(entry)
        used += len(entry) + 1

    omitted = len(history) - len(kept)
    lines = list(reversed(kept))
    if omitted:
        lines.insert(0, f"[... {omitted} earlier messages omitted]")
    return "\n".join(lines)


class AgentRegistry:
    """Static role bindings for one session.

    Args:
        descriptors: One descriptor per role.
        system_prompt: Tool-call contract prepended for tool-using roles.
        max_history_chars: Budget for rendered history.
    """

    def __init__(
        self,
        descriptors: dict[AgentRole, AgentDescriptor],
        *,
        system_prompt: str = "",
        max_history_chars: int = 24000,
    ) -> None:
        missing = set(AgentRole) - set(descriptors)
        if missing:
            raise ValueError(f"Missing agent roles: {sorted(r.value for r in missing)}")
        self._descriptors = dict(descriptors)
        self.system_prompt = system_prompt
        self.max_history_chars = max_history_chars

    def descriptor(self, role: AgentRole) -> AgentDescriptor:
        return self._descriptors[role]

    def engine_for(self, role: AgentRole) -> EngineHandle:
        return self._descriptors[role].engine

    def build_prompt(
        self,
        role: AgentRole,
        history: Sequence[Message] | None = None,
        **fields: Any,
    ) -> str:
        descriptor = self._descriptors[role]
        if history is not None:
            fields["history"] = render_history(history, self.max_history_chars)
        body = render_template(descriptor.template, **fields)
        if descriptor.uses_tools:
            return compose_prompt_sections(self.system_prompt, body)
        return body

    async def invoke(
        self,
        role: AgentRole,
        history: Sequence[Message] | None = None,
        **fields: Any,
    ) -> str:
        """Run one agent and return its raw output."""
        descriptor = self._descriptors[role]
        prompt = self.build_prompt(role, history, **fields)
        logger.debug("agent_invoked", role=role.value, model=descriptor.engine.name, prompt_chars=len(prompt))
        output = await descriptor.engine.generate(prompt)
        logger.info("agent_output", role=role.value, output_chars=len(output))
        return output

    def prefetch(self, role: AgentRole) -> None:
        """Start loading the role's engine without waiting for it."""
        self._descriptors[role].engine.load_in_background()


def create_agent_registry(
    pool: EnginePool,
    *,
    default_model: str,
    tiny_model: str,
    system_prompt: str = "",
    max_history_chars: int = 24000,
) -> AgentRegistry:
    """Bind every role to its engine with the default model split."""
    descriptors = {
        role: AgentDescriptor(
            role=role,
            engine=pool.get(tiny_model if role in TINY_ENGINE_ROLES else default_model),
            template=ROLE_TEMPLATES[role],
        )
        for role in AgentRole
    }
    return AgentRegistry(
        descriptors,
        system_prompt=system_prompt,
        max_history_chars=max_history_chars,
    )

"""Tool-call wire protocol embedded in agent free text.

Agents request actions by writing one or more blocks of the form:

    <tool_call>
    {"name": "read_file", "parameters": {"path": "src/app.py"}}
    </tool_call>

Tool output travels back to the model wrapped in a `<tool_result>` envelope
appended to history as a system message. Marker sequences inside tool output
are not escaped; output that itself contains `</tool_result>` will not
survive `strip_tool_result` intact.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

import structlog

logger = structlog.get_logger()

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"
TOOL_RESULT_OPEN = "<tool_result>"
TOOL_RESULT_CLOSE = "</tool_result>"

_TOOL_CALL_PATTERN = re.compile(
    re.escape(TOOL_CALL_OPEN) + r"(.*?)" + re.escape(TOOL_CALL_CLOSE), re.DOTALL
)
_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
_PLAN_PATTERN = re.compile(r"<plan>(.*?)</plan>", re.DOTALL)


class Message(TypedDict):
    """One history entry."""

    role: Literal["user", "assistant", "system"]
    content: str


@dataclass(frozen=True)
class ToolCall:
    """A structured action request parsed from agent output."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """Short human-readable form used in prompts and confirmations."""
        if self.name == "run_cmd":
            return str(self.parameters.get("command", ""))
        args = ", ".join(f"{k}={v!r}" for k, v in self.parameters.items() if k != "content")
        return f"{self.name}({args})"


class ToolCallParseError(ValueError):
    """Raised when a tool-call block payload is malformed."""


def _decode_payload(raw: str) -> ToolCall:
    body = raw.strip()
    fenced = _FENCE_PATTERN.match(body)
    if fenced:
        body = fenced.group(1).strip()

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise ToolCallParseError(f"Invalid JSON: {e.msg}") from e

    if not isinstance(payload, dict):
        raise ToolCallParseError("Payload must be a JSON object")

    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ToolCallParseError("Missing or empty 'name'")

    parameters = payload.get("parameters")
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, dict):
        raise ToolCallParseError("'parameters' must be a JSON object")

    return ToolCall(name=name.strip(), parameters=parameters)


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Extract every tool call from agent output, in document order.

    Malformed blocks are logged and skipped; they never affect sibling
    blocks.

    Args:
        text: Raw agent output.

    Returns:
        List of parsed ToolCall objects.
    """
    calls: list[ToolCall] = []
    for index, match in enumerate(_TOOL_CALL_PATTERN.finditer(text or "")):
        try:
            calls.append(_decode_payload(match.group(1)))
        except ToolCallParseError as e:
            logger.warning(
                "tool_call_parse_failed",
                block_index=index,
                error=str(e),
                payload_preview=match.group(1).strip()[:200],
            )
    return calls


def has_tool_calls(text: str) -> bool:
    return bool(parse_tool_calls(text))


def format_tool_call(call: ToolCall) -> str:
    """Render a ToolCall in wire form, as agents are taught to write it."""
    payload = json.dumps({"name": call.name, "parameters": call.parameters})
    return f"{TOOL_CALL_OPEN}\n{payload}\n{TOOL_CALL_CLOSE}"


def format_tool_result(text: str) -> str:
    """Wrap tool output in the result envelope."""
    return f"\n{TOOL_RESULT_OPEN}\n{text}\n{TOOL_RESULT_CLOSE}\n"


def strip_tool_result(envelope: str) -> str:
    """Inverse of `format_tool_result`.

    Raises:
        ValueError: If `envelope` is not a tool-result envelope.
    """
    prefix = f"\n{TOOL_RESULT_OPEN}\n"
    suffix = f"\n{TOOL_RESULT_CLOSE}\n"
    if not (envelope.startswith(prefix) and envelope.endswith(suffix)):
        raise ValueError("Not a tool result envelope")
    if len(envelope) < len(prefix) + len(suffix):
        raise ValueError("Not a tool result envelope")
    return envelope[len(prefix) : len(envelope) - len(suffix)]


def parse_plan_tag(response: str) -> str:
    """Extract the plan from <plan> tags, or fall back to the whole response."""
    match = _PLAN_PATTERN.search(response or "")
    if match:
        return match.group(1).strip()
    return (response or "").strip()

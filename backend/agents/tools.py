"""Tool definitions and execution routing for FlowCoder agents.

This module defines the built-in tools and the ToolExecutor that routes a
parsed ToolCall to the right implementation: the built-in table first, then
the external tool-provider host, else a non-fatal "not found" result.
"""

import html
import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from agents.protocol import ToolCall
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from toolhost.host import ToolProvider
from workspace.project import ProjectWorkspace
from workspace.security import sanitize_output

logger = structlog.get_logger()

# A tool result starting with this prefix asks the orchestrator to pause the
# queue and put the rest of the text to the human as a question.
PAUSE_SENTINEL = "[[ASK_USER]]"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read the contents of a file relative to the project root.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative file path"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "list_files",
        "description": (
            "List files and directories at the given path. "
            "Returns names with '/' suffix for directories."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative directory path, default '.'"},
            },
            "required": [],
        },
    },
    {
        "name": "write_file",
        "description": (
            "Write or create a file at the given path. "
            "Creates parent directories automatically."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative file path, e.g. 'src/app.py'"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "patch_file",
        "description": (
            "Replace one exact block of text in a file. "
            "`search` must occur exactly once in the file."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative file path"},
                "search": {"type": "string", "description": "Exact text to replace"},
                "replace": {"type": "string", "description": "Replacement text"},
            },
            "required": ["path", "search", "replace"],
        },
    },
    {
        "name": "search",
        "description": (
            "Search project files for a regex (case-insensitive). "
            "Returns matching lines as path:line: text."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Regular expression"},
                "path": {"type": "string", "description": "Directory to search in, default '.'"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "run_cmd",
        "description": (
            "Run a short, non-interactive shell command in the project root. "
            "Requires user confirmation."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "fetch_url",
        "description": (
            "Fetch an http(s) URL and return its text with markup removed. "
            "Requires user confirmation."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "Absolute http or https URL"},
            },
            "required": ["url"],
        },
    },
    {
        "name": "get_git_context",
        "description": "Show the current branch, git status and diff stat.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "ask_user",
        "description": "Pause and ask the user a question; the answer is added to history.",
        "parameters": {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "What to ask"},
            },
            "required": ["question"],
        },
    },
]

_TOOL_DEFINITION_MAP: dict[str, dict[str, Any]] = {
    tool["name"]: tool for tool in TOOL_DEFINITIONS
}

# Tools the context phase may run without approval.
READ_ONLY_TOOLS: frozenset[str] = frozenset(
    {"read_file", "list_files", "search", "get_git_context"}
)

# Successful calls to these trigger verification.
MUTATING_TOOLS: frozenset[str] = frozenset({"write_file", "patch_file"})

MAX_SEARCH_MATCHES = 100

# Characters of page text kept from a fetched URL.
MAX_FETCH_CHARS = 5000

_SCRIPT_OR_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_MARKUP = re.compile(r"<[^>]*>")
_BLANK_RUNS = re.compile(r"[ \t]*\n[\s]*")

# String arguments whose surrounding whitespace is meaningless.
_STRIPPED_ARGS = frozenset({"path", "command", "query", "url"})


class ToolArgumentError(ValueError):
    """Raised when a tool call has invalid or unsupported arguments."""


@dataclass
class ToolResult:
    """Result of executing a tool.

    Attributes:
        tool: Name of the tool that was called
        content: The result content as a string (capped)
        success: Whether the tool execution succeeded
        error: Error message if execution failed
        pause_question: Set when the tool asked to pause for human input
    """

    tool: str
    content: str
    success: bool
    error: str | None = None
    pause_question: str | None = None


def get_tool_definitions(tool_host: ToolProvider | None = None) -> list[dict[str, Any]]:
    """Built-in definitions plus whatever the tool host advertises."""
    definitions = list(TOOL_DEFINITIONS)
    if tool_host is not None:
        for spec in tool_host.list_tools():
            if spec.name in _TOOL_DEFINITION_MAP:
                continue
            definitions.append(
                {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.input_schema or {"type": "object", "properties": {}},
                }
            )
    return definitions


class ToolExecutor:
    """Executes tool calls against the project and emits events.

    Attributes:
        workspace: Project workspace for file and shell operations.
        event_bus: The EventBus for emitting tool events.
        session_id: Session the events belong to.
        tool_host: Optional external tool provider.
        http_transport: Transport for `fetch_url`; None uses the network.
    """

    def __init__(
        self,
        workspace: ProjectWorkspace,
        event_bus: EventBus,
        session_id: str,
        tool_host: ToolProvider | None = None,
        *,
        max_output_chars: int | None = None,
        command_timeout: int | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.workspace = workspace
        self.event_bus = event_bus
        self.session_id = session_id
        self.tool_host = tool_host
        self.max_output_chars = max_output_chars or settings.max_tool_output_chars
        self.command_timeout = command_timeout or settings.tool_timeout_seconds
        self.http_transport = http_transport
        self._builtins = {
            "read_file": self._execute_read_file,
            "list_files": self._execute_list_files,
            "write_file": self._execute_write_file,
            "patch_file": self._execute_patch_file,
            "search": self._execute_search,
            "run_cmd": self._execute_run_cmd,
            "fetch_url": self._execute_fetch_url,
            "get_git_context": self._execute_git_context,
            "ask_user": self._execute_ask_user,
        }

    def is_builtin(self, name: str) -> bool:
        return name in self._builtins

    def _summarize_args_for_event(self, args: dict[str, Any]) -> dict[str, Any]:
        summarized: dict[str, Any] = {}
        for key, value in args.items():
            if isinstance(value, str) and len(value) > 500:
                summarized[key] = f"{value[:500]}... [truncated]"
            else:
                summarized[key] = value
        return summarized

    def _normalize_tool_args(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        """Validate built-in tool arguments against their schema."""
        params = _TOOL_DEFINITION_MAP[tool_name]["parameters"]
        properties = params.get("properties", {})
        required = params.get("required", [])

        normalized: dict[str, Any] = {}
        for key, value in args.items():
            if key not in properties:
                # Ignore unknown fields to keep calls resilient to model drift.
                continue
            if not isinstance(value, str):
                raise ToolArgumentError(f"Invalid type for '{key}': expected string")
            normalized[key] = value.strip() if key in _STRIPPED_ARGS else value

        missing = [
            req for req in required
            if req not in normalized or (req != "replace" and normalized[req] == "")
        ]
        if missing:
            raise ToolArgumentError(f"Missing required arguments: {', '.join(sorted(missing))}")
        return normalized

    async def execute(
        self,
        call: ToolCall,
        agent_id: str | None = None,
        agent_role: str | None = None,
    ) -> ToolResult:
        """Route one tool call and return its (capped) result.

        Never raises for tool failures: implementation errors become a
        result with `success=False` and an ``Error: ...`` content.
        """
        start_time = time.time()

        await self.event_bus.publish(
            AgentEvent(
                type=EventType.TOOL_CALL,
                session_id=self.session_id,
                agent_id=agent_id,
                agent_role=agent_role,
                data={"tool": call.name, "args": self._summarize_args_for_event(call.parameters)},
            )
        )

        error: str | None = None
        try:
            if call.name in self._builtins:
                args = self._normalize_tool_args(call.name, call.parameters)
                content = await self._builtins[call.name](args)
                success = True
            elif self.tool_host is not None and self.tool_host.has_tool(call.name):
                content = await self.tool_host.call_tool(call.name, dict(call.parameters))
                success = True
            else:
                content = f"Error: Tool {call.name} not found."
                success = False
                error = "tool_not_found"
        except Exception as e:
            logger.error("tool_execution_failed", tool_name=call.name, error=str(e))
            content = f"Error: {e}"
            success = False
            error = str(e)

        content = sanitize_output(content, self.max_output_chars) or "(no output)"

        pause_question = None
        if success and content.startswith(PAUSE_SENTINEL):
            pause_question = content[len(PAUSE_SENTINEL):].strip()

        duration_ms = int((time.time() - start_time) * 1000)
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.TOOL_RESULT,
                session_id=self.session_id,
                agent_id=agent_id,
                agent_role=agent_role,
                data={
                    "tool": call.name,
                    "result": content[:2000],
                    "success": success,
                    "duration_ms": duration_ms,
                },
            )
        )
        logger.debug("tool_executed", tool_name=call.name, success=success, duration_ms=duration_ms)

        return ToolResult(
            tool=call.name,
            content=content,
            success=success,
            error=error,
            pause_question=pause_question,
        )

    async def _execute_read_file(self, args: dict[str, Any]) -> str:
        path = args["path"]
        try:
            return await self.workspace.read_file(path)
        except FileNotFoundError as e:
            raise FileNotFoundError(f"File not found: {path}") from e

    async def _execute_list_files(self, args: dict[str, Any]) -> str:
        path = args.get("path") or "."
        files = await self.workspace.list_files(path)
        if not files:
            return f"No files found in {path}"
        return "\n".join(f"{f.name}/" if f.is_directory else f.name for f in files)

    async def _execute_write_file(self, args: dict[str, Any]) -> str:
        await self.workspace.write_file(args["path"], args["content"])
        return f"Successfully wrote {len(args['content'])} bytes to {args['path']}"

    async def _execute_patch_file(self, args: dict[str, Any]) -> str:
        await self.workspace.patch_file(args["path"], args["search"], args["replace"])
        return f"Successfully patched {args['path']}"

    async def _execute_search(self, args: dict[str, Any]) -> str:
        matches = await self.workspace.search(
            args["query"], args.get("path") or ".", max_matches=MAX_SEARCH_MATCHES
        )
        if not matches:
            return f"No matches for {args['query']!r}"
        suffix = f"\n... [stopped after {MAX_SEARCH_MATCHES} matches]" if len(matches) >= MAX_SEARCH_MATCHES else ""
        return "\n".join(matches) + suffix

    async def _execute_run_cmd(self, args: dict[str, Any]) -> str:
        command = args["command"]
        result = await self.workspace.run_command(command, timeout=self.command_timeout)
        output = result.combined_output()

        if result.timed_out:
            raise RuntimeError(f"Command timed out: {command}\nPartial output:\n{output}")
        if result.exit_code != 0:
            raise RuntimeError(f"Command failed (exit code {result.exit_code}):\n{output}")
        return output or "(no output)"

    async def _execute_git_context(self, args: dict[str, Any]) -> str:
        return await self.workspace.git_context()

    async def _execute_ask_user(self, args: dict[str, Any]) -> str:
        return f"{PAUSE_SENTINEL}{args['question']}"

    async def _execute_fetch_url(self, args: dict[str, Any]) -> str:
        url = args["url"]
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ToolArgumentError(f"Only absolute http(s) URLs can be fetched: {url}")

        async with httpx.AsyncClient(
            timeout=self.command_timeout,
            follow_redirects=True,
            transport=self.http_transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()

        text = response.text
        if "html" in response.headers.get("content-type", ""):
            text = _MARKUP.sub("", _SCRIPT_OR_STYLE.sub("", text))
            text = html.unescape(text)
        text = _BLANK_RUNS.sub("\n", text).strip()

        logger.info("url_fetched", url=url, status_code=response.status_code, chars=len(text))
        if len(text) > MAX_FETCH_CHARS:
            return text[:MAX_FETCH_CHARS] + f"\n... [truncated, {len(text) - MAX_FETCH_CHARS} chars omitted]"
        return text or "(empty response)"

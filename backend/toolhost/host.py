"""External tool-provider host.

Tools that are not built in can be supplied by MCP servers launched over
stdio. McpToolHost connects to every configured server, discovers its tools
and forwards calls to whichever server advertised the tool name.

The MCP client contexts are entered and exited inside one dedicated task,
because the stdio transport's cancel scopes must close in the task that
opened them; sessions are created and deleted from different requests.
"""

import asyncio
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from config import McpServerSettings

logger = structlog.get_logger()


@dataclass(frozen=True)
class ToolSpec:
    """A tool advertised by an external provider."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    server_name: str = ""


class ToolNotFoundError(LookupError):
    """Raised when no connected provider offers the requested tool."""


class ToolProviderError(RuntimeError):
    """Raised when a provider reports a failed tool call."""


class ToolProvider(Protocol):
    """Source of tools beyond the built-in table."""

    def list_tools(self) -> list[ToolSpec]: ...

    def has_tool(self, name: str) -> bool: ...

    async def call_tool(self, name: str, args: dict[str, Any]) -> str: ...


def _render_content(content: list[Any]) -> str:
    parts: list[str] = []
    for item in content:
        if hasattr(item, "text"):
            parts.append(item.text)
        elif hasattr(item, "data"):
            parts.append(f"[Binary data: {len(item.data)} bytes]")
        else:
            parts.append(str(item))
    return "\n".join(parts)


class McpToolHost:
    """ToolProvider backed by MCP servers over stdio.

    Usage:
        >>> host = McpToolHost({"fs": McpServerSettings(command="npx", args=[...])})
        >>> await host.start()
        >>> host.list_tools()
        >>> await host.call_tool("read_graph", {})
        >>> await host.close()
    """

    def __init__(self, servers: dict[str, McpServerSettings]) -> None:
        self._servers = dict(servers)
        self._sessions: dict[str, ClientSession] = {}
        self._tools: dict[str, ToolSpec] = {}
        self._runner: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()

    def list_tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @property
    def connected_servers(self) -> list[str]:
        return list(self._sessions)

    async def start(self) -> None:
        """Connect to every configured server.

        Servers that fail to start are logged and skipped; the host stays
        usable with whatever connected.
        """
        if self._runner is not None or not self._servers:
            return
        self._runner = asyncio.create_task(self._serve(), name="mcp-tool-host")
        await self._ready.wait()

    async def _serve(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                for server_name, config in self._servers.items():
                    await self._connect(stack, server_name, config)
                self._ready.set()
                await self._stop.wait()
        finally:
            self._ready.set()
            self._sessions.clear()
            self._tools.clear()

    async def _connect(
        self,
        stack: AsyncExitStack,
        server_name: str,
        config: McpServerSettings,
    ) -> None:
        server_params = StdioServerParameters(
            command=config.command,
            args=config.args,
            env={**os.environ, **config.env},
        )
        try:
            read, write = await stack.enter_async_context(stdio_client(server_params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            response = await session.list_tools()
        except Exception as e:
            logger.error("mcp_server_connect_failed", server=server_name, error=str(e))
            return

        self._sessions[server_name] = session
        for tool in response.tools:
            self._tools[tool.name] = ToolSpec(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
                server_name=server_name,
            )
        logger.info("mcp_server_connected", server=server_name, tools=len(response.tools))

    async def call_tool(self, name: str, args: dict[str, Any]) -> str:
        """Forward a call to the server that advertised `name`.

        Raises:
            ToolNotFoundError: If no connected server offers the tool.
            ToolProviderError: If the server reports the call as failed.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise ToolNotFoundError(name)
        session = self._sessions[spec.server_name]

        result = await session.call_tool(name, args)
        text = _render_content(result.content)
        if result.isError:
            raise ToolProviderError(f"MCP tool error: {text}")
        return text

    async def close(self) -> None:
        if self._runner is None:
            return
        self._stop.set()
        try:
            await self._runner
        except Exception as e:
            logger.warning("mcp_host_close_failed", error=str(e))
        self._runner = None

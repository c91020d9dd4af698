"""External tool providers (MCP servers) consulted after the built-in tools."""

from toolhost.host import (
    McpToolHost,
    ToolNotFoundError,
    ToolProvider,
    ToolProviderError,
    ToolSpec,
)

__all__ = [
    "McpToolHost",
    "ToolNotFoundError",
    "ToolProvider",
    "ToolProviderError",
    "ToolSpec",
]

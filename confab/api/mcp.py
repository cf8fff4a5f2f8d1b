"""MCP tool registry -- externally registered tools merged into every turn.

Each connected MCP server is reached through an mcp ClientSession. The
registry caches each server's tool list and exposes it as ToolDescriptors
whose executors forward to session.call_tool().
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from mcp import ClientSession
from mcp.types import CallToolResult, TextContent, Tool

from confab.api.tools import ToolDescriptor

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def tool_name_for(server_name: str, tool_name: str) -> str:
    """Namespaced, provider-safe tool name for an MCP tool."""
    return _UNSAFE_NAME_CHARS.sub("_", f"mcp__{server_name}__{tool_name}")


def _result_to_text(result: CallToolResult) -> str:
    parts = []
    for item in result.content:
        if isinstance(item, TextContent):
            parts.append(item.text)
        else:
            parts.append(f"[{item.type} content omitted]")
    return "\n".join(parts)


@dataclass
class _ServerEntry:
    session: ClientSession
    tools: list[Tool] = field(default_factory=list)


class McpToolRegistry:
    """Tracks connected MCP servers and the tools they advertise."""

    def __init__(self) -> None:
        self._servers: dict[str, _ServerEntry] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self._servers)

    async def add_server(self, name: str, session: ClientSession) -> int:
        """Register a connected session and load its tools. Returns tool count."""
        previous = self._servers.get(name)
        self._servers[name] = _ServerEntry(session=session)
        try:
            return await self.refresh(name)
        except Exception:
            # A server whose tools cannot be listed is not registered
            if previous is None:
                self._servers.pop(name, None)
            else:
                self._servers[name] = previous
            raise

    def remove_server(self, name: str) -> None:
        self._servers.pop(name, None)

    async def refresh(self, name: str) -> int:
        entry = self._servers[name]
        listing = await entry.session.list_tools()
        entry.tools = list(listing.tools)
        logger.info("MCP server %s: %d tools", name, len(entry.tools))
        return len(entry.tools)

    def _descriptor(self, server_name: str, session: ClientSession, tool: Tool) -> ToolDescriptor:
        async def execute(**arguments: Any) -> dict[str, Any]:
            result = await session.call_tool(tool.name, arguments=arguments)
            text = _result_to_text(result)
            if result.isError:
                raise RuntimeError(text or f"MCP tool {tool.name} failed")
            return {"content": [{"type": "text", "text": text}]}

        return ToolDescriptor(
            name=tool_name_for(server_name, tool.name),
            description=tool.description or "",
            input_schema=tool.inputSchema or {"type": "object", "properties": {}},
            execute=execute,
        )

    def get_available_tools(self) -> dict[str, ToolDescriptor]:
        """All tools of all connected servers, keyed by namespaced name."""
        tools: dict[str, ToolDescriptor] = {}
        for server_name, entry in self._servers.items():
            for tool in entry.tools:
                descriptor = self._descriptor(server_name, entry.session, tool)
                tools[descriptor.name] = descriptor
        return tools

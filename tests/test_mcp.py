"""Tests for confab/api/mcp.py -- MCP tool registry over mocked ClientSessions."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from mcp.types import CallToolResult, ImageContent, TextContent, Tool

from confab.api.mcp import McpToolRegistry, tool_name_for


def _session(*tools: Tool, result: CallToolResult | None = None) -> AsyncMock:
    session = AsyncMock()
    session.list_tools.return_value = SimpleNamespace(tools=list(tools))
    session.call_tool.return_value = result or CallToolResult(
        content=[TextContent(type="text", text="done")]
    )
    return session


def _tool(name: str) -> Tool:
    return Tool(
        name=name,
        description=f"{name} description",
        inputSchema={"type": "object", "properties": {"path": {"type": "string"}}},
    )


class TestToolNameFor:
    def test_namespaced(self):
        assert tool_name_for("files", "read") == "mcp__files__read"

    def test_unsafe_characters_replaced(self):
        assert tool_name_for("my server", "get.item") == "mcp__my_server__get_item"


class TestMcpToolRegistry:
    @pytest.mark.asyncio
    async def test_add_server_lists_tools(self):
        registry = McpToolRegistry()
        count = await registry.add_server("files", _session(_tool("read"), _tool("write")))
        assert count == 2
        assert registry.server_names == ["files"]
        assert sorted(registry.get_available_tools()) == ["mcp__files__read", "mcp__files__write"]

    @pytest.mark.asyncio
    async def test_descriptor_carries_schema(self):
        registry = McpToolRegistry()
        await registry.add_server("files", _session(_tool("read")))
        descriptor = registry.get_available_tools()["mcp__files__read"]
        assert descriptor.description == "read description"
        assert "path" in descriptor.input_schema["properties"]

    @pytest.mark.asyncio
    async def test_execute_forwards_to_session(self):
        session = _session(_tool("read"))
        registry = McpToolRegistry()
        await registry.add_server("files", session)

        result = await registry.get_available_tools()["mcp__files__read"].execute(path="/tmp/a")

        session.call_tool.assert_awaited_once_with("read", arguments={"path": "/tmp/a"})
        assert result == {"content": [{"type": "text", "text": "done"}]}

    @pytest.mark.asyncio
    async def test_error_result_raises(self):
        failing = CallToolResult(content=[TextContent(type="text", text="no such file")], isError=True)
        registry = McpToolRegistry()
        await registry.add_server("files", _session(_tool("read"), result=failing))
        with pytest.raises(RuntimeError, match="no such file"):
            await registry.get_available_tools()["mcp__files__read"].execute(path="x")

    @pytest.mark.asyncio
    async def test_non_text_content_summarized(self):
        mixed = CallToolResult(content=[
            TextContent(type="text", text="caption"),
            ImageContent(type="image", data="aGk=", mimeType="image/png"),
        ])
        registry = McpToolRegistry()
        await registry.add_server("img", _session(_tool("shot"), result=mixed))
        result = await registry.get_available_tools()["mcp__img__shot"].execute()
        assert result["content"][0]["text"] == "caption\n[image content omitted]"

    @pytest.mark.asyncio
    async def test_remove_server(self):
        registry = McpToolRegistry()
        await registry.add_server("files", _session(_tool("read")))
        registry.remove_server("files")
        registry.remove_server("files")
        assert registry.get_available_tools() == {}

    @pytest.mark.asyncio
    async def test_refresh_picks_up_new_tools(self):
        session = _session(_tool("read"))
        registry = McpToolRegistry()
        await registry.add_server("files", session)
        session.list_tools.return_value = SimpleNamespace(tools=[_tool("read"), _tool("stat")])
        assert await registry.refresh("files") == 2
        assert "mcp__files__stat" in registry.get_available_tools()

    @pytest.mark.asyncio
    async def test_add_server_listing_failure_not_registered(self):
        session = _session(_tool("read"))
        session.list_tools.side_effect = ConnectionError("server down")
        registry = McpToolRegistry()

        with pytest.raises(ConnectionError):
            await registry.add_server("files", session)

        assert registry.server_names == []
        assert registry.get_available_tools() == {}

    @pytest.mark.asyncio
    async def test_failed_re_add_keeps_previous_session(self):
        registry = McpToolRegistry()
        await registry.add_server("files", _session(_tool("read")))
        broken = _session()
        broken.list_tools.side_effect = ConnectionError("server down")

        with pytest.raises(ConnectionError):
            await registry.add_server("files", broken)

        assert registry.server_names == ["files"]
        assert list(registry.get_available_tools()) == ["mcp__files__read"]

"""Tests for ToolSet dispatch plus the file and knowledge-base tools."""

import json

import pytest

from conftest import FakeKnowledgeBase, MemoryBlobStore
from confab.api.file_tools import (
    FILE_TOOLSET_DESCRIPTION,
    GREP_MAX_RESULTS,
    MAX_LINE_LENGTH,
    MAX_LINES,
    create_file_toolset,
    read_file,
    search_file_content,
    truncate_line,
)
from confab.api.knowledge_base import load_knowledge_base_toolset, render_description
from confab.api.tools import ToolDescriptor, ToolSet, result_text
from confab.chat.schemas import KnowledgeBaseRef


def _tool(name: str, execute) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=f"{name} tool", input_schema={"type": "object"}, execute=execute)


# ---------------------------------------------------------------------------
# ToolSet
# ---------------------------------------------------------------------------


class TestResultText:
    def test_string_passthrough(self):
        assert result_text("plain") == "plain"

    def test_mcp_format_unwrapped(self):
        assert result_text({"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}) == "a\nb"

    def test_other_values_json(self):
        assert json.loads(result_text({"n": 1})) == {"n": 1}


class TestToolSet:
    @pytest.mark.asyncio
    async def test_dispatch_success(self):
        async def echo(value: str) -> str:
            return value.upper()

        toolset = ToolSet()
        toolset.register(_tool("echo", echo))
        assert await toolset.dispatch("echo", {"value": "hi"}) == ("HI", False)

    @pytest.mark.asyncio
    async def test_dispatch_unknown_tool(self):
        text, is_error = await ToolSet().dispatch("missing", {})
        assert is_error is True
        assert "Unknown tool" in text

    @pytest.mark.asyncio
    async def test_dispatch_error_returned_not_raised(self):
        async def broken() -> None:
            raise ValueError("bad input")

        toolset = ToolSet()
        toolset.register(_tool("broken", broken))
        text, is_error = await toolset.dispatch("broken", {})
        assert is_error is True
        assert "bad input" in text

    def test_mapping_and_merge(self):
        async def noop() -> None:
            return None

        first = ToolSet()
        first.register(_tool("a", noop))
        second = ToolSet()
        second.register(_tool("b", noop))
        first.merge(second)
        assert sorted(first) == ["a", "b"]
        assert len(first) == 2
        assert first["b"].name == "b"

    def test_definitions(self):
        async def noop() -> None:
            return None

        toolset = ToolSet()
        toolset.register(_tool("a", noop))
        assert toolset.definitions() == [
            {"name": "a", "description": "a tool", "input_schema": {"type": "object"}},
        ]


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _numbered_file(lines: int) -> str:
    return "\n".join(f"line {i}" for i in range(1, lines + 1))


class TestReadFile:
    @pytest.mark.asyncio
    async def test_reads_with_line_numbers(self):
        store = MemoryBlobStore({"k": "alpha\nbeta"})
        result = await read_file("k", _blob_store=store)
        assert result["content"] == "     1\talpha\n     2\tbeta"
        assert result["total_lines"] == 2

    @pytest.mark.asyncio
    async def test_offset_and_limit(self):
        store = MemoryBlobStore({"k": _numbered_file(10)})
        result = await read_file("k", line_offset=3, max_lines=2, _blob_store=store)
        assert result["lines_read"] == 2
        assert "line 4" in result["content"]
        assert "line 6" not in result["content"]

    @pytest.mark.asyncio
    async def test_max_lines_capped(self):
        store = MemoryBlobStore({"k": _numbered_file(MAX_LINES + 50)})
        result = await read_file("k", max_lines=10_000, _blob_store=store)
        assert result["lines_read"] == MAX_LINES

    @pytest.mark.asyncio
    async def test_missing_file(self):
        result = await read_file("nope", _blob_store=MemoryBlobStore())
        assert isinstance(result, str)
        assert "not found" in result.lower()

    def test_truncate_line(self):
        long_line = "x" * (MAX_LINE_LENGTH + 10)
        truncated = truncate_line(long_line)
        assert len(truncated) == MAX_LINE_LENGTH
        assert truncated.endswith("...")


class TestSearchFileContent:
    @pytest.mark.asyncio
    async def test_matches_with_context(self):
        store = MemoryBlobStore({"k": "a\nneedle here\nb\nc"})
        result = await search_file_content(
            "k", "needle", before_context_lines=1, after_context_lines=1, _blob_store=store
        )
        assert result["total_matches"] == 1
        assert result["results"][0]["line_number"] == 2
        assert result["results"][0]["context"] == ["a", "needle here", "b"]

    @pytest.mark.asyncio
    async def test_max_results_capped(self):
        store = MemoryBlobStore({"k": "\n".join(["hit"] * (GREP_MAX_RESULTS + 20))})
        result = await search_file_content("k", "hit", max_results=1000, _blob_store=store)
        assert result["total_matches"] == GREP_MAX_RESULTS


class TestFileToolset:
    @pytest.mark.asyncio
    async def test_toolset_dispatches_to_blob_store(self):
        toolset = create_file_toolset(MemoryBlobStore({"k": "hello"}))
        assert sorted(toolset) == ["read_file", "search_file_content"]
        assert toolset.description == FILE_TOOLSET_DESCRIPTION
        text, is_error = await toolset.dispatch("read_file", {"file_key": "k"})
        assert is_error is False
        assert "hello" in json.loads(text)["content"]


# ---------------------------------------------------------------------------
# Knowledge-base tools
# ---------------------------------------------------------------------------


KB = KnowledgeBaseRef(id=7, name="Company Docs")


class TestKnowledgeBaseToolset:
    @pytest.mark.asyncio
    async def test_manifest_lists_done_files_only(self):
        toolset = await load_knowledge_base_toolset(FakeKnowledgeBase(), KB)
        assert toolset is not None
        assert '"handbook.pdf"' in toolset.description
        assert "draft.docx" not in toolset.description
        assert sorted(toolset) == ["get_files_meta", "list_files", "query_knowledge_base", "read_file_chunks"]

    @pytest.mark.asyncio
    async def test_listing_failure_returns_none(self):
        controller = FakeKnowledgeBase(listing_error=RuntimeError("kb offline"))
        assert await load_knowledge_base_toolset(controller, KB) is None

    @pytest.mark.asyncio
    async def test_manifest_page_size(self):
        controller = FakeKnowledgeBase()
        await load_knowledge_base_toolset(controller, KB, page_size=50)
        assert controller.listings == [(7, 0, 50)]

    @pytest.mark.asyncio
    async def test_query_tool_uses_captured_kb_id(self):
        controller = FakeKnowledgeBase()
        toolset = await load_knowledge_base_toolset(controller, KB)
        await toolset.dispatch("query_knowledge_base", {"query": "vacation"})
        assert controller.searches == [(7, "vacation")]

    @pytest.mark.asyncio
    async def test_list_files_tool_filters_status(self):
        toolset = await load_knowledge_base_toolset(FakeKnowledgeBase(), KB)
        text, _ = await toolset.dispatch("list_files", {"page": 0, "page_size": 20})
        assert json.loads(text) == [{"id": 1, "filename": "handbook.pdf", "chunk_count": 12}]

    @pytest.mark.asyncio
    async def test_read_file_chunks_requires_chunks(self):
        toolset = await load_knowledge_base_toolset(FakeKnowledgeBase(), KB)
        text, is_error = await toolset.dispatch("read_file_chunks", {"chunks": []})
        assert is_error is False
        assert "provide" in text

    def test_render_description_empty(self):
        assert "(No files available yet)" in render_description("Empty", [])

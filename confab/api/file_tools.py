"""File tools: read_file and search_file_content over attachment blobs.

Attachments are inlined into user messages with a FILE_KEY; these tools
let the model page through or grep files that were truncated inline.
"""

from __future__ import annotations

import logging
from typing import Any

from confab.api.tools import ToolDescriptor, ToolSet
from confab.chat.capabilities import BlobStore

logger = logging.getLogger(__name__)

DEFAULT_LINES = 200
MAX_LINES = 500
MAX_LINE_LENGTH = 2000
GREP_MAX_RESULTS = 100

_NOT_FOUND = (
    "File not found or inaccessible. Ensure the file_key is the correct "
    "identifier within <FILE_KEY> tags."
)

FILE_TOOLSET_DESCRIPTION = f"""
Use these tools to read and search user-uploaded files (marked with <ATTACHMENT_FILE></ATTACHMENT_FILE>).

## read_file
Reads file content with line numbers (like `cat -n`).
- Returns up to {DEFAULT_LINES} lines by default, max {MAX_LINES} lines per call
- Lines exceeding {MAX_LINE_LENGTH} characters are truncated with "..."
- Use `line_offset` and `max_lines` to read specific portions
- Prefer `search_file_content` when searching for specific content
- Call in parallel when reading multiple files

## search_file_content
Searches for text patterns within a file.
- Returns matching lines with line numbers and optional context
- Use `before_context_lines` / `after_context_lines` to include surrounding lines
- Returns up to {GREP_MAX_RESULTS} matches maximum
- Call in parallel when searching multiple files
"""


def truncate_line(line: str) -> str:
    if len(line) <= MAX_LINE_LENGTH:
        return line
    return line[: MAX_LINE_LENGTH - 3] + "..."


def _number(line: str, line_number: int) -> str:
    return f"{line_number:>6}\t{line}"


async def read_file(
    file_key: str,
    line_offset: int = 0,
    max_lines: int = DEFAULT_LINES,
    *,
    _blob_store: BlobStore,
) -> dict[str, Any] | str:
    content = await _blob_store.get_blob(file_key)
    if content is None:
        return _NOT_FOUND
    lines = content.split("\n")
    offset = max(0, line_offset)
    count = max(1, min(max_lines, MAX_LINES))
    selected = lines[offset:offset + count]
    numbered = [_number(truncate_line(line), offset + i + 1) for i, line in enumerate(selected)]
    return {
        "file_key": file_key,
        "content": "\n".join(numbered),
        "line_offset": offset,
        "lines_read": len(selected),
        "total_lines": len(lines),
    }


async def search_file_content(
    file_key: str,
    query: str,
    before_context_lines: int = 0,
    after_context_lines: int = 0,
    max_results: int = 10,
    *,
    _blob_store: BlobStore,
) -> dict[str, Any] | str:
    content = await _blob_store.get_blob(file_key)
    if content is None:
        return _NOT_FOUND
    lines = content.split("\n")
    before = max(0, before_context_lines)
    after = max(0, after_context_lines)
    limit = max(1, min(max_results, GREP_MAX_RESULTS))

    results: list[dict[str, Any]] = []
    for i, line in enumerate(lines):
        if query not in line:
            continue
        start = max(0, i - before)
        end = min(len(lines), i + after + 1)
        results.append({
            "line_number": i + 1,
            "line_content": truncate_line(line),
            "context": [truncate_line(c) for c in lines[start:end]],
        })
        if len(results) >= limit:
            break

    return {
        "file_key": file_key,
        "query": query,
        "results": results,
        "total_matches": len(results),
    }


_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "file_key": {
            "type": "string",
            "description": "The identifier of the file to read within tag `<FILE_KEY>`.",
        },
        "line_offset": {
            "type": "integer",
            "minimum": 0,
            "description": "Optional line offset to start reading from. Defaults to 0.",
        },
        "max_lines": {
            "type": "integer",
            "minimum": 1,
            "maximum": MAX_LINES,
            "default": DEFAULT_LINES,
            "description": f"Optional maximum number of lines to read. Defaults to {DEFAULT_LINES}.",
        },
    },
    "required": ["file_key"],
}

_SEARCH_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "file_key": {
            "type": "string",
            "description": "The identifier of the file to read within tag `<FILE_KEY>`.",
        },
        "query": {
            "type": "string",
            "description": "The keyword or phrase to search for within the file.",
        },
        "before_context_lines": {"type": "integer", "minimum": 0},
        "after_context_lines": {"type": "integer", "minimum": 0},
        "max_results": {
            "type": "integer",
            "minimum": 1,
            "maximum": GREP_MAX_RESULTS,
            "default": 10,
        },
    },
    "required": ["file_key", "query"],
}


def create_file_toolset(blob_store: BlobStore) -> ToolSet:
    """Build the file toolset with the blob store captured in closures."""

    async def _read(**kwargs: Any) -> dict[str, Any] | str:
        return await read_file(**kwargs, _blob_store=blob_store)

    async def _search(**kwargs: Any) -> dict[str, Any] | str:
        return await search_file_content(**kwargs, _blob_store=blob_store)

    toolset = ToolSet(description=FILE_TOOLSET_DESCRIPTION)
    toolset.register(ToolDescriptor(
        name="read_file",
        description="Reads the content of a file uploaded by the user.",
        input_schema=_READ_FILE_SCHEMA,
        execute=_read,
    ))
    toolset.register(ToolDescriptor(
        name="search_file_content",
        description="Searches for a keyword or phrase within a file uploaded by the user.",
        input_schema=_SEARCH_FILE_SCHEMA,
        execute=_search,
    ))
    return toolset

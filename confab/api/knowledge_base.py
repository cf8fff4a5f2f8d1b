"""Knowledge-base tools and the manifest-bearing instruction block.

The instruction text lists the documents in the knowledge base so the
model knows what it can search. Building it needs a file listing call;
load_knowledge_base_toolset() treats that call as best-effort and returns
None when it fails, so the turn continues without knowledge-base tools.
"""

from __future__ import annotations

import logging
from typing import Any

from confab.api.tools import ToolDescriptor, ToolSet
from confab.chat.capabilities import KnowledgeBaseController
from confab.chat.schemas import KnowledgeBaseRef

logger = logging.getLogger(__name__)


def render_description(kb_name: str, filenames: list[str]) -> str:
    if filenames:
        file_list = "\n".join(f'- "{name}"' for name in filenames)
    else:
        file_list = "(No files available yet)"
    return f"""
## Knowledge Base: "{kb_name}"

You have access to a knowledge base containing these documents:

{file_list}

### Tools:
- **query_knowledge_base** - Semantic search (fast, low cost). Use liberally.
- **read_file_chunks** - Read document content.
- **get_files_meta** - Get file metadata.
- **list_files** - List all files (paginated).

### IMPORTANT - When to search:
- **For EVERY new question**, independently consider whether the knowledge base might help
- Even if you searched before, **search again** if the current question touches a different topic
- Previous search results may not cover the current question - don't assume you already have the answer
- When in doubt, search. It's better to search and find nothing than to miss relevant information.
"""


def create_knowledge_base_tools(
    controller: KnowledgeBaseController, kb_id: int
) -> dict[str, ToolDescriptor]:
    """Create tool closures with the controller and kb_id captured."""

    async def query_knowledge_base(query: str) -> Any:
        return await controller.search(kb_id, query)

    async def get_files_meta(file_ids: list[int] | None = None) -> Any:
        if not file_ids:
            return "Please provide an array of file IDs."
        return await controller.get_files_meta(kb_id, file_ids)

    async def read_file_chunks(chunks: list[dict[str, int]] | None = None) -> Any:
        if not chunks:
            return "Please provide an array of chunks to read."
        return await controller.read_file_chunks(kb_id, chunks)

    async def list_files(page: int = 0, page_size: int = 20) -> list[dict[str, Any]]:
        files = await controller.list_files_paginated(kb_id, page, page_size)
        return [
            {"id": f.id, "filename": f.filename, "chunk_count": f.chunk_count or 0}
            for f in files
            if f.status == "done"
        ]

    return {
        "query_knowledge_base": ToolDescriptor(
            name="query_knowledge_base",
            description=(
                "Search the knowledge base with a semantic query. Returns relevant "
                "document chunks with file IDs and chunk indices."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The query to search the knowledge base"},
                },
                "required": ["query"],
            },
            execute=query_knowledge_base,
        ),
        "get_files_meta": ToolDescriptor(
            name="get_files_meta",
            description=(
                "Get metadata for files in the current knowledge base. Use this to find "
                "out more about files returned from a search, like filename, size, and "
                "total number of chunks."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_ids": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "An array of file IDs to get metadata for.",
                    },
                },
                "required": ["file_ids"],
            },
            execute=get_files_meta,
        ),
        "read_file_chunks": ToolDescriptor(
            name="read_file_chunks",
            description=(
                "Read content chunks from specified files in the current knowledge base. "
                "Use this to get the text content of a document."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "chunks": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "file_id": {"type": "integer", "description": "The ID of the file."},
                                "chunk_index": {
                                    "type": "integer",
                                    "description": "The index of the chunk to read, start from 0.",
                                },
                            },
                            "required": ["file_id", "chunk_index"],
                        },
                        "description": "An array of file and chunk index pairs to read.",
                    },
                },
                "required": ["chunks"],
            },
            execute=read_file_chunks,
        ),
        "list_files": ToolDescriptor(
            name="list_files",
            description=(
                "List all files in the current knowledge base. Returns file ID, "
                "filename, and chunk count for each file."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "page": {"type": "integer", "description": "The page number to list, start from 0."},
                    "page_size": {"type": "integer", "description": "The number of files to list per page."},
                },
                "required": ["page", "page_size"],
            },
            execute=list_files,
        ),
    }


async def load_knowledge_base_toolset(
    controller: KnowledgeBaseController,
    knowledge_base: KnowledgeBaseRef,
    page_size: int = 50,
) -> ToolSet | None:
    """Build the knowledge-base toolset, or None if the manifest lookup fails."""
    try:
        files = await controller.list_files_paginated(knowledge_base.id, 0, page_size)
    except Exception as e:
        logger.warning(
            "Failed to load knowledge base toolset for %s (%d): %s",
            knowledge_base.name,
            knowledge_base.id,
            e,
        )
        return None

    filenames = [f.filename for f in files if f.status == "done"]
    return ToolSet(
        tools=create_knowledge_base_tools(controller, knowledge_base.id),
        description=render_description(knowledge_base.name, filenames),
    )

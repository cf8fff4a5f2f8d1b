"""Tool-set assembly for a single turn.

Combines the capability gate's verdicts with the features enabled for the
turn into one AssembledTools: the instruction text injected into the system
prompt and the tool registry handed to the provider call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from confab.api.file_tools import create_file_toolset
from confab.api.knowledge_base import load_knowledge_base_toolset
from confab.api.mcp import McpToolRegistry
from confab.api.tools import ToolSet
from confab.api.web_tools import create_web_toolset
from confab.chat.capabilities import (
    BlobStore,
    KnowledgeBaseController,
    LinkParser,
    ModelInterface,
    ToolUseScope,
    WebSearchExecutor,
    needs_fallback,
    needs_file_tools,
)
from confab.chat.schemas import KnowledgeBaseRef, Message
from confab.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AssembledTools:
    """Outcome of assembly: what to tell the model and what to offer it."""

    instructions: str
    tools: ToolSet
    kb_fallback: bool = False
    web_fallback: bool = False
    knowledge_base_available: bool = False

    @property
    def needs_search_fallback(self) -> bool:
        return self.kb_fallback or self.web_fallback


class ToolSetAssembler:
    """Builds the per-turn AssembledTools from enabled features and capabilities."""

    def __init__(
        self,
        settings: Settings,
        *,
        knowledge_base: KnowledgeBaseController | None = None,
        web_search: WebSearchExecutor | None = None,
        link_parser: LinkParser | None = None,
        blob_store: BlobStore | None = None,
        mcp_registry: McpToolRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._knowledge_base = knowledge_base
        self._web_search = web_search
        self._link_parser = link_parser
        self._blob_store = blob_store
        self._mcp_registry = mcp_registry

    async def assemble(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef | None = None,
        web_browsing: bool = False,
    ) -> AssembledTools:
        kb_fallback = needs_fallback(model, ToolUseScope.KNOWLEDGE_BASE, knowledge_base is not None)
        web_fallback = needs_fallback(model, ToolUseScope.WEB_BROWSING, web_browsing)
        need_file_tools = needs_file_tools(model, messages) and self._blob_store is not None

        # Knowledge base first: its manifest lookahead is the only network call here
        kb_toolset: ToolSet | None = None
        if knowledge_base is not None and not kb_fallback:
            if self._knowledge_base is None:
                logger.warning("Knowledge base %s selected but no controller configured", knowledge_base.id)
            else:
                kb_toolset = await load_knowledge_base_toolset(
                    self._knowledge_base,
                    knowledge_base,
                    page_size=self._settings.kb_manifest_page_size,
                )

        file_toolset = create_file_toolset(self._blob_store) if need_file_tools else None

        web_toolset: ToolSet | None = None
        if web_browsing and not web_fallback:
            if self._web_search is None:
                logger.warning("Web browsing enabled but no web search executor configured")
            else:
                web_toolset = create_web_toolset(
                    self._web_search,
                    self._settings,
                    link_parser=self._link_parser,
                    blob_store=self._blob_store,
                )

        # Fixed order: knowledge base, file, web
        sections = [ts.description for ts in (kb_toolset, file_toolset, web_toolset) if ts is not None]
        instructions = "".join(sections)

        tools = ToolSet()
        if self._mcp_registry is not None:
            tools.merge(self._mcp_registry.get_available_tools())
        for toolset in (web_toolset, kb_toolset, file_toolset):
            if toolset is not None:
                tools.merge(toolset)

        logger.debug("Assembled tools: %s", sorted(tools))
        return AssembledTools(
            instructions=instructions,
            tools=tools,
            kb_fallback=kb_fallback,
            web_fallback=web_fallback,
            knowledge_base_available=kb_toolset is not None,
        )

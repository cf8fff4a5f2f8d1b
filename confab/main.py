"""Component wiring for embedding the confab core in an application.

Builds the collaborators in dependency order:
  Settings -> httpx client -> web backends -> MCP registry -> assembler
  -> fallback search -> OCR -> TurnOrchestrator, plus the compaction pair.

Provider models, the knowledge-base controller and blob storage belong to
the host application and are passed in.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from confab.api.assembler import ToolSetAssembler
from confab.api.compaction import CompactionStateMachine, ConversationCompactor
from confab.api.mcp import McpToolRegistry
from confab.api.ocr import OcrPreprocessor
from confab.api.runner import TurnOrchestrator
from confab.api.search import FallbackSearch, router_from_settings
from confab.api.web_tools import BraveSearchExecutor, HttpLinkParser, WritableBlobStore
from confab.chat.capabilities import KnowledgeBaseController, ModelFactory, OcrInvoker
from confab.config import Settings

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    *,
    model_factory: ModelFactory | None = None,
    ocr_invoker: OcrInvoker | None = None,
    knowledge_base: KnowledgeBaseController | None = None,
    blob_store: WritableBlobStore | None = None,
) -> dict[str, Any]:
    """Initialize all components. Returns a dict for the host's lifespan storage."""
    # Web tools httpx client (no provider credentials on it)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )

    web_search = None
    if settings.brave_search_api_key:
        web_search = BraveSearchExecutor(settings, web_http)
    else:
        logger.warning("BRAVE_SEARCH_API_KEY not set, web_search will be unavailable")

    link_parser = HttpLinkParser(settings, web_http, blob_store) if blob_store is not None else None

    mcp_registry = McpToolRegistry()
    assembler = ToolSetAssembler(
        settings,
        knowledge_base=knowledge_base,
        web_search=web_search,
        link_parser=link_parser,
        blob_store=blob_store,
        mcp_registry=mcp_registry,
    )
    fallback_search = FallbackSearch(
        knowledge_base=knowledge_base,
        web_search=web_search,
        router=router_from_settings(settings),
    )

    ocr = None
    if model_factory is not None and ocr_invoker is not None:
        ocr = OcrPreprocessor(settings, model_factory, ocr_invoker)
    else:
        logger.info("OCR disabled: no model factory or OCR invoker supplied")

    orchestrator = TurnOrchestrator(
        settings,
        assembler,
        fallback_search=fallback_search,
        ocr=ocr,
        blob_store=blob_store,
    )

    return {
        "settings": settings,
        "web_http": web_http,
        "mcp_registry": mcp_registry,
        "orchestrator": orchestrator,
        "compactor": ConversationCompactor(settings),
        "compaction": CompactionStateMachine(),
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    web_http: httpx.AsyncClient | None = components.get("web_http")
    if web_http is not None:
        await web_http.aclose()
    logger.info("confab components shut down")

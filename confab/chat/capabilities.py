"""Capability gate and the collaborator protocols the core depends on.

The orchestrator never branches on provider identity, only on the
capabilities a model object reports about itself.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from confab.chat.schemas import (
    ImagePart,
    KnowledgeBaseFile,
    Message,
    ResultUpdate,
    SearchResultItem,
    StreamingResult,
)

if TYPE_CHECKING:
    from confab.api.tools import ToolSet
    from confab.chat.cancellation import CancellationSignal


class ToolUseScope(StrEnum):
    KNOWLEDGE_BASE = "knowledge-base"
    WEB_BROWSING = "web-browsing"
    READ_FILE = "read-file"


OnResultChange = Callable[[ResultUpdate], None]
OnStatusChange = Callable[[str], None]


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class ModelInterface(Protocol):
    """Uniform surface every provider model object implements."""

    model_id: str

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        signal: CancellationSignal | None = None,
        on_result_change: OnResultChange | None = None,
        on_status_change: OnStatusChange | None = None,
        provider_options: dict[str, Any] | None = None,
        tools: ToolSet | None = None,
        session_id: str | None = None,
    ) -> StreamingResult: ...

    def is_support_tool_use(self, scope: ToolUseScope | None = None) -> bool: ...

    def is_support_vision(self) -> bool: ...

    def is_support_system_message(self) -> bool: ...


class ModelFactory(Protocol):
    def create(self, provider: str, model_id: str) -> ModelInterface: ...


class KnowledgeBaseController(Protocol):
    async def search(self, kb_id: int, query: str) -> list[Any]: ...

    async def list_files_paginated(
        self, kb_id: int, page: int, page_size: int
    ) -> list[KnowledgeBaseFile]: ...

    async def get_files_meta(self, kb_id: int, file_ids: list[int]) -> list[Any]: ...

    async def read_file_chunks(
        self, kb_id: int, chunks: list[dict[str, int]]
    ) -> list[Any]: ...


class WebSearchExecutor(Protocol):
    async def search(
        self, query: str, *, signal: CancellationSignal | None = None
    ) -> list[SearchResultItem]: ...


class ParsedLink(Protocol):
    title: str
    storage_key: str


class LinkParser(Protocol):
    async def parse(self, url: str) -> ParsedLink: ...


class OcrInvoker(Protocol):
    """Attaches OCR text to image parts of messages, in place."""

    async def run(self, ocr_model: ModelInterface, messages: list[Message]) -> None: ...


class BlobStore(Protocol):
    async def get_blob(self, key: str) -> str | None: ...


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def needs_fallback(model: ModelInterface, feature: ToolUseScope, requested: bool) -> bool:
    """True when a requested feature must be simulated by prompt engineering."""
    return bool(requested) and not model.is_support_tool_use(feature)


def has_unprocessed_images(messages: Iterable[Message]) -> bool:
    return any(
        isinstance(part, ImagePart) and not part.ocr_result
        for message in messages
        for part in message.content_parts
    )


def needs_ocr(model: ModelInterface, messages: Iterable[Message]) -> bool:
    """Vision fallback: images without OCR text on a model that cannot see."""
    return not model.is_support_vision() and has_unprocessed_images(messages)


def needs_file_tools(model: ModelInterface, messages: Iterable[Message]) -> bool:
    return any(m.has_attachments for m in messages) and model.is_support_tool_use()

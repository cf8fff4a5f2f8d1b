"""Shared fakes for the collaborator protocols.

No network: every provider model, knowledge base, web search backend,
blob store and OCR invoker is an in-memory stand-in that records calls.
"""

from __future__ import annotations

from typing import Any

import pytest

from confab.chat.schemas import (
    ImagePart,
    KnowledgeBaseFile,
    Message,
    ResultUpdate,
    Role,
    SearchResultItem,
    StreamingResult,
    TextPart,
)
from confab.config import Settings

# ---------------------------------------------------------------------------
# Model fakes
# ---------------------------------------------------------------------------


class FakeModel:
    """Scripted ModelInterface.

    Each chat() call consumes the next reply:
      - str: streamed as two cumulative updates, then returned
      - Exception instance: raised
      - async callable(call, on_result_change): full control
    With no replies left, answers "ok".
    """

    def __init__(
        self,
        *replies: Any,
        model_id: str = "fake-model",
        tool_use: bool = True,
        unsupported_scopes: tuple[str, ...] = (),
        vision: bool = True,
        system_message: bool = True,
    ) -> None:
        self.model_id = model_id
        self.replies = list(replies)
        self.tool_use = tool_use
        self.unsupported_scopes = set(unsupported_scopes)
        self.vision = vision
        self.system_message = system_message
        self.calls: list[dict[str, Any]] = []

    def is_support_tool_use(self, scope: str | None = None) -> bool:
        if not self.tool_use:
            return False
        return scope not in self.unsupported_scopes

    def is_support_vision(self) -> bool:
        return self.vision

    def is_support_system_message(self) -> bool:
        return self.system_message

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        signal: Any = None,
        on_result_change: Any = None,
        on_status_change: Any = None,
        provider_options: dict[str, Any] | None = None,
        tools: Any = None,
        session_id: str | None = None,
    ) -> StreamingResult:
        call = {
            "messages": messages,
            "signal": signal,
            "tools": tools,
            "provider_options": provider_options,
            "session_id": session_id,
        }
        self.calls.append(call)
        reply = self.replies.pop(0) if self.replies else "ok"

        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return await reply(call, on_result_change)

        parts = [TextPart(text=reply)]
        if on_result_change is not None:
            half = reply[: len(reply) // 2]
            if half:
                on_result_change(ResultUpdate(content_parts=[TextPart(text=half)]))
            on_result_change(ResultUpdate(content_parts=parts))
        return StreamingResult(content_parts=parts, finish_reason="stop")


class FakeModelFactory:
    def __init__(self) -> None:
        self.created: list[tuple[str, str]] = []

    def create(self, provider: str, model_id: str) -> FakeModel:
        self.created.append((provider, model_id))
        return FakeModel(model_id=model_id)


class FakeOcrInvoker:
    def __init__(self, text: str = "scanned text", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.runs: list[str] = []

    async def run(self, ocr_model: Any, messages: list[Message]) -> None:
        self.runs.append(ocr_model.model_id)
        if self.error is not None:
            raise self.error
        for message in messages:
            for part in message.content_parts:
                if isinstance(part, ImagePart) and not part.ocr_result:
                    part.ocr_result = self.text


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeKnowledgeBase:
    def __init__(
        self,
        files: list[KnowledgeBaseFile] | None = None,
        results: list[Any] | None = None,
        listing_error: Exception | None = None,
    ) -> None:
        self.files = files if files is not None else [
            KnowledgeBaseFile(id=1, filename="handbook.pdf", chunk_count=12),
            KnowledgeBaseFile(id=2, filename="draft.docx", chunk_count=0, status="processing"),
        ]
        self.results = results if results is not None else [
            {"file_id": 1, "chunk_index": 3, "text": "Vacation policy: 25 days."},
        ]
        self.listing_error = listing_error
        self.searches: list[tuple[int, str]] = []
        self.listings: list[tuple[int, int, int]] = []

    async def search(self, kb_id: int, query: str) -> list[Any]:
        self.searches.append((kb_id, query))
        return self.results

    async def list_files_paginated(self, kb_id: int, page: int, page_size: int) -> list[KnowledgeBaseFile]:
        self.listings.append((kb_id, page, page_size))
        if self.listing_error is not None:
            raise self.listing_error
        return self.files[page * page_size:(page + 1) * page_size]

    async def get_files_meta(self, kb_id: int, file_ids: list[int]) -> list[Any]:
        return [f.model_dump() for f in self.files if f.id in file_ids]

    async def read_file_chunks(self, kb_id: int, chunks: list[dict[str, int]]) -> list[Any]:
        return [{"file_id": c["file_id"], "chunk_index": c["chunk_index"], "text": "chunk"} for c in chunks]


class FakeWebSearch:
    def __init__(self, items: list[SearchResultItem] | None = None) -> None:
        self.items = items if items is not None else [
            SearchResultItem(title="Python 3.13 released", link="https://python.org/news", snippet="New REPL."),
        ]
        self.queries: list[str] = []

    async def search(self, query: str, *, signal: Any = None) -> list[SearchResultItem]:
        self.queries.append(query)
        return self.items


class MemoryBlobStore:
    def __init__(self, blobs: dict[str, str] | None = None) -> None:
        self.blobs = dict(blobs or {})

    async def get_blob(self, key: str) -> str | None:
        return self.blobs.get(key)

    async def set_blob(self, key: str, value: str) -> None:
        self.blobs[key] = value


# ---------------------------------------------------------------------------
# Helpers and fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the developer's .env file."""
    return Settings(_env_file=None, **overrides)


def user(text: str, **kwargs: Any) -> Message:
    return Message(role=Role.USER, content_parts=[TextPart(text=text)], **kwargs)


def assistant(text: str, **kwargs: Any) -> Message:
    return Message(role=Role.ASSISTANT, content_parts=[TextPart(text=text)], **kwargs)


def system(text: str) -> Message:
    return Message(role=Role.SYSTEM, content_parts=[TextPart(text=text)])


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def knowledge_base() -> FakeKnowledgeBase:
    return FakeKnowledgeBase()


@pytest.fixture
def web_search() -> FakeWebSearch:
    return FakeWebSearch()

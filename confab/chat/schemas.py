"""Pydantic DTOs for conversation messages and turn results.

These models define the data contract between the orchestration core
and its consumers (presentation layer, provider adapters, stores).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    storage_key: str
    ocr_result: str | None = None


class ToolCallPart(BaseModel):
    """A tool invocation, optionally carrying its result inline."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    state: Literal["call", "result", "error"] = "call"
    result: Any = None


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str = ""
    result: Any = None


class InfoPart(BaseModel):
    """UI-only notice; never sent to a provider."""

    type: Literal["info"] = "info"
    text: str


ContentPart = Annotated[
    TextPart | ImagePart | ToolCallPart | ToolResultPart | InfoPart,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageFile(BaseModel):
    name: str
    storage_key: str | None = None
    file_type: str = ""


class MessageLink(BaseModel):
    url: str
    title: str = ""
    storage_key: str | None = None


class Message(BaseModel):
    """A single message in a conversation."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    role: Role
    content_parts: list[ContentPart] = Field(default_factory=list)
    files: list[MessageFile] = Field(default_factory=list)
    links: list[MessageLink] = Field(default_factory=list)
    error: str | None = None
    generating: bool = False

    @classmethod
    def of_text(cls, role: Role | str, text: str) -> Message:
        return cls(role=Role(role), content_parts=[TextPart(text=text)])

    @property
    def has_attachments(self) -> bool:
        return bool(self.files or self.links)

    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text for p in self.content_parts if isinstance(p, TextPart))


# ---------------------------------------------------------------------------
# Streaming results
# ---------------------------------------------------------------------------


class StreamingResult(BaseModel):
    """Content produced so far for the in-flight assistant message."""

    content_parts: list[ContentPart] = Field(default_factory=list)
    usage: dict[str, int] | None = None
    finish_reason: str | None = None

    def text(self) -> str:
        return "".join(p.text for p in self.content_parts if isinstance(p, TextPart))


class ResultUpdate(BaseModel):
    """One emission from a provider stream.

    content_parts, when present, is the provider's full list so far for
    this call; unset fields leave the accumulated result untouched.
    """

    content_parts: list[ContentPart] | None = None
    usage: dict[str, int] | None = None
    finish_reason: str | None = None


@dataclass
class TurnUpdate:
    """What the orchestrator publishes to the caller on every change.

    result is None on the very first publication, which only hands out
    the cancel callback.
    """

    result: StreamingResult | None
    cancel: Callable[[], None]


# ---------------------------------------------------------------------------
# Knowledge base and search
# ---------------------------------------------------------------------------


class KnowledgeBaseRef(BaseModel):
    id: int
    name: str


class KnowledgeBaseFile(BaseModel):
    id: int
    filename: str
    chunk_count: int = 0
    status: str = "done"


class SearchResultItem(BaseModel):
    title: str
    link: str
    snippet: str = ""


class SearchOutcome(BaseModel):
    """Uniform shape returned by every prompt-engineered search policy."""

    type: Literal["knowledge_base", "web", "none"] = "none"
    query: str = ""
    search_results: list[Any] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Turn request
# ---------------------------------------------------------------------------


class TurnRequest(BaseModel):
    messages: list[Message]
    session_id: str | None = None
    knowledge_base: KnowledgeBaseRef | None = None
    web_browsing: bool = False
    provider_options: dict[str, Any] | None = None

"""Chat layer -- message model, normalization and capability gating.

Public API: message/result schemas, normalize(), the capability gate
and the cancellation primitives shared by every turn.
"""

from confab.chat.cancellation import CancellationController, CancellationSignal
from confab.chat.capabilities import (
    ModelInterface,
    ToolUseScope,
    needs_fallback,
    needs_file_tools,
    needs_ocr,
)
from confab.chat.normalizer import (
    clean_tool_calls,
    convert_to_provider_messages,
    normalize,
    select_messages_for_context,
    sequence_messages,
)
from confab.chat.schemas import (
    ImagePart,
    InfoPart,
    KnowledgeBaseRef,
    Message,
    ResultUpdate,
    Role,
    SearchOutcome,
    StreamingResult,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    TurnRequest,
    TurnUpdate,
)

__all__ = [
    "CancellationController",
    "CancellationSignal",
    "ModelInterface",
    "ToolUseScope",
    "needs_fallback",
    "needs_file_tools",
    "needs_ocr",
    "clean_tool_calls",
    "convert_to_provider_messages",
    "normalize",
    "select_messages_for_context",
    "sequence_messages",
    "ImagePart",
    "InfoPart",
    "KnowledgeBaseRef",
    "Message",
    "ResultUpdate",
    "Role",
    "SearchOutcome",
    "StreamingResult",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "TurnRequest",
    "TurnUpdate",
]

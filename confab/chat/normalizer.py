"""Message normalization and provider-message conversion.

normalize() turns the raw message list of a session into a sequence every
provider accepts: instruction text injected up front, system roles demoted
when unsupported, same-role runs merged, dangling tool results folded into
text. Inputs are never mutated; every function returns fresh copies.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from confab.chat.capabilities import BlobStore
from confab.chat.schemas import (
    ImagePart,
    InfoPart,
    Message,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

logger = logging.getLogger(__name__)

MAX_INLINE_FILE_LINES = 500
PREVIEW_LINES = 100

# Stands in for a missing first user turn (providers reject assistant-first)
_PLACEHOLDER_USER_TEXT = "..."

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def strip_think_blocks(text: str) -> str:
    """Remove reasoning blocks some models emit ahead of their answer."""
    return _THINK_BLOCK.sub("", text).strip()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def inject_system_prompt(messages: list[Message], instructions: str, role: Role) -> list[Message]:
    """Put instruction text at the front of the first system message.

    Creates a leading message with the given role when none exists.
    """
    result = [m.model_copy(deep=True) for m in messages]
    if not instructions.strip():
        return result

    for message in result:
        if message.role == Role.SYSTEM:
            message.content_parts.insert(0, TextPart(text=instructions))
            return result

    result.insert(0, Message(role=role, content_parts=[TextPart(text=instructions)]))
    return result


def demote_system_role(messages: list[Message]) -> list[Message]:
    return [
        m.model_copy(update={"role": Role.USER}, deep=True) if m.role == Role.SYSTEM
        else m.model_copy(deep=True)
        for m in messages
    ]


def _describe_tool_result(part: ToolResultPart) -> TextPart:
    try:
        payload = json.dumps(part.result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        payload = str(part.result)
    name = part.tool_name or "tool"
    return TextPart(text=f"[{name} result {part.tool_call_id}]\n{payload}")


def _merge_into(target: Message, source: Message) -> None:
    target.content_parts.extend(source.content_parts)
    target.files.extend(source.files)
    target.links.extend(source.links)


def sequence_messages(messages: list[Message]) -> list[Message]:
    """Reorder and merge messages into a provider-acceptable sequence.

    1. All system messages merge into one leading system message.
    2. Tool results whose tool call never appeared become text parts.
    3. An assistant-first conversation gets a placeholder user turn.
    4. Consecutive same-role messages merge, preserving part order.
    """
    system: Message | None = None
    rest: list[Message] = []
    seen_calls: set[str] = set()

    for original in messages:
        message = original.model_copy(deep=True)
        if message.role == Role.SYSTEM:
            if system is None:
                system = message
            else:
                _merge_into(system, message)
            continue

        parts = []
        for part in message.content_parts:
            if isinstance(part, ToolCallPart):
                seen_calls.add(part.tool_call_id)
                parts.append(part)
            elif isinstance(part, ToolResultPart) and part.tool_call_id not in seen_calls:
                parts.append(_describe_tool_result(part))
            else:
                parts.append(part)
        message.content_parts = parts

        if not message.content_parts and not message.has_attachments:
            continue

        if not rest and message.role == Role.ASSISTANT:
            rest.append(Message.of_text(Role.USER, _PLACEHOLDER_USER_TEXT))

        if rest and rest[-1].role == message.role:
            _merge_into(rest[-1], message)
        else:
            rest.append(message)

    if system is not None and system.content_parts:
        return [system, *rest]
    return rest


def normalize(
    messages: list[Message],
    supports_system_role: bool,
    instructions: str = "",
) -> list[Message]:
    """Inject instructions, demote system roles if needed, then sequence."""
    role = Role.SYSTEM if supports_system_role else Role.USER
    prepared = inject_system_prompt(messages, instructions, role)
    if not supports_system_role:
        prepared = demote_system_role(prepared)
    return sequence_messages(prepared)


# ---------------------------------------------------------------------------
# Context selection
# ---------------------------------------------------------------------------


def select_messages_for_context(
    messages: list[Message],
    max_context_messages: int | None = None,
    preserve_last_user_message: bool = True,
) -> list[Message]:
    """Drop errored/in-progress messages and keep the newest N."""
    filtered = [m for m in messages if not m.error and not m.generating]
    if max_context_messages is None:
        return filtered
    limit = max_context_messages + 1 if preserve_last_user_message else max_context_messages
    if limit <= 0:
        return []
    return filtered[-limit:]


def _round_boundary(messages: list[Message], keep_rounds: int) -> int:
    if keep_rounds == 0:
        return len(messages)
    rounds = 0
    in_round = False
    for i in range(len(messages) - 1, -1, -1):
        role = messages[i].role
        if role == Role.ASSISTANT:
            in_round = True
        elif role == Role.USER and in_round:
            rounds += 1
            in_round = False
            if rounds >= keep_rounds:
                return i
    return 0


def clean_tool_calls(messages: list[Message], keep_rounds: int = 2) -> list[Message]:
    """Strip tool-call parts from messages older than the last keep_rounds rounds.

    A round is one user message followed by one assistant message.
    """
    if not messages or keep_rounds < 0:
        return [m.model_copy(deep=True) for m in messages]

    boundary = _round_boundary(messages, keep_rounds)
    cleaned = []
    for index, message in enumerate(messages):
        copy = message.model_copy(deep=True)
        if index < boundary:
            copy.content_parts = [
                p for p in copy.content_parts if not isinstance(p, ToolCallPart)
            ]
        cleaned.append(copy)
    return cleaned


# ---------------------------------------------------------------------------
# Provider messages
# ---------------------------------------------------------------------------


def attachment_prefix(index: int, name: str, key: str, lines: int, size: int) -> str:
    return (
        "\n\n<ATTACHMENT_FILE>\n"
        f"<FILE_INDEX>{index}</FILE_INDEX>\n"
        f"<FILE_NAME>{name}</FILE_NAME>\n"
        f"<FILE_KEY>{key}</FILE_KEY>\n"
        f"<FILE_LINES>{lines}</FILE_LINES>\n"
        f"<FILE_SIZE>{size} bytes</FILE_SIZE>\n"
        "<FILE_CONTENT>\n"
    )


def attachment_suffix(truncated: bool, total_lines: int = 0, key: str = "") -> str:
    suffix = "</FILE_CONTENT>\n"
    if truncated:
        suffix += (
            f"<TRUNCATED>Content truncated. Showing first {PREVIEW_LINES} of "
            f"{total_lines} lines. Use read_file or search_file_content tool with "
            f'FILE_KEY="{key}" to read more content.</TRUNCATED>\n'
        )
    return suffix + "</ATTACHMENT_FILE>\n"


def wrap_attachment(index: int, name: str, key: str, content: str) -> str:
    lines = content.split("\n")
    truncated = len(lines) > MAX_INLINE_FILE_LINES
    body = "\n".join(lines[:PREVIEW_LINES]) if truncated else content
    return (
        attachment_prefix(index, name, key, len(lines), len(content.encode("utf-8")))
        + body
        + "\n"
        + attachment_suffix(truncated, len(lines), key)
    )


async def _attachment_blocks(
    message: Message,
    blob_store: BlobStore | None,
    start_index: int,
) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    if blob_store is None:
        return blocks
    index = start_index
    attachments = [(f.name, f.storage_key) for f in message.files]
    attachments += [(link.title or link.url, link.storage_key) for link in message.links]
    for name, key in attachments:
        if not key:
            continue
        content = await blob_store.get_blob(key)
        if content is None:
            logger.warning("Attachment %s (%s) missing from blob store", name, key)
            continue
        index += 1
        blocks.append({"type": "text", "text": wrap_attachment(index, name, key, content)})
    return blocks


def _append_merged(converted: list[dict[str, Any]], entry: dict[str, Any]) -> None:
    # Messages emptied by conversion can leave two same-role neighbours
    previous = converted[-1] if converted else None
    if previous is not None and previous["role"] == entry["role"] and isinstance(previous["content"], list):
        previous["content"].extend(entry["content"])
    else:
        converted.append(entry)


async def convert_to_provider_messages(
    messages: list[Message],
    *,
    supports_vision: bool,
    blob_store: BlobStore | None = None,
) -> list[dict[str, Any]]:
    """Convert normalized messages into provider-neutral message dicts.

    Returns list of {"role": ..., "content": ...}. System content is a
    string; other roles carry a list of blocks. Tool calls that carry a
    result are followed by a {"role": "tool"} message. Adjacent messages
    never share a role.
    """
    converted: list[dict[str, Any]] = []
    attachment_index = 0

    for message in messages:
        if message.role == Role.SYSTEM:
            text = message.text()
            if text:
                converted.append({"role": "system", "content": text})
            continue

        blocks: list[dict[str, Any]] = []
        tool_results: list[dict[str, Any]] = []
        for part in message.content_parts:
            if isinstance(part, TextPart):
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                if supports_vision:
                    blocks.append({"type": "image", "storage_key": part.storage_key})
                elif part.ocr_result:
                    blocks.append({
                        "type": "text",
                        "text": f"<image_ocr_result>{part.ocr_result}</image_ocr_result>",
                    })
            elif isinstance(part, ToolCallPart):
                blocks.append({
                    "type": "tool_call",
                    "tool_call_id": part.tool_call_id,
                    "tool_name": part.tool_name,
                    "args": part.args,
                })
                if part.state != "call":
                    tool_results.append({
                        "type": "tool_result",
                        "tool_call_id": part.tool_call_id,
                        "tool_name": part.tool_name,
                        "result": part.result,
                    })
            elif isinstance(part, ToolResultPart):
                tool_results.append({
                    "type": "tool_result",
                    "tool_call_id": part.tool_call_id,
                    "tool_name": part.tool_name,
                    "result": part.result,
                })
            elif isinstance(part, InfoPart):
                continue

        if message.role == Role.USER and message.has_attachments:
            attachment_blocks = await _attachment_blocks(message, blob_store, attachment_index)
            attachment_index += len(attachment_blocks)
            blocks.extend(attachment_blocks)

        if blocks:
            _append_merged(converted, {"role": message.role.value, "content": blocks})
        if tool_results:
            _append_merged(converted, {"role": "tool", "content": tool_results})

    return converted

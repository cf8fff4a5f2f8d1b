"""Context compaction -- background summarization of long conversations.

Two pieces:
  CompactionStateMachine: per-session UI-facing status of a running
    compaction (idle / running / failed) driven by one transition()
    function, with at most one running operation per session.
  ConversationCompactor: decides when a conversation overflows the
    model's context window and replaces its older part with a
    structured summary committed through a ConversationStore.

The state machine never sees the summary itself; the compactor commits
it and the machine only reflects progress and errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Protocol

from confab.chat.capabilities import ModelInterface
from confab.chat.normalizer import strip_think_blocks
from confab.chat.schemas import (
    ImagePart,
    Message,
    ResultUpdate,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from confab.config import Settings
from confab.errors import CompactionError

logger = logging.getLogger(__name__)

CompactionStatus = Literal["idle", "running", "failed"]

# ------------------------------------------------------------------
# State and transitions
# ------------------------------------------------------------------


@dataclass(frozen=True)
class CompactionState:
    status: CompactionStatus = "idle"
    error: str | None = None
    streaming_text: str = ""


IDLE = CompactionState()


@dataclass(frozen=True)
class Started:
    pass


@dataclass(frozen=True)
class Progress:
    text: str


@dataclass(frozen=True)
class Failed:
    message: str


@dataclass(frozen=True)
class Succeeded:
    pass


@dataclass(frozen=True)
class Dismissed:
    pass


CompactionEvent = Started | Progress | Failed | Succeeded | Dismissed


def transition(state: CompactionState, event: CompactionEvent) -> CompactionState:
    """The only way a CompactionState changes. Pure and synchronous."""
    if isinstance(event, Started):
        return CompactionState(status="running")
    if isinstance(event, Progress):
        if state.status != "running":
            return state
        return replace(state, streaming_text=state.streaming_text + event.text)
    if isinstance(event, Failed):
        if state.status != "running":
            return state
        return replace(state, status="failed", error=event.message)
    if isinstance(event, Succeeded):
        return IDLE if state.status == "running" else state
    if isinstance(event, Dismissed):
        return IDLE
    raise TypeError(f"Unknown compaction event: {event!r}")


@dataclass
class CompactionOutcome:
    """What a compaction operation reports back to the state machine."""

    status: Literal["completed", "skipped", "failed"]
    error: str | None = None
    summary: str = ""


OnProgress = Callable[[str], None]
CompactionOperation = Callable[[OnProgress], Awaitable[CompactionOutcome]]
StateListener = Callable[[str, CompactionState], None]


class CompactionStateMachine:
    """Owns the session -> CompactionState table and the running slots."""

    def __init__(self) -> None:
        self._states: dict[str, CompactionState] = {}
        self._operations: dict[str, CompactionOperation] = {}
        self._tasks: dict[str, asyncio.Task[CompactionOutcome]] = {}
        self._listeners: list[StateListener] = []

    def get_state(self, session_id: str) -> CompactionState:
        return self._states.get(session_id, IDLE)

    def is_running(self, session_id: str) -> bool:
        return self.get_state(session_id).status == "running" or session_id in self._tasks

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for every state change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, session_id: str, event: CompactionEvent) -> CompactionState:
        previous = self.get_state(session_id)
        state = transition(previous, event)
        if state == IDLE:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = state
        if state != previous:
            for listener in list(self._listeners):
                try:
                    listener(session_id, state)
                except Exception:
                    logger.exception("Compaction state listener failed")
        return state

    def start(
        self, session_id: str, operation: CompactionOperation
    ) -> asyncio.Task[CompactionOutcome] | None:
        """Move to running and schedule operation. None if one is already running.

        The running transition happens before this returns, so callers see
        the new state immediately.
        """
        if self.is_running(session_id):
            logger.debug("Compaction already running for %s, ignoring start", session_id)
            return None
        loop = asyncio.get_running_loop()
        self._operations[session_id] = operation
        self.dispatch(session_id, Started())
        task = loop.create_task(self._drive(session_id, operation))
        self._tasks[session_id] = task
        return task

    async def run(
        self, session_id: str, operation: CompactionOperation
    ) -> CompactionOutcome | None:
        task = self.start(session_id, operation)
        if task is None:
            return None
        return await task

    def retry(self, session_id: str) -> asyncio.Task[CompactionOutcome] | None:
        """Re-run the last operation of a failed session."""
        if self.get_state(session_id).status != "failed":
            return None
        operation = self._operations.get(session_id)
        if operation is None:
            logger.warning("No compaction to retry for %s", session_id)
            return None
        return self.start(session_id, operation)

    def dismiss(self, session_id: str) -> CompactionState:
        return self.dispatch(session_id, Dismissed())

    async def _drive(self, session_id: str, operation: CompactionOperation) -> CompactionOutcome:
        def on_progress(text: str) -> None:
            if text:
                self.dispatch(session_id, Progress(text))

        start = time.monotonic()
        try:
            outcome = await operation(on_progress)
        except asyncio.CancelledError:
            self._tasks.pop(session_id, None)
            self.dispatch(session_id, Failed("Compaction cancelled"))
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning("Compaction for %s failed: %s", session_id, message)
            outcome = CompactionOutcome(status="failed", error=message)
        finally:
            self._tasks.pop(session_id, None)

        if outcome.status == "failed":
            self.dispatch(session_id, Failed(outcome.error or "Compaction failed"))
        else:
            self.dispatch(session_id, Succeeded())
        logger.info(
            "Compaction for %s %s in %d ms",
            session_id,
            outcome.status,
            int((time.monotonic() - start) * 1000),
        )
        return outcome


# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

CHECKPOINT_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: 800-1200 words. Prioritize precision over completeness.

## Format

## Goal
[1-2 sentences]

## Constraints & Preferences
- [Requirements, constraints, stated preferences]

## Progress
### Done
- [x] [Completed items]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Open Questions
- [Unresolved questions]

## Critical Context
- [Names, numbers, file names, links and quotes the conversation depends on]
"""

UPDATE_SYSTEM_PROMPT = """\
You are updating a conversation summary with new messages.
TARGET LENGTH: 800-1200 words. If exceeding, prioritize:
1. Recent progress and decisions
2. Critical context
3. Active constraints
Drop older completed "Done" items if needed.

RULES:
1. PRESERVE existing info unless explicitly superseded
2. ADD new progress, decisions, context
3. MOVE In Progress -> Done when completed
4. PRESERVE exact names, numbers and quotes
5. Use SAME format as existing summary

Output ONLY the updated summary."""

_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]

MIN_SUMMARY_CHARS = 200
MAX_SUMMARY_CHARS = 8000

SUMMARY_PREFIX = "[Previous conversation summary]\n\n"


# ------------------------------------------------------------------
# Token estimation and overflow detection
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with optional calibration from provider usage.

    Starts with the chars/4 heuristic; calibrate() moves the ratio toward
    observed input_tokens with an EMA (alpha=0.1).
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        if not isinstance(text, str):
            text = str(text)
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Message) -> int:
        return self.estimate(serialize_message(message)) + 4

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


@dataclass
class OverflowCheck:
    is_overflow: bool
    current_tokens: int
    context_window: int | None = None
    threshold_tokens: int | None = None


def check_overflow(
    tokens: int,
    context_window: int | None,
    threshold: float = 0.6,
    output_reserve: int = 32_000,
) -> OverflowCheck:
    """tokens > max(window - reserve, window // 2) * threshold.

    Unknown context windows never overflow.
    """
    if tokens <= 0 or context_window is None:
        return OverflowCheck(is_overflow=False, current_tokens=tokens, context_window=context_window)

    available = max(context_window - output_reserve, context_window // 2)
    if available <= 0:
        return OverflowCheck(is_overflow=False, current_tokens=tokens, context_window=context_window)

    threshold_tokens = int(available * threshold)
    return OverflowCheck(
        is_overflow=tokens > threshold_tokens,
        current_tokens=tokens,
        context_window=context_window,
        threshold_tokens=threshold_tokens,
    )


# ------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------


def serialize_message(message: Message) -> str:
    """Readable text of a message for token estimation and summarization."""
    parts = []
    for part in message.content_parts:
        if isinstance(part, TextPart):
            parts.append(part.text)
        elif isinstance(part, ImagePart):
            parts.append(f"[image: {part.ocr_result}]" if part.ocr_result else "[image]")
        elif isinstance(part, ToolCallPart):
            args = json.dumps(part.args, ensure_ascii=False, default=str)
            parts.append(f"[tool call {part.tool_name}({args})]")
        elif isinstance(part, ToolResultPart):
            parts.append(f"[tool result {part.tool_name}]")
    for f in message.files:
        parts.append(f"[file: {f.name}]")
    for link in message.links:
        parts.append(f"[link: {link.url}]")
    return "\n".join(parts)


def serialize_for_summary(messages: list[Message]) -> str:
    lines = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        role = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"**{role}:** {serialize_message(message)}")
    return "\n\n".join(lines)


# ------------------------------------------------------------------
# Store protocol and results
# ------------------------------------------------------------------


@dataclass
class CompactionResult:
    """Committed by the compactor: a summary replacing the oldest messages."""

    session_id: str
    summary: str
    compacted_message_ids: list[str]
    summary_message: Message
    created_at: float = field(default_factory=time.time)


class ConversationStore(Protocol):
    async def load_messages(self, session_id: str) -> list[Message]: ...

    async def load_summary(self, session_id: str) -> str | None: ...

    async def commit_compaction(self, result: CompactionResult) -> None: ...


# ------------------------------------------------------------------
# Compactor
# ------------------------------------------------------------------


class ConversationCompactor:
    """Summarizes the older part of a conversation when it outgrows the window.

    Owns a TokenEstimator; callers feed it provider usage through
    compactor.estimator.calibrate().
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.estimator = TokenEstimator()

    def check_overflow(self, messages: list[Message], context_window: int | None) -> OverflowCheck:
        return check_overflow(
            self.estimator.estimate_messages(messages),
            context_window,
            threshold=self._settings.compaction_threshold,
            output_reserve=self._settings.compaction_output_reserve,
        )

    def should_compact(self, messages: list[Message], context_window: int | None) -> bool:
        if not self._settings.compaction_enabled:
            return False
        return self.check_overflow(messages, context_window).is_overflow

    def find_cut_point(self, messages: list[Message], keep_recent_tokens: int) -> int:
        """Walk backwards accumulating tokens. Returns index of old/recent split.

        Returns 0 if all messages fit. Always snaps to a user message.
        """
        accumulated = 0
        for i in range(len(messages) - 1, -1, -1):
            accumulated += self.estimator.estimate_message(messages[i])
            if accumulated >= keep_recent_tokens:
                for j in range(i, len(messages)):
                    if messages[j].role == Role.USER:
                        return j
                return 0
        return 0

    def _prompt_messages(
        self,
        model: ModelInterface,
        old_messages: list[Message],
        existing_summary: str | None,
    ) -> list[dict[str, Any]]:
        if existing_summary:
            system = UPDATE_SYSTEM_PROMPT
            user_content = (
                f"## Existing Summary\n\n{existing_summary}\n\n"
                f"## New Conversation\n\n{serialize_for_summary(old_messages)}"
            )
        else:
            system = CHECKPOINT_SYSTEM_PROMPT
            user_content = serialize_for_summary(old_messages)
        system += f"\nWrite the summary in {self._settings.summary_language}."

        if model.is_support_system_message():
            return [
                {"role": "system", "content": system},
                {"role": "user", "content": [{"type": "text", "text": user_content}]},
            ]
        return [{"role": "user", "content": [{"type": "text", "text": f"{system}\n\n{user_content}"}]}]

    async def generate_summary(
        self,
        model: ModelInterface,
        old_messages: list[Message],
        existing_summary: str | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> str:
        """Stream a structured summary, reporting appended text via on_progress."""
        if not old_messages:
            return existing_summary or ""

        streamed = ""

        def on_result_change(update: ResultUpdate) -> None:
            nonlocal streamed
            if update.content_parts is None or on_progress is None:
                return
            text = "".join(p.text for p in update.content_parts if isinstance(p, TextPart))
            if text.startswith(streamed):
                delta = text[len(streamed):]
            else:
                delta = "\n" + text
            streamed = text
            if delta:
                on_progress(delta)

        result = await model.chat(
            self._prompt_messages(model, old_messages, existing_summary),
            on_result_change=on_result_change,
        )
        summary = strip_think_blocks(result.text())
        self._validate_summary(summary)
        return summary

    def _validate_summary(self, summary: str) -> None:
        """Length and section check; raises CompactionError on failure."""
        if len(summary) < MIN_SUMMARY_CHARS:
            raise CompactionError(f"Summary too short ({len(summary)} chars)")
        if len(summary) > MAX_SUMMARY_CHARS:
            logger.warning("Summary exceeds %d chars (%d) - accepting with warning", MAX_SUMMARY_CHARS, len(summary))
        found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
        if found < 2:
            raise CompactionError(f"Summary missing sections ({found}/3)")

    async def compact(
        self,
        session_id: str,
        store: ConversationStore,
        model: ModelInterface,
        on_progress: Callable[[str], None] | None = None,
        context_window: int | None = None,
        force: bool = False,
    ) -> CompactionOutcome:
        """Summarize and commit the older part of a session's history.

        Without force, only runs when the history overflows the window.
        """
        messages = await store.load_messages(session_id)
        if not force and not self.should_compact(messages, context_window):
            return CompactionOutcome(status="skipped")

        cut_point = self.find_cut_point(messages, self._settings.compaction_keep_recent_tokens)
        if cut_point <= 0:
            logger.debug("Nothing old enough to compact in %s", session_id)
            return CompactionOutcome(status="skipped")

        start_time = time.monotonic()
        old_messages = messages[:cut_point]
        existing_summary = await store.load_summary(session_id)
        summary = await self.generate_summary(model, old_messages, existing_summary, on_progress)

        result = CompactionResult(
            session_id=session_id,
            summary=summary,
            compacted_message_ids=[m.id for m in old_messages],
            summary_message=Message.of_text(Role.USER, SUMMARY_PREFIX + summary),
        )
        await store.commit_compaction(result)

        logger.info(
            "Compacted conversation %s: %d messages -> summary (%d chars, %d ms), %d kept",
            session_id,
            len(old_messages),
            len(summary),
            int((time.monotonic() - start_time) * 1000),
            len(messages) - cut_point,
        )
        return CompactionOutcome(status="completed", summary=summary)

    def operation_for(
        self,
        session_id: str,
        store: ConversationStore,
        model: ModelInterface,
        context_window: int | None = None,
        force: bool = False,
    ) -> CompactionOperation:
        """Bind compact() for CompactionStateMachine.start()."""

        async def operation(on_progress: OnProgress) -> CompactionOutcome:
            return await self.compact(
                session_id,
                store,
                model,
                on_progress=on_progress,
                context_window=context_window,
                force=force,
            )

        return operation

"""Turn orchestrator -- drives one conversation turn to completion.

Sequences the pieces of a turn:
  preparing  -> assemble tools, normalize, OCR if needed, convert
  searching  -> prompt-engineered search for models without tool use
  streaming  -> the provider call with tools, signal and result callback
and resolves as done, cancelled (partial result, no error) or errored.

The caller receives a TurnUpdate on every change. The first one carries
only the cancel callback and is published before any await, so a turn
can be cancelled before the first provider byte arrives.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from confab.api.assembler import ToolSetAssembler
from confab.api.ocr import OcrPreprocessor, ensure_ocr_configured
from confab.api.search import FallbackSearch, handle_search_result
from confab.chat.cancellation import CancellationController, CancellationSignal
from confab.chat.capabilities import BlobStore, ModelInterface, OnStatusChange, needs_ocr
from confab.chat.normalizer import (
    clean_tool_calls,
    convert_to_provider_messages,
    normalize,
    select_messages_for_context,
)
from confab.chat.schemas import (
    ContentPart,
    ResultUpdate,
    StreamingResult,
    TurnRequest,
    TurnUpdate,
)
from confab.config import Settings
from confab.errors import ConfigurationError

logger = logging.getLogger(__name__)

OnTurnUpdate = Callable[[TurnUpdate], None]


class TurnState(StrEnum):
    PREPARING = "preparing"
    SEARCHING = "searching"
    STREAMING = "streaming"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class TurnOutcome:
    """Final result of a turn and the messages actually sent to the provider."""

    result: StreamingResult
    provider_messages: list[dict[str, Any]]
    state: TurnState = TurnState.DONE


@dataclass
class _TurnContext:
    """Mutable per-turn state. Only touched by synchronous methods."""

    cancel: Callable[[], None]
    on_update: OnTurnUpdate
    state: TurnState = TurnState.PREPARING
    result: StreamingResult = field(default_factory=StreamingResult)
    info_parts: list[ContentPart] = field(default_factory=list)
    provider_messages: list[dict[str, Any]] = field(default_factory=list)

    def merge(self, update: ResultUpdate) -> None:
        """Fold one provider emission into the accumulated result and publish.

        Provider content parts always follow the parts the orchestrator
        injected itself (OCR notices).
        """
        changes: dict[str, Any] = {}
        if update.content_parts is not None:
            changes["content_parts"] = [*self.info_parts, *update.content_parts]
        if update.usage is not None:
            changes["usage"] = update.usage
        if update.finish_reason is not None:
            changes["finish_reason"] = update.finish_reason
        self.result = self.result.model_copy(update=changes)
        self.on_update(TurnUpdate(result=self.result, cancel=self.cancel))

    def merge_final(self, final: StreamingResult) -> None:
        self.merge(ResultUpdate(
            content_parts=final.content_parts,
            usage=final.usage,
            finish_reason=final.finish_reason,
        ))


class TurnOrchestrator:
    """Runs turns against any ModelInterface, branching only on capabilities."""

    def __init__(
        self,
        settings: Settings,
        assembler: ToolSetAssembler,
        *,
        fallback_search: FallbackSearch | None = None,
        ocr: OcrPreprocessor | None = None,
        blob_store: BlobStore | None = None,
    ) -> None:
        self._settings = settings
        self._assembler = assembler
        self._fallback_search = fallback_search or FallbackSearch()
        self._ocr = ocr
        self._blob_store = blob_store

    async def run_turn(
        self,
        model: ModelInterface,
        request: TurnRequest,
        on_update: OnTurnUpdate,
        *,
        signal: CancellationSignal | None = None,
        on_status_change: OnStatusChange | None = None,
    ) -> TurnOutcome:
        controller = CancellationController()
        controller.follow(signal)
        ctx = _TurnContext(cancel=controller.abort, on_update=on_update)

        # Hand out cancel before anything can suspend
        on_update(TurnUpdate(result=None, cancel=controller.abort))

        start = time.monotonic()
        try:
            await self._run(model, request, ctx, controller.signal, on_status_change)
        except Exception as e:
            if controller.signal.aborted:
                ctx.state = TurnState.CANCELLED
                logger.info("Turn on %s cancelled (%s), keeping partial result", model.model_id, type(e).__name__)
                return TurnOutcome(ctx.result, ctx.provider_messages, ctx.state)
            logger.error("Turn on %s failed while %s: %s", model.model_id, ctx.state, e)
            ctx.state = TurnState.ERRORED
            raise
        finally:
            controller.unfollow(signal)

        ctx.state = TurnState.CANCELLED if controller.signal.aborted else TurnState.DONE
        logger.info(
            "Turn on %s finished: %s (%d parts, %d ms)",
            model.model_id,
            ctx.state,
            len(ctx.result.content_parts),
            int((time.monotonic() - start) * 1000),
        )
        return TurnOutcome(ctx.result, ctx.provider_messages, ctx.state)

    async def _run(
        self,
        model: ModelInterface,
        request: TurnRequest,
        ctx: _TurnContext,
        signal: CancellationSignal,
        on_status_change: OnStatusChange | None,
    ) -> None:
        # -- preparing --
        history = clean_tool_calls(
            select_messages_for_context(request.messages, self._settings.max_context_messages),
            keep_rounds=self._settings.keep_tool_call_rounds,
        )
        plan = await self._assembler.assemble(
            model,
            history,
            knowledge_base=request.knowledge_base,
            web_browsing=request.web_browsing,
        )
        messages = normalize(
            history,
            supports_system_role=model.is_support_system_message(),
            instructions=plan.instructions,
        )

        if needs_ocr(model, messages):
            if self._ocr is None:
                ensure_ocr_configured(self._settings)
                raise ConfigurationError(
                    "ocr_unavailable",
                    f"Current model {model.model_id} does not support image input and no OCR runner is available.",
                )
            notice = await self._ocr.process(model, messages)
            if notice is not None:
                ctx.info_parts.append(notice)

        supports_vision = model.is_support_vision()
        ctx.provider_messages = await convert_to_provider_messages(
            messages, supports_vision=supports_vision, blob_store=self._blob_store
        )

        # -- searching --
        if plan.needs_search_fallback:
            ctx.state = TurnState.SEARCHING
            outcome = await self._fallback_search.run(
                model,
                messages,
                knowledge_base=request.knowledge_base,
                kb_fallback=plan.kb_fallback,
                web_fallback=plan.web_fallback,
                signal=signal,
            )
            logger.debug("Fallback search: type=%s results=%d", outcome.type, len(outcome.search_results))
            ctx.state = TurnState.STREAMING
            final = await handle_search_result(
                outcome,
                model,
                messages,
                ctx.provider_messages,
                on_result_change=ctx.merge,
                signal=signal,
                on_status_change=on_status_change,
                provider_options=request.provider_options,
                supports_vision=supports_vision,
                blob_store=self._blob_store,
            )
            ctx.merge_final(final)
            return

        # -- streaming --
        ctx.state = TurnState.STREAMING
        final = await model.chat(
            ctx.provider_messages,
            signal=signal,
            on_result_change=ctx.merge,
            on_status_change=on_status_change,
            provider_options=request.provider_options,
            tools=plan.tools,
            session_id=request.session_id,
        )
        ctx.merge_final(final)

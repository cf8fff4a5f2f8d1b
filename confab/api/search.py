"""Prompt-engineering fallback search for models without tool use.

Runs once before the provider call. Three policies:
  - combined: knowledge base and web both need fallback; a SearchRouter
    decides which one (if any) the turn calls for
  - knowledge base only
  - web only

Every policy returns a SearchOutcome consumed by handle_search_result(),
which either makes a plain model call or folds the results into the
last user message behind a synthetic tool-call part.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from confab.chat.cancellation import CancellationSignal
from confab.chat.capabilities import (
    BlobStore,
    KnowledgeBaseController,
    ModelInterface,
    OnResultChange,
    OnStatusChange,
    WebSearchExecutor,
)
from confab.chat.normalizer import convert_to_provider_messages, strip_think_blocks
from confab.chat.schemas import (
    KnowledgeBaseRef,
    Message,
    ResultUpdate,
    Role,
    SearchOutcome,
    SearchResultItem,
    StreamingResult,
    TextPart,
    ToolCallPart,
)
from confab.config import Settings

logger = logging.getLogger(__name__)

SearchType = Literal["knowledge_base", "web", "none"]

TOOL_NAMES: dict[str, str] = {
    "knowledge_base": "query_knowledge_base",
    "web": "web_search",
}

# Messages of history shown to the model when it picks a query
_TRANSCRIPT_MESSAGES = 6

_synthetic_ids = itertools.count(1)

QUERY_PROMPT = """\
Decide whether answering the user's last message requires searching {target}.
If it does, reply with ONE concise search query and nothing else.
If it does not, reply with exactly: NONE

<conversation>
{conversation}
</conversation>"""

ROUTER_PROMPT = """\
You can consult two sources before answering the user's last message:
- "knowledge_base": the user's private knowledge base "{kb_name}"
- "web": a web search engine for public and current information

Choose at most one source. Reply with JSON only, no prose:
{{"action": "knowledge_base" | "web" | "none", "query": "<concise search query>"}}

<conversation>
{conversation}
</conversation>"""


def render_transcript(messages: list[Message], limit: int = _TRANSCRIPT_MESSAGES) -> str:
    lines = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        text = message.text().strip()
        if text:
            speaker = "User" if message.role == Role.USER else "Assistant"
            lines.append(f"{speaker}: {text}")
    return "\n\n".join(lines[-limit:])


async def _ask(model: ModelInterface, prompt: str, signal: CancellationSignal | None) -> str:
    """Single non-tool model call returning the reply text."""
    result = await model.chat(
        [{"role": "user", "content": [{"type": "text", "text": prompt}]}],
        signal=signal,
    )
    return strip_think_blocks(result.text())


def parse_query(reply: str) -> str | None:
    """First line of the reply as a query; None for NONE or an empty reply."""
    lines = [line.strip() for line in reply.strip().splitlines() if line.strip()]
    if not lines:
        return None
    query = lines[0].strip("\"'` ")
    if not query or query.upper().rstrip(".") == "NONE":
        return None
    return query


async def extract_query(
    model: ModelInterface,
    messages: list[Message],
    target: str,
    *,
    signal: CancellationSignal | None = None,
) -> str | None:
    prompt = QUERY_PROMPT.format(target=target, conversation=render_transcript(messages))
    return parse_query(await _ask(model, prompt, signal))


# ---------------------------------------------------------------------------
# Routing strategies for the combined policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchRoute:
    type: SearchType
    query: str = ""


NO_ROUTE = SearchRoute(type="none")


class SearchRouter(Protocol):
    """Decides between knowledge base, web or no search for a turn."""

    async def route(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef,
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchRoute: ...


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_route(reply: str) -> SearchRoute:
    """Parse the router's JSON verdict. Anything unparseable means no search."""
    match = _JSON_OBJECT.search(reply)
    if not match:
        return NO_ROUTE
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug("Unparseable search routing reply: %r", reply[:200])
        return NO_ROUTE
    if not isinstance(data, dict):
        return NO_ROUTE
    action = data.get("action")
    query = str(data.get("query") or "").strip()
    if action not in TOOL_NAMES or not query:
        return NO_ROUTE
    return SearchRoute(type=action, query=query)


class PromptSearchRouter:
    """Asks the model itself for a JSON routing verdict."""

    async def route(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef,
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchRoute:
        prompt = ROUTER_PROMPT.format(
            kb_name=knowledge_base.name,
            conversation=render_transcript(messages),
        )
        return parse_route(await _ask(model, prompt, signal))


class PreferenceSearchRouter:
    """Always searches one preferred source when the model wants a search."""

    def __init__(self, preferred: Literal["knowledge_base", "web"]) -> None:
        self.preferred = preferred

    async def route(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef,
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchRoute:
        target = f'the knowledge base "{knowledge_base.name}"' if self.preferred == "knowledge_base" else "the web"
        query = await extract_query(model, messages, target, signal=signal)
        if query is None:
            return NO_ROUTE
        return SearchRoute(type=self.preferred, query=query)


def router_from_settings(settings: Settings) -> SearchRouter:
    if settings.search_router == "web-first":
        return PreferenceSearchRouter("web")
    if settings.search_router == "kb-first":
        return PreferenceSearchRouter("knowledge_base")
    return PromptSearchRouter()


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class FallbackSearch:
    """Runs exactly one prompt-engineered search for a turn."""

    def __init__(
        self,
        *,
        knowledge_base: KnowledgeBaseController | None = None,
        web_search: WebSearchExecutor | None = None,
        router: SearchRouter | None = None,
    ) -> None:
        self._knowledge_base = knowledge_base
        self._web_search = web_search
        self.router = router or PromptSearchRouter()

    async def run(
        self,
        model: ModelInterface,
        messages: list[Message],
        *,
        knowledge_base: KnowledgeBaseRef | None,
        kb_fallback: bool,
        web_fallback: bool,
        signal: CancellationSignal | None = None,
    ) -> SearchOutcome:
        if kb_fallback and web_fallback and knowledge_base is not None:
            return await self.combined(model, messages, knowledge_base, signal=signal)
        if kb_fallback and knowledge_base is not None:
            return await self.knowledge_base_only(model, messages, knowledge_base, signal=signal)
        if web_fallback:
            return await self.web_only(model, messages, signal=signal)
        return SearchOutcome()

    async def combined(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef,
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchOutcome:
        route = await self.router.route(model, messages, knowledge_base, signal=signal)
        logger.debug("Combined search routed to %s (%r)", route.type, route.query)
        return await self._execute(route, knowledge_base, signal)

    async def knowledge_base_only(
        self,
        model: ModelInterface,
        messages: list[Message],
        knowledge_base: KnowledgeBaseRef,
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchOutcome:
        query = await extract_query(
            model, messages, f'the knowledge base "{knowledge_base.name}"', signal=signal
        )
        if query is None:
            return SearchOutcome()
        return await self._execute(SearchRoute("knowledge_base", query), knowledge_base, signal)

    async def web_only(
        self,
        model: ModelInterface,
        messages: list[Message],
        *,
        signal: CancellationSignal | None = None,
    ) -> SearchOutcome:
        query = await extract_query(model, messages, "the web", signal=signal)
        if query is None:
            return SearchOutcome()
        return await self._execute(SearchRoute("web", query), None, signal)

    async def _execute(
        self,
        route: SearchRoute,
        knowledge_base: KnowledgeBaseRef | None,
        signal: CancellationSignal | None,
    ) -> SearchOutcome:
        if route.type == "knowledge_base":
            if self._knowledge_base is None or knowledge_base is None:
                logger.warning("Knowledge base search requested but no controller configured")
                return SearchOutcome(query=route.query)
            results = await self._knowledge_base.search(knowledge_base.id, route.query)
            return SearchOutcome(type="knowledge_base", query=route.query, search_results=list(results))

        if route.type == "web":
            if self._web_search is None:
                logger.warning("Web search requested but no executor configured")
                return SearchOutcome(query=route.query)
            items = await self._web_search.search(route.query, signal=signal)
            return SearchOutcome(
                type="web",
                query=route.query,
                search_results=[item.model_dump() for item in items],
            )

        return SearchOutcome()


# ---------------------------------------------------------------------------
# Folding results into the conversation
# ---------------------------------------------------------------------------


def _fold_into_last_user(messages: list[Message], block: str) -> list[Message]:
    folded = [m.model_copy(deep=True) for m in messages]
    for message in reversed(folded):
        if message.role == Role.USER:
            message.content_parts.insert(0, TextPart(text=block))
            return folded
    folded.append(Message(role=Role.USER, content_parts=[TextPart(text=block)]))
    return folded


def construct_messages_with_search_results(
    messages: list[Message], results: list[Any]
) -> list[Message]:
    entries = []
    for index, raw in enumerate(results, start=1):
        item = raw if isinstance(raw, SearchResultItem) else SearchResultItem.model_validate(raw)
        entries.append(f"[{index}] {item.title}\nURL: {item.link}\n{item.snippet}")
    block = (
        "Use the following web search results to answer the question below. "
        "Cite sources as [n] where n is the result number.\n\n"
        "<search_results>\n" + "\n\n".join(entries) + "\n</search_results>\n\n"
        "User question:"
    )
    return _fold_into_last_user(messages, block)


def construct_messages_with_knowledge_base_results(
    messages: list[Message], results: list[Any]
) -> list[Message]:
    entries = [
        item if isinstance(item, str) else json.dumps(item, ensure_ascii=False, default=str)
        for item in results
    ]
    block = (
        "Use the following excerpts from the user's knowledge base to answer the "
        "question below. Say so if they do not contain the answer.\n\n"
        "<knowledge_base_results>\n" + "\n\n".join(entries) + "\n</knowledge_base_results>\n\n"
        "User question:"
    )
    return _fold_into_last_user(messages, block)


async def handle_search_result(
    outcome: SearchOutcome,
    model: ModelInterface,
    messages: list[Message],
    provider_messages: list[dict[str, Any]],
    *,
    on_result_change: OnResultChange,
    signal: CancellationSignal | None = None,
    on_status_change: OnStatusChange | None = None,
    provider_options: dict[str, Any] | None = None,
    supports_vision: bool = False,
    blob_store: BlobStore | None = None,
) -> StreamingResult:
    """Make the turn's provider call, with search results folded in if any.

    The returned result (and every update) starts with the synthetic
    tool-call part so the UI renders the search like a native tool call.
    """
    if outcome.type == "none" or not outcome.search_results:
        return await model.chat(
            provider_messages,
            signal=signal,
            on_result_change=on_result_change,
            on_status_change=on_status_change,
            provider_options=provider_options,
        )

    tool_name = TOOL_NAMES[outcome.type]
    synthetic = ToolCallPart(
        tool_call_id=f"{outcome.type}_search_{next(_synthetic_ids)}",
        tool_name=tool_name,
        args={"query": outcome.query},
        state="result",
        result=outcome.model_dump(),
    )
    on_result_change(ResultUpdate(content_parts=[synthetic]))

    if outcome.type == "knowledge_base":
        folded = construct_messages_with_knowledge_base_results(messages, outcome.search_results)
    else:
        folded = construct_messages_with_search_results(messages, outcome.search_results)
    folded_provider_messages = await convert_to_provider_messages(
        folded, supports_vision=supports_vision, blob_store=blob_store
    )

    def with_synthetic(update: ResultUpdate) -> None:
        if update.content_parts is not None:
            update = update.model_copy(update={"content_parts": [synthetic, *update.content_parts]})
        on_result_change(update)

    result = await model.chat(
        folded_provider_messages,
        signal=signal,
        on_result_change=with_synthetic,
        on_status_change=on_status_change,
        provider_options=provider_options,
    )
    return result.model_copy(update={"content_parts": [synthetic, *result.content_parts]})

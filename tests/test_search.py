"""Tests for confab/api/search.py -- prompt-engineered fallback search."""

import json

import pytest

from conftest import FakeKnowledgeBase, FakeModel, FakeWebSearch, assistant, make_settings, user
from confab.api.search import (
    NO_ROUTE,
    FallbackSearch,
    PreferenceSearchRouter,
    PromptSearchRouter,
    SearchRoute,
    construct_messages_with_knowledge_base_results,
    construct_messages_with_search_results,
    handle_search_result,
    parse_query,
    parse_route,
    render_transcript,
    router_from_settings,
)
from confab.chat.schemas import KnowledgeBaseRef, ResultUpdate, SearchOutcome, TextPart, ToolCallPart

KB = KnowledgeBaseRef(id=5, name="Manuals")


def _route_reply(action: str, query: str = "") -> str:
    return json.dumps({"action": action, "query": query})


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseQuery:
    def test_plain_query(self):
        assert parse_query("python 3.13 release date") == "python 3.13 release date"

    def test_none_variants(self):
        assert parse_query("NONE") is None
        assert parse_query("none.") is None
        assert parse_query("   ") is None

    def test_first_line_and_quotes(self):
        assert parse_query('"espresso ratio"\nbecause the user asked') == "espresso ratio"


class TestParseRoute:
    def test_valid_json(self):
        assert parse_route(_route_reply("web", "latest news")) == SearchRoute("web", "latest news")

    def test_json_inside_prose(self):
        reply = 'Sure: {"action": "knowledge_base", "query": "warranty"} hope that helps'
        assert parse_route(reply) == SearchRoute("knowledge_base", "warranty")

    @pytest.mark.parametrize("reply", [
        "I think the web",
        "{not json}",
        '["web", "q"]',
        _route_reply("both", "q"),
        _route_reply("web", ""),
        _route_reply("none", "q"),
    ])
    def test_unparseable_means_none(self, reply):
        assert parse_route(reply) == NO_ROUTE


def test_render_transcript_keeps_latest_messages():
    messages = [user(f"q{i}") for i in range(10)]
    transcript = render_transcript(messages, limit=2)
    assert transcript == "User: q8\n\nUser: q9"


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


class TestRouters:
    @pytest.mark.asyncio
    async def test_prompt_router_asks_model(self):
        model = FakeModel(_route_reply("knowledge_base", "pump manual"))
        route = await PromptSearchRouter().route(model, [user("how do I reset the pump?")], KB)
        assert route == SearchRoute("knowledge_base", "pump manual")
        prompt = model.calls[0]["messages"][0]["content"][0]["text"]
        assert "Manuals" in prompt
        assert "reset the pump" in prompt
        assert model.calls[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_prompt_router_strips_thinking(self):
        model = FakeModel("<think>{\"action\": \"web\"}</think>" + _route_reply("none"))
        assert await PromptSearchRouter().route(model, [user("hi")], KB) == NO_ROUTE

    @pytest.mark.asyncio
    async def test_preference_router(self):
        route = await PreferenceSearchRouter("web").route(FakeModel("euro rate"), [user("rate?")], KB)
        assert route == SearchRoute("web", "euro rate")

    @pytest.mark.asyncio
    async def test_preference_router_none(self):
        route = await PreferenceSearchRouter("knowledge_base").route(FakeModel("NONE"), [user("hi")], KB)
        assert route == NO_ROUTE

    def test_router_from_settings(self):
        assert isinstance(router_from_settings(make_settings()), PromptSearchRouter)
        web_first = router_from_settings(make_settings(search_router="web-first"))
        assert isinstance(web_first, PreferenceSearchRouter)
        assert web_first.preferred == "web"


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class TestFallbackSearch:
    @pytest.mark.asyncio
    async def test_combined_runs_single_search(self):
        kb, web = FakeKnowledgeBase(), FakeWebSearch()
        search = FallbackSearch(knowledge_base=kb, web_search=web)
        model = FakeModel(_route_reply("web", "python news"))

        outcome = await search.run(model, [user("what's new?")], knowledge_base=KB, kb_fallback=True, web_fallback=True)

        assert outcome.type == "web"
        assert web.queries == ["python news"]
        assert kb.searches == []
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_combined_none(self):
        kb, web = FakeKnowledgeBase(), FakeWebSearch()
        search = FallbackSearch(knowledge_base=kb, web_search=web)
        outcome = await search.run(
            FakeModel("no idea"), [user("hi")], knowledge_base=KB, kb_fallback=True, web_fallback=True
        )
        assert outcome.type == "none"
        assert kb.searches == [] and web.queries == []

    @pytest.mark.asyncio
    async def test_kb_only(self):
        kb = FakeKnowledgeBase()
        outcome = await FallbackSearch(knowledge_base=kb).run(
            FakeModel("vacation days"), [user("how many vacation days?")],
            knowledge_base=KB, kb_fallback=True, web_fallback=False,
        )
        assert outcome.type == "knowledge_base"
        assert outcome.query == "vacation days"
        assert kb.searches == [(5, "vacation days")]
        assert outcome.search_results == kb.results

    @pytest.mark.asyncio
    async def test_web_only_model_declines(self):
        web = FakeWebSearch()
        outcome = await FallbackSearch(web_search=web).run(
            FakeModel("NONE"), [user("hello!")], knowledge_base=None, kb_fallback=False, web_fallback=True
        )
        assert outcome == SearchOutcome()
        assert web.queries == []

    @pytest.mark.asyncio
    async def test_missing_backend_yields_empty(self):
        outcome = await FallbackSearch().run(
            FakeModel("weather"), [user("weather?")], knowledge_base=None, kb_fallback=False, web_fallback=True
        )
        assert outcome.type == "none"
        assert outcome.search_results == []


# ---------------------------------------------------------------------------
# Folding and handle_search_result
# ---------------------------------------------------------------------------


class TestConstructMessages:
    def test_web_results_folded_into_last_user(self):
        messages = [user("first"), assistant("reply"), user("second")]
        folded = construct_messages_with_search_results(
            messages, [{"title": "T", "link": "https://t.example", "snippet": "S"}]
        )
        assert folded[0].text() == "first"
        assert "https://t.example" in folded[2].content_parts[0].text
        assert folded[2].content_parts[-1].text == "second"
        assert len(messages[2].content_parts) == 1

    def test_kb_results_folded(self):
        folded = construct_messages_with_knowledge_base_results([user("q")], [{"text": "chunk"}, "raw"])
        block = folded[0].content_parts[0].text
        assert "<knowledge_base_results>" in block
        assert '"chunk"' in block and "raw" in block


class TestHandleSearchResult:
    @pytest.mark.asyncio
    async def test_none_makes_plain_call(self):
        model = FakeModel("plain answer")
        provider_messages = [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        updates = []

        result = await handle_search_result(
            SearchOutcome(), model, [user("hi")], provider_messages, on_result_change=updates.append
        )

        assert model.calls[0]["messages"] is provider_messages
        assert model.calls[0]["tools"] is None
        assert result.text() == "plain answer"
        assert not any(isinstance(p, ToolCallPart) for u in updates for p in u.content_parts)

    @pytest.mark.asyncio
    async def test_empty_results_make_plain_call(self):
        model = FakeModel("answer")
        provider_messages = [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        outcome = SearchOutcome(type="web", query="q", search_results=[])
        await handle_search_result(outcome, model, [user("hi")], provider_messages, on_result_change=lambda u: None)
        assert model.calls[0]["messages"] is provider_messages

    @pytest.mark.asyncio
    async def test_synthetic_part_leads_every_update(self):
        model = FakeModel("Python 3.13 is out [1]")
        outcome = SearchOutcome(
            type="web", query="python release",
            search_results=[{"title": "News", "link": "https://python.org", "snippet": "3.13"}],
        )
        updates: list[ResultUpdate] = []

        result = await handle_search_result(outcome, model, [user("news?")], [], on_result_change=updates.append)

        synthetic = updates[0].content_parts[0]
        assert isinstance(synthetic, ToolCallPart)
        assert synthetic.tool_name == "web_search"
        assert synthetic.state == "result"
        assert synthetic.tool_call_id.startswith("web_search_")
        assert synthetic.args == {"query": "python release"}
        for update in updates:
            assert update.content_parts[0] == synthetic
        assert result.content_parts[0] == synthetic
        assert isinstance(result.content_parts[1], TextPart)
        sent = model.calls[0]["messages"][0]["content"][0]["text"]
        assert "https://python.org" in sent

    @pytest.mark.asyncio
    async def test_kb_synthetic_name(self):
        outcome = SearchOutcome(type="knowledge_base", query="q", search_results=[{"text": "x"}])
        updates: list[ResultUpdate] = []
        await handle_search_result(outcome, FakeModel("a"), [user("q")], [], on_result_change=updates.append)
        synthetic = updates[0].content_parts[0]
        assert synthetic.tool_name == "query_knowledge_base"
        assert synthetic.tool_call_id.startswith("knowledge_base_search_")

    @pytest.mark.asyncio
    async def test_synthetic_ids_unique(self):
        outcome = SearchOutcome(type="web", query="q", search_results=[{"title": "t", "link": "l"}])
        ids = []
        for _ in range(2):
            updates: list[ResultUpdate] = []
            await handle_search_result(outcome, FakeModel("a"), [user("q")], [], on_result_change=updates.append)
            ids.append(updates[0].content_parts[0].tool_call_id)
        assert ids[0] != ids[1]

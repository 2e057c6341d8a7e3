import pytest

from app.agents.context import RunContext
from app.agents.researcher import run_tool_loop
from app.config import ResearchConfig
from app.models.state import ResearcherState
from app.services.budget import RunBudget
from app.services.model_gateway import ModelGateway
from app.tools.gateway import (
    ToolGateway,
    format_search_output,
    numbered_source_markers,
    parse_source_markers,
)
from app.tools.search_provider import SearchResult
from fakes import FakeClient, FakeSearch, ScriptedModel, has_tool_results, text_response, tool_response


def make_ctx(model: ScriptedModel, search: FakeSearch, **overrides) -> RunContext:
    config = ResearchConfig(**overrides)
    budget = RunBudget.from_config(config)
    return RunContext(
        thread_id="t-tools",
        config=config,
        models=ModelGateway(FakeClient(model), budget=budget),
        tools=ToolGateway(search, budget=budget),
        budget=budget,
    )


class TestToolGateway:
    @pytest.mark.asyncio
    async def test_web_search_dedupes_across_queries(self):
        search = FakeSearch()
        gateway = ToolGateway(search)

        outcome = await gateway.call("web_search", {"queries": ["alpha", "alpha", "beta"]})

        assert not outcome.is_error
        assert [s["url"] for s in outcome.sources] == ["https://example.com/alpha", "https://example.com/beta"]
        assert "--- SOURCE 1: Alpha Guide ---" in outcome.output
        assert "--- SOURCE 2: Beta Guide ---" in outcome.output

    @pytest.mark.asyncio
    async def test_network_error_becomes_error_outcome(self):
        gateway = ToolGateway(FakeSearch(fail_on=lambda q: True))

        outcome = await gateway.call("web_search", {"queries": ["anything"]})

        assert outcome.is_error
        assert "network unreachable" in outcome.output

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successful_results(self):
        gateway = ToolGateway(FakeSearch(fail_on=lambda q: q == "bad"))

        outcome = await gateway.call("web_search", {"queries": ["bad", "good"]})

        assert not outcome.is_error
        assert [s["url"] for s in outcome.sources] == ["https://example.com/good"]

    @pytest.mark.asyncio
    async def test_unknown_tool_and_empty_queries(self):
        gateway = ToolGateway(FakeSearch())
        assert (await gateway.call("browse", {})).is_error
        assert (await gateway.call("web_search", {"queries": []})).is_error

    @pytest.mark.asyncio
    async def test_search_budget_exhaustion_is_reported_not_raised(self):
        gateway = ToolGateway(FakeSearch(), budget=RunBudget(max_tool_calls_per_run={"web_search": 1}))

        outcome = await gateway.call("web_search", {"queries": ["one", "two"]})

        assert outcome.is_error
        assert "Search limit reached" in outcome.output

    @pytest.mark.asyncio
    async def test_numbering_continues_across_calls(self):
        gateway = ToolGateway(FakeSearch()).numbered_from(4)

        first = await gateway.call("web_search", {"queries": ["one"]})
        second = await gateway.call("web_search", {"queries": ["two"]})

        assert numbered_source_markers(first.output)[0][0] == 4
        assert numbered_source_markers(second.output)[0][0] == 5

    @pytest.mark.asyncio
    async def test_think_tool_has_no_side_effects(self):
        search = FakeSearch()
        outcome = await ToolGateway(search).call("think_tool", {"reflection": "need pricing"})
        assert outcome.output == "Reflection recorded: need pricing"
        assert search.queries == []


def test_parse_source_markers_reads_formatted_output():
    output = format_search_output(
        [
            SearchResult(title="First", url="https://a.com/1", content="x", score=0.0),
            SearchResult(title="Second", url="https://b.com/2", content="y", score=0.0),
        ]
    )
    assert parse_source_markers(output) == [
        {"url": "https://a.com/1", "title": "First"},
        {"url": "https://b.com/2", "title": "Second"},
    ]


def test_empty_results_message():
    assert format_search_output([]).startswith("No valid search results found")


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_network_error_reaches_next_model_turn(self):
        model = ScriptedModel()
        seen: list[list[dict]] = []

        def researcher(system, messages, tools):
            seen.append(list(messages))
            if not has_tool_results(messages):
                return tool_response(("call-1", "web_search", {"queries": ["vendor x"]}))
            return text_response("Could not search; answering from memory.")

        model.on("You are a focused researcher", researcher)
        ctx = make_ctx(model, FakeSearch(fail_on=lambda q: True))
        state = ResearcherState(research_topic="vendor x")
        state.researcher_messages.append({"role": "user", "content": "vendor x"})

        await run_tool_loop(ctx, state, system="You are a focused researcher", max_iterations=5, caller="researcher")

        tool_message = seen[1][-1]
        result = tool_message["content"][0]
        assert result["type"] == "tool_result"
        assert result["tool_use_id"] == "call-1"
        assert result["is_error"] is True
        assert "network unreachable" in result["content"]
        assert state.researcher_messages[-1]["role"] == "assistant"
        assert state.raw_notes == []

    @pytest.mark.asyncio
    async def test_loop_stops_at_iteration_limit(self):
        model = ScriptedModel()
        model.on(
            "You are a focused researcher",
            lambda system, messages, tools: tool_response(("c", "web_search", {"queries": [f"q{len(messages)}"]})),
        )
        ctx = make_ctx(model, FakeSearch())
        state = ResearcherState(research_topic="topic")
        state.researcher_messages.append({"role": "user", "content": "topic"})

        await run_tool_loop(ctx, state, system="You are a focused researcher", max_iterations=2, caller="researcher")

        assert state.tool_call_iterations == 2
        assert len(state.raw_notes) == 2

    @pytest.mark.asyncio
    async def test_loop_stops_when_model_budget_runs_out(self):
        model = ScriptedModel()
        model.on(
            "You are a focused researcher",
            lambda system, messages, tools: tool_response(("c", "think_tool", {"reflection": "hmm"})),
        )
        ctx = make_ctx(model, FakeSearch(), max_model_calls_per_run=2)
        state = ResearcherState(research_topic="topic")
        state.researcher_messages.append({"role": "user", "content": "topic"})

        await run_tool_loop(ctx, state, system="You are a focused researcher", max_iterations=10, caller="researcher")

        assert len(model.calls) == 2
        assert state.tool_call_iterations == 2

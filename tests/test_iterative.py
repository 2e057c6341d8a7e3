import pytest

from app.agents.context import RunContext
from app.agents.iterative import (
    MAX_QUERIES,
    ROUND1_FALLBACK_GAPS,
    IterativeResearcher,
    extract_queries_from_text,
    iterative_research,
)
from app.config import ResearchConfig
from app.models.state import Stage, WorkflowState
from app.services.budget import RunBudget
from app.services.event_channel import EventChannel
from app.services.model_gateway import ModelGateway
from app.tools.gateway import ToolGateway
from fakes import FakeClient, FakeSearch, ScriptedModel, text_response


def make_ctx(model: ScriptedModel, search: FakeSearch, **overrides) -> RunContext:
    config = ResearchConfig(iterative_search_pause_ms=0, **overrides)
    budget = RunBudget.from_config(config)
    return RunContext(
        thread_id="t-iter",
        config=config,
        models=ModelGateway(FakeClient(model), budget=budget),
        tools=ToolGateway(search, budget=budget),
        budget=budget,
        channel=EventChannel(),
    )


class TestExtractQueries:
    def test_plain_json_array(self):
        assert extract_queries_from_text('["a", "b"]') == ["a", "b"]

    def test_fenced_json_with_prose(self):
        text = 'Here you go:\n```json\n["solar costs 2024", "- wind costs"]\n```'
        assert extract_queries_from_text(text) == ["solar costs 2024", "wind costs"]

    def test_line_fallback_strips_bullets(self):
        text = "- first query\n* second query\n\n\"third query"
        assert extract_queries_from_text(text) == ["first query", "second query", "third query"]

    def test_line_fallback_is_capped(self):
        text = "\n".join(f"query {i}" for i in range(10))
        assert len(extract_queries_from_text(text)) == 5

    def test_empty_text(self):
        assert extract_queries_from_text("") == []


class TestIterativeResearcher:
    @pytest.mark.asyncio
    async def test_steps_run_in_fixed_order(self):
        search = FakeSearch()
        engine = IterativeResearcher(make_ctx(ScriptedModel(), search))

        update = await engine.run("battery storage", "brief")

        assert engine.steps == [
            "round1_reason",
            "round1_search",
            "round2_reason",
            "round2_search",
            "round3_reason",
            "round3_search",
            "synthesize",
        ]
        assert [f.round for f in update["findings"]] == [1, 2, 3]
        assert search.queries == [
            "round1 query a",
            "round1 query b",
            "round2 query a",
            "round2 query b",
            "round3 query a",
            "round3 query b",
        ]
        assert update["findings"][1].gaps == ["pricing history"]
        assert update["findings"][1].reasoning == "Pricing trends were thin."
        assert len(update["sources"]) == 6
        assert update["notes"][0].startswith("Round 1: Broad orientation")

    @pytest.mark.asyncio
    async def test_query_count_is_capped_per_round(self):
        model = ScriptedModel()
        model.on(
            "query generator",
            lambda system, messages, tools: text_response(str([f"q{i}" for i in range(8)]).replace("'", '"')),
        )
        search = FakeSearch()
        engine = IterativeResearcher(make_ctx(model, search))

        update = await engine.run("goal", "brief")

        assert [len(f.queries) for f in update["findings"]] == [MAX_QUERIES[1], MAX_QUERIES[2], MAX_QUERIES[3]]

    @pytest.mark.asyncio
    async def test_fallbacks_when_model_output_is_unusable(self):
        model = ScriptedModel()
        model.on("query generator", lambda system, messages, tools: text_response(""))
        model.on("Gap analysis after Round", lambda system, messages, tools: text_response("no json"))
        search = FakeSearch()
        engine = IterativeResearcher(make_ctx(model, search, max_structured_output_retries=1))

        update = await engine.run("heat pumps", "brief")

        round1, round2, _ = update["findings"]
        assert round1.queries == ["heat pumps overview", "heat pumps recent developments", "heat pumps key facts"]
        assert round2.gaps == ROUND1_FALLBACK_GAPS
        assert round2.reasoning == "Fallback gap identification"
        assert round2.queries == [f"heat pumps {gap}" for gap in ROUND1_FALLBACK_GAPS]

    @pytest.mark.asyncio
    async def test_failed_search_does_not_stop_the_round(self):
        search = FakeSearch(fail_on=lambda q: q.endswith(" a"))
        engine = IterativeResearcher(make_ctx(ScriptedModel(), search))

        update = await engine.run("goal", "brief")

        assert [len(f.results) for f in update["findings"]] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_progress_events_carry_round_numbers(self):
        ctx = make_ctx(ScriptedModel(), FakeSearch())
        await IterativeResearcher(ctx).run("goal", "brief")

        events = ctx.channel.drain()
        custom = [e.data for e in events if e.event.value == "custom"]
        assert {d["round"] for d in custom} == {1, 2, 3, 4}
        assert custom[-1]["type"] == "complete"
        query_events = [e.data for e in events if e.event.value == "queries"]
        assert [d["round"] for d in query_events] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_search_budget_ends_round_early(self):
        search = FakeSearch()
        engine = IterativeResearcher(make_ctx(ScriptedModel(), search, max_tool_calls_per_run={"web_search": 3}))

        update = await engine.run("goal", "brief")

        assert len(search.queries) == 3
        assert [len(f.results) for f in update["findings"]] == [2, 1, 0]


@pytest.mark.asyncio
async def test_stage_hands_over_to_report():
    ctx = make_ctx(ScriptedModel(), FakeSearch())
    result = await iterative_research(WorkflowState(goal="goal", research_brief="brief"), ctx)
    assert result.goto == Stage.REPORT
    assert len(result.update["queries"]) == 6

import pytest

from app.agents.context import RunContext
from app.agents.report import REPORT_ERROR_PREFIX, extract_claims, finalize_citations, write_report
from app.config import ResearchConfig
from app.models.state import Source, Stage, WorkflowState
from app.services.budget import RunBudget
from app.services.event_channel import EventChannel
from app.services.model_gateway import ModelGateway
from app.tools.gateway import ToolGateway
from fakes import FakeClient, FakeSearch, ScriptedModel, text_response

SOURCES = [
    Source(url="https://a.com", title="A"),
    Source(url="https://b.com", title="B"),
    Source(url="https://c.com", title="C"),
]


def make_ctx(model: ScriptedModel, **overrides) -> RunContext:
    config = ResearchConfig(**overrides)
    budget = RunBudget.from_config(config)
    return RunContext(
        thread_id="t-report",
        config=config,
        models=ModelGateway(FakeClient(model), budget=budget),
        tools=ToolGateway(FakeSearch(), budget=budget),
        budget=budget,
        channel=EventChannel(),
    )


class TestFinalizeCitations:
    def test_renumbers_by_first_appearance(self):
        body, cited, issues = finalize_citations("C first [3]. Then A [1]. C again [3].", SOURCES)

        assert body.startswith("C first [1]. Then A [2]. C again [1].")
        assert [s.url for s in cited] == ["https://c.com", "https://a.com"]
        assert body.endswith("### Sources\n\n[1] C: https://c.com\n[2] A: https://a.com")
        assert issues == []

    def test_unknown_numbers_removed_and_reported(self):
        body, cited, issues = finalize_citations("Claim [9]. Real [2].", SOURCES)

        assert body.startswith("Claim. Real [1].")
        assert [s.url for s in cited] == ["https://b.com"]
        assert issues == ["Citation [9] does not match any collected source and was removed"]

    def test_grouped_citations_are_split(self):
        body, cited, _ = finalize_citations("Both agree [2, 1].", SOURCES)
        assert body.startswith("Both agree [1][2].")
        assert len(cited) == 2

    def test_model_sources_section_is_replaced(self):
        text = "Fact [1].\n\n## References\n\n1. made up: https://fake.example"
        body, _, _ = finalize_citations(text, SOURCES)
        assert "fake.example" not in body
        assert body.count("### Sources") == 1

    def test_bracketed_year_is_not_a_citation(self):
        body, cited, issues = finalize_citations("Prices rose in [2024] after the merger [2].", SOURCES)

        assert body.startswith("Prices rose in [2024] after the merger [1].")
        assert [s.url for s in cited] == ["https://b.com"]
        assert issues == []

    def test_no_citations_means_no_sources_section(self):
        body, cited, issues = finalize_citations("Nothing cited here.", SOURCES)
        assert body == "Nothing cited here."
        assert cited == [] and issues == []


def test_extract_claims_confidence_levels():
    report = (
        "# Title\n\n"
        "- Vendor X is cheaper [1][2].\n"
        "Vendor Y may add support later [2]. Uncited sentence.\n\n"
        "### Sources\n\n[1] A: https://a.com\n[2] B: https://b.com"
    )
    claims = extract_claims(report)

    assert [c.text for c in claims] == ["Vendor X is cheaper.", "Vendor Y may add support later."]
    assert claims[0].citations == [1, 2]
    assert claims[0].confidence == "high"
    assert claims[1].confidence == "low"
    assert claims[1].id == "claim-2"


def test_extract_claims_ignores_numbers_outside_the_source_list():
    report = "Revenue doubled in [2024] [1].\n\n### Sources\n\n[1] A: https://a.com"

    claims = extract_claims(report)

    assert claims[0].citations == [1]
    assert claims[0].text == "Revenue doubled in [2024]."


class TestWriteReport:
    @pytest.mark.asyncio
    async def test_report_clears_notes_and_adds_claims(self):
        ctx = make_ctx(ScriptedModel())
        state = WorkflowState(goal="g", notes=["n1"], sources=SOURCES[:2])

        result = await write_report(state, ctx)

        assert result.goto == Stage.TERMINAL
        assert result.update["notes"].value == []
        assert result.update["supervisor_messages"].value == []
        assert "### Sources" in result.update["final_report"]
        assert len(result.update["claims"]) == 2

    @pytest.mark.asyncio
    async def test_model_failure_writes_error_report(self):
        model = ScriptedModel()

        def broken(system, messages, tools):
            raise RuntimeError("model offline")

        model.on("You are writing the final research report", broken)
        ctx = make_ctx(model)

        result = await write_report(WorkflowState(goal="g", notes=["n1"]), ctx)

        assert result.update["final_report"].startswith(f"{REPORT_ERROR_PREFIX}: ")
        assert result.update["notes"].value == []
        assert result.goto == Stage.TERMINAL

    @pytest.mark.asyncio
    async def test_streamed_report_emits_tokens(self):
        model = ScriptedModel()
        model.on(
            "You are writing the final research report",
            lambda system, messages, tools: text_response("Short answer [1]."),
        )
        ctx = make_ctx(model, stream_report_tokens=True)

        result = await write_report(WorkflowState(goal="g", sources=SOURCES[:1]), ctx)

        tokens = [e.data["token"] for e in ctx.channel.drain() if e.event.value == "llm_token"]
        assert "".join(tokens) == "Short answer [1]."
        assert result.update["final_report"].startswith("Short answer [1].")

    @pytest.mark.asyncio
    async def test_report_runs_even_when_model_budget_is_spent(self):
        ctx = make_ctx(ScriptedModel(), max_model_calls_per_run=1)
        ctx.budget.charge_model()

        result = await write_report(WorkflowState(goal="g", sources=SOURCES[:2]), ctx)

        assert not result.update["final_report"].startswith(REPORT_ERROR_PREFIX)

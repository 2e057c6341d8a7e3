import pytest

from app.config import ResearchConfig
from app.models.state import BudgetExceededError
from app.services.budget import RunBudget


def test_run_ceiling_refuses_extra_model_calls():
    budget = RunBudget(max_model_calls_per_run=2)
    budget.charge_model()
    budget.charge_model()
    with pytest.raises(BudgetExceededError) as exc:
        budget.charge_model()
    assert exc.value.resource == "model_calls_per_run"


def test_essential_calls_are_counted_but_never_refused():
    budget = RunBudget(max_model_calls_per_run=1)
    budget.charge_model()
    budget.charge_model(essential=True)
    assert budget.model_calls == 2


def test_thread_ceiling_counts_prior_runs():
    config = ResearchConfig(max_model_calls_per_run=0, max_model_calls_per_thread=5)
    budget = RunBudget.from_config(config, {"model_calls": 4})
    budget.charge_model()
    with pytest.raises(BudgetExceededError) as exc:
        budget.charge_model()
    assert exc.value.resource == "model_calls_per_thread"


def test_zero_limit_disables_tool_ceiling():
    budget = RunBudget(max_tool_calls_per_run={"web_search": 0})
    for _ in range(100):
        budget.charge_tool("web_search")
    assert budget.tool_calls["web_search"] == 100


def test_tool_ceiling_and_usage_totals():
    budget = RunBudget(max_tool_calls_per_run={"web_search": 1}, prior_model_calls=3, prior_tool_calls={"web_search": 2})
    budget.charge_tool("web_search")
    with pytest.raises(BudgetExceededError):
        budget.charge_tool("web_search")
    budget.charge_model()
    assert budget.usage() == {"model_calls": 4, "tool_calls": {"web_search": 3}}

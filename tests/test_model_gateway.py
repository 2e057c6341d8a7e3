import pytest

from app.models.state import BudgetExceededError, ModelInvocationError
from app.services.budget import RunBudget
from app.services.model_gateway import (
    ModelGateway,
    extract_json_object,
    split_system,
    tool_calls_of,
)
from fakes import FakeStream, text_response, tool_response


class FlakyMessages:
    """Fails for the listed models, answers for the rest."""

    def __init__(self, failing: set[str], text: str = '{"ok": true}'):
        self.failing = failing
        self.text = text
        self.models: list[str] = []
        self.kwargs: list[dict] = []

    async def create(self, *, model, **kwargs):
        self.models.append(model)
        self.kwargs.append(kwargs)
        if model in self.failing:
            raise RuntimeError(f"{model} unavailable")
        return text_response(self.text)

    def stream(self, *, model, **kwargs):
        self.models.append(model)
        if model in self.failing:
            raise RuntimeError(f"{model} unavailable")
        return FakeStream(text_response(self.text))


class FlakyClient:
    def __init__(self, messages):
        self.messages = messages


@pytest.mark.asyncio
async def test_falls_back_to_next_model_in_order():
    messages = FlakyMessages({"primary"})
    gateway = ModelGateway(FlakyClient(messages), fallback_models=["backup", "primary"])

    response = await gateway.invoke(model="primary", max_tokens=100, messages=[{"role": "user", "content": "hi"}])

    assert response.content[0].text == '{"ok": true}'
    assert messages.models == ["primary", "backup"]


@pytest.mark.asyncio
async def test_all_models_failing_raises_invocation_error():
    messages = FlakyMessages({"primary", "backup"})
    gateway = ModelGateway(FlakyClient(messages), fallback_models=["backup"])

    with pytest.raises(ModelInvocationError):
        await gateway.invoke(model="primary", max_tokens=100, messages=[{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_leading_system_message_is_sent_as_system():
    messages = FlakyMessages(set())
    gateway = ModelGateway(FlakyClient(messages))

    await gateway.invoke(
        model="m",
        max_tokens=10,
        messages=[{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
    )

    assert messages.kwargs[0]["system"] == "be brief"
    assert messages.kwargs[0]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_invoke_json_retries_unparseable_output():
    class Sequenced(FlakyMessages):
        async def create(self, *, model, **kwargs):
            self.models.append(model)
            if len(self.models) == 1:
                return text_response("not json at all")
            return text_response('```json\n{"research_brief": "b"}\n```')

    gateway = ModelGateway(FlakyClient(Sequenced(set())))
    payload = await gateway.invoke_json(model="m", max_tokens=10, messages=[{"role": "user", "content": "x"}], retries=2)
    assert payload == {"research_brief": "b"}


@pytest.mark.asyncio
async def test_invoke_json_gives_up_after_retries():
    gateway = ModelGateway(FlakyClient(FlakyMessages(set(), text="still not json")))
    payload = await gateway.invoke_json(model="m", max_tokens=10, messages=[{"role": "user", "content": "x"}], retries=3)
    assert payload is None
    assert gateway.budget.model_calls == 3


@pytest.mark.asyncio
async def test_budget_is_charged_before_the_call():
    messages = FlakyMessages(set())
    gateway = ModelGateway(FlakyClient(messages), budget=RunBudget(max_model_calls_per_run=1))
    await gateway.invoke(model="m", max_tokens=10, messages=[])
    with pytest.raises(BudgetExceededError):
        await gateway.invoke(model="m", max_tokens=10, messages=[])
    assert len(messages.models) == 1


@pytest.mark.asyncio
async def test_stream_falls_back_before_first_token():
    messages = FlakyMessages({"primary"}, text="Hello streaming world")
    gateway = ModelGateway(FlakyClient(messages), fallback_models=["backup"])
    tokens: list[str] = []

    text = await gateway.stream_text(model="primary", max_tokens=10, messages=[], on_token=tokens.append)

    assert text == "Hello streaming world"
    assert "".join(tokens).strip() == "Hello streaming world"
    assert messages.models == ["primary", "backup"]


def test_extract_json_object_rejects_non_objects():
    assert extract_json_object('Sure: {"a": 1} done') == {"a": 1}
    with pytest.raises(ValueError):
        extract_json_object("[1, 2]")


def test_tool_calls_of_reads_responses_and_stored_messages():
    response = tool_response(("c1", "web_search", {"queries": ["q"]}), text="thinking")
    calls = tool_calls_of(response)
    assert [(c.id, c.name) for c in calls] == [("c1", "web_search")]

    stored = {"role": "assistant", "content": [{"type": "tool_use", "id": "c2", "name": "ResearchComplete", "input": {}}]}
    assert tool_calls_of(stored)[0].name == "ResearchComplete"
    assert tool_calls_of({"role": "assistant", "content": "plain"}) == []


def test_split_system_without_system_message():
    assert split_system([{"role": "user", "content": "x"}]) == ("", [{"role": "user", "content": "x"}])

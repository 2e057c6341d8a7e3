import pytest

from app.config import Settings
from app.services.checkpointer import MemoryCheckpointer
from app.services.engine import ResearchEngine
from fakes import FakeClient, FakeSearch, ScriptedModel


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        openrouter_api_key="test-key",
        fallback_models="",
        iterative_search_pause_ms=0,
        stream_keepalive_seconds=5.0,
        stream_timeout_seconds=30.0,
        database_url="",
    )


@pytest.fixture
def scripted_model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def fake_search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def engine(test_settings, scripted_model, fake_search) -> ResearchEngine:
    return ResearchEngine(
        MemoryCheckpointer(),
        client=FakeClient(scripted_model),
        search_fn=fake_search,
        source=test_settings,
    )

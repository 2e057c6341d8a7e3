"""Tests for the OpenRouter model client."""
import sys
import types
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.llm_client import (
    CompletionStream,
    OpenRouterMessages,
    chat_messages,
    chat_tools,
    from_chat_completion,
    get_client,
    parse_tool_arguments,
    sampling_options,
)
from app.tools.gateway import CONDUCT_RESEARCH_TOOL, WEB_SEARCH_TOOL


class TestGetClient:
    def test_get_client_uses_openrouter(self):
        with patch("app.llm_client.settings") as mock_settings:
            mock_settings.openrouter_api_key = "sk-or-valid-key"
            mock_settings.openrouter_base_url = "https://openrouter.ai/api/v1"
            mock_settings.openrouter_timeout_seconds = 60.0
            mock_settings.openrouter_app_title = "researchflow"

            openai_module = types.ModuleType("openai")
            mock_openai = MagicMock()
            openai_module.AsyncOpenAI = mock_openai

            with patch.dict(sys.modules, {"openai": openai_module}):
                get_client()

            mock_openai.assert_called_once_with(
                api_key="sk-or-valid-key",
                base_url="https://openrouter.ai/api/v1",
                timeout=60.0,
                default_headers={"X-Title": "researchflow"},
            )

    def test_get_client_requires_api_key(self):
        with patch("app.llm_client.settings") as mock_settings:
            mock_settings.openrouter_api_key = ""

            with pytest.raises(RuntimeError):
                get_client()


class TestChatMapping:
    def test_chat_messages_maps_tool_results(self):
        messages = [
            {"role": "user", "content": "Compare vendor X and Y"},
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "Delegating."},
                    {"type": "tool_use", "id": "call_1", "name": "ConductResearch", "input": {"research_topic": "X"}},
                ],
            },
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "call_1", "content": "findings"},
                    {"type": "tool_result", "tool_use_id": "call_2", "content": "failed", "is_error": True},
                    {"type": "text", "text": "Wrap up now."},
                ],
            },
        ]

        mapped = chat_messages("sys", messages)

        assert mapped[0] == {"role": "system", "content": "sys"}
        assert mapped[2]["content"] == "Delegating."
        assert mapped[2]["tool_calls"][0]["function"] == {
            "name": "ConductResearch",
            "arguments": '{"research_topic": "X"}',
        }
        assert mapped[3] == {"role": "tool", "tool_call_id": "call_1", "content": "findings"}
        assert mapped[4] == {"role": "tool", "tool_call_id": "call_2", "content": "ERROR: failed"}
        assert mapped[5] == {"role": "user", "content": "Wrap up now."}

    def test_empty_system_prompt_is_omitted(self):
        assert chat_messages("", [{"role": "user", "content": "hi"}]) == [{"role": "user", "content": "hi"}]

    def test_chat_tools_uses_input_schema(self):
        tools = chat_tools([WEB_SEARCH_TOOL, CONDUCT_RESEARCH_TOOL])

        assert tools[0]["function"]["name"] == "web_search"
        assert tools[0]["function"]["parameters"]["required"] == ["queries"]
        assert tools[1]["function"]["parameters"]["properties"]["research_topic"]["type"] == "string"

    def test_parse_tool_arguments_tolerates_bad_json(self):
        assert parse_tool_arguments('{"queries":["a"]}') == {"queries": ["a"]}
        assert parse_tool_arguments("{invalid") == {}
        assert parse_tool_arguments('["not", "an", "object"]') == {}
        assert parse_tool_arguments(None) == {}

    def test_from_chat_completion_maps_text_tool_calls_and_usage(self):
        response = SimpleNamespace(
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(
                        content="Searching.",
                        tool_calls=[
                            SimpleNamespace(
                                id="call_1",
                                function=SimpleNamespace(name="web_search", arguments='{"queries":["a"]}'),
                            ),
                        ],
                    )
                )
            ],
            usage=SimpleNamespace(prompt_tokens=11, completion_tokens=7),
        )

        mapped = from_chat_completion(response)

        assert mapped.usage.input_tokens == 11
        assert mapped.usage.output_tokens == 7
        assert mapped.content[0].text == "Searching."
        assert mapped.content[1].type == "tool_use"
        assert mapped.content[1].input == {"queries": ["a"]}

    def test_sampling_options_by_model_family(self):
        assert sampling_options("openai/gpt-5") == {"temperature": 1}
        assert sampling_options("openai/o3-mini") == {"temperature": 1}
        assert sampling_options("google/gemini-2.5-pro") == {"temperature": 0}


class TestOpenRouterMessages:
    @pytest.mark.asyncio
    async def test_create_sends_tools_with_auto_choice(self):
        openai_client = MagicMock()
        openai_client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="ok", tool_calls=None))],
                usage=None,
            )
        )

        result = await OpenRouterMessages(openai_client).create(
            model="openai/gpt-5",
            max_tokens=100,
            system="",
            messages=[{"role": "user", "content": "hi"}],
            tools=[WEB_SEARCH_TOOL],
        )

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["temperature"] == 1
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert result.content[0].text == "ok"
        assert result.usage.input_tokens == 0


class TestCompletionStream:
    @pytest.mark.asyncio
    async def test_stream_yields_text_and_maps_usage(self):
        async def chunk_iter():
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="Vendor X "))],
                usage=None,
            )
            yield SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=12, completion_tokens=9))
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content="is cheaper"))],
                usage=None,
            )

        class FakeSDKStream:
            def __aiter__(self):
                return chunk_iter()

            async def close(self):
                return None

        async def fake_stream_coro():
            return FakeSDKStream()

        async with CompletionStream(fake_stream_coro()) as stream:
            chunks = [text async for text in stream.text_stream]
            final_msg = await stream.get_final_message()

        assert "".join(chunks) == "Vendor X is cheaper"
        assert final_msg.content[0].text == "Vendor X is cheaper"
        assert final_msg.usage.input_tokens == 12
        assert final_msg.usage.output_tokens == 9

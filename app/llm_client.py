"""OpenRouter chat-completions client speaking the workflow's block-message shape.

Stages build Anthropic-style turns (text, tool_use and tool_result blocks);
this module maps them onto OpenAI chat messages and maps completions back,
so the rest of the code never sees the wire format.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator

from app.config import settings

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
# Model families that reject temperature=0 and only accept the default.
DEFAULT_TEMPERATURE_FAMILIES = ("gpt-5", "openai/o1", "openai/o3", "openai/o4")


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TextBlock:
    type: str
    text: str


@dataclass
class ToolUseBlock:
    type: str
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class MessageResponse:
    content: list[Any]
    usage: Usage


def block_field(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


def sampling_options(model: str) -> dict[str, Any]:
    """Per-family request options, added explicitly to each request."""
    lowered = (model or "").lower()
    if any(family in lowered for family in DEFAULT_TEMPERATURE_FAMILIES):
        return {"temperature": 1}
    return {"temperature": 0}


def _tool_call(block: Any) -> dict[str, Any]:
    return {
        "id": block_field(block, "id"),
        "type": "function",
        "function": {
            "name": block_field(block, "name"),
            "arguments": json.dumps(block_field(block, "input") or {}),
        },
    }


def _tool_message(block: Any) -> dict[str, Any]:
    content = str(block_field(block, "content") or "")
    if block_field(block, "is_error"):
        content = f"ERROR: {content}"
    return {"role": "tool", "tool_call_id": block_field(block, "tool_use_id") or "", "content": content}


def _chat_turns(role: str, content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"role": role, "content": content}]
    if not isinstance(content, list):
        return [{"role": role, "content": str(content)}]

    texts = [block_field(b, "text") for b in content if block_field(b, "type") == "text" and block_field(b, "text")]
    if role == "assistant":
        turn: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
        calls = [_tool_call(b) for b in content if block_field(b, "type") == "tool_use"]
        if calls:
            turn["tool_calls"] = calls
        return [turn]

    # Tool results answer the previous assistant turn, so they go before any loose text.
    turns = [_tool_message(b) for b in content if block_field(b, "type") == "tool_result"]
    if texts:
        turns.append({"role": role, "content": "\n".join(texts)})
    return turns


def chat_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    chat: list[dict[str, Any]] = [{"role": "system", "content": system}] if system else []
    for message in messages:
        chat.extend(_chat_turns(message["role"], message["content"]))
    return chat


def chat_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for t in tools
    ]


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def usage_of(payload: Any) -> Usage:
    usage = getattr(payload, "usage", None)
    return Usage(
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )


def from_chat_completion(response: Any) -> MessageResponse:
    message = response.choices[0].message
    content: list[Any] = []
    if getattr(message, "content", None):
        content.append(TextBlock(type="text", text=message.content))
    for call in getattr(message, "tool_calls", None) or []:
        content.append(
            ToolUseBlock(
                type="tool_use",
                id=call.id,
                name=call.function.name,
                input=parse_tool_arguments(getattr(call.function, "arguments", None)),
            )
        )
    return MessageResponse(content=content, usage=usage_of(response))


class CompletionStream:
    """Async context manager over a streamed completion, yielding text deltas."""

    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._usage = Usage()
        self._text: list[str] = []
        self._finished = False

    async def __aenter__(self) -> "CompletionStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    async def _deltas(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            if getattr(chunk, "usage", None):
                self._usage = usage_of(chunk)
            choices = getattr(chunk, "choices", None) or []
            delta = getattr(choices[0], "delta", None) if choices else None
            text = getattr(delta, "content", None) if delta else None
            if text:
                self._text.append(text)
                yield text
        self._finished = True

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._deltas()

    async def get_final_message(self) -> MessageResponse:
        if not self._finished:
            async for _ in self.text_stream:
                pass
        text = "".join(self._text)
        return MessageResponse(content=[TextBlock(type="text", text=text)] if text else [], usage=self._usage)


class OpenRouterMessages:
    """`create` and `stream` over chat completions."""

    def __init__(self, openai_client: Any):
        self._client = openai_client

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> MessageResponse:
        request: dict[str, Any] = {
            "model": model,
            "messages": chat_messages(system, messages),
            "max_tokens": max_tokens,
            **sampling_options(model),
        }
        if tools:
            request["tools"] = chat_tools(tools)
            request["tool_choice"] = "auto"
        return from_chat_completion(await self._client.chat.completions.create(**request))

    def stream(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
    ) -> CompletionStream:
        return CompletionStream(
            self._client.chat.completions.create(
                model=model,
                messages=chat_messages(system, messages),
                max_tokens=max_tokens,
                stream=True,
                stream_options={"include_usage": True},
                **sampling_options(model),
            )
        )


class OpenRouterClient:
    def __init__(self, openai_client: Any):
        self.messages = OpenRouterMessages(openai_client)


def get_client() -> OpenRouterClient:
    """Build an OpenRouter client via the OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    if not settings.openrouter_api_key:
        raise RuntimeError("OPENROUTER_API_KEY is not configured")
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url.strip() or DEFAULT_BASE_URL,
        timeout=settings.openrouter_timeout_seconds,
        default_headers={"X-Title": settings.openrouter_app_title},
    )
    return OpenRouterClient(openai_client)


_client: OpenRouterClient | None = None


def client() -> OpenRouterClient:
    """Get or create the shared LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client

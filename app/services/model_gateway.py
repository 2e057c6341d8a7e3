"""Model invocation seam: fallback ordering, budget charging and call logging."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.llm_client import MessageResponse, client as llm_client
from app.models.state import ModelInvocationError
from app.services import logger as log_service
from app.services.budget import RunBudget


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]


def _field(block: Any, name: str) -> Any:
    if isinstance(block, dict):
        return block.get(name)
    return getattr(block, name, None)


def extract_response_text(response: Any) -> str:
    blocks = getattr(response, "content", None) or []
    text_parts: list[str] = []
    for block in blocks:
        btype = _field(block, "type")
        btext = _field(block, "text")
        is_text_like_type = btype in (None, "text") or not isinstance(btype, str)
        if is_text_like_type and isinstance(btext, str) and btext.strip():
            text_parts.append(btext)
    return "\n".join(text_parts).strip()


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def tool_calls_of(content: Any) -> list[ToolCall]:
    """Tool-use blocks of a response or of a stored assistant message."""
    if isinstance(content, dict):
        content = content.get("content")
    elif hasattr(content, "content"):
        content = content.content
    if not isinstance(content, list):
        return []
    calls: list[ToolCall] = []
    for block in content:
        if _field(block, "type") != "tool_use":
            continue
        tool_input = _field(block, "input")
        calls.append(
            ToolCall(
                id=str(_field(block, "id") or ""),
                name=str(_field(block, "name") or ""),
                input=tool_input if isinstance(tool_input, dict) else {},
            )
        )
    return calls


def assistant_message(response: MessageResponse) -> dict[str, Any]:
    """Persistable assistant turn built from a model response."""
    blocks: list[dict[str, Any]] = []
    for block in response.content:
        btype = _field(block, "type")
        if btype == "tool_use":
            blocks.append(
                {
                    "type": "tool_use",
                    "id": _field(block, "id"),
                    "name": _field(block, "name"),
                    "input": _field(block, "input") or {},
                }
            )
        elif isinstance(_field(block, "text"), str):
            blocks.append({"type": "text", "text": _field(block, "text")})
    return {"role": "assistant", "content": blocks}


def tool_result(tool_use_id: str, content: str, *, is_error: bool = False) -> dict[str, Any]:
    result: dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        result["is_error"] = True
    return result


def message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if _field(block, "type") == "text" and _field(block, "text"):
                parts.append(_field(block, "text"))
            elif _field(block, "type") == "tool_result":
                parts.append(str(_field(block, "content") or ""))
        return "\n".join(parts)
    return ""


def get_buffer_string(messages: list[dict[str, Any]]) -> str:
    return "\n".join(f"{m.get('role', 'unknown')}: {message_text(m)}" for m in messages)


def split_system(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    if messages and messages[0].get("role") == "system":
        return str(messages[0].get("content") or ""), list(messages[1:])
    return "", list(messages)


def with_model_fallback(
    create: Callable[..., Awaitable[MessageResponse]],
    models: list[str],
    *,
    caller: str,
    thread_id: str | None = None,
) -> Callable[..., Awaitable[MessageResponse]]:
    """Wrap a `messages.create` callable so it retries against each model in order."""

    async def invoke(**kwargs: Any) -> MessageResponse:
        last_error: Exception | None = None
        for attempt, model in enumerate(models):
            t0 = time.monotonic()
            try:
                response = await create(model=model, **kwargs)
            except Exception as e:
                elapsed_ms = int((time.monotonic() - t0) * 1000)
                log_service.log_llm_call(
                    model=model,
                    caller=caller,
                    duration_ms=elapsed_ms,
                    status="error",
                    error=str(e),
                    thread_id=thread_id,
                )
                if attempt + 1 < len(models):
                    log_service.log_event(
                        event_type="model_fallback",
                        message=f"Falling back from {model} to {models[attempt + 1]}",
                        caller=caller,
                        thread_id=thread_id,
                        error=str(e),
                    )
                last_error = e
                continue

            elapsed_ms = int((time.monotonic() - t0) * 1000)
            usage = getattr(response, "usage", None)
            log_service.log_llm_call(
                model=model,
                caller=caller,
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
                duration_ms=elapsed_ms,
                thread_id=thread_id,
            )
            return response
        raise ModelInvocationError(f"All models failed for {caller}: {last_error}") from last_error

    return invoke


class ModelGateway:
    """Per-run entry point for every model call made by the workflow."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        budget: RunBudget | None = None,
        fallback_models: list[str] | None = None,
        thread_id: str | None = None,
    ):
        self._client = client
        self.budget = budget or RunBudget()
        self.fallback_models = list(fallback_models or [])
        self.thread_id = thread_id

    @property
    def client(self) -> Any:
        return self._client or llm_client()

    def _candidates(self, model: str) -> list[str]:
        ordered: list[str] = []
        for candidate in [model, *self.fallback_models]:
            if candidate and candidate not in ordered:
                ordered.append(candidate)
        return ordered

    async def invoke(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[dict[str, Any]] | None = None,
        caller: str = "workflow",
        essential: bool = False,
    ) -> MessageResponse:
        self.budget.charge_model(essential=essential)
        leading_system, rest = split_system(messages)
        kwargs: dict[str, Any] = {
            "max_tokens": max_tokens,
            "system": system or leading_system,
            "messages": rest,
        }
        if tools:
            kwargs["tools"] = tools
        create = with_model_fallback(
            self.client.messages.create,
            self._candidates(model),
            caller=caller,
            thread_id=self.thread_id,
        )
        return await create(**kwargs)

    async def invoke_json(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        system: str = "",
        caller: str = "workflow",
        retries: int = 1,
    ) -> dict[str, Any] | None:
        """Call the model for a JSON object, retrying when the output does not parse."""
        for attempt in range(max(1, retries)):
            response = await self.invoke(
                model=model,
                max_tokens=max_tokens,
                messages=messages,
                system=system,
                caller=caller,
            )
            text = extract_response_text(response)
            try:
                return extract_json_object(text)
            except json.JSONDecodeError:
                log_service.log_event(
                    event_type="structured_output_retry",
                    message=f"Unparseable JSON from {caller}",
                    attempt=attempt + 1,
                    thread_id=self.thread_id,
                    preview=text[:200],
                )
        return None

    async def stream_text(
        self,
        *,
        model: str,
        max_tokens: int,
        messages: list[dict[str, Any]],
        on_token: Callable[[str], None],
        system: str = "",
        caller: str = "workflow",
        essential: bool = False,
    ) -> str:
        """Stream a text completion, falling back only while no token was emitted."""
        self.budget.charge_model(essential=essential)
        leading_system, rest = split_system(messages)
        last_error: Exception | None = None
        for candidate in self._candidates(model):
            emitted = False
            parts: list[str] = []
            t0 = time.monotonic()
            try:
                async with self.client.messages.stream(
                    model=candidate,
                    max_tokens=max_tokens,
                    system=system or leading_system,
                    messages=rest,
                ) as stream:
                    async for token in stream.text_stream:
                        emitted = True
                        parts.append(token)
                        on_token(token)
                    final = await stream.get_final_message()
            except Exception as e:
                log_service.log_llm_call(
                    model=candidate,
                    caller=caller,
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    status="error",
                    error=str(e),
                    thread_id=self.thread_id,
                )
                if emitted:
                    raise ModelInvocationError(f"Stream from {candidate} failed mid-response: {e}") from e
                last_error = e
                continue
            log_service.log_llm_call(
                model=candidate,
                caller=caller,
                input_tokens=final.usage.input_tokens,
                output_tokens=final.usage.output_tokens,
                duration_ms=int((time.monotonic() - t0) * 1000),
                thread_id=self.thread_id,
            )
            return "".join(parts).strip()
        raise ModelInvocationError(f"All models failed for {caller}: {last_error}") from last_error

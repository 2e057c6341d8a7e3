from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from app.agents.context import RunContext
from app.models.state import BudgetExceededError, ResearcherState
from app.services import logger as log_service
from app.services import streaming
from app.services.model_gateway import assistant_message, tool_calls_of, tool_result
from app.services.prompt_store import render_prompt


@dataclass
class ResearchOutcome:
    topic: str
    compressed_research: str = ""
    raw_notes: list[str] = field(default_factory=list)
    sources: list[dict[str, str]] = field(default_factory=list)


async def run_tool_loop(
    ctx: RunContext,
    state: ResearcherState,
    *,
    system: str,
    max_iterations: int,
    caller: str,
    tools: list[dict[str, Any]] | None = None,
    model: str | None = None,
    max_tokens: int | None = None,
) -> None:
    """Alternate model turns and tool turns until the model stops asking for tools.

    Tool calls requested in one turn run concurrently; turns are sequential.
    Stops early once `max_iterations` tool turns have run or the model budget
    is exhausted.
    """
    config = ctx.config
    while True:
        try:
            response = await ctx.models.invoke(
                model=model or config.research_model,
                max_tokens=max_tokens or config.research_model_max_tokens,
                system=system,
                messages=state.researcher_messages,
                tools=tools or ctx.tools.researcher_tools,
                caller=caller,
            )
        except BudgetExceededError as e:
            log_service.log_event(
                event_type="researcher_budget_stop",
                message="Stopping tool loop on exhausted budget",
                thread_id=ctx.thread_id,
                topic=state.research_topic[:100],
                error=str(e),
            )
            return

        state.researcher_messages.append(assistant_message(response))
        calls = tool_calls_of(response)
        if not calls:
            return

        for call in calls:
            if call.name == "web_search":
                ctx.emit(
                    streaming.custom(
                        "search",
                        f"Searching: {'; '.join(map(str, call.input.get('queries') or []))}",
                        topic=state.research_topic[:200],
                    )
                )

        outcomes = await asyncio.gather(*(ctx.tools.call(c.name, c.input) for c in calls))
        state.researcher_messages.append(
            {
                "role": "user",
                "content": [
                    tool_result(call.id, outcome.output, is_error=outcome.is_error)
                    for call, outcome in zip(calls, outcomes)
                ],
            }
        )
        state.raw_notes.extend(o.output for o in outcomes if o.name == "web_search" and not o.is_error)
        state.tool_call_iterations += 1
        if state.tool_call_iterations >= max_iterations:
            return


class ResearcherUnit:
    """One isolated investigation of a single delegated topic."""

    name = "researcher"

    def __init__(self, ctx: RunContext):
        self.ctx = ctx

    async def run(self, topic: str) -> ResearchOutcome:
        from app.agents.compression import compress_research

        config = self.ctx.config
        state = ResearcherState(research_topic=topic)
        state.researcher_messages.append({"role": "user", "content": topic})

        log_service.log_research_step(self.ctx.thread_id, self.name, "started", {"topic": topic[:200]})
        await run_tool_loop(
            self.ctx,
            state,
            system=render_prompt("researcher.system_prompt", max_tool_calls=config.max_react_tool_calls),
            max_iterations=config.max_react_tool_calls,
            caller=self.name,
        )
        outcome = await compress_research(self.ctx, state)
        log_service.log_research_step(
            self.ctx.thread_id,
            self.name,
            "completed",
            {
                "topic": topic[:200],
                "tool_call_iterations": state.tool_call_iterations,
                "sources": len(outcome.sources),
            },
        )
        return outcome

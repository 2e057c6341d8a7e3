from __future__ import annotations

import asyncio
from typing import Any

from app.agents.context import RunContext, StageResult
from app.agents.researcher import ResearchOutcome, ResearcherUnit
from app.config import ResearchConfig
from app.models.state import BudgetExceededError, Override, Stage, WorkflowState
from app.services import logger as log_service
from app.services import streaming
from app.services.model_gateway import ToolCall, assistant_message, tool_calls_of, tool_result
from app.services.prompt_store import render_prompt
from app.tools.gateway import CONDUCT_RESEARCH_TOOL, RESEARCH_COMPLETE_TOOL, THINK_TOOL, think

CONDUCT_RESEARCH = CONDUCT_RESEARCH_TOOL["name"]
RESEARCH_COMPLETE = RESEARCH_COMPLETE_TOOL["name"]
THINK = THINK_TOOL["name"]
SUPERVISOR_TOOLS = [CONDUCT_RESEARCH_TOOL, RESEARCH_COMPLETE_TOOL, THINK_TOOL]
NO_RESEARCH = "No research completed"


def seed_messages(research_brief: str, config: ResearchConfig) -> Override:
    """Fresh supervisor context: limit-aware system instruction plus the brief."""
    system = render_prompt(
        "supervisor.system_prompt",
        max_researcher_iterations=config.max_researcher_iterations,
        max_concurrent_research_units=config.max_concurrent_research_units,
    )
    return Override(
        [
            {"role": "system", "content": system},
            {"role": "user", "content": research_brief},
        ]
    )


def route_turn(calls: list[ToolCall]) -> Stage:
    names = {c.name for c in calls}
    if RESEARCH_COMPLETE in names:
        return Stage.REPORT
    if CONDUCT_RESEARCH in names:
        return Stage.SUPERVISE_TOOLS
    return Stage.SUPERVISE


async def supervise(state: WorkflowState, ctx: RunContext) -> StageResult:
    """One supervisor turn: delegate, reflect, or declare completion."""
    config = ctx.config
    if state.research_iterations >= config.max_researcher_iterations:
        log_service.log_event(
            event_type="supervisor_iteration_cap",
            message="Supervisor iteration cap reached, moving to report",
            thread_id=ctx.thread_id,
            iterations=state.research_iterations,
        )
        return StageResult(update={}, goto=Stage.REPORT)

    try:
        response = await ctx.models.invoke(
            model=config.research_model,
            max_tokens=config.research_model_max_tokens,
            messages=state.supervisor_messages,
            tools=SUPERVISOR_TOOLS,
            caller="supervisor",
        )
    except BudgetExceededError:
        return StageResult(update={}, goto=Stage.REPORT)

    message = assistant_message(response)
    calls = tool_calls_of(message)
    goto = route_turn(calls)
    new_messages: list[dict[str, Any]] = [message]

    if goto == Stage.SUPERVISE:
        # Reflection-only or malformed turn: answer it here and go around again.
        if calls:
            new_messages.append(
                {
                    "role": "user",
                    "content": [
                        tool_result(c.id, think(str(c.input.get("reflection", ""))))
                        if c.name == THINK
                        else tool_result(c.id, f"Error: Tool {c.name} not found", is_error=True)
                        for c in calls
                    ],
                }
            )
        else:
            new_messages.append({"role": "user", "content": render_prompt("supervisor.continue_prompt")})

    return StageResult(
        update={
            "supervisor_messages": new_messages,
            "research_iterations": state.research_iterations + 1,
        },
        goto=goto,
    )


async def _run_unit(ctx: RunContext, topic: str) -> ResearchOutcome | str:
    try:
        return await ResearcherUnit(ctx).run(topic)
    except Exception as e:
        log_service.log_event(
            event_type="researcher_failed",
            message="Researcher unit failed",
            thread_id=ctx.thread_id,
            topic=topic[:100],
            error=str(e),
        )
        return f'Error conducting research on "{topic}": {e}'


async def supervise_tools(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Execute the delegations of the last supervisor turn and join them."""
    limit = ctx.config.max_concurrent_research_units
    calls = tool_calls_of(state.supervisor_messages[-1]) if state.supervisor_messages else []
    research_calls = [c for c in calls if c.name == CONDUCT_RESEARCH]
    executed = research_calls[:limit]
    skipped = {c.id for c in research_calls[limit:]}
    if skipped:
        log_service.log_event(
            event_type="delegation_capped",
            message=f"Dropping {len(skipped)} delegations beyond the concurrency limit",
            thread_id=ctx.thread_id,
            limit=limit,
        )

    topics = [str(c.input.get("research_topic", "")).strip() for c in executed]
    ctx.emit(streaming.custom("delegate", f"Delegating {len(topics)} research topics", topics=topics))
    outcomes = await asyncio.gather(*(_run_unit(ctx, topic) for topic in topics))
    by_call = {c.id: outcome for c, outcome in zip(executed, outcomes)}

    results: list[dict[str, Any]] = []
    notes: list[str] = []
    raw_notes: list[str] = []
    sources: list[dict[str, str]] = []
    issues: list[str] = []
    for call in calls:
        if call.name == CONDUCT_RESEARCH and call.id in by_call:
            outcome = by_call[call.id]
            if isinstance(outcome, str):
                results.append(tool_result(call.id, outcome, is_error=True))
                issues.append(outcome)
                notes.append(outcome)
                continue
            content = outcome.compressed_research or NO_RESEARCH
            results.append(tool_result(call.id, content))
            if content != NO_RESEARCH:
                notes.append(content)
            raw_notes.extend(outcome.raw_notes)
            sources.extend(outcome.sources)
        elif call.name == CONDUCT_RESEARCH:
            results.append(
                tool_result(
                    call.id,
                    f"Not executed: at most {limit} research units run per turn. Delegate it again if still needed.",
                    is_error=True,
                )
            )
        elif call.name == THINK:
            results.append(tool_result(call.id, think(str(call.input.get("reflection", "")))))
        else:
            results.append(tool_result(call.id, f"Error: Tool {call.name} not found", is_error=True))

    update: dict[str, Any] = {
        "supervisor_messages": [{"role": "user", "content": results}],
        "notes": notes,
        "raw_notes": raw_notes,
        "sources": sources,
        "queries": topics,
    }
    if issues:
        update["issues"] = issues
    return StageResult(update=update, goto=Stage.SUPERVISE)

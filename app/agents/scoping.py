from __future__ import annotations

from app.agents.context import RunContext, StageResult
from app.agents.planner import plan_gate
from app.agents.supervisor import seed_messages
from app.models.state import BudgetExceededError, Stage, Strategy, ThreadMode, WorkflowState
from app.services import logger as log_service
from app.services import streaming
from app.services.model_gateway import get_buffer_string, message_text
from app.services.prompt_store import render_prompt


def research_stage(strategy: Strategy) -> Stage:
    return Stage.ITERATIVE_RESEARCH if strategy == Strategy.ITERATIVE else Stage.SUPERVISE


def _latest_user_text(state: WorkflowState) -> str:
    for message in reversed(state.messages):
        if message.get("role") == "user":
            return message_text(message)
    return state.goal


async def clarify(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Decide whether the goal needs a question before any research is spent on it.

    Plan mode goes through the planner interrupt gate. Auto mode asks at most
    one free-text question and ends the run, so the caller can start again on
    the same thread with the answer.
    """
    config = ctx.config
    if not config.allow_clarification:
        return StageResult(update={}, goto=Stage.WRITE_BRIEF)
    if ctx.mode == ThreadMode.PLAN:
        return await plan_gate(state, ctx)

    try:
        payload = await ctx.models.invoke_json(
            model=config.research_model,
            max_tokens=config.research_model_max_tokens,
            system=render_prompt("clarify.system_prompt", messages=get_buffer_string(state.messages)),
            messages=[{"role": "user", "content": _latest_user_text(state)}],
            caller="clarify",
            retries=config.max_structured_output_retries,
        )
    except BudgetExceededError:
        payload = None

    if not payload:
        return StageResult(update={}, goto=Stage.WRITE_BRIEF)

    question = str(payload.get("question") or "").strip()
    if payload.get("need_clarification") and question:
        log_service.log_research_step(ctx.thread_id, Stage.CLARIFY.value, "question", {"question": question[:200]})
        ctx.emit(streaming.draft(question, final=True, kind="clarification"))
        return StageResult(
            update={"messages": [{"role": "assistant", "content": question}]},
            goto=Stage.TERMINAL,
        )

    verification = str(payload.get("verification") or "").strip()
    update = {"messages": [{"role": "assistant", "content": verification}]} if verification else {}
    return StageResult(update=update, goto=Stage.WRITE_BRIEF)


async def write_brief(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Turn the conversation into one research brief and seed the supervisor."""
    config = ctx.config
    try:
        payload = await ctx.models.invoke_json(
            model=config.research_model,
            max_tokens=config.research_model_max_tokens,
            system=render_prompt("brief.system_prompt", messages=get_buffer_string(state.messages)),
            messages=[{"role": "user", "content": _latest_user_text(state)}],
            caller="write_brief",
            retries=config.max_structured_output_retries,
        )
    except BudgetExceededError:
        payload = None

    brief = str((payload or {}).get("research_brief") or "").strip()
    if not brief:
        log_service.log_event(
            event_type="brief_fallback",
            message="No structured brief returned, using the conversation as the brief",
            thread_id=ctx.thread_id,
        )
        brief = "\n".join(message_text(m) for m in state.messages if m.get("role") == "user") or state.goal

    log_service.log_research_step(ctx.thread_id, Stage.WRITE_BRIEF.value, "completed", {"length": len(brief)})
    return StageResult(
        update={
            "research_brief": brief,
            "supervisor_messages": seed_messages(brief, config),
            "research_iterations": 0,
        },
        goto=research_stage(ctx.strategy),
    )

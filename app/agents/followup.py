"""Follow-up handling for threads that already hold a report.

A new message on a finished thread is either a follow-up question, answered
from the existing report plus a few searches, or a request for new research,
which clears the research fields and starts over at Clarify.
"""
from __future__ import annotations

import dataclasses
import re
from typing import Any

from app.agents.context import RunContext, StageResult
from app.agents.report import CITATION_GROUP_RE, SOURCES_SECTION_RE, SPACE_BEFORE_PUNCT_RE, citation_numbers
from app.agents.researcher import run_tool_loop
from app.models.state import (
    BudgetExceededError,
    InterruptOption,
    InterruptPayload,
    ModelInvocationError,
    Override,
    ResearcherState,
    Source,
    Stage,
    ThreadMode,
    WorkflowState,
)
from app.services import logger as log_service
from app.services.model_gateway import extract_response_text, message_text
from app.services.prompt_store import render_prompt
from app.tools.gateway import WEB_SEARCH_TOOL, numbered_source_markers
from app.tools.web_utils import normalize_url

FOLLOW_UP = "FOLLOW_UP"
NEW_RESEARCH = "NEW_RESEARCH"
ROUTE_QUESTION_ID = "route_request"
MAX_FOLLOWUP_SEARCH_TURNS = 3
SOURCE_LINE_RE = re.compile(r"^\[(\d+)\]\s*(.*?):\s*(\S+)\s*$", re.MULTILINE)

ROUTE_OPTIONS = [
    InterruptOption(
        value="follow_up",
        label="Answer from the current report",
        description="Quick answer using the existing findings and a few extra searches",
    ),
    InterruptOption(
        value="new_research",
        label="Start new research",
        description="Run the full research workflow on this message",
    ),
]
OPTION_DECISIONS = {"follow_up": FOLLOW_UP, "new_research": NEW_RESEARCH}


def latest_user_message(state: WorkflowState) -> str:
    for message in reversed(state.messages):
        if message.get("role") == "user":
            return message_text(message)
    return state.goal


def report_sources(report: str) -> list[Source]:
    """The numbered `### Sources` list of a finished report, in citation order."""
    match = SOURCES_SECTION_RE.search(report or "")
    if not match:
        return []
    return [
        Source(url=url, title=title)
        for _, title, url in sorted(SOURCE_LINE_RE.findall(match.group(0)), key=lambda m: int(m[0]))
    ]


def _normalize_decision(payload: dict[str, Any] | None) -> dict[str, Any]:
    if not payload:
        return {"decision": NEW_RESEARCH, "confidence": 0.0, "reasoning": "Routing model unavailable", "source": "fallback"}
    decision = str(payload.get("decision") or "").strip().upper().replace("-", "_").replace(" ", "_")
    if decision not in (FOLLOW_UP, NEW_RESEARCH):
        decision = NEW_RESEARCH
    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return {
        "decision": decision,
        "confidence": max(0.0, min(1.0, confidence)),
        "reasoning": str(payload.get("reasoning") or ""),
        "source": "model",
    }


def new_research_reset(goal: str) -> dict[str, Any]:
    return {
        "goal": goal,
        "research_brief": None,
        "supervisor_messages": Override([]),
        "notes": Override([]),
        "raw_notes": Override([]),
        "sources": Override([]),
        "research_iterations": 0,
        "final_report": None,
        "answer": None,
        "claims": [],
        "issues": [],
        "queries": [],
        "findings": Override([]),
        "planner_questions": None,
        "planner_answers": Override([]),
    }


def decision_from_option(value: str) -> str | None:
    return OPTION_DECISIONS.get(value)


async def route_request(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Classify a new message on a finished thread as follow-up or new research."""
    config = ctx.config
    update: dict[str, Any] = {}
    decision = state.routing_decision
    message = latest_user_message(state)

    if not decision:
        try:
            payload = await ctx.models.invoke_json(
                model=config.research_model,
                max_tokens=config.research_model_max_tokens,
                system=render_prompt(
                    "routing.system_prompt",
                    research_brief=state.research_brief or state.goal,
                    final_report=state.final_report or "",
                ),
                messages=[{"role": "user", "content": render_prompt("routing.user_prompt", latest_message=message)}],
                caller="route_request",
                retries=config.max_structured_output_retries,
            )
        except (BudgetExceededError, ModelInvocationError) as e:
            log_service.log_event(
                event_type="routing_fallback",
                message="Routing model unavailable, treating message as new research",
                thread_id=ctx.thread_id,
                error=str(e),
            )
            payload = None
        decision = _normalize_decision(payload)
        update["routing_decision"] = decision
        log_service.log_research_step(ctx.thread_id, Stage.ROUTE_REQUEST.value, "classified", decision)

        if ctx.mode == ThreadMode.PLAN and decision["confidence"] < config.followup_confidence_threshold:
            suggested = "follow_up" if decision["decision"] == FOLLOW_UP else "new_research"
            update["interrupt"] = InterruptPayload(
                question_id=ROUTE_QUESTION_ID,
                question_text="Should this be answered from the existing report or researched from scratch?",
                options=[o.model_copy() for o in ROUTE_OPTIONS],
                metadata={
                    "currentQuestion": 1,
                    "totalQuestions": 1,
                    "raisedBy": Stage.ROUTE_REQUEST.value,
                    "suggested": suggested,
                    "confidence": decision["confidence"],
                },
            )
            return StageResult(update=update, goto=Stage.ROUTE_REQUEST)

    if decision["decision"] == FOLLOW_UP:
        return StageResult(update=update, goto=Stage.ANSWER_FOLLOWUP)
    update.update(new_research_reset(message))
    return StageResult(update=update, goto=Stage.CLARIFY)


def finalize_followup_citations(
    text: str,
    existing: list[Source],
    numbered: dict[int, dict[str, str]],
) -> tuple[str, list[Source], list[str]]:
    """Keep report citations as they are and renumber new ones after them.

    `existing` is the report's numbered source list; `numbered` maps the SOURCE
    numbers seen during follow-up searches to their sources. New sources that
    repeat a report source reuse the report's number.
    """
    body = SOURCES_SECTION_RE.sub("", text).rstrip()
    known = {normalize_url(s.url): i for i, s in enumerate(existing, start=1)}
    mapping: dict[int, int] = {}
    added: list[Source] = []
    added_keys: dict[str, int] = {}
    unknown: set[int] = set()

    highest = max([len(existing), *numbered])

    def renumber(match: re.Match) -> str:
        numbers = citation_numbers(match, highest)
        if numbers is None:
            return match.group(0)
        rendered: list[int] = []
        for number in numbers:
            if 1 <= number <= len(existing):
                target = number
            elif number in mapping:
                target = mapping[number]
            elif number in numbered:
                source = numbered[number]
                key = normalize_url(source["url"])
                if key in known:
                    target = known[key]
                elif key in added_keys:
                    target = added_keys[key]
                else:
                    added.append(Source(url=source["url"], title=source.get("title") or ""))
                    target = len(existing) + len(added)
                    added_keys[key] = target
                mapping[number] = target
            else:
                unknown.add(number)
                continue
            if target not in rendered:
                rendered.append(target)
        return "".join(f"[{n}]" for n in rendered)

    body = CITATION_GROUP_RE.sub(renumber, body)
    if unknown:
        body = SPACE_BEFORE_PUNCT_RE.sub(r"\1", body)
    issues = [f"Citation [{n}] does not match any collected source and was removed" for n in sorted(unknown)]
    if added:
        listing = "\n".join(
            f"[{i}] {s.title or s.url}: {s.url}" for i, s in enumerate(added, start=len(existing) + 1)
        )
        body = f"{body}\n\n### Sources\n\n{listing}"
    return body, added, issues


async def answer_followup(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Answer from the existing report, searching only for what it lacks."""
    existing = report_sources(state.final_report or "")
    next_number = len(existing) + 1
    citation_context = ""
    if existing:
        citation_context = render_prompt(
            "followup.citation_context",
            max_citation=len(existing),
            next_citation=next_number,
            citation_list="\n".join(f"[{i}] {s.title or s.url}: {s.url}" for i, s in enumerate(existing, start=1)),
        )

    question = latest_user_message(state)
    scratch = ResearcherState(research_topic=question)
    scratch.researcher_messages.append({"role": "user", "content": question})
    followup_ctx = dataclasses.replace(ctx, tools=ctx.tools.numbered_from(next_number))
    system = render_prompt(
        "followup.system_prompt",
        research_brief=state.research_brief or state.goal,
        final_report=state.final_report or "",
        citation_context=citation_context,
    )
    await run_tool_loop(
        followup_ctx,
        scratch,
        system=system,
        max_iterations=MAX_FOLLOWUP_SEARCH_TURNS,
        caller="answer_followup",
        tools=[WEB_SEARCH_TOOL],
    )

    last = scratch.researcher_messages[-1] if scratch.researcher_messages else {}
    text = message_text(last).strip() if last.get("role") == "assistant" else ""
    if not text:
        # Search turns or the model budget ran out before a reply without tools.
        scratch.researcher_messages.append({"role": "user", "content": render_prompt("followup.search_limit")})
        response = await ctx.models.invoke(
            model=ctx.config.research_model,
            max_tokens=ctx.config.research_model_max_tokens,
            system=system,
            messages=scratch.researcher_messages,
            caller="answer_followup",
            essential=True,
        )
        text = extract_response_text(response).strip()
    if not text:
        raise ModelInvocationError("follow-up model returned no answer")

    numbered: dict[int, dict[str, str]] = {}
    for note in scratch.raw_notes:
        numbered.update(numbered_source_markers(note))

    answer, added, issues = finalize_followup_citations(text, existing, numbered)
    log_service.log_research_step(
        ctx.thread_id,
        Stage.ANSWER_FOLLOWUP.value,
        "completed",
        {"length": len(answer), "new_sources": len(added), "searches": scratch.tool_call_iterations},
    )
    update: dict[str, Any] = {
        "answer": answer,
        "messages": [{"role": "assistant", "content": answer}],
        "sources": [s.model_dump() for s in added],
    }
    if issues:
        update["issues"] = issues
    return StageResult(update=update, goto=Stage.TERMINAL)

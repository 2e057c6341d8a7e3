"""Plan-mode interrupt gate.

Before committing to a research plan, plan mode asks the user a short list of
multiple-choice questions, one interrupt at a time. The question list is
generated once per thread and cached in `planner_questions`, so a resumed run
walks the same questions in the same order.
"""
from __future__ import annotations

import re
from typing import Any

from app.agents.context import RunContext, StageResult
from app.models.state import (
    BudgetExceededError,
    InterruptOption,
    InterruptPayload,
    ModelInvocationError,
    Stage,
    WorkflowState,
)
from app.services import logger as log_service
from app.services.prompt_store import render_prompt

CLARITY_THRESHOLD = 0.6
BASE_CLARITY_SCORE = 0.3
SHORT_WORD_COUNT = 20
LONG_WORD_COUNT = 50
SHORT_WORD_BONUS = 0.2
LONG_WORD_BONUS = 0.1
TIME_SCOPE_BONUS = 0.2
INTENT_MATCH_BONUS = 0.05
MAX_INTENT_BONUS = 0.2
VAGUE_PENALTY = 0.05
MAX_QUESTIONS = 3

TIME_PATTERNS = [
    re.compile(r"\b(20\d\d|last year|this year|next year|recent|current|latest)\b", re.IGNORECASE),
    re.compile(
        r"\b(january|february|march|april|may|june|july|august|september|october|november|december)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(q1|q2|q3|q4|quarter|half|h1|h2)\b", re.IGNORECASE),
    re.compile(r"\b(past|future|next|last|previous|upcoming|coming)\s+\d+\s+(years?|months?|weeks?|days?)\b", re.IGNORECASE),
]
INTENT_PATTERNS = [
    re.compile(r"\b(analyze|compare|evaluate|summarize|research|investigate|examine|assess)\b", re.IGNORECASE),
    re.compile(r"\b(what|how|why|when|where|which|who)\b", re.IGNORECASE),
    re.compile(r"\b(benefits|drawbacks|advantages|disadvantages|pros|cons|impact|effect)\b", re.IGNORECASE),
]
VAGUE_PATTERNS = [
    re.compile(r"\b(something|anything|everything|nothing|stuff|things|information|data)\b", re.IGNORECASE),
    re.compile(r"\b(general|overview|summary|basics|introduction)\b", re.IGNORECASE),
]

STOCK_QUESTIONS = [
    InterruptPayload(
        question_id="q1_scope",
        question_text="What should the research focus on?",
        options=[
            InterruptOption(value="broad", label="Broad overview", description="Cover the topic end to end"),
            InterruptOption(value="specific", label="Specific problem", description="Go deep on one concrete issue"),
            InterruptOption(value="comparison", label="Comparison", description="Weigh alternatives against each other"),
        ],
    ),
    InterruptPayload(
        question_id="q2_timeframe",
        question_text="Which timeframe matters?",
        options=[
            InterruptOption(value="latest", label="Latest developments", description="The last 12 months"),
            InterruptOption(value="recent", label="Recent years", description="The last 3 to 5 years"),
            InterruptOption(value="any", label="Any time", description="No time restriction"),
        ],
    ),
    InterruptPayload(
        question_id="q3_depth",
        question_text="How detailed should the report be?",
        options=[
            InterruptOption(value="summary", label="Short summary"),
            InterruptOption(value="standard", label="Standard report"),
            InterruptOption(value="deep", label="In-depth analysis"),
        ],
    ),
]


def clarity_score(goal: str) -> float:
    """IR-style clarity heuristic: long, time-scoped, single-intent goals score high."""
    score = BASE_CLARITY_SCORE
    words = len(goal.split())
    if words > SHORT_WORD_COUNT:
        score += SHORT_WORD_BONUS
        if words > LONG_WORD_COUNT:
            score += LONG_WORD_BONUS
    if any(p.search(goal) for p in TIME_PATTERNS):
        score += TIME_SCOPE_BONUS
    intents = sum(len(p.findall(goal)) for p in INTENT_PATTERNS)
    score += min(intents * INTENT_MATCH_BONUS, MAX_INTENT_BONUS)
    vague = sum(len(p.findall(goal)) for p in VAGUE_PATTERNS)
    score -= vague * VAGUE_PENALTY
    return max(0.0, min(1.0, score))


def normalize_questions(raw: list[Any]) -> list[InterruptPayload]:
    """Turn model questions into payloads with stable ids; drop unusable ones."""
    questions: list[InterruptPayload] = []
    for i, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            continue
        text = str(item.get("text") or "").strip()
        options = [
            InterruptOption(
                value=str(o.get("value") or "").strip(),
                label=str(o.get("label") or o.get("value") or "").strip(),
                description=o.get("description") if isinstance(o.get("description"), str) else None,
            )
            for o in item.get("options") or []
            if isinstance(o, dict) and str(o.get("value") or "").strip()
        ]
        if not text or len(options) < 2:
            continue
        qid = str(item.get("id") or "").strip() or f"q{i}"
        if any(q.question_id == qid for q in questions):
            qid = f"{qid}_{i}"
        questions.append(InterruptPayload(question_id=qid, question_text=text, options=options))
    return questions[:MAX_QUESTIONS]


def fallback_questions(goal: str) -> list[InterruptPayload]:
    score = clarity_score(goal)
    if score >= CLARITY_THRESHOLD:
        return []
    return [q.model_copy(deep=True) for q in STOCK_QUESTIONS]


async def generate_questions(goal: str, ctx: RunContext) -> list[InterruptPayload]:
    config = ctx.config
    try:
        payload = await ctx.models.invoke_json(
            model=config.research_model,
            max_tokens=config.research_model_max_tokens,
            system=render_prompt("planner.system_prompt"),
            messages=[{"role": "user", "content": render_prompt("planner.user_prompt", goal=goal)}],
            caller="planner",
            retries=config.max_structured_output_retries,
        )
    except (BudgetExceededError, ModelInvocationError) as e:
        log_service.log_event(
            event_type="planner_fallback",
            message="Planner model unavailable, using clarity heuristic",
            thread_id=ctx.thread_id,
            error=str(e),
        )
        payload = None

    if payload is None:
        return fallback_questions(goal)
    if payload.get("is_complete") is True:
        return []
    questions = normalize_questions(payload.get("questions") or [])
    return questions or fallback_questions(goal)


async def plan_gate(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Raise the next unanswered planner question, or hand over to the brief writer."""
    update: dict[str, Any] = {}
    questions = state.planner_questions
    if questions is None:
        questions = await generate_questions(state.goal, ctx)
        update["planner_questions"] = questions
        log_service.log_research_step(
            ctx.thread_id, "planner", "completed", {"questions": len(questions)}
        )

    answered = {a.get("questionId") for a in state.planner_answers}
    pending = [q for q in questions if q.question_id not in answered]
    if not pending:
        return StageResult(update=update, goto=Stage.WRITE_BRIEF)

    question = pending[0]
    interrupt = question.model_copy(
        update={
            "metadata": {
                "currentQuestion": len(questions) - len(pending) + 1,
                "totalQuestions": len(questions),
                "raisedBy": Stage.CLARIFY.value,
            }
        }
    )
    update["interrupt"] = interrupt
    return StageResult(update=update, goto=Stage.CLARIFY)

from __future__ import annotations

from app.agents.context import RunContext
from app.agents.researcher import ResearchOutcome
from app.models.state import BudgetExceededError, ModelInvocationError, ResearcherState, dedupe_sources
from app.services import logger as log_service
from app.services.model_gateway import extract_response_text, get_buffer_string
from app.services.prompt_store import render_prompt
from app.tools.gateway import parse_source_markers


def extract_sources(raw_notes: list[str]) -> list[dict[str, str]]:
    sources: list[dict[str, str]] = []
    for note in raw_notes:
        sources.extend(parse_source_markers(note))
    return dedupe_sources(sources)


def raw_transcript(state: ResearcherState) -> str:
    if state.raw_notes:
        return "\n\n".join(state.raw_notes)
    return get_buffer_string(state.researcher_messages)


async def compress_research(ctx: RunContext, state: ResearcherState) -> ResearchOutcome:
    """Clean a researcher transcript into notes plus an independently parsed source list.

    Sources are read from the SOURCE markers of the raw tool output before the
    model sees anything, so rewriting cannot lose or alter a URL.
    """
    sources = extract_sources(state.raw_notes)
    config = ctx.config

    text = ""
    try:
        response = await ctx.models.invoke(
            model=config.compression_model,
            max_tokens=config.compression_model_max_tokens,
            system=render_prompt("compression.system_prompt"),
            messages=[
                {
                    "role": "user",
                    "content": render_prompt(
                        "compression.user_prompt",
                        topic=state.research_topic,
                        transcript=get_buffer_string(state.researcher_messages),
                    ),
                }
            ],
            caller="compression",
        )
        text = extract_response_text(response)
    except (BudgetExceededError, ModelInvocationError) as e:
        log_service.log_event(
            event_type="compression_fallback",
            message="Compression model unavailable, keeping raw transcript",
            thread_id=ctx.thread_id,
            error=str(e),
        )

    if not text:
        text = raw_transcript(state)
    state.complete(text)
    return ResearchOutcome(
        topic=state.research_topic,
        compressed_research=state.compressed_research or "",
        raw_notes=list(state.raw_notes),
        sources=sources,
    )

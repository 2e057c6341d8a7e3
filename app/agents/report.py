from __future__ import annotations

import re

from app.agents.context import RunContext, StageResult
from app.models.state import Claim, ModelInvocationError, Override, Source, Stage, WorkflowState
from app.services import logger as log_service
from app.services import streaming
from app.services.model_gateway import extract_response_text, get_buffer_string
from app.services.prompt_store import render_prompt

REPORT_ERROR_PREFIX = "Error generating final report"
# Bracketed numbers this far past the source list are left alone as plain text, e.g. "[2024]".
CITATION_SLACK = 20
CITATION_GROUP_RE = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
CITATION_RE = re.compile(r"\[(\d+)\]")
SOURCES_SECTION_RE = re.compile(
    r"\n*^#{1,6}[ \t]*(?:Sources|References)\b.*\Z", re.DOTALL | re.IGNORECASE | re.MULTILINE
)
SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,;:!?])")
LISTED_SOURCE_RE = re.compile(r"^\[(\d+)\]", re.MULTILINE)
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
LIST_MARKER_RE = re.compile(r"^(?:[-*•]|\d+\.)\s+")
HEDGE_RE = re.compile(
    r"\b(may|might|could|possibly|reportedly|allegedly|suggests?|unclear|estimated|appears?|likely)\b",
    re.IGNORECASE,
)


def format_source_list(sources: list[Source]) -> str:
    return "\n".join(f"[{i}] {s.title or s.url}: {s.url}" for i, s in enumerate(sources, start=1))


def citation_numbers(match: re.Match, known: int) -> list[int] | None:
    """Numbers of a bracket group, or None when it is not a citation at all."""
    numbers = [int(raw) for raw in re.split(r"\s*,\s*", match.group(1))]
    if any(n > known + CITATION_SLACK for n in numbers):
        return None
    return numbers


def finalize_citations(text: str, sources: list[Source]) -> tuple[str, list[Source], list[str]]:
    """Renumber inline citations by first appearance and append a `### Sources` list.

    Citation numbers refer to the numbered source list given to the model.
    Numbers outside that list are dropped and reported as issues, so the
    result cites exactly 1..N with every number listed once.
    Bracketed numbers well beyond the list, such as years, are not citations
    and stay untouched.
    """
    body = SOURCES_SECTION_RE.sub("", text).rstrip()
    mapping: dict[int, int] = {}
    cited: list[Source] = []
    unknown: set[int] = set()

    def renumber(match: re.Match) -> str:
        numbers = citation_numbers(match, len(sources))
        if numbers is None:
            return match.group(0)
        rendered: list[int] = []
        for number in numbers:
            if not 1 <= number <= len(sources):
                unknown.add(number)
                continue
            if number not in mapping:
                mapping[number] = len(mapping) + 1
                cited.append(sources[number - 1])
            if mapping[number] not in rendered:
                rendered.append(mapping[number])
        return "".join(f"[{n}]" for n in rendered)

    body = CITATION_GROUP_RE.sub(renumber, body)
    if unknown:
        body = SPACE_BEFORE_PUNCT_RE.sub(r"\1", body)
    issues = [f"Citation [{n}] does not match any collected source and was removed" for n in sorted(unknown)]

    if cited:
        listing = "\n".join(f"[{i}] {s.title or s.url}: {s.url}" for i, s in enumerate(cited, start=1))
        body = f"{body}\n\n### Sources\n\n{listing}"
    return body, cited, issues


def extract_claims(report: str) -> list[Claim]:
    """Every cited sentence of the report body becomes a claim."""
    body, _, listing = report.partition("\n### Sources")
    listed = {int(n) for n in LISTED_SOURCE_RE.findall(listing)}
    claims: list[Claim] = []
    for line in body.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        line = LIST_MARKER_RE.sub("", line)
        for sentence in SENTENCE_SPLIT_RE.split(line):
            numbers: list[int] = []
            for raw in CITATION_RE.findall(sentence):
                if int(raw) in listed and int(raw) not in numbers:
                    numbers.append(int(raw))
            if not numbers:
                continue
            text = CITATION_RE.sub(lambda m: "" if int(m.group(1)) in listed else m.group(0), sentence)
            text = re.sub(r"\s+", " ", text).strip()
            text = SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
            if HEDGE_RE.search(text):
                confidence = "low"
            elif len(numbers) >= 2:
                confidence = "high"
            else:
                confidence = "medium"
            claims.append(
                Claim(id=f"claim-{len(claims) + 1}", text=text, citations=numbers, confidence=confidence)
            )
    return claims


async def write_report(state: WorkflowState, ctx: RunContext) -> StageResult:
    """Synthesize the cited report and consume the notes."""
    config = ctx.config
    cleared = {"notes": Override([]), "supervisor_messages": Override([])}
    sources = list(state.sources)

    try:
        messages = [
            {
                "role": "user",
                "content": render_prompt(
                    "report.user_prompt",
                    research_brief=state.research_brief or state.goal,
                    messages=get_buffer_string(state.messages),
                    findings="\n\n".join(state.notes) or "No findings were collected.",
                    sources=format_source_list(sources) or "No sources were collected.",
                ),
            }
        ]
        system = render_prompt("report.system_prompt")
        if config.stream_report_tokens:
            text = await ctx.models.stream_text(
                model=config.final_report_model,
                max_tokens=config.final_report_model_max_tokens,
                system=system,
                messages=messages,
                on_token=lambda token: ctx.emit(streaming.llm_token(token, node_name=Stage.REPORT.value)),
                caller="report",
                essential=True,
            )
        else:
            response = await ctx.models.invoke(
                model=config.final_report_model,
                max_tokens=config.final_report_model_max_tokens,
                system=system,
                messages=messages,
                caller="report",
                essential=True,
            )
            text = extract_response_text(response)
        if not text:
            raise ModelInvocationError("report model returned no text")

        body, cited, issues = finalize_citations(text, sources)
        update = {
            **cleared,
            "final_report": body,
            "claims": extract_claims(body),
            "issues": issues,
            "messages": [{"role": "assistant", "content": body}],
        }
        log_service.log_research_step(
            ctx.thread_id,
            Stage.REPORT.value,
            "completed",
            {"length": len(body), "cited_sources": len(cited), "issues": len(issues)},
        )
    except Exception as e:
        log_service.log_event(
            event_type="report_failed",
            message="Final report generation failed",
            thread_id=ctx.thread_id,
            error=str(e),
        )
        update = {
            **cleared,
            "final_report": f"{REPORT_ERROR_PREFIX}: {e}",
            "messages": [{"role": "assistant", "content": "Report generation failed due to an error"}],
        }
    return StageResult(update=update, goto=Stage.TERMINAL)

"""Strictly sequential three-round research used when depth matters more than latency.

Round 1 orients broadly, Round 2 digs into gaps found in Round 1, Round 3
validates what is still open, then a single synthesis step hands the
accumulated findings to the report stage. Searches run one at a time with a
short pause so every batch is read before the next query goes out.
"""
from __future__ import annotations

import asyncio
import json
import re
from typing import Any

from app.agents.context import RunContext, StageResult
from app.models.state import (
    BudgetExceededError,
    Finding,
    ModelInvocationError,
    Stage,
    WorkflowState,
    dedupe_sources,
)
from app.services import logger as log_service
from app.services import streaming
from app.services.model_gateway import extract_response_text
from app.services.prompt_store import render_prompt
from app.tools.gateway import dedupe_results, format_search_output
from app.tools.search_provider import SearchResult, results_to_dicts

MAX_QUERIES = {1: 3, 2: 4, 3: 3}
MAX_FALLBACK_QUERIES = 5
SYNTHESIS_ROUND = 4

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```")
JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
QUERY_PREFIX_RE = re.compile(r"^[\"'*•-]\s*")

ROUND1_FALLBACK_GAPS = [
    "Detailed quantitative data",
    "Technical specifics",
    "Recent developments",
    "Comparative analysis",
]
ROUND2_FALLBACK_GAPS = [
    "Validation of key claims",
    "Cross-referencing sources",
    "Final context verification",
]


def extract_queries_from_text(text: str) -> list[str]:
    """Best-effort query list from model output that may not be clean JSON."""
    cleaned = CODE_FENCE_RE.sub("", text or "").strip()

    match = JSON_ARRAY_RE.search(cleaned)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            queries = [
                QUERY_PREFIX_RE.sub("", q.strip()) if isinstance(q, str) else str(q)
                for q in parsed
            ]
            return [q for q in queries if q]

    lines = [line.strip() for line in cleaned.split("\n")]
    lines = [line for line in lines if line and not line.startswith(("{", "["))]
    queries = [QUERY_PREFIX_RE.sub("", line) for line in lines]
    return [q for q in queries if q][:MAX_FALLBACK_QUERIES]


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


class IterativeResearcher:
    name = "iterative"

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.findings: list[Finding] = []
        self.steps: list[str] = []

    @property
    def total_sources(self) -> int:
        return sum(len(f.results) for f in self.findings)

    def _notify(self, kind: str, round_number: int, content: str) -> None:
        self.ctx.emit(streaming.custom(kind, content, round_number=round_number))

    def _step(self, name: str) -> None:
        self.steps.append(name)
        log_service.log_research_step(self.ctx.thread_id, f"{self.name}.{name}", "started")

    async def _generate_queries(self, round_number: int, fallback: list[str], **values: Any) -> list[str]:
        limit = MAX_QUERIES[round_number]
        config = self.ctx.config
        queries: list[str] = []
        try:
            response = await self.ctx.models.invoke(
                model=config.research_model,
                max_tokens=config.research_model_max_tokens,
                system=render_prompt(f"iterative.round{round_number}.system", max_queries=limit),
                messages=[
                    {
                        "role": "user",
                        "content": render_prompt(f"iterative.round{round_number}.user", max_queries=limit, **values),
                    }
                ],
                caller=f"{self.name}_round{round_number}",
            )
            queries = extract_queries_from_text(extract_response_text(response))
        except (BudgetExceededError, ModelInvocationError) as e:
            log_service.log_event(
                event_type="iterative_query_fallback",
                message=f"Round {round_number} query generation failed",
                thread_id=self.ctx.thread_id,
                error=str(e),
            )
        return (queries or fallback)[:limit]

    async def _analyze_gaps(self, key: str, fallback: list[str], **values: Any) -> tuple[list[str], str]:
        config = self.ctx.config
        try:
            payload = await self.ctx.models.invoke_json(
                model=config.research_model,
                max_tokens=config.research_model_max_tokens,
                system=render_prompt(f"iterative.{key}.system"),
                messages=[{"role": "user", "content": render_prompt(f"iterative.{key}.user", **values)}],
                caller=f"{self.name}_{key}",
                retries=config.max_structured_output_retries,
            )
        except (BudgetExceededError, ModelInvocationError):
            payload = None
        if not payload or not isinstance(payload.get("gaps"), list):
            return list(fallback), "Fallback gap identification"
        gaps = [str(g).strip() for g in payload["gaps"] if str(g).strip()]
        return gaps or list(fallback), str(payload.get("reasoning") or "Gap analysis completed")

    async def _search_round(self, round_number: int, queries: list[str], reasoning: str, gaps: list[str] | None) -> Finding:
        config = self.ctx.config
        pause = config.iterative_search_pause_ms / 1000
        results: list[dict[str, Any]] = []
        for index, query in enumerate(queries):
            self._notify("search", round_number, f'Searching: "{query}"')
            try:
                response = await self.ctx.tools.search(query, max_results=config.iterative_results_per_query)
                batch = results_to_dicts(response.results)
            except BudgetExceededError:
                self._notify("thought", round_number, "Search budget exhausted; continuing with what was found.")
                break
            except Exception as e:
                log_service.log_event(
                    event_type="search_failed",
                    message=f"Round {round_number} search failed: {query[:100]}",
                    thread_id=self.ctx.thread_id,
                    error=str(e),
                )
                batch = []
            results.extend(batch)
            self._notify("read", round_number, f"Reading {len(batch)} sources...")
            if pause and index < len(queries) - 1:
                await asyncio.sleep(pause)

        self._notify("thought", round_number, f"Reviewed {len(results)} sources from Round {round_number}.")
        finding = Finding(round=round_number, queries=queries, results=results, reasoning=reasoning, gaps=gaps)
        self.findings.append(finding)
        return finding

    def _announce_queries(self, round_number: int, label: str, queries: list[str]) -> None:
        self._notify("thought", round_number, f"Generated {len(queries)} {label}: {'; '.join(queries)}")
        self.ctx.emit(streaming.queries(queries, round_number=round_number, node_name=Stage.ITERATIVE_RESEARCH.value))

    async def run(self, goal: str, brief: str) -> dict[str, Any]:
        # Round 1: broad orientation
        self._step("round1_reason")
        self._notify("thought", 1, "Beginning broad orientation research to establish foundation...")
        round1_queries = await self._generate_queries(
            1,
            [f"{goal} overview", f"{goal} recent developments", f"{goal} key facts"],
            goal=goal,
            brief=brief,
        )
        self._announce_queries(1, "broad queries", round1_queries)
        self._step("round1_search")
        round1 = await self._search_round(
            1, round1_queries, "Broad orientation to establish research foundation", None
        )

        # Round 2: gap-driven deep dive
        self._step("round2_reason")
        self._notify("thought", 2, f"Analyzing Round 1 findings ({len(round1.results)} sources)...")
        gaps1, reasoning1 = await self._analyze_gaps(
            "gaps1",
            ROUND1_FALLBACK_GAPS,
            goal=goal,
            queries=_numbered(round1.queries),
            source_count=len(round1.results),
        )
        self._notify("thought", 2, f"Identified {len(gaps1)} knowledge gaps: {', '.join(gaps1)}")
        round2_queries = await self._generate_queries(
            2,
            [f"{goal} {gap}" for gap in gaps1],
            goal=goal,
            gaps=_numbered(gaps1),
            previous_queries=_numbered(round1.queries),
            source_count=len(round1.results),
        )
        self._announce_queries(2, "targeted queries for deep dive", round2_queries)
        self._step("round2_search")
        round2 = await self._search_round(2, round2_queries, reasoning1, gaps1)

        # Round 3: validation
        self._step("round3_reason")
        self._notify("thought", 3, f"Analyzing Round 2 deep-dive findings ({len(round2.results)} new sources)...")
        gaps2, reasoning2 = await self._analyze_gaps(
            "gaps2",
            ROUND2_FALLBACK_GAPS,
            goal=goal,
            queries=_numbered(round2.queries),
            source_count=len(round2.results),
            total_sources=self.total_sources,
        )
        self._notify("thought", 3, f"Identified {len(gaps2)} remaining gaps for final validation: {', '.join(gaps2)}")
        round3_queries = await self._generate_queries(
            3,
            [f"{goal} {gap} validation" for gap in gaps2],
            goal=goal,
            gaps=_numbered(gaps2),
            previous_queries=_numbered(round2.queries),
            total_sources=self.total_sources,
        )
        self._announce_queries(3, "validation queries for final round", round3_queries)
        self._step("round3_search")
        await self._search_round(3, round3_queries, reasoning2, gaps2)

        self._step("synthesize")
        return self.synthesize()

    def synthesize(self) -> dict[str, Any]:
        self._notify("thought", SYNTHESIS_ROUND, "Synthesizing all findings into comprehensive evidence base...")
        notes: list[str] = []
        all_sources: list[dict[str, str]] = []
        for finding in self.findings:
            results = dedupe_results(
                [
                    [
                        SearchResult(
                            title=r.get("title", ""),
                            url=r.get("url", ""),
                            content=r.get("content", ""),
                            score=r.get("score", 0.0),
                        )
                        for r in finding.results
                    ]
                ]
            )
            all_sources.extend({"url": r.url, "title": r.title} for r in results)
            notes.append(
                f"Round {finding.round}: {finding.reasoning}\n"
                f"Queries: {'; '.join(finding.queries)}\n\n"
                f"{format_search_output(results)}"
            )

        sources = dedupe_sources(all_sources)
        total_queries = sum(len(f.queries) for f in self.findings)
        self._notify(
            "thought",
            SYNTHESIS_ROUND,
            f"Analyzed {len(sources)} sources across {len(self.findings)} research rounds ({total_queries} queries).",
        )
        self._notify(
            "complete",
            SYNTHESIS_ROUND,
            f"Research complete! {len(sources)} sources gathered and ready for synthesis.",
        )
        return {
            "findings": list(self.findings),
            "notes": notes,
            "sources": sources,
            "queries": [q for f in self.findings for q in f.queries],
        }


async def iterative_research(state: WorkflowState, ctx: RunContext) -> StageResult:
    engine = IterativeResearcher(ctx)
    update = await engine.run(state.goal, state.research_brief or state.goal)
    return StageResult(update=update, goto=Stage.REPORT)

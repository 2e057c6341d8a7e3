from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from app.models.state import BudgetExceededError
from app.services import logger as log_service
from app.services.budget import RunBudget
from app.tools import search_provider
from app.tools.search_provider import SearchResponse, SearchResult
from app.tools.web_utils import clean_content, normalize_url

SearchFn = Callable[..., Awaitable[SearchResponse]]

SEPARATOR_LINE_LENGTH = 80
SOURCE_HEADER_RE = re.compile(r"---\s*SOURCE\s+(\d+):\s*(.*?)\s*---")
URL_LINE_RE = re.compile(r"^URL:\s*(\S+)", re.MULTILINE)

WEB_SEARCH_TOOL = {
    "name": "web_search",
    "description": "Search the web. Accepts several queries at once and returns de-duplicated results with titles, URLs and summaries.",
    "input_schema": {
        "type": "object",
        "properties": {
            "queries": {
                "type": "array",
                "items": {"type": "string"},
                "description": "List of search queries to execute",
            },
            "max_results": {
                "type": "integer",
                "description": "Maximum number of results per query",
            },
        },
        "required": ["queries"],
    },
}

THINK_TOOL = {
    "name": "think_tool",
    "description": "Record a short reflection on progress, gaps and next steps. Has no side effects.",
    "input_schema": {
        "type": "object",
        "properties": {"reflection": {"type": "string"}},
        "required": ["reflection"],
    },
}

CONDUCT_RESEARCH_TOOL = {
    "name": "ConductResearch",
    "description": "Delegate research on a specific topic to a specialized researcher",
    "input_schema": {
        "type": "object",
        "properties": {
            "research_topic": {
                "type": "string",
                "description": "The topic to research, described in full detail (at least a paragraph).",
            }
        },
        "required": ["research_topic"],
    },
}

RESEARCH_COMPLETE_TOOL = {
    "name": "ResearchComplete",
    "description": "Call this tool to indicate that the research is complete",
    "input_schema": {"type": "object", "properties": {}},
}


@dataclass(slots=True)
class ToolOutcome:
    name: str
    output: str
    is_error: bool = False
    sources: list[dict[str, str]] = field(default_factory=list)


def think(reflection: str) -> str:
    return f"Reflection recorded: {reflection}"


def format_search_output(results: list[SearchResult], *, offset: int = 1) -> str:
    if not results:
        return "No valid search results found. Please try different search queries."
    parts = ["Search results: \n\n"]
    for index, result in enumerate(results):
        parts.append(f"\n\n--- SOURCE {index + offset}: {result.title} ---\n")
        parts.append(f"URL: {result.url}\n\n")
        parts.append(f"SUMMARY:\n{clean_content(result.content, max_length=4000)}\n\n")
        parts.append(f"\n\n{'-' * SEPARATOR_LINE_LENGTH}\n")
    return "".join(parts)


def numbered_source_markers(text: str) -> list[tuple[int, dict[str, str]]]:
    """Pull `(k, {url, title})` pairs out of formatted search output."""
    sources: list[tuple[int, dict[str, str]]] = []
    for match in SOURCE_HEADER_RE.finditer(text or ""):
        url_match = URL_LINE_RE.search(text, match.end())
        if not url_match:
            continue
        next_header = SOURCE_HEADER_RE.search(text, match.end())
        if next_header and url_match.start() > next_header.start():
            continue
        sources.append(
            (int(match.group(1)), {"url": url_match.group(1).strip(), "title": match.group(2).strip() or "Untitled Source"})
        )
    return sources


def parse_source_markers(text: str) -> list[dict[str, str]]:
    return [source for _, source in numbered_source_markers(text)]


def dedupe_results(batches: list[list[SearchResult]]) -> list[SearchResult]:
    seen: set[str] = set()
    unique: list[SearchResult] = []
    for batch in batches:
        for result in batch:
            key = normalize_url(result.url)
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(result)
    return unique


class ToolGateway:
    """Uniform call surface for researcher tools.

    Failures never propagate out of `call`; they come back as error-content
    outcomes so the calling loop keeps going.
    """

    def __init__(
        self,
        search_fn: SearchFn | None = None,
        *,
        budget: RunBudget | None = None,
        max_results: int = 5,
        thread_id: str | None = None,
        next_source_number: int | None = None,
    ):
        self._search_fn = search_fn or search_provider.search
        self.budget = budget or RunBudget()
        self.max_results = max_results
        self.thread_id = thread_id
        # When set, SOURCE numbers keep counting across calls instead of restarting at 1.
        self.next_source_number = next_source_number

    def numbered_from(self, start: int) -> "ToolGateway":
        """Same search function and budget, with SOURCE numbering continuing from `start`."""
        return ToolGateway(
            self._search_fn,
            budget=self.budget,
            max_results=self.max_results,
            thread_id=self.thread_id,
            next_source_number=start,
        )

    @property
    def researcher_tools(self) -> list[dict[str, Any]]:
        return [WEB_SEARCH_TOOL, THINK_TOOL]

    async def search(self, query: str, *, max_results: int | None = None) -> SearchResponse:
        """Single metered search; raises on provider failure or exhausted budget."""
        self.budget.charge_tool("web_search")
        response = await self._search_fn(query, max_results=max_results or self.max_results)
        if not response.query:
            response.query = query
        return response

    async def call(self, name: str, tool_input: dict[str, Any]) -> ToolOutcome:
        try:
            if name == "web_search":
                return await self._web_search(tool_input)
            if name == "think_tool":
                return ToolOutcome(name=name, output=think(str(tool_input.get("reflection", ""))))
            return ToolOutcome(name=name, output=f"Error: Tool {name} not found", is_error=True)
        except BudgetExceededError as e:
            return ToolOutcome(
                name=name,
                output=f"Search limit reached for this run ({e}). Finish with the information gathered so far.",
                is_error=True,
            )
        except Exception as e:
            log_service.log_event(
                event_type="tool_error",
                message=f"Tool {name} failed",
                thread_id=self.thread_id,
                error=str(e),
            )
            return ToolOutcome(name=name, output=f"Error executing {name}: {e}", is_error=True)

    async def _web_search(self, tool_input: dict[str, Any]) -> ToolOutcome:
        queries = tool_input.get("queries") or []
        if isinstance(queries, str):
            queries = [queries]
        queries = [str(q).strip() for q in queries if str(q).strip()]
        if not queries:
            return ToolOutcome(name="web_search", output="Error: web_search requires at least one query", is_error=True)
        max_results = int(tool_input.get("max_results") or self.max_results)

        for _ in queries:
            self.budget.charge_tool("web_search")
        responses = await asyncio.gather(
            *(self._search_fn(q, max_results=max_results) for q in queries),
            return_exceptions=True,
        )
        batches: list[list[SearchResult]] = []
        errors: list[BaseException] = []
        for query, response in zip(queries, responses):
            if isinstance(response, BaseException):
                log_service.log_event(
                    event_type="search_failed",
                    message=f"Search failed for query: {query[:100]}",
                    thread_id=self.thread_id,
                    error=str(response),
                )
                errors.append(response)
                continue
            batches.append(response.results)
        if errors and not batches:
            raise errors[0]

        results = dedupe_results(batches)
        if self.next_source_number is None:
            output = format_search_output(results)
        else:
            output = format_search_output(results, offset=self.next_source_number)
            self.next_source_number += len(results)
        return ToolOutcome(
            name="web_search",
            output=output,
            sources=[{"url": r.url, "title": r.title} for r in results],
        )

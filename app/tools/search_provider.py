from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from tavily import AsyncTavilyClient

from app.config import settings

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

FRESHNESS_MAP = {
    "day": "pd",
    "week": "pw",
    "month": "pm",
    "year": "py",
}


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    query: str = ""
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def tavily_search(
    query: str,
    *,
    search_depth: str = "advanced",
    max_results: int = 5,
    topic: str = "general",
    time_range: str | None = None,
) -> list[SearchResult]:
    """Execute a Tavily web search and return structured results."""
    if not settings.tavily_api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "topic": topic,
    }
    if time_range:
        kwargs["time_range"] = time_range

    response = await client.search(**kwargs)
    return [
        SearchResult(
            title=r.get("title", ""),
            url=r.get("url", ""),
            content=r.get("content", ""),
            score=r.get("score", 0.0),
        )
        for r in response.get("results", [])
    ]


async def brave_search(
    query: str,
    *,
    max_results: int = 5,
    time_range: str | None = None,
) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {"q": query, "count": max_results}
    if time_range and time_range in FRESHNESS_MAP:
        params["freshness"] = FRESHNESS_MAP[time_range]

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[SearchResult] = []
    for idx, item in enumerate(raw_results):
        snippets = item.get("extra_snippets", []) or []
        content = (item.get("description", "") or "").strip() or " ".join(snippets).strip()
        # Brave exposes no relevance score; rank order stands in for it.
        mapped.append(
            SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                content=content,
                score=max(0.0, 1.0 - (idx / total)),
            )
        )
    return mapped


async def search(
    query: str,
    *,
    max_results: int = 5,
    time_range: str | None = None,
) -> SearchResponse:
    """Search with the configured provider, falling back to Tavily when Brave fails."""
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily

    if provider == "tavily":
        results = await tavily_search(query, max_results=max_results, time_range=time_range)
        return SearchResponse(results=results, provider="tavily", query=query)

    if provider == "brave":
        try:
            results = await brave_search(query, max_results=max_results, time_range=time_range)
            if results or not use_fallback:
                return SearchResponse(results=results, provider="brave", query=query)
            reason = "brave returned zero results"
        except Exception as e:
            if not use_fallback:
                raise
            reason = str(e)
        fallback_results = await tavily_search(query, max_results=max_results, time_range=time_range)
        return SearchResponse(
            results=fallback_results,
            provider="tavily",
            query=query,
            fallback_from="brave",
            fallback_reason=reason,
        )

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")


def results_to_dicts(results: list[SearchResult]) -> list[dict[str, Any]]:
    """Convert SearchResult list to JSON-serializable dicts."""
    return [
        {"title": r.title, "url": r.url, "content": r.content, "score": r.score}
        for r in results
    ]

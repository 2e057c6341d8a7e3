from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.config import ResearchConfig
from app.models.state import BudgetExceededError
from app.services import logger as log_service


@dataclass
class RunBudget:
    """Model and tool call ceilings for one run of a thread.

    A limit of 0 disables that ceiling. Thread-level model calls carry over
    from earlier runs through the persisted usage counters.
    """

    max_model_calls_per_run: int = 0
    max_model_calls_per_thread: int = 0
    max_tool_calls_per_run: dict[str, int] = field(default_factory=dict)
    prior_model_calls: int = 0
    prior_tool_calls: dict[str, int] = field(default_factory=dict)
    model_calls: int = 0
    tool_calls: dict[str, int] = field(default_factory=dict)
    thread_id: str | None = None

    @classmethod
    def from_config(
        cls,
        config: ResearchConfig,
        usage: dict[str, Any] | None = None,
        *,
        thread_id: str | None = None,
    ) -> "RunBudget":
        usage = usage or {}
        return cls(
            max_model_calls_per_run=config.max_model_calls_per_run,
            max_model_calls_per_thread=config.max_model_calls_per_thread,
            max_tool_calls_per_run=dict(config.max_tool_calls_per_run),
            prior_model_calls=int(usage.get("model_calls", 0) or 0),
            prior_tool_calls=dict(usage.get("tool_calls", {}) or {}),
            thread_id=thread_id,
        )

    def charge_model(self, *, essential: bool = False) -> None:
        """Count one model call; essential calls are counted but never refused."""
        if not essential:
            if self.max_model_calls_per_run and self.model_calls >= self.max_model_calls_per_run:
                self._exhausted("model_calls_per_run", self.max_model_calls_per_run)
            thread_total = self.prior_model_calls + self.model_calls
            if self.max_model_calls_per_thread and thread_total >= self.max_model_calls_per_thread:
                self._exhausted("model_calls_per_thread", self.max_model_calls_per_thread)
        self.model_calls += 1

    def charge_tool(self, kind: str) -> None:
        limit = self.max_tool_calls_per_run.get(kind, 0)
        used = self.tool_calls.get(kind, 0)
        if limit and used >= limit:
            self._exhausted(f"{kind}_calls_per_run", limit)
        self.tool_calls[kind] = used + 1

    def _exhausted(self, resource: str, limit: int) -> None:
        log_service.log_event(
            event_type="budget_exhausted",
            message=f"Budget exhausted: {resource}",
            thread_id=self.thread_id,
            limit=limit,
        )
        raise BudgetExceededError(resource, limit)

    def usage(self) -> dict[str, Any]:
        """Thread-level totals to persist into WorkflowState.usage."""
        tool_totals = dict(self.prior_tool_calls)
        for kind, count in self.tool_calls.items():
            tool_totals[kind] = tool_totals.get(kind, 0) + count
        return {
            "model_calls": self.prior_model_calls + self.model_calls,
            "tool_calls": tool_totals,
        }

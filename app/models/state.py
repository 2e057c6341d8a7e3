from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.tools.web_utils import normalize_url


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Errors ---


class WorkflowError(Exception):
    """Base class for workflow failures surfaced to callers."""


class ThreadNotFoundError(WorkflowError):
    pass


class RunInProgressError(WorkflowError):
    pass


class InterruptValidationError(WorkflowError):
    pass


class CheckpointConflictError(WorkflowError):
    pass


class BudgetExceededError(WorkflowError):
    def __init__(self, resource: str, limit: int):
        super().__init__(f"{resource} budget of {limit} exhausted")
        self.resource = resource
        self.limit = limit


class ModelInvocationError(WorkflowError):
    pass


# --- Thread ---


class ThreadMode(str, Enum):
    AUTO = "auto"
    PLAN = "plan"


class ThreadStatus(str, Enum):
    STARTED = "started"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    ERROR = "error"


class Strategy(str, Enum):
    SUPERVISOR = "supervisor"
    ITERATIVE = "iterative"


class Stage(str, Enum):
    ROUTE_REQUEST = "route_request"
    ANSWER_FOLLOWUP = "answer_followup"
    CLARIFY = "clarify"
    WRITE_BRIEF = "write_brief"
    SUPERVISE = "supervise"
    SUPERVISE_TOOLS = "supervise_tools"
    ITERATIVE_RESEARCH = "iterative_research"
    REPORT = "report"
    TERMINAL = "terminal"


class Thread(BaseModel):
    """Unit of work and persistence boundary for one research run."""
    thread_id: str
    mode: ThreadMode = ThreadMode.AUTO
    strategy: Strategy = Strategy.SUPERVISOR
    status: ThreadStatus = ThreadStatus.STARTED
    next_stage: Stage = Stage.CLARIFY
    config: dict[str, Any] = Field(default_factory=dict)  # validated ResearchConfig overrides
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Interrupts ---


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InterruptOption(_CamelModel):
    value: str
    label: str
    description: Optional[str] = None


class InterruptPayload(_CamelModel):
    question_id: str
    question_text: str
    stage: Literal["question"] = "question"
    options: list[InterruptOption] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def option(self, value: str) -> InterruptOption | None:
        return next((o for o in self.options if o.value == value), None)


class InterruptResponse(_CamelModel):
    question_id: str
    selected_option: Optional[str] = None
    custom_answer: Optional[str] = None


# --- Research artefacts ---


class Source(BaseModel):
    url: str
    title: str = ""


class Claim(BaseModel):
    id: str
    text: str
    citations: list[int] = Field(default_factory=list)
    confidence: Literal["high", "medium", "low"] = "medium"


class Finding(BaseModel):
    """One completed round of the iterative engine. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    round: int = Field(ge=1, le=3)
    queries: list[str] = Field(default_factory=list)
    results: list[dict[str, Any]] = Field(default_factory=list)
    reasoning: str = ""
    gaps: Optional[list[str]] = None


class WorkflowState(BaseModel):
    goal: str = ""
    messages: list[dict[str, Any]] = Field(default_factory=list)
    research_brief: Optional[str] = None
    supervisor_messages: list[dict[str, Any]] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    raw_notes: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    research_iterations: int = 0
    interrupt: Optional[InterruptPayload] = None
    final_report: Optional[str] = None
    answer: Optional[str] = None
    claims: list[Claim] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    queries: list[str] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    planner_questions: Optional[list[InterruptPayload]] = None
    planner_answers: list[dict[str, Any]] = Field(default_factory=list)
    routing_decision: Optional[dict[str, Any]] = None
    usage: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ResearcherState:
    """Private scratch state of one researcher unit, discarded after compression."""

    research_topic: str
    researcher_messages: list[dict[str, Any]] = field(default_factory=list)
    tool_call_iterations: int = 0
    raw_notes: list[str] = field(default_factory=list)
    compressed_research: str | None = None

    def complete(self, text: str) -> None:
        if self.compressed_research is not None:
            raise RuntimeError(f"Research on {self.research_topic!r} was already compressed")
        self.compressed_research = text


# --- Reducers ---


@dataclass(frozen=True, slots=True)
class Override:
    """Wrap a value to replace a field instead of merging into it."""

    value: Any


def to_plain(value: Any) -> Any:
    if isinstance(value, Override):
        return Override(to_plain(value.value))
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value


def _last_write(current: Any, update: Any) -> Any:
    if isinstance(update, Override):
        return update.value
    return update


def _append(current: list[Any], update: Any) -> list[Any]:
    if isinstance(update, Override):
        return list(update.value or [])
    if not isinstance(update, list):
        update = [update]
    return [*current, *update]


def dedupe_sources(sources: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    index: dict[str, int] = {}
    for source in sources:
        url = (source.get("url") or "").strip()
        key = normalize_url(url)
        if not key:
            continue
        if key in index:
            existing = merged[index[key]]
            if not existing.get("title") and source.get("title"):
                existing["title"] = source["title"]
            continue
        index[key] = len(merged)
        merged.append({"url": url, "title": source.get("title") or ""})
    return merged


def _merge_sources(current: list[dict[str, Any]], update: Any) -> list[dict[str, Any]]:
    if isinstance(update, Override):
        return dedupe_sources(list(update.value or []))
    if not isinstance(update, list):
        update = [update]
    return dedupe_sources([*current, *update])


REDUCERS: dict[str, Callable[[Any, Any], Any]] = {
    "messages": _append,
    "supervisor_messages": _append,
    "notes": _append,
    "raw_notes": _append,
    "sources": _merge_sources,
    "findings": _append,
    "planner_answers": _append,
}


def apply_update(state: WorkflowState, update: dict[str, Any]) -> WorkflowState:
    """Merge a stage's partial update into the state through the field reducers."""
    data = state.model_dump(mode="json")
    for key, value in update.items():
        if key not in WorkflowState.model_fields:
            raise KeyError(f"Unknown workflow state field: {key}")
        reducer = REDUCERS.get(key, _last_write)
        data[key] = reducer(data[key], to_plain(value))
    return WorkflowState.model_validate(data)


def plain_update(update: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe view of an update with overrides unwrapped."""
    plain: dict[str, Any] = {}
    for key, value in update.items():
        value = to_plain(value)
        plain[key] = value.value if isinstance(value, Override) else value
    return plain

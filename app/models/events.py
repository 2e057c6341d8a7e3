from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    NODE = "node"
    DRAFT = "draft"
    EVIDENCE = "evidence"
    QUERIES = "queries"
    ISSUES = "issues"
    LLM_TOKEN = "llm_token"
    CUSTOM = "custom"
    ERROR = "error"
    DONE = "done"
    KEEPALIVE = "keepalive"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"

    def to_sse(self) -> dict[str, str]:
        """Payload shape consumed by sse-starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data)}

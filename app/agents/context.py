from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.config import ResearchConfig
from app.models.events import SSEEvent
from app.models.state import Stage, Strategy, ThreadMode
from app.services.budget import RunBudget
from app.services.event_channel import EventChannel
from app.services.model_gateway import ModelGateway
from app.tools.gateway import ToolGateway


@dataclass
class RunContext:
    """Everything a stage needs for one run of one thread."""

    thread_id: str
    config: ResearchConfig
    models: ModelGateway
    tools: ToolGateway
    budget: RunBudget
    mode: ThreadMode = ThreadMode.AUTO
    strategy: Strategy = Strategy.SUPERVISOR
    channel: EventChannel | None = None

    def emit(self, event: SSEEvent) -> None:
        if self.channel is not None:
            self.channel.publish(event)


@dataclass
class StageResult:
    update: dict[str, Any]
    goto: Stage

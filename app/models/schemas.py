from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models.state import InterruptPayload, Strategy, ThreadMode


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---


class StartThreadRequest(_ApiModel):
    goal: str = Field(min_length=1)
    mode: ThreadMode = ThreadMode.AUTO
    thread_id: Optional[str] = None
    strategy: Optional[Strategy] = None
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("goal")
    @classmethod
    def goal_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("goal must not be blank")
        return value.strip()


class ResumeThreadRequest(_ApiModel):
    question_id: str
    selected_option: Optional[str] = None
    custom_answer: Optional[str] = None


# --- Responses ---


class StartThreadResponse(_ApiModel):
    thread_id: str
    status: str


class InterruptedResponse(_ApiModel):
    thread_id: str
    status: str = "interrupted"
    interrupt: InterruptPayload


class ResumeThreadResponse(_ApiModel):
    thread_id: str
    status: str
    next_stage: str

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "google/gemini-2.5-pro"
    openrouter_model: str = ""
    openrouter_app_title: str = "researchflow"
    openrouter_timeout_seconds: float = 120.0

    # Stage models (empty falls back to the active model)
    research_model: str = ""
    compression_model: str = "google/gemini-2.5-flash"
    final_report_model: str = ""
    fallback_models: str = "google/gemini-2.5-flash,openai/gpt-4.1"  # ordered, comma separated

    # Search provider
    search_provider: str = "tavily"  # tavily | brave
    tavily_api_key: str = ""
    brave_api_key: str = ""
    search_fallback_to_tavily: bool = True
    search_max_results: int = 5

    # Workflow
    allow_clarification: bool = True
    enable_followup_routing: bool = True
    max_concurrent_research_units: int = 5
    max_researcher_iterations: int = 6
    max_react_tool_calls: int = 10
    max_structured_output_retries: int = 3
    research_model_max_tokens: int = 10_000
    compression_model_max_tokens: int = 8192
    final_report_model_max_tokens: int = 10_000
    stream_report_tokens: bool = False

    # Budgets (0 disables a ceiling)
    max_model_calls_per_run: int = 120
    max_model_calls_per_thread: int = 400
    max_search_calls_per_run: int = 60

    # Iterative round engine
    iterative_search_pause_ms: int = 300
    iterative_results_per_query: int = 8

    # Streaming transport
    stream_keepalive_seconds: float = 30.0
    stream_timeout_seconds: float = 300.0

    # PostgreSQL checkpointer (empty keeps checkpoints in memory)
    database_url: str = ""

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def fallback_model_list(self) -> list[str]:
        return [m.strip() for m in self.fallback_models.split(",") if m.strip()]

    @property
    def active_model(self) -> str:
        return self.openrouter_model or self.default_model


settings = Settings()


class ResearchConfig(BaseModel):
    """Validated knobs for one workflow run.

    Built from the environment via `from_settings`; a start request may
    override individual fields, which are re-validated against the bounds.
    """

    model_config = ConfigDict(extra="forbid")

    allow_clarification: bool = True
    enable_followup_routing: bool = True
    followup_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_structured_output_retries: int = Field(default=3, ge=1, le=10)
    max_concurrent_research_units: int = Field(default=5, ge=1, le=20)
    max_researcher_iterations: int = Field(default=6, ge=1, le=10)
    max_react_tool_calls: int = Field(default=10, ge=1, le=30)

    research_model: str = "google/gemini-2.5-pro"
    research_model_max_tokens: int = Field(default=10_000, ge=256)
    compression_model: str = "google/gemini-2.5-flash"
    compression_model_max_tokens: int = Field(default=8192, ge=256)
    final_report_model: str = "google/gemini-2.5-pro"
    final_report_model_max_tokens: int = Field(default=10_000, ge=256)
    fallback_models: list[str] = Field(default_factory=list)
    stream_report_tokens: bool = False

    max_model_calls_per_run: int = Field(default=120, ge=0)
    max_model_calls_per_thread: int = Field(default=400, ge=0)
    max_tool_calls_per_run: dict[str, int] = Field(default_factory=lambda: {"web_search": 60})

    search_max_results: int = Field(default=5, ge=1, le=20)
    iterative_search_pause_ms: int = Field(default=300, ge=0)
    iterative_results_per_query: int = Field(default=8, ge=1, le=20)

    @classmethod
    def from_settings(cls, source: Settings | None = None, **overrides: Any) -> "ResearchConfig":
        s = source or settings
        active = s.active_model
        values: dict[str, Any] = {
            "allow_clarification": s.allow_clarification,
            "enable_followup_routing": s.enable_followup_routing,
            "max_structured_output_retries": s.max_structured_output_retries,
            "max_concurrent_research_units": s.max_concurrent_research_units,
            "max_researcher_iterations": s.max_researcher_iterations,
            "max_react_tool_calls": s.max_react_tool_calls,
            "research_model": s.research_model or active,
            "research_model_max_tokens": s.research_model_max_tokens,
            "compression_model": s.compression_model or active,
            "compression_model_max_tokens": s.compression_model_max_tokens,
            "final_report_model": s.final_report_model or active,
            "final_report_model_max_tokens": s.final_report_model_max_tokens,
            "fallback_models": s.fallback_model_list,
            "stream_report_tokens": s.stream_report_tokens,
            "max_model_calls_per_run": s.max_model_calls_per_run,
            "max_model_calls_per_thread": s.max_model_calls_per_thread,
            "max_tool_calls_per_run": {"web_search": s.max_search_calls_per_run},
            "search_max_results": s.search_max_results,
            "iterative_search_pause_ms": s.iterative_search_pause_ms,
            "iterative_results_per_query": s.iterative_results_per_query,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)

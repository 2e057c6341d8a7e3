"""Centralized logging service using loguru.

Every helper writes one structured record: the payload is bound as loguru
`extra` (so sinks can filter on `kind` or `thread_id`) and rendered into the
message for the plain-text sinks.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from app.config import settings

LOG_DIR = Path("logs")
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[thread_id]}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[thread_id]} | {name}:{function}:{line} - {message}"
NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "asyncpg",
    "asyncio",
)


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, httpx, asyncpg) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str | None = None, log_dir: Path | None = LOG_DIR) -> None:
    """Install the console and daily file sinks and route stdlib logging through loguru."""
    logger.remove()
    logger.configure(extra={"thread_id": "-"})
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=(level or settings.app_log_level).upper(), colorize=True)
    if log_dir is not None:
        log_dir.mkdir(exist_ok=True)
        logger.add(
            log_dir / "researchflow_{time:YYYY-MM-DD}.log",
            format=FILE_FORMAT,
            level="DEBUG",
            rotation="00:00",
            retention="7 days",
            compression="zip",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())


def _emit(kind: str, level: str, payload: dict[str, Any]) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
    thread_id = payload.get("thread_id") or "-"
    logger.bind(kind=kind, thread_id=thread_id, payload=record).opt(depth=2).log(level, f"{kind}: {record}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
    thread_id: Optional[str] = None,
) -> None:
    """Log a model invocation."""
    _emit(
        "LLM_CALL_FAILED" if error else "LLM_CALL",
        "ERROR" if error else "INFO",
        {
            "thread_id": thread_id,
            "model": model,
            "caller": caller,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "duration_ms": duration_ms,
            "status": status,
            "error": error,
        },
    )


def log_research_step(thread_id: str, stage: str, status: str, data: Optional[dict] = None) -> None:
    _emit("RESEARCH_STEP", "INFO", {"thread_id": thread_id, "stage": stage, "status": status, "data": data})


def log_checkpoint(
    operation: str,
    thread_id: str,
    status: str,
    version: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    """Log a checkpoint read or write; successes only at DEBUG."""
    _emit(
        "CHECKPOINT_FAILED" if error else "CHECKPOINT",
        "ERROR" if error else "DEBUG",
        {"operation": operation, "thread_id": thread_id, "version": version, "status": status, "error": error},
    )


def log_event(event_type: str, message: str, **kwargs) -> None:
    _emit("EVENT", "INFO", {"event_type": event_type, "message": message, **kwargs})


configure_logging()

import logging

import pytest
from loguru import logger

from app.services import logger as log_service


@pytest.fixture
def records():
    captured: list = []
    sink_id = logger.add(lambda message: captured.append(message.record), level="DEBUG")
    yield captured
    logger.remove(sink_id)


def test_log_event_binds_kind_and_thread(records):
    log_service.log_event(event_type="model_fallback", message="Falling back", thread_id="t-1", caller="report")

    record = records[-1]
    assert record["extra"]["kind"] == "EVENT"
    assert record["extra"]["thread_id"] == "t-1"
    assert record["extra"]["payload"]["caller"] == "report"
    assert record["message"].startswith("EVENT: ")


def test_failed_llm_call_logs_at_error(records):
    log_service.log_llm_call(model="m", caller="supervisor", error="boom", thread_id="t-2")

    record = records[-1]
    assert record["level"].name == "ERROR"
    assert record["extra"]["kind"] == "LLM_CALL_FAILED"
    assert record["extra"]["payload"]["total_tokens"] == 0


def test_records_without_thread_use_placeholder(records):
    log_service.log_research_step("", "clarify", "completed")

    assert records[-1]["extra"]["thread_id"] == "-"


def test_stdlib_logging_is_forwarded(records):
    logging.getLogger("researchflow.test").warning("legacy warning")

    assert any(r["message"] == "legacy warning" and r["level"].name == "WARNING" for r in records)

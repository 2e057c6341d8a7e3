from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from app.api.deps import get_engine, to_http_error
from app.models.schemas import (
    InterruptedResponse,
    ResumeThreadRequest,
    ResumeThreadResponse,
    StartThreadRequest,
    StartThreadResponse,
)
from app.models.state import InterruptResponse, WorkflowError
from app.services import logger as log_service
from app.services.checkpointer import Checkpoint
from app.services.engine import ResearchEngine

router = APIRouter(prefix="/api/threads", tags=["threads"])


def _interrupted(checkpoint: Checkpoint) -> JSONResponse:
    body = InterruptedResponse(
        thread_id=checkpoint.thread.thread_id,
        status=checkpoint.thread.status.value,
        interrupt=checkpoint.state.interrupt,
    )
    return JSONResponse(status_code=202, content=body.model_dump(by_alias=True, mode="json"))


@router.post("/start")
async def start_thread(request: StartThreadRequest, engine: ResearchEngine = Depends(get_engine)):
    """Seed a run. Plan mode may answer with the first question right away."""
    try:
        checkpoint = await engine.start(
            request.goal,
            mode=request.mode,
            thread_id=request.thread_id,
            strategy=request.strategy,
            config_overrides=request.config,
        )
    except (WorkflowError, ValueError) as e:
        raise to_http_error(e) from e

    if checkpoint.state.interrupt is not None:
        return _interrupted(checkpoint)
    body = StartThreadResponse(thread_id=checkpoint.thread.thread_id, status="started")
    return JSONResponse(status_code=201, content=body.model_dump(by_alias=True))


@router.get("/{thread_id}/stream")
async def stream_thread(thread_id: str, engine: ResearchEngine = Depends(get_engine)):
    """SSE feed of the run. Finished threads get a snapshot replay."""
    try:
        events = await engine.open_stream(thread_id)
    except WorkflowError as e:
        raise to_http_error(e) from e
    return EventSourceResponse(events, sep="\n")


@router.post("/{thread_id}/resume")
async def resume_thread(
    thread_id: str,
    request: ResumeThreadRequest,
    engine: ResearchEngine = Depends(get_engine),
):
    try:
        checkpoint = await engine.resume(
            thread_id,
            InterruptResponse(
                question_id=request.question_id,
                selected_option=request.selected_option,
                custom_answer=request.custom_answer,
            ),
        )
    except (WorkflowError, ValueError) as e:
        log_service.log_event(
            event_type="resume_rejected",
            message="Interrupt answer rejected",
            thread_id=thread_id,
            error=str(e),
        )
        raise to_http_error(e) from e

    if checkpoint.state.interrupt is not None:
        return _interrupted(checkpoint)
    return ResumeThreadResponse(
        thread_id=thread_id,
        status=checkpoint.thread.status.value,
        next_stage=checkpoint.thread.next_stage.value,
    ).model_dump(by_alias=True)


@router.get("/{thread_id}/state")
async def thread_state(thread_id: str, engine: ResearchEngine = Depends(get_engine)):
    try:
        return await engine.snapshot(thread_id)
    except WorkflowError as e:
        raise to_http_error(e) from e


@router.delete("/{thread_id}", status_code=204)
async def delete_thread(thread_id: str, engine: ResearchEngine = Depends(get_engine)):
    try:
        await engine.delete(thread_id)
    except WorkflowError as e:
        raise to_http_error(e) from e

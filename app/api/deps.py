from __future__ import annotations

from fastapi import HTTPException, Request

from app.models.state import (
    CheckpointConflictError,
    InterruptValidationError,
    RunInProgressError,
    ThreadNotFoundError,
    WorkflowError,
)
from app.services.engine import ResearchEngine


def get_engine(request: Request) -> ResearchEngine:
    """The engine built in the app lifespan."""
    return request.app.state.engine


def to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, ThreadNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InterruptValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, (RunInProgressError, CheckpointConflictError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, WorkflowError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=422, detail=str(error))

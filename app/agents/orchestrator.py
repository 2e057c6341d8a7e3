from __future__ import annotations

from typing import Any, Awaitable, Callable

from app.agents.context import RunContext, StageResult
from app.agents.followup import answer_followup, route_request
from app.agents.iterative import iterative_research
from app.agents.report import REPORT_ERROR_PREFIX, write_report
from app.agents.scoping import clarify, write_brief
from app.agents.supervisor import supervise, supervise_tools
from app.models.state import (
    Override,
    Stage,
    ThreadStatus,
    WorkflowState,
    apply_update,
    utcnow,
)
from app.services import logger as log_service
from app.services import streaming
from app.services.checkpointer import Checkpoint, Checkpointer

FOLLOWUP_ERROR_PREFIX = "Error answering follow-up"

StageHandler = Callable[[WorkflowState, RunContext], Awaitable[StageResult]]

STAGE_HANDLERS: dict[Stage, StageHandler] = {
    Stage.ROUTE_REQUEST: route_request,
    Stage.ANSWER_FOLLOWUP: answer_followup,
    Stage.CLARIFY: clarify,
    Stage.WRITE_BRIEF: write_brief,
    Stage.SUPERVISE: supervise,
    Stage.SUPERVISE_TOOLS: supervise_tools,
    Stage.ITERATIVE_RESEARCH: iterative_research,
    Stage.REPORT: write_report,
}

# Stages that may pause for the user; start and resume run them inline.
GATE_STAGES = frozenset({Stage.ROUTE_REQUEST, Stage.CLARIFY})


def stage_error_update(stage: Stage, error: BaseException) -> dict[str, Any]:
    """Terminal update for a stage that raised."""
    if stage == Stage.ANSWER_FOLLOWUP:
        text = f"{FOLLOWUP_ERROR_PREFIX}: {error}"
        return {
            "answer": text,
            "messages": [{"role": "assistant", "content": "Follow-up answer failed due to an error"}],
            "interrupt": None,
        }
    return {
        "final_report": f"{REPORT_ERROR_PREFIX}: {error}",
        "messages": [{"role": "assistant", "content": "Report generation failed due to an error"}],
        "notes": Override([]),
        "supervisor_messages": Override([]),
        "interrupt": None,
    }


def terminal_status(state: WorkflowState) -> ThreadStatus:
    if state.interrupt is not None:
        return ThreadStatus.INTERRUPTED
    if (state.final_report or "").startswith(REPORT_ERROR_PREFIX):
        return ThreadStatus.ERROR
    if (state.answer or "").startswith(FOLLOWUP_ERROR_PREFIX):
        return ThreadStatus.ERROR
    return ThreadStatus.COMPLETED


class WorkflowOrchestrator:
    """Drives one thread through the stage state machine.

    Stages never touch the checkpoint themselves: each returns a partial
    update, which is merged through the field reducers and persisted before
    the next stage starts. A stage that raises ends the run with an error
    report instead of leaving the thread half-way.

    Flow (supervisor strategy):
      clarify -> write_brief -> supervise <-> supervise_tools -> report
    The iterative strategy replaces the supervise loop with iterative_research.
    A new message on a finished thread enters at route_request.
    """

    def __init__(
        self,
        checkpointer: Checkpointer,
        ctx: RunContext,
        handlers: dict[Stage, StageHandler] | None = None,
    ):
        self.checkpointer = checkpointer
        self.ctx = ctx
        self.handlers = handlers or STAGE_HANDLERS

    async def _step(self, stage: Stage, state: WorkflowState) -> StageResult:
        handler = self.handlers[stage]
        log_service.log_research_step(self.ctx.thread_id, stage.value, "started")
        try:
            result = await handler(state, self.ctx)
        except Exception as e:
            log_service.log_event(
                event_type="stage_failed",
                message=f"Stage {stage.value} failed",
                thread_id=self.ctx.thread_id,
                error=str(e),
            )
            self.ctx.emit(streaming.error(str(e), error_name="Stage error", node_name=stage.value))
            return StageResult(update=stage_error_update(stage, e), goto=Stage.TERMINAL)
        log_service.log_research_step(
            self.ctx.thread_id,
            stage.value,
            "completed",
            {"next": result.goto.value, "fields": sorted(result.update)},
        )
        return result

    def _status(self, state: WorkflowState, goto: Stage, gate_only: bool) -> ThreadStatus:
        if state.interrupt is not None or goto == Stage.TERMINAL:
            return terminal_status(state)
        if gate_only and goto not in GATE_STAGES:
            return ThreadStatus.STARTED
        return ThreadStatus.RUNNING

    async def run(self, checkpoint: Checkpoint, *, gate_only: bool = False) -> Checkpoint:
        """Advance the thread from its `next_stage` until it pauses or ends.

        With `gate_only`, stop before the first stage that cannot raise an
        interrupt; the rest of the run is left for the stream.
        """
        thread = checkpoint.thread.model_copy(deep=True)
        state = checkpoint.state
        stage = thread.next_stage

        if not gate_only and stage != Stage.TERMINAL and thread.status != ThreadStatus.RUNNING:
            thread.status = ThreadStatus.RUNNING
            thread.updated_at = utcnow()
            checkpoint = await self.checkpointer.put(thread, state, expected_version=checkpoint.version)

        while stage != Stage.TERMINAL:
            if gate_only and stage not in GATE_STAGES:
                break
            if state.interrupt is not None:
                break

            result = await self._step(stage, state)
            state = apply_update(state, result.update)
            state = state.model_copy(update={"usage": self.ctx.budget.usage()})

            thread.next_stage = result.goto
            thread.status = self._status(state, result.goto, gate_only)
            thread.updated_at = utcnow()
            checkpoint = await self.checkpointer.put(thread, state, expected_version=checkpoint.version)

            for event in streaming.events_from_update(stage.value, result.update):
                self.ctx.emit(event)
            stage = result.goto

        log_service.log_research_step(
            self.ctx.thread_id,
            "run",
            thread.status.value,
            {"next_stage": thread.next_stage.value, "version": checkpoint.version, "usage": state.usage},
        )
        return checkpoint

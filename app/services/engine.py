"""Process-wide research engine: start, resume, stream and inspect threads.

Built once at startup (see `app.main`) and handed to request handlers, so
tests can build a fresh engine around a memory checkpointer and fake clients.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from uuid import uuid4

from app.agents.context import RunContext
from app.agents.followup import NEW_RESEARCH, decision_from_option, new_research_reset
from app.agents.orchestrator import WorkflowOrchestrator, stage_error_update
from app.agents.report import REPORT_ERROR_PREFIX
from app.config import ResearchConfig, Settings, settings
from app.models.state import (
    CheckpointConflictError,
    InterruptResponse,
    InterruptValidationError,
    RunInProgressError,
    Stage,
    Strategy,
    Thread,
    ThreadMode,
    ThreadNotFoundError,
    ThreadStatus,
    WorkflowState,
    apply_update,
    utcnow,
)
from app.services import logger as log_service
from app.services import streaming
from app.services.budget import RunBudget
from app.services.checkpointer import Checkpoint, Checkpointer
from app.services.event_channel import EventChannel
from app.services.model_gateway import ModelGateway
from app.services.publisher import publish_events
from app.tools.gateway import SearchFn, ToolGateway

FINISHED = (ThreadStatus.COMPLETED, ThreadStatus.ERROR, ThreadStatus.INTERRUPTED)


def initial_stage(config: ResearchConfig) -> Stage:
    return Stage.CLARIFY if config.allow_clarification else Stage.WRITE_BRIEF


class ResearchEngine:
    """Owns the checkpointer and every run in flight in this process."""

    def __init__(
        self,
        checkpointer: Checkpointer,
        *,
        client: Any | None = None,
        search_fn: SearchFn | None = None,
        source: Settings | None = None,
    ):
        self.checkpointer = checkpointer
        self.settings = source or settings
        self._client = client
        self._search_fn = search_fn
        self._active: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # --- helpers ---

    @asynccontextmanager
    async def _thread_lock(self, thread_id: str) -> AsyncIterator[None]:
        """Serialize operations on one thread; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._lock_users[thread_id] = self._lock_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[thread_id] - 1
            if remaining:
                self._lock_users[thread_id] = remaining
            else:
                del self._lock_users[thread_id]
                del self._locks[thread_id]

    def build_config(self, overrides: dict[str, Any] | None = None, base: dict[str, Any] | None = None) -> ResearchConfig:
        """Validate per-run knobs; raises pydantic.ValidationError on bad overrides."""
        if base:
            return ResearchConfig.model_validate({**base, **(overrides or {})})
        return ResearchConfig.from_settings(self.settings, **(overrides or {}))

    def context(self, thread: Thread, state: WorkflowState, channel: EventChannel | None = None) -> RunContext:
        config = ResearchConfig.model_validate(thread.config)
        budget = RunBudget.from_config(config, state.usage, thread_id=thread.thread_id)
        return RunContext(
            thread_id=thread.thread_id,
            config=config,
            models=ModelGateway(
                self._client,
                budget=budget,
                fallback_models=config.fallback_models,
                thread_id=thread.thread_id,
            ),
            tools=ToolGateway(
                self._search_fn,
                budget=budget,
                max_results=config.search_max_results,
                thread_id=thread.thread_id,
            ),
            budget=budget,
            mode=thread.mode,
            strategy=thread.strategy,
            channel=channel,
        )

    def is_active(self, thread_id: str) -> bool:
        task = self._active.get(thread_id)
        return task is not None and not task.done()

    async def load(self, thread_id: str) -> Checkpoint:
        checkpoint = await self.checkpointer.get(thread_id)
        if checkpoint is None:
            raise ThreadNotFoundError(f"Thread {thread_id} not found")
        return checkpoint

    async def _run_gate(self, checkpoint: Checkpoint) -> Checkpoint:
        ctx = self.context(checkpoint.thread, checkpoint.state)
        return await WorkflowOrchestrator(self.checkpointer, ctx).run(checkpoint, gate_only=True)

    # --- operations ---

    async def start(
        self,
        goal: str,
        *,
        mode: ThreadMode = ThreadMode.AUTO,
        thread_id: str | None = None,
        strategy: Strategy | None = None,
        config_overrides: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Seed a run. Plan mode runs the interrupt gate inline; everything
        else waits for the stream."""
        goal = (goal or "").strip()
        if not goal:
            raise ValueError("goal must not be empty")
        thread_id = thread_id or str(uuid4())

        async with self._thread_lock(thread_id):
            if self.is_active(thread_id):
                raise RunInProgressError(f"Thread {thread_id} already has a run in progress")
            existing = await self.checkpointer.get(thread_id)
            user_message = {"role": "user", "content": goal}

            if existing is None:
                config = self.build_config(config_overrides)
                thread = Thread(
                    thread_id=thread_id,
                    mode=mode,
                    strategy=strategy or Strategy.SUPERVISOR,
                    next_stage=initial_stage(config),
                    config=config.model_dump(),
                )
                state = WorkflowState(goal=goal, messages=[user_message])
                expected = 0
            else:
                if existing.thread.status == ThreadStatus.INTERRUPTED:
                    raise RunInProgressError(f"Thread {thread_id} is waiting for an answer; resume it instead")
                config = self.build_config(config_overrides, base=existing.thread.config)
                thread = existing.thread.model_copy(deep=True)
                thread.mode = mode
                thread.strategy = strategy or thread.strategy
                thread.config = config.model_dump()

                update: dict[str, Any] = {
                    "goal": goal,
                    "messages": [user_message],
                    "answer": None,
                    "routing_decision": None,
                    "interrupt": None,
                }
                report = existing.state.final_report or ""
                if report and not report.startswith(REPORT_ERROR_PREFIX) and config.enable_followup_routing:
                    thread.next_stage = Stage.ROUTE_REQUEST
                else:
                    if report:
                        update.update(new_research_reset(goal))
                    thread.next_stage = initial_stage(config)
                state = apply_update(existing.state, update)
                expected = existing.version

            thread.status = ThreadStatus.STARTED
            thread.updated_at = utcnow()
            checkpoint = await self.checkpointer.put(thread, state, expected_version=expected)
            log_service.log_event(
                event_type="thread_started",
                message="Research thread started",
                thread_id=thread_id,
                mode=thread.mode.value,
                strategy=thread.strategy.value,
                next_stage=thread.next_stage.value,
            )
            if thread.mode == ThreadMode.PLAN:
                checkpoint = await self._run_gate(checkpoint)
            return checkpoint

    async def resume(self, thread_id: str, response: InterruptResponse) -> Checkpoint:
        """Answer the pending interrupt and re-enter the stage that raised it."""
        async with self._thread_lock(thread_id):
            if self.is_active(thread_id):
                raise RunInProgressError(f"Thread {thread_id} already has a run in progress")
            checkpoint = await self.load(thread_id)
            pending = checkpoint.state.interrupt
            if pending is None:
                raise InterruptValidationError(f"Thread {thread_id} has no pending question")
            if response.question_id != pending.question_id:
                raise InterruptValidationError(
                    f"Answer is for question {response.question_id!r}, pending question is {pending.question_id!r}"
                )
            option = None
            if response.selected_option:
                option = pending.option(response.selected_option)
                if option is None:
                    raise InterruptValidationError(
                        f"Option {response.selected_option!r} was not offered for question {pending.question_id!r}"
                    )
            custom = (response.custom_answer or "").strip()
            if option is None and not custom:
                raise InterruptValidationError("Provide selectedOption or customAnswer")

            update: dict[str, Any] = {"interrupt": None}
            if pending.metadata.get("raisedBy") == Stage.ROUTE_REQUEST.value:
                decision = decision_from_option(option.value) if option else NEW_RESEARCH
                update["routing_decision"] = {
                    "decision": decision,
                    "confidence": 1.0,
                    "reasoning": custom or "Chosen by the user",
                    "source": "user",
                }
            else:
                answer = custom or option.label
                update["messages"] = [{"role": "user", "content": f"{pending.question_text}\nAnswer: {answer}"}]
                update["planner_answers"] = [
                    {
                        "questionId": pending.question_id,
                        "selectedOption": option.value if option else None,
                        "customAnswer": custom or None,
                        "answer": answer,
                    }
                ]

            state = apply_update(checkpoint.state, update)
            thread = checkpoint.thread.model_copy(deep=True)
            thread.status = ThreadStatus.STARTED
            thread.updated_at = utcnow()
            checkpoint = await self.checkpointer.put(thread, state, expected_version=checkpoint.version)
            log_service.log_event(
                event_type="thread_resumed",
                message="Interrupt answered",
                thread_id=thread_id,
                question_id=pending.question_id,
            )
            return await self._run_gate(checkpoint)

    async def open_stream(self, thread_id: str) -> AsyncIterator[dict[str, str]]:
        """Start the run behind a stream, or replay the snapshot of a finished thread.

        Lookup and conflict errors are raised here, before any response starts.
        """
        async with self._thread_lock(thread_id):
            checkpoint = await self.load(thread_id)
            if self.is_active(thread_id):
                raise RunInProgressError(f"Thread {thread_id} is already streaming")
            if checkpoint.thread.status in FINISHED or checkpoint.thread.next_stage == Stage.TERMINAL:
                return self._replay(checkpoint)

            channel = EventChannel()
            ctx = self.context(checkpoint.thread, checkpoint.state, channel)
            task = asyncio.create_task(self._run(checkpoint, ctx))
            self._active[thread_id] = task
        return publish_events(
            channel,
            run_task=task,
            keepalive_seconds=self.settings.stream_keepalive_seconds,
            timeout_seconds=self.settings.stream_timeout_seconds,
            thread_id=thread_id,
        )

    async def _replay(self, checkpoint: Checkpoint) -> AsyncIterator[dict[str, str]]:
        yield streaming.node("snapshot", self.snapshot_of(checkpoint)).to_sse()
        state = checkpoint.state
        if state.answer:
            yield streaming.draft(state.answer, final=True, kind="answer").to_sse()
        elif state.final_report:
            yield streaming.draft(state.final_report, final=True, kind="report").to_sse()
        yield streaming.done().to_sse()

    async def _run(self, checkpoint: Checkpoint, ctx: RunContext) -> None:
        thread_id = checkpoint.thread.thread_id
        try:
            await WorkflowOrchestrator(self.checkpointer, ctx).run(checkpoint)
        except asyncio.CancelledError:
            log_service.log_event(event_type="run_cancelled", message="Research run cancelled", thread_id=thread_id)
            await asyncio.shield(self._mark_cancelled(thread_id))
            raise
        except Exception as e:
            log_service.log_event(
                event_type="run_failed",
                message="Research run failed outside a stage",
                thread_id=thread_id,
                error=str(e),
            )
            ctx.emit(streaming.error(str(e), error_name="Workflow error"))
        finally:
            if ctx.channel is not None:
                ctx.channel.close()
            if self._active.get(thread_id) is asyncio.current_task():
                self._active.pop(thread_id, None)

    async def _mark_cancelled(self, thread_id: str) -> None:
        checkpoint = await self.checkpointer.get(thread_id)
        if checkpoint is None or checkpoint.thread.status in FINISHED:
            return
        update = stage_error_update(checkpoint.thread.next_stage, RuntimeError("research run was cancelled"))
        state = apply_update(checkpoint.state, update)
        thread = checkpoint.thread.model_copy(deep=True)
        thread.status = ThreadStatus.ERROR
        thread.next_stage = Stage.TERMINAL
        thread.updated_at = utcnow()
        try:
            await self.checkpointer.put(thread, state, expected_version=checkpoint.version)
        except CheckpointConflictError as e:
            log_service.log_event(
                event_type="cancel_mark_failed",
                message="Could not mark cancelled run as errored",
                thread_id=thread_id,
                error=str(e),
            )

    def snapshot_of(self, checkpoint: Checkpoint) -> dict[str, Any]:
        thread = checkpoint.thread
        state = checkpoint.state
        return {
            "threadId": thread.thread_id,
            "status": thread.status.value,
            "mode": thread.mode.value,
            "strategy": thread.strategy.value,
            "nextStage": thread.next_stage.value,
            "version": checkpoint.version,
            "running": self.is_active(thread.thread_id),
            "createdAt": thread.created_at.isoformat(),
            "updatedAt": thread.updated_at.isoformat(),
            "interrupt": state.interrupt.model_dump(by_alias=True) if state.interrupt else None,
            "values": state.model_dump(mode="json"),
        }

    async def snapshot(self, thread_id: str) -> dict[str, Any]:
        return self.snapshot_of(await self.load(thread_id))

    async def delete(self, thread_id: str) -> None:
        async with self._thread_lock(thread_id):
            if self.is_active(thread_id):
                raise RunInProgressError(f"Thread {thread_id} has a run in progress")
            if not await self.checkpointer.delete(thread_id):
                raise ThreadNotFoundError(f"Thread {thread_id} not found")

    async def close(self) -> None:
        tasks = [t for t in self._active.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.checkpointer.close()

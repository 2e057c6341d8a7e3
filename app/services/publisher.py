from __future__ import annotations

import asyncio
from typing import AsyncIterator

from app.models.events import EventType
from app.services import logger as log_service
from app.services import streaming
from app.services.event_channel import EventChannel


async def publish_events(
    channel: EventChannel,
    *,
    run_task: asyncio.Task | None = None,
    keepalive_seconds: float = 30.0,
    timeout_seconds: float = 300.0,
    thread_id: str | None = None,
) -> AsyncIterator[dict[str, str]]:
    """Drain a channel into sse-starlette payloads.

    Emits keepalives while the channel is idle, an `error` when the maximum
    duration is reached, and always finishes with `done`. Closing the
    generator cancels the run task if it is still going.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    log_service.log_event(event_type="stream_started", message="SSE stream opened", thread_id=thread_id)

    try:
        try:
            while True:
                remaining = timeout_seconds - (loop.time() - started)
                if remaining <= 0:
                    log_service.log_event(
                        event_type="stream_timeout",
                        message="Maximum stream duration exceeded",
                        thread_id=thread_id,
                        timeout_seconds=timeout_seconds,
                    )
                    yield streaming.error(
                        "Maximum stream duration exceeded", error_name="Stream timeout"
                    ).to_sse()
                    break

                try:
                    event = await asyncio.wait_for(channel.get(), timeout=min(keepalive_seconds, remaining))
                except asyncio.TimeoutError:
                    if loop.time() - started < timeout_seconds:
                        yield streaming.keepalive().to_sse()
                    continue

                if event is None or event.event == EventType.DONE:
                    break
                try:
                    payload = event.to_sse()
                except (TypeError, ValueError) as e:
                    yield streaming.error(
                        f"Failed to serialize {event.event.value} event: {e}", error_name="Stream error"
                    ).to_sse()
                    continue
                yield payload
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in research stream",
                error=str(e),
                thread_id=thread_id,
            )
            yield streaming.error("Research stream failed unexpectedly.", error_name="Stream error").to_sse()

        yield streaming.done().to_sse()
    finally:
        if run_task is not None and not run_task.done():
            run_task.cancel()
        log_service.log_event(
            event_type="stream_closed",
            message="SSE stream closed",
            thread_id=thread_id,
            duration_ms=int((loop.time() - started) * 1000),
        )

from __future__ import annotations

import asyncio

from app.models.events import SSEEvent


class EventChannel:
    """Queue that workflow stages push typed progress events into.

    The publisher drains it; `close()` enqueues an end marker so the
    consumer stops after everything published before it.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: SSEEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self) -> SSEEvent | None:
        return await self._queue.get()

    def drain(self) -> list[SSEEvent]:
        events: list[SSEEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                events.append(item)
        return events

"""Versioned persistence of threads and their workflow state."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg

from app.config import Settings
from app.models.state import CheckpointConflictError, Thread, WorkflowState, utcnow
from app.services import logger as log_service


@dataclass(slots=True)
class Checkpoint:
    thread: Thread
    state: WorkflowState
    version: int
    created_at: datetime


class Checkpointer(ABC):
    @abstractmethod
    async def get(self, thread_id: str) -> Checkpoint | None:
        """Latest checkpoint of a thread, or None."""

    @abstractmethod
    async def put(
        self,
        thread: Thread,
        state: WorkflowState,
        *,
        expected_version: int | None = None,
    ) -> Checkpoint:
        """Write a new version. Raises CheckpointConflictError if the latest
        version is not `expected_version`."""

    @abstractmethod
    async def history(self, thread_id: str) -> list[int]:
        ...

    @abstractmethod
    async def delete(self, thread_id: str) -> bool:
        ...

    async def close(self) -> None:
        return None


class MemoryCheckpointer(Checkpointer):
    def __init__(self) -> None:
        self._versions: dict[str, list[Checkpoint]] = {}
        self._lock = asyncio.Lock()

    async def get(self, thread_id: str) -> Checkpoint | None:
        versions = self._versions.get(thread_id)
        if not versions:
            return None
        latest = versions[-1]
        return Checkpoint(
            thread=latest.thread.model_copy(deep=True),
            state=latest.state.model_copy(deep=True),
            version=latest.version,
            created_at=latest.created_at,
        )

    async def put(
        self,
        thread: Thread,
        state: WorkflowState,
        *,
        expected_version: int | None = None,
    ) -> Checkpoint:
        async with self._lock:
            versions = self._versions.setdefault(thread.thread_id, [])
            current = versions[-1].version if versions else 0
            if expected_version is not None and expected_version != current:
                log_service.log_checkpoint(
                    "put", thread.thread_id, "conflict", version=current,
                    error=f"expected version {expected_version}",
                )
                raise CheckpointConflictError(
                    f"Thread {thread.thread_id} is at version {current}, expected {expected_version}"
                )
            checkpoint = Checkpoint(
                thread=thread.model_copy(deep=True),
                state=state.model_copy(deep=True),
                version=current + 1,
                created_at=utcnow(),
            )
            versions.append(checkpoint)
        log_service.log_checkpoint("put", thread.thread_id, "success", version=checkpoint.version)
        return await self.get(thread.thread_id)

    async def history(self, thread_id: str) -> list[int]:
        return [c.version for c in self._versions.get(thread_id, [])]

    async def delete(self, thread_id: str) -> bool:
        async with self._lock:
            removed = self._versions.pop(thread_id, None) is not None
        log_service.log_checkpoint("delete", thread_id, "success" if removed else "missing")
        return removed


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """asyncpg hands JSONB back as text unless a codec is registered."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS workflow_checkpoints (
    thread_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    thread JSONB NOT NULL,
    state JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (thread_id, version)
)
"""


class PostgresCheckpointer(Checkpointer):
    """PostgreSQL checkpointer using an asyncpg pool."""

    def __init__(self, dsn: str, *, pool: asyncpg.Pool | None = None):
        self._dsn = dsn
        self._pool = pool
        self._schema_ready = False
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=10)
            if not self._schema_ready:
                async with self._pool.acquire() as conn:
                    await conn.execute(CREATE_TABLE_SQL)
                self._schema_ready = True
        return self._pool

    @staticmethod
    def _row_to_checkpoint(row: Any) -> Checkpoint:
        return Checkpoint(
            thread=Thread.model_validate(_coerce_json_object(row["thread"])),
            state=WorkflowState.model_validate(_coerce_json_object(row["state"])),
            version=row["version"],
            created_at=row["created_at"],
        )

    async def get(self, thread_id: str) -> Checkpoint | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT thread_id, version, thread, state, created_at
                FROM workflow_checkpoints
                WHERE thread_id = $1
                ORDER BY version DESC
                LIMIT 1
                """,
                thread_id,
            )
        return self._row_to_checkpoint(row) if row else None

    async def put(
        self,
        thread: Thread,
        state: WorkflowState,
        *,
        expected_version: int | None = None,
    ) -> Checkpoint:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT COALESCE(MAX(version), 0) FROM workflow_checkpoints WHERE thread_id = $1",
                    thread.thread_id,
                )
                if expected_version is not None and expected_version != current:
                    log_service.log_checkpoint(
                        "put", thread.thread_id, "conflict", version=current,
                        error=f"expected version {expected_version}",
                    )
                    raise CheckpointConflictError(
                        f"Thread {thread.thread_id} is at version {current}, expected {expected_version}"
                    )
                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO workflow_checkpoints (thread_id, version, thread, state)
                        VALUES ($1, $2, $3::jsonb, $4::jsonb)
                        RETURNING thread_id, version, thread, state, created_at
                        """,
                        thread.thread_id,
                        current + 1,
                        thread.model_dump_json(),
                        state.model_dump_json(),
                    )
                except asyncpg.UniqueViolationError as e:
                    raise CheckpointConflictError(
                        f"Concurrent write to thread {thread.thread_id}"
                    ) from e
        log_service.log_checkpoint("put", thread.thread_id, "success", version=current + 1)
        return self._row_to_checkpoint(row)

    async def history(self, thread_id: str) -> list[int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT version FROM workflow_checkpoints WHERE thread_id = $1 ORDER BY version",
                thread_id,
            )
        return [r["version"] for r in rows]

    async def delete(self, thread_id: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM workflow_checkpoints WHERE thread_id = $1", thread_id)
        removed = not result.endswith(" 0")
        log_service.log_checkpoint("delete", thread_id, "success" if removed else "missing")
        return removed

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def build_checkpointer(source: Settings) -> Checkpointer:
    if source.database_url:
        return PostgresCheckpointer(source.database_url)
    return MemoryCheckpointer()

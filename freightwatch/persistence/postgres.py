"""PostgreSQL implementation of the execution history."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import asyncpg
from pydantic import TypeAdapter

from ..contracts import DelayNotificationInput, StepOutcome, TerminalResult
from ..errors import (
    HistoryUnavailable,
    InstanceAlreadyExists,
    InstanceAlreadyTerminal,
    InstanceNotFound,
)
from .models import TERMINAL_STATES, ProcessInstance, StepRecord, WorkflowState, utcnow
from .repository import HistoryRepository, check_terminal_transition

_OUTCOME_ADAPTER: TypeAdapter = TypeAdapter(StepOutcome)


class PostgresHistoryRepository(HistoryRepository):
    """Persist workflow history using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as e:
            raise HistoryUnavailable(f"PostgreSQL history unreachable: {e}") from e
        try:
            if not self._initialized:
                await self._ensure_schema(conn)
                self._initialized = True
            yield conn
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                input JSONB NOT NULL,
                state TEXT NOT NULL,
                result JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                instance_id TEXT NOT NULL REFERENCES instances(instance_id),
                sequence INTEGER NOT NULL,
                step TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                outcome JSONB,
                recorded_at TIMESTAMPTZ NOT NULL,
                UNIQUE (instance_id, sequence)
            )
            """
        )

    @staticmethod
    async def _lock_active(conn: asyncpg.Connection, instance_id: str) -> None:
        """Lock the instance row for the current transaction; reject finished ones."""
        row = await conn.fetchrow(
            "SELECT state FROM instances WHERE instance_id = $1 FOR UPDATE", instance_id
        )
        if row is None:
            raise InstanceNotFound(instance_id)
        if WorkflowState(row["state"]) in TERMINAL_STATES:
            raise InstanceAlreadyTerminal(
                f"{instance_id} already finished in state {row['state']}"
            )

    @staticmethod
    def _to_instance(row: asyncpg.Record) -> ProcessInstance:
        return ProcessInstance(
            instance_id=row["instance_id"],
            input=DelayNotificationInput.model_validate_json(row["input"]),
            state=WorkflowState(row["state"]),
            result=TerminalResult.model_validate_json(row["result"]) if row["result"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> None:
        async with self._connect() as conn:
            try:
                await conn.execute(
                    "INSERT INTO instances (instance_id, input, state, result, created_at, updated_at) "
                    "VALUES ($1, $2, $3, $4, $5, $6)",
                    instance.instance_id,
                    instance.input.model_dump_json(),
                    instance.state.value,
                    instance.result.model_dump_json() if instance.result else None,
                    instance.created_at,
                    instance.updated_at,
                )
            except asyncpg.UniqueViolationError as e:
                raise InstanceAlreadyExists(instance.instance_id) from e

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        async with self._connect() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM instances WHERE instance_id = $1", instance_id
            )
        return self._to_instance(row) if row else None

    async def list_instances(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[ProcessInstance]:
        async with self._connect() as conn:
            if states is None:
                rows = await conn.fetch("SELECT * FROM instances ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM instances WHERE state = ANY($1::text[]) ORDER BY created_at",
                    [state.value for state in states],
                )
        return [self._to_instance(row) for row in rows]

    async def _write_state(
        self, instance_id: str, state: WorkflowState, result: TerminalResult | None
    ) -> None:
        async with self._connect() as conn:
            async with conn.transaction():
                await self._lock_active(conn, instance_id)
                await conn.execute(
                    "UPDATE instances SET state = $1, result = $2, updated_at = $3 "
                    "WHERE instance_id = $4",
                    state.value,
                    result.model_dump_json() if result else None,
                    utcnow(),
                    instance_id,
                )

    async def update_state(self, instance_id: str, state: WorkflowState) -> None:
        check_terminal_transition(state, None)
        await self._write_state(instance_id, state, None)

    async def complete_instance(
        self, instance_id: str, state: WorkflowState, result: TerminalResult
    ) -> None:
        check_terminal_transition(state, result)
        await self._write_state(instance_id, state, result)

    async def append(self, record: StepRecord) -> StepRecord:
        async with self._connect() as conn:
            async with conn.transaction():
                await self._lock_active(conn, record.instance_id)
                last = await conn.fetchval(
                    "SELECT COALESCE(MAX(sequence), 0) FROM step_history WHERE instance_id = $1",
                    record.instance_id,
                )
                stored = record.model_copy(update={"sequence": last + 1})
                await conn.execute(
                    "INSERT INTO step_history "
                    "(instance_id, sequence, step, attempt, status, input, outcome, recorded_at) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    stored.instance_id,
                    stored.sequence,
                    stored.step.value,
                    stored.attempt,
                    stored.status.value,
                    json.dumps(stored.input) if stored.input is not None else None,
                    _OUTCOME_ADAPTER.dump_json(stored.outcome).decode()
                    if stored.outcome is not None
                    else None,
                    stored.recorded_at,
                )
        return stored

    async def load(self, instance_id: str) -> list[StepRecord]:
        async with self._connect() as conn:
            rows = await conn.fetch(
                "SELECT * FROM step_history WHERE instance_id = $1 ORDER BY sequence",
                instance_id,
            )
        return [
            StepRecord(
                instance_id=r["instance_id"],
                sequence=r["sequence"],
                step=r["step"],
                attempt=r["attempt"],
                status=r["status"],
                input=json.loads(r["input"]) if r["input"] else None,
                outcome=_OUTCOME_ADAPTER.validate_json(r["outcome"]) if r["outcome"] else None,
                recorded_at=r["recorded_at"],
            )
            for r in rows
        ]

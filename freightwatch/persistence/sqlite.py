"""SQLite implementation of the execution history."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from pydantic import TypeAdapter

from ..contracts import DelayNotificationInput, StepOutcome, TerminalResult
from ..errors import (
    HistoryUnavailable,
    InstanceAlreadyExists,
    InstanceAlreadyTerminal,
    InstanceNotFound,
)
from .models import (
    TERMINAL_STATES,
    ProcessInstance,
    StepRecord,
    WorkflowState,
    utcnow,
)
from .repository import HistoryRepository, check_terminal_transition

T = TypeVar("T")

_OUTCOME_ADAPTER: TypeAdapter = TypeAdapter(StepOutcome)


class SQLiteHistoryRepository(HistoryRepository):
    """Persist workflow history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                input TEXT NOT NULL,
                state TEXT NOT NULL,
                result TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT NOT NULL REFERENCES instances(instance_id),
                sequence INTEGER NOT NULL,
                step TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                outcome TEXT,
                recorded_at TEXT NOT NULL,
                UNIQUE (instance_id, sequence)
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                return fn(*args)

        try:
            return await asyncio.to_thread(locked)
        except sqlite3.Error as e:
            raise HistoryUnavailable(f"SQLite history at {self.db_path}: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _require_active(self, instance_id: str) -> None:
        row = self._fetchone("SELECT state FROM instances WHERE instance_id = ?", instance_id)
        if row is None:
            raise InstanceNotFound(instance_id)
        if WorkflowState(row["state"]) in TERMINAL_STATES:
            raise InstanceAlreadyTerminal(
                f"{instance_id} already finished in state {row['state']}"
            )

    @staticmethod
    def _to_instance(row: sqlite3.Row) -> ProcessInstance:
        return ProcessInstance(
            instance_id=row["instance_id"],
            input=DelayNotificationInput.model_validate_json(row["input"]),
            state=WorkflowState(row["state"]),
            result=TerminalResult.model_validate_json(row["result"]) if row["result"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_record(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            instance_id=row["instance_id"],
            sequence=row["sequence"],
            step=row["step"],
            attempt=row["attempt"],
            status=row["status"],
            input=json.loads(row["input"]) if row["input"] else None,
            outcome=_OUTCOME_ADAPTER.validate_json(row["outcome"]) if row["outcome"] else None,
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )

    # ------------------------------------------------------------------
    # Synchronous bodies, executed in a worker thread under the lock
    def _insert_instance(self, instance: ProcessInstance) -> None:
        try:
            self._conn.execute(
                "INSERT INTO instances (instance_id, input, state, result, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    instance.instance_id,
                    instance.input.model_dump_json(),
                    instance.state.value,
                    instance.result.model_dump_json() if instance.result else None,
                    instance.created_at.isoformat(),
                    instance.updated_at.isoformat(),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise InstanceAlreadyExists(instance.instance_id) from e

    def _write_state(
        self, instance_id: str, state: WorkflowState, result: TerminalResult | None
    ) -> None:
        self._require_active(instance_id)
        self._conn.execute(
            "UPDATE instances SET state = ?, result = ?, updated_at = ? WHERE instance_id = ?",
            (
                state.value,
                result.model_dump_json() if result else None,
                utcnow().isoformat(),
                instance_id,
            ),
        )
        self._conn.commit()

    def _insert_record(self, record: StepRecord) -> StepRecord:
        self._require_active(record.instance_id)
        row = self._fetchone(
            "SELECT COALESCE(MAX(sequence), 0) AS last FROM step_history WHERE instance_id = ?",
            record.instance_id,
        )
        stored = record.model_copy(update={"sequence": row["last"] + 1})
        self._conn.execute(
            "INSERT INTO step_history "
            "(instance_id, sequence, step, attempt, status, input, outcome, recorded_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                stored.instance_id,
                stored.sequence,
                stored.step.value,
                stored.attempt,
                stored.status.value,
                json.dumps(stored.input) if stored.input is not None else None,
                _OUTCOME_ADAPTER.dump_json(stored.outcome).decode()
                if stored.outcome is not None
                else None,
                stored.recorded_at.isoformat(),
            ),
        )
        self._conn.commit()
        return stored

    # ------------------------------------------------------------------
    # Repository API
    async def create_instance(self, instance: ProcessInstance) -> None:
        await self._run(self._insert_instance, instance)

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        row = await self._run(
            self._fetchone,
            "SELECT * FROM instances WHERE instance_id = ?",
            instance_id,
        )
        return self._to_instance(row) if row else None

    async def list_instances(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[ProcessInstance]:
        rows = await self._run(
            self._fetchall, "SELECT * FROM instances ORDER BY created_at"
        )
        wanted = set(states) if states is not None else None
        instances = [self._to_instance(row) for row in rows]
        return [i for i in instances if wanted is None or i.state in wanted]

    async def update_state(self, instance_id: str, state: WorkflowState) -> None:
        check_terminal_transition(state, None)
        await self._run(self._write_state, instance_id, state, None)

    async def complete_instance(
        self, instance_id: str, state: WorkflowState, result: TerminalResult
    ) -> None:
        check_terminal_transition(state, result)
        await self._run(self._write_state, instance_id, state, result)

    async def append(self, record: StepRecord) -> StepRecord:
        return await self._run(self._insert_record, record)

    async def load(self, instance_id: str) -> list[StepRecord]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM step_history WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        return [self._to_record(row) for row in rows]

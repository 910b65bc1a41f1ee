"""In-memory implementation of the execution history."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from ..contracts import TerminalResult
from ..errors import InstanceAlreadyExists, InstanceAlreadyTerminal, InstanceNotFound
from .models import ProcessInstance, StepRecord, WorkflowState, utcnow
from .repository import HistoryRepository, check_terminal_transition


class InMemoryHistoryRepository(HistoryRepository):
    """Store workflow history in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, ProcessInstance] = {}
        self._records: Dict[str, List[StepRecord]] = defaultdict(list)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    def _require(self, instance_id: str) -> ProcessInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def _require_active(self, instance_id: str) -> ProcessInstance:
        instance = self._require(instance_id)
        if instance.is_terminal:
            raise InstanceAlreadyTerminal(
                f"{instance_id} already finished in state {instance.state.value}"
            )
        return instance

    # ------------------------------------------------------------------
    async def create_instance(self, instance: ProcessInstance) -> None:
        if instance.instance_id in self._instances:
            raise InstanceAlreadyExists(instance.instance_id)
        self._instances[instance.instance_id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[ProcessInstance]:
        wanted = set(states) if states is not None else None
        return [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if wanted is None or instance.state in wanted
        ]

    async def update_state(self, instance_id: str, state: WorkflowState) -> None:
        check_terminal_transition(state, None)
        async with self._locks[instance_id]:
            instance = self._require_active(instance_id)
            instance.state = state
            instance.updated_at = utcnow()

    async def complete_instance(
        self, instance_id: str, state: WorkflowState, result: TerminalResult
    ) -> None:
        check_terminal_transition(state, result)
        async with self._locks[instance_id]:
            instance = self._require_active(instance_id)
            instance.state = state
            instance.result = result.model_copy()
            instance.updated_at = utcnow()

    async def append(self, record: StepRecord) -> StepRecord:
        async with self._locks[record.instance_id]:
            self._require_active(record.instance_id)
            log = self._records[record.instance_id]
            stored = record.model_copy(update={"sequence": len(log) + 1}, deep=True)
            log.append(stored)
            return stored.model_copy(deep=True)

    async def load(self, instance_id: str) -> list[StepRecord]:
        return [record.model_copy(deep=True) for record in self._records.get(instance_id, [])]

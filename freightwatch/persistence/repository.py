"""Repository abstraction for the execution history."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import TerminalResult
from .models import ProcessInstance, StepRecord, WorkflowState


class HistoryRepository(Protocol):
    """Protocol for execution history backends.

    Step records are partitioned by instance id. Within one instance the
    sequence numbers assigned by :meth:`append` are strictly increasing and
    :meth:`load` returns records in that order.
    """

    async def create_instance(self, instance: ProcessInstance) -> None:
        """Persist a newly submitted instance; ids are unique."""

    async def get_instance(self, instance_id: str) -> ProcessInstance | None:
        """Retrieve the instance by id."""

    async def list_instances(
        self, states: Optional[Iterable[WorkflowState]] = None
    ) -> list[ProcessInstance]:
        """Return persisted instances, optionally filtered by state."""

    async def update_state(self, instance_id: str, state: WorkflowState) -> None:
        """Record a non-terminal state transition."""

    async def complete_instance(
        self, instance_id: str, state: WorkflowState, result: TerminalResult
    ) -> None:
        """Move the instance to a terminal state exactly once."""

    async def append(self, record: StepRecord) -> StepRecord:
        """Append a step record and return it with its sequence assigned."""

    async def load(self, instance_id: str) -> list[StepRecord]:
        """Return the ordered step records of one instance."""


def check_terminal_transition(state: WorkflowState, result: TerminalResult | None) -> None:
    """Validate the arguments of a state write before touching storage."""
    if result is None and state.is_terminal:
        raise ValueError(f"Terminal state {state.value} requires a result")
    if result is not None and not state.is_terminal:
        raise ValueError(f"State {state.value} is not terminal")

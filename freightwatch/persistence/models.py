"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import DelayNotificationInput, StepName, StepOutcome, TerminalResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowState(str, Enum):
    """States of the freight delay state machine."""

    STARTED = "started"
    FETCHING_TRAFFIC = "fetching_traffic"
    EVALUATING_THRESHOLD = "evaluating_threshold"
    NO_ACTION_NEEDED = "no_action_needed"
    COMPOSING_MESSAGE = "composing_message"
    SENDING_PRIMARY = "sending_primary"
    SENDING_FALLBACK = "sending_fallback"
    COMPLETED = "completed"
    FAILED = "failed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        WorkflowState.NO_ACTION_NEEDED,
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
        WorkflowState.ERRORED,
        WorkflowState.CANCELLED,
    }
)


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_TERMINAL = "failed-terminal"


class StepRecord(BaseModel):
    """One append-only entry of an instance's execution history.

    ``pending`` records carry the step input in ``input``; every other status
    carries the attempt's ``outcome``.
    """

    instance_id: str
    step: StepName
    attempt: int = Field(ge=1)
    status: StepStatus
    sequence: Optional[int] = None
    input: Optional[dict[str, Any]] = None
    outcome: Optional[StepOutcome] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class ProcessInstance(BaseModel):
    """Persisted workflow instance data."""

    instance_id: str
    input: DelayNotificationInput
    state: WorkflowState = WorkflowState.STARTED
    result: Optional[TerminalResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

"""Core data contracts for the freight delay workflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .constants import HEAVY_UPPER_BOUND, LIGHT_UPPER_BOUND, MODERATE_UPPER_BOUND


class StepName(str, Enum):
    """Names of the activities the workflow can invoke."""

    FETCH_TRAFFIC = "fetch_traffic"
    COMPOSE_MESSAGE = "compose_message"
    SEND_PRIMARY = "send_primary"
    SEND_FALLBACK = "send_fallback"


class TrafficCondition(str, Enum):
    """Traffic severity, ordered from lightest to worst."""

    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    SEVERE = "severe"

    @property
    def severity(self) -> int:
        return list(TrafficCondition).index(self)


def classify_condition(delay_minutes: int) -> TrafficCondition:
    """Map a delay in minutes onto its fixed traffic condition band."""
    if delay_minutes < 0:
        raise ValueError(f"Delay cannot be negative: {delay_minutes}")
    if delay_minutes < LIGHT_UPPER_BOUND:
        return TrafficCondition.LIGHT
    if delay_minutes < MODERATE_UPPER_BOUND:
        return TrafficCondition.MODERATE
    if delay_minutes < HEAVY_UPPER_BOUND:
        return TrafficCondition.HEAVY
    return TrafficCondition.SEVERE


class Route(BaseModel):
    """A delivery route."""

    model_config = ConfigDict(frozen=True)

    origin: str
    destination: str
    waypoints: List[str] = Field(default_factory=list)

    def is_valid(self) -> bool:
        """Return ``True`` when both endpoints are present and non-blank."""
        return bool(self.origin.strip()) and bool(self.destination.strip())

    def describe(self) -> str:
        stops = [self.origin, *self.waypoints, self.destination]
        return " -> ".join(stops)


class TrafficSnapshot(BaseModel):
    """Result of the traffic fetch step."""

    model_config = ConfigDict(frozen=True)

    estimated_delay_minutes: int = Field(ge=0)
    normal_duration_minutes: int = Field(gt=0)
    current_duration_minutes: int = Field(gt=0)
    condition: TrafficCondition
    route: Route

    @model_validator(mode="after")
    def _check_consistency(self) -> "TrafficSnapshot":
        if (
            self.estimated_delay_minutes > 0
            and self.current_duration_minutes < self.normal_duration_minutes
        ):
            raise ValueError(
                "current_duration_minutes must be >= normal_duration_minutes when delayed"
            )
        expected = classify_condition(self.estimated_delay_minutes)
        if self.condition != expected:
            raise ValueError(
                f"condition {self.condition.value} does not match delay "
                f"{self.estimated_delay_minutes} (expected {expected.value})"
            )
        return self

    @classmethod
    def build(
        cls, route: Route, normal_duration_minutes: int, current_duration_minutes: int
    ) -> "TrafficSnapshot":
        """Derive delay and condition from the two trip durations."""
        delay = max(0, current_duration_minutes - normal_duration_minutes)
        return cls(
            estimated_delay_minutes=delay,
            normal_duration_minutes=normal_duration_minutes,
            current_duration_minutes=current_duration_minutes,
            condition=classify_condition(delay),
            route=route,
        )


class ComposeRequest(BaseModel):
    """Context handed to the message composer."""

    delay_minutes: int = Field(ge=0)
    route: Route
    condition: TrafficCondition


class ComposedMessage(BaseModel):
    """Text produced by the composer; ``degraded`` marks the fallback template."""

    text: str
    degraded: bool = False
    error: Optional[str] = None


class NotificationRequest(BaseModel):
    """Payload handed to a delivery channel."""

    contact: str
    subject: str
    text: str
    delay_minutes: int
    idempotency_key: Optional[str] = None
    sender: Optional[str] = None


class NotificationOutcome(BaseModel):
    """Result of one delivery attempt on one channel."""

    success: bool
    delivery_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_fields(self) -> "NotificationOutcome":
        if self.success and not self.delivery_id:
            raise ValueError("delivery_id is required for a successful delivery")
        if self.success and self.failure_reason:
            raise ValueError("failure_reason must be empty for a successful delivery")
        if not self.success and not self.failure_reason:
            raise ValueError("failure_reason is required for a failed delivery")
        if not self.success and self.delivery_id:
            raise ValueError("delivery_id must be empty for a failed delivery")
        return self

    @classmethod
    def delivered(cls, delivery_id: str) -> "NotificationOutcome":
        return cls(success=True, delivery_id=delivery_id)

    @classmethod
    def rejected(cls, reason: str) -> "NotificationOutcome":
        return cls(success=False, failure_reason=reason)


class DelayNotificationInput(BaseModel):
    """Arguments of one workflow instance."""

    route: Route
    customer_contact: str
    delay_threshold_minutes: int = Field(ge=0)


class TerminalResult(BaseModel):
    """Final, client-visible outcome of an instance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    delay_detected: bool
    delay_minutes: int
    notification_sent: bool
    message: Optional[str] = None
    error: Optional[str] = None
    fallback_used: bool = False

    def to_public(self) -> Dict[str, Any]:
        """Return the camelCase shape exposed to clients."""
        return self.model_dump(by_alias=True, exclude_none=True)


class FailureInfo(BaseModel):
    """Serializable description of a failed attempt."""

    message: str
    error_type: str = "Exception"
    retryable: bool = True

    @classmethod
    def from_exception(cls, exc: BaseException, retryable: bool) -> "FailureInfo":
        return cls(
            message=str(exc) or type(exc).__name__,
            error_type=type(exc).__name__,
            retryable=retryable,
        )


class StepSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    result: Dict[str, Any] = Field(default_factory=dict)


class StepFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    failure: FailureInfo


StepOutcome = Annotated[Union[StepSucceeded, StepFailed], Field(discriminator="kind")]


class StepTask(BaseModel):
    """A request to execute one attempt of one step."""

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    instance_id: str
    step: StepName
    attempt: int = Field(default=1, ge=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    reply_to: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @property
    def idempotency_key(self) -> str:
        """Stable across retries and redeliveries of the same step."""
        return f"{self.instance_id}:{self.step.value}"


class StepCompletion(BaseModel):
    """Outcome of a step attempt reported by a worker."""

    task_id: str
    instance_id: str
    step: StepName
    attempt: int
    outcome: StepOutcome
    worker_id: Optional[str] = None


class QueueMessage(BaseModel):
    """Envelope exchanged over the dispatch transport."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    task: Optional[StepTask] = None
    completion: Optional[StepCompletion] = None
    spec_version: str = "1.0"

    @model_validator(mode="after")
    def _exactly_one_body(self) -> "QueueMessage":
        if (self.task is None) == (self.completion is None):
            raise ValueError("QueueMessage carries exactly one of task or completion")
        return self

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "QueueMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

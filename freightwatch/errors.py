"""Exception hierarchy for freightwatch."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .contracts import FailureInfo


class FreightWatchError(Exception):
    """Base class for all freightwatch errors."""


class InputError(FreightWatchError):
    """Malformed input. Never retried."""

    retryable = False


class InvalidRoute(InputError):
    """Route is missing an origin or destination."""


class InvalidContact(InputError):
    """Customer contact cannot be used by a channel."""


class TrafficUnavailable(FreightWatchError):
    """The traffic source could not produce a snapshot."""

    retryable = True


class StepFailure(FreightWatchError):
    """A step failed terminally, by classification or by retry exhaustion."""

    def __init__(self, step: str, failure: "FailureInfo") -> None:
        self.step = step
        self.failure = failure
        super().__init__(failure.message)


class InfrastructureError(FreightWatchError):
    """The engine itself cannot make progress; the instance stays pending."""


class HistoryUnavailable(InfrastructureError):
    """The execution history backend cannot be reached."""


class DispatchUnavailable(InfrastructureError):
    """The dispatch transport cannot be reached."""


class InstanceAlreadyExists(FreightWatchError):
    """An instance with this id was already submitted."""


class InstanceNotFound(FreightWatchError):
    """No instance with this id is known to the history."""


class InstanceAlreadyTerminal(FreightWatchError):
    """The instance reached a terminal state and can no longer change."""


class NonDeterministicWorkflowError(FreightWatchError):
    """Replayed decisions diverged from the recorded history."""


class WorkflowStalled(FreightWatchError):
    """The instance stopped on an infrastructure failure and can be resumed."""

    def __init__(self, instance_id: str, cause: BaseException | None = None) -> None:
        self.instance_id = instance_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Workflow {instance_id} is stalled{detail}")

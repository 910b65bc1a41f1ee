"""Freight delay notification workflow.

The workflow is an explicit state machine. Every transition is driven by the
outcome of a step, and every step outcome is appended to the execution
history before the machine moves on. When an instance is resumed the
recorded outcomes are fed back in order instead of executing the steps
again, so a resumed run takes exactly the same branches as the original.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .config import RetryConfig
from .constants import DEFAULT_DISPATCH_GRACE_SECONDS, DEFAULT_STEP_TIMEOUT_SECONDS
from .contracts import (
    ComposedMessage,
    ComposeRequest,
    FailureInfo,
    NotificationOutcome,
    NotificationRequest,
    StepFailed,
    StepName,
    StepSucceeded,
    StepTask,
    TerminalResult,
    TrafficSnapshot,
)
from .dispatch import StepDispatcher
from .errors import NonDeterministicWorkflowError, StepFailure
from .persistence import (
    HistoryRepository,
    ProcessInstance,
    StepRecord,
    StepStatus,
    WorkflowState,
)
from .services import create_delay_subject
from .steps import handler_for
from .utils.retry import Sleeper, compute_backoff

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Workflow cancelled"


def exceeds_threshold(delay_minutes: int, threshold_minutes: int) -> bool:
    """Only a delay strictly above the threshold warrants a notification."""
    return delay_minutes > threshold_minutes


def errored_result(error: str) -> TerminalResult:
    return TerminalResult(
        delay_detected=False, delay_minutes=0, notification_sent=False, error=error
    )


def cancelled_result(delay_minutes: int = 0) -> TerminalResult:
    return TerminalResult(
        delay_detected=False,
        delay_minutes=delay_minutes,
        notification_sent=False,
        error=CANCELLED_ERROR,
    )


class WorkflowCancelled(Exception):
    """Raised between steps once cancellation was requested."""


class StepInvoker:
    """Invokes the steps of one instance against its execution history.

    Recorded steps are consumed in the order they were appended. A step
    whose last record succeeded returns the recorded result, one that failed
    terminally raises again, and one that is pending or failed-retryable
    resumes its attempt loop. Steps beyond the recorded history are
    dispatched under the retry policy.
    """

    def __init__(
        self,
        instance_id: str,
        history: List[StepRecord],
        repository: HistoryRepository,
        dispatcher: StepDispatcher,
        retry: Optional[RetryConfig] = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        sleep: Sleeper = asyncio.sleep,
        slots: Optional[asyncio.Semaphore] = None,
        dispatch_grace: float = DEFAULT_DISPATCH_GRACE_SECONDS,
    ) -> None:
        self.instance_id = instance_id
        self._repository = repository
        self._dispatcher = dispatcher
        self._retry = retry or RetryConfig()
        self._step_timeout = step_timeout
        self._dispatch_grace = dispatch_grace
        self._sleep = sleep
        self._slots = slots
        self._recorded = self._group(history)
        self._position = 0
        self.dispatched: List[Tuple[StepName, int]] = []
        self.replayed: List[StepName] = []

    @staticmethod
    def _group(history: List[StepRecord]) -> List[Tuple[StepName, List[StepRecord]]]:
        groups: List[Tuple[StepName, List[StepRecord]]] = []
        for record in sorted(history, key=lambda r: r.sequence or 0):
            if groups and groups[-1][0] == record.step:
                groups[-1][1].append(record)
            else:
                groups.append((record.step, [record]))
        return groups

    @property
    def replaying(self) -> bool:
        return self._position < len(self._recorded)

    def _take_recorded(self, step: StepName, input_data: dict) -> List[StepRecord]:
        if not self.replaying:
            return []
        recorded_step, records = self._recorded[self._position]
        if recorded_step != step:
            raise NonDeterministicWorkflowError(
                f"Instance {self.instance_id} invoked {step.value} but history "
                f"records {recorded_step.value} at position {self._position + 1}"
            )
        first_input = next((r.input for r in records if r.input is not None), None)
        if first_input is not None and first_input != input_data:
            raise NonDeterministicWorkflowError(
                f"Instance {self.instance_id} invoked {step.value} with input "
                "that differs from the recorded input"
            )
        self._position += 1
        return records

    @asynccontextmanager
    async def suspended(self) -> AsyncIterator[None]:
        """Give up the decision slot while waiting on a step or a backoff."""
        if self._slots is None:
            yield
            return
        self._slots.release()
        try:
            yield
        finally:
            await self._slots.acquire()

    async def _record(
        self, step: StepName, attempt: int, status: StepStatus, **fields
    ) -> StepRecord:
        return await self._repository.append(
            StepRecord(
                instance_id=self.instance_id,
                step=step,
                attempt=attempt,
                status=status,
                **fields,
            )
        )

    async def invoke(self, step: StepName, payload: BaseModel) -> BaseModel:
        handler = handler_for(step)
        input_data = payload.model_dump(mode="json")
        records = self._take_recorded(step, input_data)

        attempt = 1
        resume_pending = False
        if records:
            last = records[-1]
            if last.status == StepStatus.SUCCEEDED and isinstance(last.outcome, StepSucceeded):
                logger.info(f"Replaying {step.value} for {self.instance_id} from history")
                self.replayed.append(step)
                return handler.parse_result(last.outcome.result)
            if last.status == StepStatus.FAILED_TERMINAL and isinstance(last.outcome, StepFailed):
                self.replayed.append(step)
                raise StepFailure(step.value, last.outcome.failure)
            if last.status == StepStatus.PENDING:
                attempt = last.attempt
                resume_pending = True
            else:
                attempt = last.attempt + 1
                policy = self._retry.policy_for(step)
                async with self.suspended():
                    await self._sleep(compute_backoff(last.attempt, policy))

        policy = self._retry.policy_for(step)
        while True:
            if not resume_pending:
                await self._record(step, attempt, StepStatus.PENDING, input=input_data)
            resume_pending = False

            outcome = await self._attempt(step, attempt, input_data)

            if isinstance(outcome, StepSucceeded):
                result = handler.parse_result(outcome.result)
                await self._record(step, attempt, StepStatus.SUCCEEDED, outcome=outcome)
                return result

            decision = policy.decide(attempt, outcome.failure)
            if not decision.retry:
                await self._record(step, attempt, StepStatus.FAILED_TERMINAL, outcome=outcome)
                logger.warning(
                    f"{step.value} failed terminally for {self.instance_id} after "
                    f"attempt {attempt}: {outcome.failure.message} ({decision.reason})"
                )
                raise StepFailure(step.value, outcome.failure)

            await self._record(step, attempt, StepStatus.FAILED_RETRYABLE, outcome=outcome)
            logger.info(
                f"Retrying {step.value} for {self.instance_id} in {decision.delay}s "
                f"(attempt {attempt + 1}/{policy.maximum_attempts})"
            )
            async with self.suspended():
                await self._sleep(decision.delay)
            attempt += 1

    async def _attempt(self, step: StepName, attempt: int, input_data: dict):
        task = StepTask(
            instance_id=self.instance_id,
            step=step,
            attempt=attempt,
            input=input_data,
            timeout_seconds=self._step_timeout,
        )
        self.dispatched.append((step, attempt))
        future = await self._dispatcher.submit(task)
        deadline = self._step_timeout + self._dispatch_grace
        async with self.suspended():
            try:
                return await asyncio.wait_for(future, timeout=deadline)
            except asyncio.TimeoutError:
                # The task or its completion was lost; count it as a timed out attempt.
                logger.warning(
                    f"No completion for {step.value} attempt {attempt} of "
                    f"{self.instance_id} within {deadline}s"
                )
                return StepFailed(
                    failure=FailureInfo(
                        message=f"No completion for {step.value} within {deadline}s",
                        error_type="StepTimeout",
                        retryable=True,
                    )
                )


class FreightDelayWorkflow:
    """State machine: fetch traffic, decide, compose, notify with fallback."""

    def __init__(
        self,
        instance: ProcessInstance,
        invoker: StepInvoker,
        repository: HistoryRepository,
        cancel_requested: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.instance = instance
        self.input = instance.input
        self._invoker = invoker
        self._repository = repository
        self._cancel_requested = cancel_requested or (lambda: False)
        self.state = WorkflowState.STARTED
        self.snapshot: Optional[TrafficSnapshot] = None
        self.composed: Optional[ComposedMessage] = None
        self.request: Optional[NotificationRequest] = None
        self.primary_outcome: Optional[NotificationOutcome] = None
        self.result: Optional[TerminalResult] = None
        self._handlers: Dict[WorkflowState, Callable[[], Awaitable[WorkflowState]]] = {
            WorkflowState.STARTED: self._start,
            WorkflowState.FETCHING_TRAFFIC: self._fetch_traffic,
            WorkflowState.EVALUATING_THRESHOLD: self._evaluate_threshold,
            WorkflowState.COMPOSING_MESSAGE: self._compose_message,
            WorkflowState.SENDING_PRIMARY: self._send_primary,
            WorkflowState.SENDING_FALLBACK: self._send_fallback,
        }

    @property
    def instance_id(self) -> str:
        return self.instance.instance_id

    async def run(self) -> TerminalResult:
        """Drive the instance to a terminal state and persist its result.

        Infrastructure errors propagate and leave the instance resumable.
        """
        logger.info(
            f"Workflow {self.instance_id} started: {self.input.route.describe()}, "
            f"threshold {self.input.delay_threshold_minutes} min"
        )
        try:
            while not self.state.is_terminal:
                if self._cancel_requested():
                    raise WorkflowCancelled()
                next_state = await self._handlers[self.state]()
                await self._transition(next_state)
        except StepFailure as e:
            await self._transition(
                WorkflowState.ERRORED, errored_result(f"{e.step} failed: {e.failure.message}")
            )
        except WorkflowCancelled:
            delay = self.snapshot.estimated_delay_minutes if self.snapshot else 0
            await self._transition(WorkflowState.CANCELLED, cancelled_result(delay))
        return self.result

    async def _transition(
        self, state: WorkflowState, result: Optional[TerminalResult] = None
    ) -> None:
        if result is not None:
            self.result = result
        if state.is_terminal:
            await self._repository.complete_instance(self.instance_id, state, self.result)
            logger.info(
                f"Workflow {self.instance_id} finished in {state.value}: "
                f"{self.result.to_public()}"
            )
        else:
            await self._repository.update_state(self.instance_id, state)
            logger.debug(f"Workflow {self.instance_id}: {self.state.value} -> {state.value}")
        self.state = state

    # ------------------------------------------------------------------
    # Transitions
    async def _start(self) -> WorkflowState:
        return WorkflowState.FETCHING_TRAFFIC

    async def _fetch_traffic(self) -> WorkflowState:
        self.snapshot = await self._invoker.invoke(StepName.FETCH_TRAFFIC, self.input.route)
        return WorkflowState.EVALUATING_THRESHOLD

    async def _evaluate_threshold(self) -> WorkflowState:
        delay = self.snapshot.estimated_delay_minutes
        threshold = self.input.delay_threshold_minutes
        if exceeds_threshold(delay, threshold):
            return WorkflowState.COMPOSING_MESSAGE
        self.result = TerminalResult(
            delay_detected=False,
            delay_minutes=delay,
            notification_sent=False,
            message=(
                f"No notification required. Delay of {delay} minutes is below "
                f"threshold of {threshold} minutes."
            ),
        )
        return WorkflowState.NO_ACTION_NEEDED

    async def _compose_message(self) -> WorkflowState:
        snapshot = self.snapshot
        self.composed = await self._invoker.invoke(
            StepName.COMPOSE_MESSAGE,
            ComposeRequest(
                delay_minutes=snapshot.estimated_delay_minutes,
                route=snapshot.route,
                condition=snapshot.condition,
            ),
        )
        if self.composed.degraded:
            logger.warning(
                f"Workflow {self.instance_id} using fallback message template: "
                f"{self.composed.error}"
            )
        self.request = NotificationRequest(
            contact=self.input.customer_contact,
            subject=create_delay_subject(snapshot.estimated_delay_minutes),
            text=self.composed.text,
            delay_minutes=snapshot.estimated_delay_minutes,
        )
        return WorkflowState.SENDING_PRIMARY

    async def _send_primary(self) -> WorkflowState:
        self.primary_outcome = await self._invoker.invoke(StepName.SEND_PRIMARY, self.request)
        delay = self.snapshot.estimated_delay_minutes
        if self.primary_outcome.success:
            self.result = TerminalResult(
                delay_detected=True,
                delay_minutes=delay,
                notification_sent=True,
                message=(
                    f"Delay notification sent successfully. Customer "
                    f"{self.input.customer_contact} has been notified of {delay} "
                    "minute delay."
                ),
            )
            return WorkflowState.COMPLETED
        logger.warning(
            f"Primary channel failed for {self.instance_id}: "
            f"{self.primary_outcome.failure_reason}; trying fallback"
        )
        return WorkflowState.SENDING_FALLBACK

    async def _send_fallback(self) -> WorkflowState:
        outcome = await self._invoker.invoke(StepName.SEND_FALLBACK, self.request)
        delay = self.snapshot.estimated_delay_minutes
        if outcome.success:
            self.result = TerminalResult(
                delay_detected=True,
                delay_minutes=delay,
                notification_sent=True,
                fallback_used=True,
                message=(
                    "Delay notification sent via fallback channel after primary "
                    f"channel failed. Customer notified of {delay} minute delay."
                ),
            )
            return WorkflowState.COMPLETED
        self.result = TerminalResult(
            delay_detected=True,
            delay_minutes=delay,
            notification_sent=False,
            fallback_used=True,
            error=(
                "Failed to send notification: primary failed "
                f"({self.primary_outcome.failure_reason}), fallback failed "
                f"({outcome.failure_reason})"
            ),
        )
        return WorkflowState.FAILED

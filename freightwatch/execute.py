"""Step execution for freightwatch workflows."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from pydantic import ValidationError

from .constants import (
    DEFAULT_MAX_CONCURRENT_STEPS,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TASK_QUEUE,
)
from .contracts import (
    FailureInfo,
    StepCompletion,
    StepFailed,
    StepOutcome,
    StepSucceeded,
    StepTask,
)
from .errors import DispatchUnavailable, InputError
from .steps import FreightActivities, handler_for
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """Input errors and malformed payloads are terminal; the rest is transient."""
    if isinstance(exc, (InputError, ValidationError)):
        return False
    return getattr(exc, "retryable", True)


class StepExecutor:
    """Runs exactly one attempt of one step and reports its outcome.

    The executor never retries; the caller's retry policy decides whether
    another attempt is scheduled.
    """

    def __init__(
        self,
        activities: FreightActivities,
        default_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    ) -> None:
        self._activities = activities
        self._default_timeout = default_timeout

    async def execute(self, task: StepTask) -> StepOutcome:
        handler = handler_for(task.step)
        timeout = task.timeout_seconds or self._default_timeout

        try:
            payload = handler.parse_input(task.input)
        except ValidationError as e:
            logger.warning(f"Rejecting malformed input for {task.step.value}: {e}")
            return StepFailed(failure=FailureInfo.from_exception(e, retryable=False))

        if "idempotency_key" in handler.input_model.model_fields:
            payload = payload.model_copy(update={"idempotency_key": task.idempotency_key})

        logger.info(
            f"Executing {task.step.value} attempt {task.attempt} "
            f"for instance_id={task.instance_id}"
        )
        try:
            result = await asyncio.wait_for(
                handler.call(self._activities, payload), timeout=timeout
            )
            parsed = handler.result_model.model_validate(result)
        except asyncio.TimeoutError:
            logger.warning(f"{task.step.value} timed out after {timeout}s")
            return StepFailed(
                failure=FailureInfo(
                    message=f"{task.step.value} timed out after {timeout}s",
                    error_type="StepTimeout",
                    retryable=True,
                )
            )
        except Exception as e:
            retryable = is_retryable(e)
            logger.warning(
                f"{task.step.value} attempt {task.attempt} failed "
                f"({'retryable' if retryable else 'terminal'}): {e}"
            )
            return StepFailed(failure=FailureInfo.from_exception(e, retryable=retryable))

        return StepSucceeded(result=parsed.model_dump(mode="json"))


class StepWorker:
    """Polls the task queue and executes steps with bounded concurrency."""

    def __init__(
        self,
        transport: BaseTransport,
        executor: StepExecutor,
        task_queue: str = DEFAULT_TASK_QUEUE,
        max_concurrent_steps: int = DEFAULT_MAX_CONCURRENT_STEPS,
        worker_id: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._executor = executor
        self.task_queue = task_queue
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._slots = asyncio.Semaphore(max_concurrent_steps)
        self._in_flight: Dict[asyncio.Task, Any] = {}
        self.completed = 0

    async def poll(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, StepTask]]:
        """Yield tasks from the queue; each is delivered to this worker only."""
        async for raw_message, message in self._transport.subscribe(
            self.task_queue, lifespan=lifespan
        ):
            if message.task is None:
                logger.warning(
                    f"{self.worker_id} ignoring non-task message {message.message_id}"
                )
                await self._transport.ack(raw_message)
                continue
            yield raw_message, message.task

    async def complete(self, task: StepTask, outcome: StepOutcome) -> None:
        """Report the outcome of ``task`` on its reply topic."""
        if not task.reply_to:
            logger.warning(f"Task {task.task_id} has no reply topic, dropping outcome")
            return
        completion = StepCompletion(
            task_id=task.task_id,
            instance_id=task.instance_id,
            step=task.step,
            attempt=task.attempt,
            outcome=outcome,
            worker_id=self.worker_id,
        )
        await self._transport.publish_completion(task.reply_to, completion)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process tasks until ``lifespan`` expires or the worker is cancelled."""
        logger.info(f"{self.worker_id} polling {self.task_queue}")
        try:
            async for raw_message, task in self.poll(lifespan=lifespan):
                try:
                    await self._slots.acquire()
                except asyncio.CancelledError:
                    await self._transport.nack(raw_message, requeue=True)
                    raise
                job = asyncio.create_task(self._handle(raw_message, task))
                self._in_flight[job] = raw_message
                job.add_done_callback(lambda done: self._in_flight.pop(done, None))
        except asyncio.CancelledError:
            # Hand unfinished tasks back so another worker can pick them up.
            for job, raw_message in list(self._in_flight.items()):
                job.cancel()
                try:
                    await self._transport.nack(raw_message, requeue=True)
                except DispatchUnavailable as e:
                    logger.error(f"{self.worker_id} could not requeue an unfinished task: {e}")
            raise
        finally:
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            logger.info(f"{self.worker_id} stopped after {self.completed} steps")

    async def _handle(self, raw_message: Any, task: StepTask) -> None:
        try:
            outcome = await self._executor.execute(task)
            await self.complete(task, outcome)
            await self._transport.ack(raw_message)
            self.completed += 1
        except DispatchUnavailable as e:
            logger.error(f"{self.worker_id} could not report {task.task_id}: {e}")
            await self._transport.nack(raw_message, requeue=True)
        finally:
            self._slots.release()

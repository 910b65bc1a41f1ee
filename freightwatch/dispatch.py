"""Routing of step tasks from the orchestrator to workers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Optional, Protocol

from .constants import DEFAULT_TASK_QUEUE
from .contracts import StepOutcome, StepTask
from .errors import DispatchUnavailable
from .execute import StepExecutor
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepDispatcher(Protocol):
    """Anything that accepts a step task and eventually yields its outcome."""

    async def submit(self, task: StepTask) -> "asyncio.Future[StepOutcome]": ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class TaskDispatcher:
    """Publishes tasks on the task queue and resolves futures from worker replies.

    Completions arrive on a reply topic private to this dispatcher. A
    completion whose task is unknown (late, duplicate, or from before a
    restart) is acknowledged and dropped.
    """

    def __init__(
        self,
        transport: BaseTransport,
        task_queue: str = DEFAULT_TASK_QUEUE,
        reply_topic: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self.task_queue = task_queue
        self.reply_topic = reply_topic or f"{task_queue}.replies.{uuid.uuid4().hex[:8]}"
        self._pending: Dict[str, asyncio.Future] = {}
        self._listener: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        self._fail_pending(DispatchUnavailable("Dispatcher stopped"))

    async def submit(self, task: StepTask) -> "asyncio.Future[StepOutcome]":
        """Publish ``task`` and return a future for its outcome."""
        await self.start()
        task = task.model_copy(update={"reply_to": self.reply_topic})
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[task.task_id] = future
        future.add_done_callback(lambda _: self._pending.pop(task.task_id, None))
        try:
            await self._transport.publish_task(self.task_queue, task)
        except DispatchUnavailable:
            self._pending.pop(task.task_id, None)
            raise
        except (ConnectionError, OSError) as e:
            self._pending.pop(task.task_id, None)
            raise DispatchUnavailable(f"Could not publish {task.step.value}: {e}") from e
        logger.debug(f"Dispatched {task.step.value} task {task.task_id}")
        return future

    async def _listen(self) -> None:
        try:
            async for raw_message, message in self._transport.subscribe(self.reply_topic):
                completion = message.completion
                if completion is not None:
                    future = self._pending.pop(completion.task_id, None)
                    if future is None or future.done():
                        logger.debug(f"Dropping late completion for {completion.task_id}")
                    else:
                        future.set_result(completion.outcome)
                await self._transport.ack(raw_message)
        except DispatchUnavailable as e:
            logger.error(f"Reply listener on {self.reply_topic} stopped: {e}")
            self._fail_pending(e)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)


class LocalDispatcher:
    """Runs steps in-process through a ``StepExecutor``, skipping the queue."""

    def __init__(self, executor: StepExecutor) -> None:
        self._executor = executor
        self.submitted: list[StepTask] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def submit(self, task: StepTask) -> "asyncio.Future[StepOutcome]":
        self.submitted.append(task)
        return asyncio.ensure_future(self._executor.execute(task))

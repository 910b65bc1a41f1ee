"""Submission API and decision runner for freight delay workflows."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .config import FreightWatchConfig, load_config
from .contracts import DelayNotificationInput, Route, TerminalResult
from .dispatch import StepDispatcher, TaskDispatcher
from .errors import (
    InfrastructureError,
    InstanceAlreadyTerminal,
    InstanceNotFound,
    WorkflowStalled,
)
from .persistence import (
    TERMINAL_STATES,
    HistoryRepository,
    ProcessInstance,
    StepRecord,
    WorkflowState,
    get_repository,
)
from .transports import BaseTransport, get_transport
from .utils.retry import Sleeper
from .workflow import FreightDelayWorkflow, StepInvoker, cancelled_result

logger = logging.getLogger(__name__)

ACTIVE_STATES = [state for state in WorkflowState if state not in TERMINAL_STATES]


def new_instance_id() -> str:
    return f"freight-delay-{uuid.uuid4()}"


class WorkflowHandle:
    """Client-side reference to one submitted instance."""

    def __init__(
        self,
        runtime: "WorkflowRuntime",
        instance_id: str,
        task: Optional[asyncio.Task] = None,
    ) -> None:
        self._runtime = runtime
        self.instance_id = instance_id
        self._task = task

    async def await_result(self, timeout: Optional[float] = None) -> TerminalResult:
        """Wait for the terminal result.

        Raises:
            WorkflowStalled: The run stopped on an infrastructure failure; the
                instance is still pending and can be resumed.
        """
        if self._task is not None:
            try:
                return await asyncio.wait_for(asyncio.shield(self._task), timeout)
            except InfrastructureError as e:
                raise WorkflowStalled(self.instance_id, e) from e

        instance = await self._runtime.describe(self.instance_id)
        if instance.result is None:
            raise WorkflowStalled(self.instance_id)
        return instance.result

    async def state(self) -> WorkflowState:
        return (await self._runtime.describe(self.instance_id)).state

    async def history(self) -> List[StepRecord]:
        return await self._runtime.history(self.instance_id)

    async def cancel(self) -> None:
        await self._runtime.cancel(self.instance_id)


class WorkflowRuntime:
    """Runs workflow decisions and hands steps to the dispatch layer.

    Decisions for one instance are serialized by a per-instance lock. The
    number of instances evaluating decisions at the same time is bounded by
    ``max_concurrent_decisions``; an instance gives up its slot while it waits
    for a step outcome or a retry backoff.
    """

    def __init__(
        self,
        repository: HistoryRepository,
        dispatcher: StepDispatcher,
        config: Optional[FreightWatchConfig] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config or FreightWatchConfig()
        self._sleep = sleep
        self._decision_slots = asyncio.Semaphore(self.config.worker.max_concurrent_decisions)
        self._instance_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._cancel_requests: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: Optional[FreightWatchConfig] = None,
        repository: Optional[HistoryRepository] = None,
        transport: Optional[BaseTransport] = None,
    ) -> "WorkflowRuntime":
        config = config or load_config()
        repository = repository or get_repository(config=config)
        transport = transport or get_transport(config=config)
        dispatcher = TaskDispatcher(transport, task_queue=config.transport.task_queue)
        return cls(repository, dispatcher, config=config)

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        running = list(self._running.values())
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        await self.dispatcher.stop()

    async def __aenter__(self) -> "WorkflowRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    async def submit(
        self,
        instance_id: Optional[str],
        route: Route,
        customer_contact: Optional[str] = None,
        delay_threshold_minutes: Optional[int] = None,
    ) -> WorkflowHandle:
        """Register a new instance and start driving it."""
        instance = ProcessInstance(
            instance_id=instance_id or new_instance_id(),
            input=DelayNotificationInput(
                route=route,
                customer_contact=customer_contact or self.config.customer_contact,
                delay_threshold_minutes=(
                    self.config.delay_threshold_minutes
                    if delay_threshold_minutes is None
                    else delay_threshold_minutes
                ),
            ),
        )
        await self.repository.create_instance(instance)
        logger.info(f"Submitted {instance.instance_id}")
        return self._launch(instance)

    async def resume(self, instance_id: str) -> WorkflowHandle:
        """Continue a pending instance from its recorded history."""
        if instance_id in self._running:
            return WorkflowHandle(self, instance_id, self._running[instance_id])
        instance = await self.describe(instance_id)
        if instance.is_terminal:
            return WorkflowHandle(self, instance_id)
        logger.info(f"Resuming {instance_id} from state {instance.state.value}")
        return self._launch(instance)

    async def recover(self) -> List[WorkflowHandle]:
        """Resume every instance that has not reached a terminal state."""
        pending = await self.repository.list_instances(ACTIVE_STATES)
        return [await self.resume(instance.instance_id) for instance in pending]

    async def cancel(self, instance_id: str) -> None:
        """Stop further transitions; an in-flight step still runs to completion."""
        if instance_id in self._running:
            self._cancel_requests.add(instance_id)
            return
        instance = await self.describe(instance_id)
        if not instance.is_terminal:
            await self.repository.complete_instance(
                instance_id, WorkflowState.CANCELLED, cancelled_result()
            )

    async def describe(self, instance_id: str) -> ProcessInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    async def history(self, instance_id: str) -> List[StepRecord]:
        return await self.repository.load(instance_id)

    def handle(self, instance_id: str) -> WorkflowHandle:
        return WorkflowHandle(self, instance_id, self._running.get(instance_id))

    # ------------------------------------------------------------------
    def _launch(self, instance: ProcessInstance) -> WorkflowHandle:
        task = asyncio.create_task(self._drive(instance))
        self._running[instance.instance_id] = task
        task.add_done_callback(lambda _: self._running.pop(instance.instance_id, None))
        return WorkflowHandle(self, instance.instance_id, task)

    @asynccontextmanager
    async def _instance_lock(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._instance_locks.setdefault(instance_id, asyncio.Lock())
        self._lock_users[instance_id] = self._lock_users.get(instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[instance_id] -= 1
            if not self._lock_users[instance_id]:
                del self._lock_users[instance_id]
                del self._instance_locks[instance_id]

    async def _drive(self, instance: ProcessInstance) -> TerminalResult:
        instance_id = instance.instance_id
        async with self._instance_lock(instance_id):
            async with self._decision_slots:
                try:
                    history = await self.repository.load(instance_id)
                    invoker = StepInvoker(
                        instance_id,
                        history,
                        self.repository,
                        self.dispatcher,
                        retry=self.config.retry,
                        step_timeout=self.config.step_timeout_seconds,
                        sleep=self._sleep,
                        slots=self._decision_slots,
                        dispatch_grace=self.config.dispatch_grace_seconds,
                    )
                    workflow = FreightDelayWorkflow(
                        instance,
                        invoker,
                        self.repository,
                        cancel_requested=lambda: instance_id in self._cancel_requests,
                    )
                    return await workflow.run()
                except InstanceAlreadyTerminal:
                    # Finished elsewhere, usually cancelled through another runtime.
                    stored = await self.describe(instance_id)
                    logger.info(
                        f"Workflow {instance_id} was finished elsewhere "
                        f"in state {stored.state.value}"
                    )
                    return stored.result
                except InfrastructureError as e:
                    logger.error(
                        f"Workflow {instance_id} stalled on infrastructure failure, "
                        f"left pending for resume: {e}"
                    )
                    raise
                finally:
                    self._cancel_requests.discard(instance_id)

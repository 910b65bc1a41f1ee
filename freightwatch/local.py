"""Single-process deployment: runtime and step workers sharing one event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .config import FreightWatchConfig
from .dispatch import TaskDispatcher
from .execute import StepExecutor, StepWorker
from .persistence import HistoryRepository, InMemoryHistoryRepository
from .runtime import WorkflowRuntime
from .steps import FreightActivities, build_simulated_activities
from .transports import BaseTransport, InMemoryTransport
from .utils.retry import Sleeper

logger = logging.getLogger(__name__)


class LocalCluster:
    """Runs a ``WorkflowRuntime`` plus ``workers`` step workers in-process.

    Usage::

        async with LocalCluster() as cluster:
            handle = await cluster.runtime.submit(None, route, "a@b.com", 30)
            result = await handle.await_result()
    """

    def __init__(
        self,
        activities: Optional[FreightActivities] = None,
        config: Optional[FreightWatchConfig] = None,
        repository: Optional[HistoryRepository] = None,
        transport: Optional[BaseTransport] = None,
        workers: int = 1,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.config = config or FreightWatchConfig()
        self.activities = activities or build_simulated_activities(
            from_email=self.config.from_email
        )
        self.repository = repository or InMemoryHistoryRepository()
        self.transport = transport or InMemoryTransport(
            namespace=self.config.transport.namespace
        )
        self.dispatcher = TaskDispatcher(
            self.transport, task_queue=self.config.transport.task_queue
        )
        self.runtime = WorkflowRuntime(
            self.repository, self.dispatcher, config=self.config, sleep=sleep
        )
        self._executor = StepExecutor(
            self.activities, default_timeout=self.config.step_timeout_seconds
        )
        self.workers: List[StepWorker] = [
            self._new_worker(f"local-worker-{n + 1}") for n in range(workers)
        ]
        self._worker_tasks: List[asyncio.Task] = []

    def _new_worker(self, worker_id: str) -> StepWorker:
        return StepWorker(
            self.transport,
            self._executor,
            task_queue=self.config.transport.task_queue,
            max_concurrent_steps=self.config.worker.max_concurrent_steps,
            worker_id=worker_id,
        )

    async def start(self) -> None:
        await self.transport.connect()
        await self.runtime.start()
        self._worker_tasks = [
            asyncio.create_task(worker.start()) for worker in self.workers
        ]
        logger.info(f"Local cluster started with {len(self.workers)} worker(s)")

    async def restart_worker(self, index: int = 0) -> StepWorker:
        """Stop one worker mid-flight and start a replacement on the same queue.

        Steps the old worker had not finished go back on the queue.
        """
        task = self._worker_tasks[index]
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        old = self.workers[index]
        worker = self._new_worker(f"{old.worker_id}-restarted")
        self.workers[index] = worker
        self._worker_tasks[index] = asyncio.create_task(worker.start())
        logger.info(f"Replaced {old.worker_id} with {worker.worker_id}")
        return worker

    async def stop(self) -> None:
        await self.runtime.stop()
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []
        await self.transport.disconnect()

    async def __aenter__(self) -> "LocalCluster":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

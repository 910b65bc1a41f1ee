"""End-to-end runs through the task queue with in-process workers."""

import asyncio

import pytest

from freightwatch import LocalCluster
from freightwatch.config import FreightWatchConfig, WorkerConfig
from freightwatch.contracts import Route, StepName
from freightwatch.persistence import SQLiteHistoryRepository, StepStatus, WorkflowState
from freightwatch.services import TemplateComposer

from conftest import CUSTOMER, NY_TO_PHILLY


class CrashingTraffic:
    """Traffic source that fails the test if it is ever called."""

    async def fetch_traffic(self, route):
        raise AssertionError("fetch_traffic must be replayed, not executed")


class BlockingComposer:
    """Composer that never returns, standing in for a process that dies mid-step."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def compose_message(self, request):
        self.started.set()
        await asyncio.Event().wait()


class StallOnceComposer(TemplateComposer):
    """Hangs on the first call only, like a worker that froze mid-step."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.calls = 0

    async def compose_message(self, request):
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            await asyncio.Event().wait()
        return await super().compose_message(request)


@pytest.mark.asyncio
async def test_notification_through_task_queue(make_activities, recording_sleep):
    activities = make_activities(delay=45)
    async with LocalCluster(activities, sleep=recording_sleep) as cluster:
        handle = await cluster.runtime.submit("freight-delay-1", NY_TO_PHILLY, CUSTOMER, 30)
        result = await handle.await_result(timeout=10)

        assert result.notification_sent is True
        assert result.delay_minutes == 45
        assert cluster.workers[0].completed == 3
        assert cluster.transport.pending(cluster.config.transport.task_queue) == 0
        assert cluster.dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_many_instances_across_workers(make_activities, recording_sleep):
    config = FreightWatchConfig(
        worker=WorkerConfig(max_concurrent_steps=2, max_concurrent_decisions=2)
    )
    routes = [Route(origin=f"Depot {n}", destination="Hub") for n in range(8)]
    activities = make_activities(delay=45)
    for n, route in enumerate(routes):
        activities.inner.traffic.set_delay(route.origin, route.destination, 10 * n)

    async with LocalCluster(
        activities, config=config, workers=3, sleep=recording_sleep
    ) as cluster:
        handles = [
            await cluster.runtime.submit(f"freight-delay-{n}", route, CUSTOMER, 30)
            for n, route in enumerate(routes)
        ]
        results = await asyncio.gather(*(h.await_result(timeout=10) for h in handles))

        assert [r.delay_minutes for r in results] == [10 * n for n in range(8)]
        assert [r.notification_sent for r in results] == [10 * n > 30 for n in range(8)]
        assert sum(w.completed for w in cluster.workers) == len(activities.calls)
        for handle in handles:
            assert (await handle.state()).is_terminal


@pytest.mark.asyncio
async def test_restart_resumes_from_sqlite_history(tmp_path, make_activities, recording_sleep):
    db_path = tmp_path / "history.db"

    # First process dies while the compose step is in flight.
    repository = SQLiteHistoryRepository(db_path)
    composer = BlockingComposer()
    activities = make_activities(delay=45, composer=composer)
    async with LocalCluster(activities, repository=repository, sleep=recording_sleep) as cluster:
        await cluster.runtime.submit("freight-delay-1", NY_TO_PHILLY, CUSTOMER, 30)
        await asyncio.wait_for(composer.started.wait(), timeout=10)
    repository.close()

    # Second process: a fresh runtime over the same database finishes the job
    # without fetching traffic again.
    repository = SQLiteHistoryRepository(db_path)
    instance = await repository.get_instance("freight-delay-1")
    assert instance.state == WorkflowState.COMPOSING_MESSAGE
    assert (await repository.load("freight-delay-1"))[-1].status == StepStatus.PENDING

    resumed_activities = make_activities(delay=5)
    resumed_activities.inner.traffic = CrashingTraffic()
    async with LocalCluster(
        resumed_activities, repository=repository, sleep=recording_sleep
    ) as cluster:
        (handle,) = await cluster.runtime.recover()
        result = await handle.await_result(timeout=10)

    assert result.notification_sent is True
    assert result.delay_minutes == 45
    assert StepName.FETCH_TRAFFIC not in resumed_activities.calls
    assert (await repository.get_instance("freight-delay-1")).state == WorkflowState.COMPLETED
    records = await repository.load("freight-delay-1")
    fetches = [r for r in records if r.step == StepName.FETCH_TRAFFIC]
    assert [r.status for r in fetches] == [StepStatus.PENDING, StepStatus.SUCCEEDED]
    repository.close()


@pytest.mark.asyncio
async def test_worker_restart_mid_step_requeues_task(make_activities, recording_sleep):
    composer = StallOnceComposer()
    activities = make_activities(delay=45, composer=composer)
    async with LocalCluster(activities, sleep=recording_sleep) as cluster:
        handle = await cluster.runtime.submit("freight-delay-1", NY_TO_PHILLY, CUSTOMER, 30)
        await asyncio.wait_for(composer.started.wait(), timeout=10)

        replacement = await cluster.restart_worker(0)
        result = await handle.await_result(timeout=10)

        assert result.notification_sent is True
        assert composer.calls == 2
        assert replacement.completed == 2
        records = await handle.history()
        composes = [r for r in records if r.step == StepName.COMPOSE_MESSAGE]
        assert [(r.attempt, r.status) for r in composes] == [
            (1, StepStatus.PENDING),
            (1, StepStatus.SUCCEEDED),
        ]
        assert recording_sleep.delays == []
        assert cluster.dispatcher.in_flight == 0

"""Command line interface for running freightwatch workers and workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import typer

from freightwatch import (
    LocalCluster,
    StepExecutor,
    StepWorker,
    WorkflowRuntime,
    get_repository,
    get_transport,
    load_config,
)
from freightwatch.config import FreightWatchConfig
from freightwatch.contracts import Route, TerminalResult
from freightwatch.errors import FreightWatchError, InstanceNotFound
from freightwatch.persistence import WorkflowState
from freightwatch.scenarios import SCENARIOS
from freightwatch.steps import build_simulated_activities
from freightwatch.workflow import cancelled_result

app = typer.Typer(help="CLI for freight delay notification workflows")

worker_app = typer.Typer(help="Commands for running step workers")
workflow_app = typer.Typer(help="Commands for submitting and inspecting workflows")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """freightwatch CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def _runtime(
    config: FreightWatchConfig, seed: Optional[int] = None
) -> AsyncIterator[WorkflowRuntime]:
    """Runtime for the configured backend; in-memory transport gets local workers."""
    repository = get_repository(config=config)
    if config.transport.backend == "inmemory":
        cluster = LocalCluster(
            activities=build_simulated_activities(
                seed=seed, from_email=config.from_email
            ),
            config=config,
            repository=repository,
        )
        async with cluster:
            yield cluster.runtime
    else:
        async with WorkflowRuntime.from_config(config, repository=repository) as runtime:
            yield runtime


def _echo_result(result: TerminalResult) -> None:
    typer.echo(json.dumps(result.to_public(), indent=2))


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run before exiting"),
    seed: Optional[int] = typer.Option(None, help="Seed for simulated traffic"),
    worker_id: Optional[str] = typer.Option(None, help="Identifier used in logs"),
) -> None:
    """
    Run a worker process that executes workflow steps.

    The worker polls the configured task queue, executes each step once and
    reports the outcome back to the dispatching runtime.

    Example:
        freightwatch worker run --lifespan 300
    """
    config = load_config()
    transport = get_transport(config=config)
    executor = StepExecutor(
        build_simulated_activities(seed=seed, from_email=config.from_email),
        default_timeout=config.step_timeout_seconds,
    )
    worker = StepWorker(
        transport,
        executor,
        task_queue=config.transport.task_queue,
        max_concurrent_steps=config.worker.max_concurrent_steps,
        worker_id=worker_id,
    )
    typer.echo(f"Starting worker on queue: {config.transport.task_queue}")
    asyncio.run(worker.start(lifespan=lifespan))


@workflow_app.command("submit")
def workflow_submit(
    origin: str,
    destination: str,
    waypoint: List[str] = typer.Option([], help="Intermediate stop, repeatable"),
    contact: Optional[str] = typer.Option(None, help="Customer contact"),
    threshold: Optional[int] = typer.Option(None, help="Delay threshold in minutes"),
    instance_id: Optional[str] = typer.Option(None, "--id", help="Instance id"),
    seed: Optional[int] = typer.Option(None, help="Seed for simulated traffic"),
) -> None:
    """Submit one delay check and wait for its result."""
    config = load_config()
    route = Route(origin=origin, destination=destination, waypoints=waypoint)

    async def _submit() -> TerminalResult:
        async with _runtime(config, seed=seed) as runtime:
            handle = await runtime.submit(instance_id, route, contact, threshold)
            typer.echo(f"Workflow started: {handle.instance_id}")
            return await handle.await_result()

    try:
        _echo_result(asyncio.run(_submit()))
    except FreightWatchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@workflow_app.command("demo")
def workflow_demo(
    seed: Optional[int] = typer.Option(None, help="Seed for simulated traffic"),
) -> None:
    """Run the bundled demo scenarios in-process."""
    config = load_config()
    config.transport.backend = "inmemory"

    async def _demo() -> None:
        async with _runtime(config, seed=seed) as runtime:
            for number, scenario in enumerate(SCENARIOS, start=1):
                typer.echo(scenario.name)
                typer.echo(f"  Route: {scenario.route.describe()}")
                handle = await runtime.submit(
                    None,
                    scenario.route,
                    config.customer_contact,
                    scenario.delay_threshold_minutes,
                )
                _echo_result(await handle.await_result())
                typer.echo(f"Scenario {number} completed")
                typer.echo("-" * 50)

    asyncio.run(_demo())


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """Print the state, result and step history of an instance."""
    config = load_config()
    repository = get_repository(config=config)

    async def _show() -> None:
        instance = await repository.get_instance(instance_id)
        if instance is None:
            typer.echo(f"Unknown instance: {instance_id}", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"Instance: {instance.instance_id}")
        typer.echo(f"State: {instance.state.value}")
        if instance.result is not None:
            _echo_result(instance.result)
        for record in await repository.load(instance_id):
            typer.echo(
                f"  #{record.sequence} {record.step.value} attempt {record.attempt}: "
                f"{record.status.value}"
            )

    asyncio.run(_show())


@workflow_app.command("recover")
def workflow_recover(
    seed: Optional[int] = typer.Option(None, help="Seed for simulated traffic"),
) -> None:
    """Resume every instance that has not reached a terminal state."""
    config = load_config()

    async def _recover() -> None:
        async with _runtime(config, seed=seed) as runtime:
            handles = await runtime.recover()
            typer.echo(f"Resuming {len(handles)} instance(s)")
            for handle in handles:
                try:
                    result = await handle.await_result()
                except FreightWatchError as e:
                    typer.echo(f"{handle.instance_id}: {e}", err=True)
                    continue
                typer.echo(f"{handle.instance_id}:")
                _echo_result(result)

    asyncio.run(_recover())


@workflow_app.command("cancel")
def workflow_cancel(instance_id: str) -> None:
    """Cancel a pending instance that is not running in any process."""
    config = load_config()
    repository = get_repository(config=config)

    async def _cancel() -> None:
        instance = await repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        await repository.complete_instance(
            instance_id, WorkflowState.CANCELLED, cancelled_result()
        )

    try:
        asyncio.run(_cancel())
    except FreightWatchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Cancelled {instance_id}")


if __name__ == "__main__":
    app()

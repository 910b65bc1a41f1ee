"""Tests for single-attempt step execution and failure classification."""

import asyncio

import pytest

from freightwatch.constants import DEFAULT_FROM_EMAIL
from freightwatch.contracts import (
    ComposeRequest,
    NotificationRequest,
    Route,
    StepFailed,
    StepName,
    StepSucceeded,
    StepTask,
    TrafficCondition,
)
from freightwatch.errors import InvalidRoute, TrafficUnavailable
from freightwatch.execute import StepExecutor, is_retryable
from freightwatch.steps import build_simulated_activities

from conftest import CUSTOMER, NY_TO_PHILLY, BrokenComposer


def _task(step: StepName, payload, instance_id: str = "freight-delay-1") -> StepTask:
    return StepTask(
        instance_id=instance_id, step=step, input=payload.model_dump(mode="json")
    )


def _notification(contact: str = CUSTOMER) -> NotificationRequest:
    return NotificationRequest(
        contact=contact,
        subject="Freight Delivery Delay Notice - 45 Minutes",
        text="Your delivery is late.",
        delay_minutes=45,
    )


def test_is_retryable_classification():
    assert is_retryable(TrafficUnavailable("down")) is True
    assert is_retryable(ConnectionError("reset")) is True
    assert is_retryable(InvalidRoute("bad")) is False


@pytest.mark.asyncio
async def test_fetch_traffic_success(make_activities):
    executor = StepExecutor(make_activities(delay=45))
    outcome = await executor.execute(_task(StepName.FETCH_TRAFFIC, NY_TO_PHILLY))

    assert isinstance(outcome, StepSucceeded)
    assert outcome.result["estimated_delay_minutes"] == 45
    assert outcome.result["condition"] == TrafficCondition.SEVERE.value


@pytest.mark.asyncio
async def test_invalid_route_is_terminal(make_activities):
    activities = make_activities()
    executor = StepExecutor(activities)
    route = Route(origin="", destination="Philadelphia, PA")
    outcome = await executor.execute(_task(StepName.FETCH_TRAFFIC, route))

    assert isinstance(outcome, StepFailed)
    assert outcome.failure.retryable is False
    assert outcome.failure.error_type == "InvalidRoute"
    assert outcome.failure.message == "Invalid route: Origin and destination are required"


@pytest.mark.asyncio
async def test_traffic_outage_is_retryable(make_activities):
    executor = StepExecutor(make_activities(outages=1))
    outcome = await executor.execute(_task(StepName.FETCH_TRAFFIC, NY_TO_PHILLY))

    assert isinstance(outcome, StepFailed)
    assert outcome.failure.retryable is True
    assert outcome.failure.error_type == "TrafficUnavailable"


@pytest.mark.asyncio
async def test_malformed_input_is_terminal(make_activities):
    activities = make_activities()
    executor = StepExecutor(activities)
    task = StepTask(
        instance_id="freight-delay-1",
        step=StepName.FETCH_TRAFFIC,
        input={"origin": "New York, NY"},
    )
    outcome = await executor.execute(task)

    assert isinstance(outcome, StepFailed)
    assert outcome.failure.retryable is False
    assert activities.calls == []


@pytest.mark.asyncio
async def test_step_timeout_is_retryable(make_activities):
    class SlowTraffic:
        async def fetch_traffic(self, route):
            await asyncio.sleep(5)

    activities = make_activities()
    activities.inner.traffic = SlowTraffic()
    executor = StepExecutor(activities, default_timeout=0.01)
    outcome = await executor.execute(_task(StepName.FETCH_TRAFFIC, NY_TO_PHILLY))

    assert isinstance(outcome, StepFailed)
    assert outcome.failure.retryable is True
    assert outcome.failure.error_type == "StepTimeout"


@pytest.mark.asyncio
async def test_degraded_composition_still_succeeds(make_activities):
    executor = StepExecutor(make_activities(composer=BrokenComposer()))
    request = ComposeRequest(
        delay_minutes=45, route=NY_TO_PHILLY, condition=TrafficCondition.SEVERE
    )
    outcome = await executor.execute(_task(StepName.COMPOSE_MESSAGE, request))

    assert isinstance(outcome, StepSucceeded)
    assert outcome.result["degraded"] is True
    assert outcome.result["error"] == "language model unavailable"
    assert "delayed by approximately 45 minutes" in outcome.result["text"]


@pytest.mark.asyncio
async def test_compose_mentions_waypoints(make_activities):
    executor = StepExecutor(make_activities())
    route = Route(origin="A", destination="C", waypoints=["B"])
    request = ComposeRequest(
        delay_minutes=20, route=route, condition=TrafficCondition.MODERATE
    )
    outcome = await executor.execute(_task(StepName.COMPOSE_MESSAGE, request))

    assert outcome.result["degraded"] is False
    assert "via B" in outcome.result["text"]


@pytest.mark.asyncio
async def test_send_injects_idempotency_key(make_activities):
    activities = make_activities()
    executor = StepExecutor(activities)
    task = _task(StepName.SEND_PRIMARY, _notification())

    first = await executor.execute(task)
    redelivered = await executor.execute(task.model_copy(update={"attempt": 2}))

    assert first.result["success"] is True
    assert redelivered.result["delivery_id"] == first.result["delivery_id"]
    assert len(activities.primary.sent) == 1
    assert activities.primary.sent[0].idempotency_key == "freight-delay-1:send_primary"


@pytest.mark.asyncio
async def test_channel_rejection_is_a_result(make_activities):
    executor = StepExecutor(make_activities(primary_reject="mailbox full"))
    outcome = await executor.execute(_task(StepName.SEND_PRIMARY, _notification()))

    assert isinstance(outcome, StepSucceeded)
    assert outcome.result["success"] is False
    assert outcome.result["failure_reason"] == "mailbox full"


@pytest.mark.asyncio
async def test_invalid_email_contact_is_terminal(make_activities):
    executor = StepExecutor(make_activities())
    outcome = await executor.execute(
        _task(StepName.SEND_PRIMARY, _notification(contact="not-an-email"))
    )

    assert isinstance(outcome, StepFailed)
    assert outcome.failure.retryable is False
    assert outcome.failure.error_type == "InvalidContact"


@pytest.mark.asyncio
async def test_sms_fallback_renders_short_alert(make_activities):
    activities = make_activities()
    executor = StepExecutor(activities)
    outcome = await executor.execute(_task(StepName.SEND_FALLBACK, _notification()))

    assert outcome.result["delivery_id"].startswith("sms_")
    assert activities.fallback.sent[0].text.startswith("Freight Delay Alert")


@pytest.mark.asyncio
async def test_email_carries_configured_sender():
    activities = build_simulated_activities(from_email="dispatch@freight.example")
    executor = StepExecutor(activities)

    await executor.execute(_task(StepName.SEND_PRIMARY, _notification()))
    await executor.execute(_task(StepName.SEND_FALLBACK, _notification("+15550100")))

    assert activities.primary.sent[0].sender == "dispatch@freight.example"
    assert activities.fallback.sent[0].sender is None


def test_email_sender_defaults_to_noreply():
    activities = build_simulated_activities()
    assert activities.primary.from_email == DEFAULT_FROM_EMAIL

"""Shared fixtures for freightwatch tests."""

from __future__ import annotations

from typing import List, Optional

import pytest

from freightwatch.contracts import (
    ComposedMessage,
    ComposeRequest,
    NotificationOutcome,
    NotificationRequest,
    Route,
    StepName,
    TrafficSnapshot,
)
from freightwatch.services import (
    SimulatedEmailChannel,
    SimulatedSmsChannel,
    SimulatedTrafficService,
    TemplateComposer,
)
from freightwatch.steps import ServiceActivities

NY_TO_PHILLY = Route(origin="New York, NY", destination="Philadelphia, PA")
CUSTOMER = "customer@example.com"


class RecordingActivities:
    """Wraps real activities and records which steps actually ran."""

    def __init__(self, inner: ServiceActivities) -> None:
        self.inner = inner
        self.calls: List[StepName] = []

    async def fetch_traffic(self, route: Route) -> TrafficSnapshot:
        self.calls.append(StepName.FETCH_TRAFFIC)
        return await self.inner.fetch_traffic(route)

    async def compose_message(self, request: ComposeRequest) -> ComposedMessage:
        self.calls.append(StepName.COMPOSE_MESSAGE)
        return await self.inner.compose_message(request)

    async def send_primary(self, request: NotificationRequest) -> NotificationOutcome:
        self.calls.append(StepName.SEND_PRIMARY)
        return await self.inner.send_primary(request)

    async def send_fallback(self, request: NotificationRequest) -> NotificationOutcome:
        self.calls.append(StepName.SEND_FALLBACK)
        return await self.inner.send_fallback(request)

    @property
    def primary(self) -> SimulatedEmailChannel:
        return self.inner.primary

    @property
    def fallback(self) -> SimulatedSmsChannel:
        return self.inner.fallback


class BrokenComposer:
    async def compose_message(self, request: ComposeRequest) -> str:
        raise RuntimeError("language model unavailable")


class FlakyChannel(SimulatedEmailChannel):
    """Raises a transient error for the first ``failures`` sends."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def send(self, request: NotificationRequest) -> NotificationOutcome:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("mail relay timed out")
        return await super().send(request)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def make_activities():
    def _make(
        delay: int = 45,
        route: Route = NY_TO_PHILLY,
        outages: int = 0,
        composer=None,
        primary_reject: Optional[str] = None,
        fallback_reject: Optional[str] = None,
        primary=None,
    ) -> RecordingActivities:
        traffic = SimulatedTrafficService(
            fixed_delays={(route.origin, route.destination): delay}, outages=outages
        )
        return RecordingActivities(
            ServiceActivities(
                traffic=traffic,
                composer=composer or TemplateComposer(),
                primary=primary or SimulatedEmailChannel(reject_reason=primary_reject),
                fallback=SimulatedSmsChannel(reject_reason=fallback_reject),
            )
        )

    return _make


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()

"""Activities of the freight delay workflow and their dispatch table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol, Type

from pydantic import BaseModel

from .constants import DEFAULT_FROM_EMAIL
from .contracts import (
    ComposedMessage,
    ComposeRequest,
    NotificationOutcome,
    NotificationRequest,
    Route,
    StepName,
    TrafficSnapshot,
)
from .services import (
    MessageComposer,
    NotificationChannel,
    SimulatedEmailChannel,
    SimulatedSmsChannel,
    SimulatedTrafficService,
    TemplateComposer,
    TrafficSource,
    fallback_message,
    validate_route,
)

logger = logging.getLogger(__name__)


class FreightActivities(Protocol):
    """Capabilities the workflow needs, one method per step."""

    async def fetch_traffic(self, route: Route) -> TrafficSnapshot: ...

    async def compose_message(self, request: ComposeRequest) -> ComposedMessage: ...

    async def send_primary(self, request: NotificationRequest) -> NotificationOutcome: ...

    async def send_fallback(self, request: NotificationRequest) -> NotificationOutcome: ...


class ServiceActivities:
    """Activities backed by injected collaborators."""

    def __init__(
        self,
        traffic: TrafficSource,
        composer: MessageComposer,
        primary: NotificationChannel,
        fallback: NotificationChannel,
    ) -> None:
        self.traffic = traffic
        self.composer = composer
        self.primary = primary
        self.fallback = fallback

    async def fetch_traffic(self, route: Route) -> TrafficSnapshot:
        validate_route(route)
        return await self.traffic.fetch_traffic(route)

    async def compose_message(self, request: ComposeRequest) -> ComposedMessage:
        try:
            text = await self.composer.compose_message(request)
        except Exception as e:
            logger.warning(f"Message composition failed, using fallback template: {e}")
            return ComposedMessage(
                text=fallback_message(request), degraded=True, error=str(e)
            )
        if not text or not text.strip():
            return ComposedMessage(
                text=fallback_message(request), degraded=True, error="empty message"
            )
        return ComposedMessage(text=text)

    async def send_primary(self, request: NotificationRequest) -> NotificationOutcome:
        return await self.primary.send(request)

    async def send_fallback(self, request: NotificationRequest) -> NotificationOutcome:
        return await self.fallback.send(request)


def build_simulated_activities(
    seed: Optional[int] = None,
    traffic: Optional[TrafficSource] = None,
    composer: Optional[MessageComposer] = None,
    primary: Optional[NotificationChannel] = None,
    fallback: Optional[NotificationChannel] = None,
    from_email: str = DEFAULT_FROM_EMAIL,
) -> ServiceActivities:
    """Wire the simulated collaborators, replacing any that are given."""
    return ServiceActivities(
        traffic=traffic or SimulatedTrafficService(seed=seed),
        composer=composer or TemplateComposer(),
        primary=primary or SimulatedEmailChannel(from_email=from_email),
        fallback=fallback or SimulatedSmsChannel(),
    )


@dataclass(frozen=True)
class StepHandler:
    """Typed entry of the step dispatch table."""

    name: StepName
    input_model: Type[BaseModel]
    result_model: Type[BaseModel]
    call: Callable[[FreightActivities, BaseModel], Awaitable[BaseModel]]

    def parse_input(self, data: dict) -> BaseModel:
        return self.input_model.model_validate(data)

    def parse_result(self, data: dict) -> BaseModel:
        return self.result_model.model_validate(data)


STEP_HANDLERS: Dict[StepName, StepHandler] = {
    StepName.FETCH_TRAFFIC: StepHandler(
        StepName.FETCH_TRAFFIC,
        Route,
        TrafficSnapshot,
        lambda activities, route: activities.fetch_traffic(route),
    ),
    StepName.COMPOSE_MESSAGE: StepHandler(
        StepName.COMPOSE_MESSAGE,
        ComposeRequest,
        ComposedMessage,
        lambda activities, request: activities.compose_message(request),
    ),
    StepName.SEND_PRIMARY: StepHandler(
        StepName.SEND_PRIMARY,
        NotificationRequest,
        NotificationOutcome,
        lambda activities, request: activities.send_primary(request),
    ),
    StepName.SEND_FALLBACK: StepHandler(
        StepName.SEND_FALLBACK,
        NotificationRequest,
        NotificationOutcome,
        lambda activities, request: activities.send_fallback(request),
    ),
}


def handler_for(step: StepName) -> StepHandler:
    return STEP_HANDLERS[StepName(step)]

"""Customer message composition."""

from __future__ import annotations

from typing import Protocol

from ..contracts import ComposeRequest, TrafficCondition


class MessageComposer(Protocol):
    async def compose_message(self, request: ComposeRequest) -> str:
        """Return the customer-facing text; may raise on provider errors."""


_CONDITION_PHRASES = {
    TrafficCondition.LIGHT: "light traffic",
    TrafficCondition.MODERATE: "moderate traffic",
    TrafficCondition.HEAVY: "heavy traffic",
    TrafficCondition.SEVERE: "severe traffic congestion",
}


def fallback_message(request: ComposeRequest) -> str:
    """Plain template used whenever the composer cannot produce a message."""
    return (
        f"Dear Customer, your freight delivery from {request.route.origin} to "
        f"{request.route.destination} is delayed by approximately "
        f"{request.delay_minutes} minutes due to traffic conditions. "
        "We apologize for the inconvenience. - Freight Team"
    )


class TemplateComposer:
    """Deterministic composer that mentions waypoints and traffic severity."""

    def __init__(self, signature: str = "Freight Team") -> None:
        self.signature = signature

    async def compose_message(self, request: ComposeRequest) -> str:
        route = request.route
        via = f" via {', '.join(route.waypoints)}" if route.waypoints else ""
        return (
            f"Hello, we wanted to let you know that your delivery from {route.origin} "
            f"to {route.destination}{via} is running about {request.delay_minutes} "
            f"minutes late because of {_CONDITION_PHRASES[request.condition]}. "
            "Our driver is on the way and we will keep you posted. "
            f"Thank you for your patience. - {self.signature}"
        )

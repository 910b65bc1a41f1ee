"""Collaborators the workflow steps call out to."""

from .channels import (
    NotificationChannel,
    SimulatedChannel,
    SimulatedEmailChannel,
    SimulatedSmsChannel,
    create_delay_subject,
)
from .composer import MessageComposer, TemplateComposer, fallback_message
from .traffic import SimulatedTrafficService, TrafficSource, validate_route

__all__ = [
    "MessageComposer",
    "NotificationChannel",
    "SimulatedChannel",
    "SimulatedEmailChannel",
    "SimulatedSmsChannel",
    "SimulatedTrafficService",
    "TemplateComposer",
    "TrafficSource",
    "create_delay_subject",
    "fallback_message",
    "validate_route",
]

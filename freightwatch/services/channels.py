"""Notification delivery channels.

Channels must tolerate being called again with the same
``NotificationRequest.idempotency_key``: a step can be re-executed after a
crash, so a repeated send returns the original delivery instead of
delivering twice.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional, Protocol

from ..constants import DEFAULT_FROM_EMAIL
from ..contracts import NotificationOutcome, NotificationRequest
from ..errors import InvalidContact

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    async def send(self, request: NotificationRequest) -> NotificationOutcome:
        """Deliver the notification. Rejections are returned, not raised."""


def create_delay_subject(delay_minutes: int) -> str:
    return f"Freight Delivery Delay Notice - {delay_minutes} Minutes"


def sms_text(request: NotificationRequest) -> str:
    return (
        f"Freight Delay Alert: Your delivery is delayed by {request.delay_minutes} "
        "minutes due to traffic conditions. We apologize for the inconvenience. "
        "- Freight Team"
    )


class SimulatedChannel:
    """Records deliveries in memory instead of calling a provider."""

    prefix = "msg"

    def __init__(self, reject_reason: Optional[str] = None) -> None:
        self.reject_reason = reject_reason
        self.sent: List[NotificationRequest] = []
        self._deliveries: Dict[str, str] = {}

    def validate(self, request: NotificationRequest) -> None:
        if not request.contact.strip():
            raise InvalidContact("Customer contact is required")

    def render(self, request: NotificationRequest) -> NotificationRequest:
        return request

    async def send(self, request: NotificationRequest) -> NotificationOutcome:
        self.validate(request)
        key = request.idempotency_key
        if key and key in self._deliveries:
            logger.info(f"Duplicate send for {key}, returning original delivery")
            return NotificationOutcome.delivered(self._deliveries[key])

        if self.reject_reason:
            logger.warning(
                f"{type(self).__name__} rejected notification to {request.contact}: "
                f"{self.reject_reason}"
            )
            return NotificationOutcome.rejected(self.reject_reason)

        delivery_id = f"{self.prefix}_{uuid.uuid4().hex[:12]}"
        self.sent.append(self.render(request))
        if key:
            self._deliveries[key] = delivery_id
        logger.info(f"{type(self).__name__} delivered {delivery_id} to {request.contact}")
        return NotificationOutcome.delivered(delivery_id)


class SimulatedEmailChannel(SimulatedChannel):
    prefix = "msg"

    def __init__(
        self, reject_reason: Optional[str] = None, from_email: str = DEFAULT_FROM_EMAIL
    ) -> None:
        super().__init__(reject_reason=reject_reason)
        self.from_email = from_email

    def validate(self, request: NotificationRequest) -> None:
        if "@" not in request.contact:
            raise InvalidContact(f"Invalid email address: {request.contact!r}")

    def render(self, request: NotificationRequest) -> NotificationRequest:
        return request.model_copy(update={"sender": self.from_email})


class SimulatedSmsChannel(SimulatedChannel):
    """SMS replaces the long message with a short alert."""

    prefix = "sms"

    def render(self, request: NotificationRequest) -> NotificationRequest:
        return request.model_copy(update={"text": sms_text(request)})

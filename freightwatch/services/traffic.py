"""Traffic data sources."""

from __future__ import annotations

import logging
import random
from typing import Dict, Optional, Protocol, Tuple

from ..contracts import Route, TrafficSnapshot
from ..errors import InvalidRoute, TrafficUnavailable

logger = logging.getLogger(__name__)

NORMAL_DURATION_MINUTES = 120
MAX_SIMULATED_DELAY_MINUTES = 60


class TrafficSource(Protocol):
    async def fetch_traffic(self, route: Route) -> TrafficSnapshot:
        """Return current traffic for ``route`` or raise ``TrafficUnavailable``."""


def validate_route(route: Route) -> None:
    if not route.is_valid():
        raise InvalidRoute("Invalid route: Origin and destination are required")


class SimulatedTrafficService:
    """Produces plausible traffic without calling a maps provider.

    Delays are drawn uniformly from ``[0, 60)`` minutes unless a fixed delay
    is registered for the route. ``outages`` makes the next N calls raise
    ``TrafficUnavailable``.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        normal_duration_minutes: int = NORMAL_DURATION_MINUTES,
        fixed_delays: Optional[Dict[Tuple[str, str], int]] = None,
        outages: int = 0,
    ) -> None:
        self._random = random.Random(seed)
        self.normal_duration_minutes = normal_duration_minutes
        self.fixed_delays: Dict[Tuple[str, str], int] = dict(fixed_delays or {})
        self.outages = outages
        self.calls = 0

    def set_delay(self, origin: str, destination: str, delay_minutes: int) -> None:
        self.fixed_delays[(origin, destination)] = delay_minutes

    async def fetch_traffic(self, route: Route) -> TrafficSnapshot:
        self.calls += 1
        validate_route(route)
        if self.outages > 0:
            self.outages -= 1
            raise TrafficUnavailable(
                f"No traffic data for {route.origin} -> {route.destination}"
            )

        delay = self.fixed_delays.get((route.origin, route.destination))
        if delay is None:
            delay = self._random.randrange(MAX_SIMULATED_DELAY_MINUTES)
        snapshot = TrafficSnapshot.build(
            route,
            normal_duration_minutes=self.normal_duration_minutes,
            current_duration_minutes=self.normal_duration_minutes + delay,
        )
        logger.info(
            f"Simulated traffic for {route.describe()}: "
            f"{snapshot.estimated_delay_minutes} min delay ({snapshot.condition.value})"
        )
        return snapshot

"""Demo scenarios for the freight delay workflow."""

from __future__ import annotations

from typing import List, NamedTuple, Optional

from .contracts import Route


class Scenario(NamedTuple):
    name: str
    route: Route
    delay_threshold_minutes: Optional[int] = None


SCENARIOS: List[Scenario] = [
    Scenario(
        "Scenario 1: Short Route - No Delay Expected",
        Route(origin="New York, NY", destination="Philadelphia, PA"),
    ),
    Scenario(
        "Scenario 2: Long Route - Potential Delay",
        Route(
            origin="Los Angeles, CA",
            destination="New York, NY",
            waypoints=["Las Vegas, NV", "Denver, CO", "Chicago, IL"],
        ),
    ),
    Scenario(
        "Scenario 3: Urban Route - High Traffic Expected",
        Route(origin="San Francisco, CA", destination="Los Angeles, CA"),
        delay_threshold_minutes=10,
    ),
]

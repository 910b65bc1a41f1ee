"""Retry policy engine for workflow steps."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field, model_validator

from ..contracts import FailureInfo

Sleeper = Callable[[float], Awaitable[None]]


class RetryDecision(BaseModel):
    """Whether to schedule another attempt and how long to wait first."""

    retry: bool
    delay: float = 0.0
    reason: Optional[str] = None


class RetryPolicy(BaseModel):
    """Bounded exponential backoff, all intervals in seconds."""

    initial_interval: float = Field(default=1.0, gt=0)
    maximum_interval: float = Field(default=10.0, gt=0)
    backoff_coefficient: float = Field(default=2.0, ge=1)
    maximum_attempts: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.maximum_interval < self.initial_interval:
            raise ValueError("maximum_interval must be >= initial_interval")
        return self

    def decide(self, attempt: int, failure: FailureInfo) -> RetryDecision:
        """Decide what happens after ``attempt`` (1-indexed) failed."""
        if not failure.retryable:
            return RetryDecision(retry=False, reason="non-retryable failure")
        if attempt >= self.maximum_attempts:
            return RetryDecision(
                retry=False,
                reason=f"maximum attempts ({self.maximum_attempts}) reached",
            )
        return RetryDecision(retry=True, delay=compute_backoff(attempt, self))

    def delays(self) -> list[float]:
        """Waits between consecutive attempts when every attempt fails."""
        return [compute_backoff(n, self) for n in range(1, self.maximum_attempts)]


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Wait after failed ``attempt`` before the next one, capped by the policy."""
    if attempt < 1:
        raise ValueError(f"Attempts are 1-indexed, got {attempt}")
    delay = policy.initial_interval * policy.backoff_coefficient ** (attempt - 1)
    return min(delay, policy.maximum_interval)

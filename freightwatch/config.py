from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CUSTOMER_CONTACT,
    DEFAULT_DELAY_THRESHOLD_MINUTES,
    DEFAULT_DISPATCH_GRACE_SECONDS,
    DEFAULT_FROM_EMAIL,
    DEFAULT_MAX_CONCURRENT_DECISIONS,
    DEFAULT_MAX_CONCURRENT_STEPS,
    DEFAULT_NAMESPACE,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TASK_QUEUE,
)
from .contracts import StepName
from .utils.retry import RetryPolicy


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Dispatch queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    namespace: str = DEFAULT_NAMESPACE
    task_queue: str = DEFAULT_TASK_QUEUE
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Default retry policy plus optional per-step overrides."""

    default: RetryPolicy = RetryPolicy()
    steps: Dict[StepName, RetryPolicy] = Field(default_factory=dict)

    def policy_for(self, step: StepName) -> RetryPolicy:
        return self.steps.get(step, self.default)


class WorkerConfig(BaseModel):
    """Concurrency limits of the worker pool and the decision runner."""

    max_concurrent_steps: int = Field(default=DEFAULT_MAX_CONCURRENT_STEPS, ge=1)
    max_concurrent_decisions: int = Field(
        default=DEFAULT_MAX_CONCURRENT_DECISIONS, ge=1
    )


class FreightWatchConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    worker: WorkerConfig = WorkerConfig()
    step_timeout_seconds: float = Field(default=DEFAULT_STEP_TIMEOUT_SECONDS, gt=0)
    dispatch_grace_seconds: float = Field(default=DEFAULT_DISPATCH_GRACE_SECONDS, ge=0)
    delay_threshold_minutes: int = Field(default=DEFAULT_DELAY_THRESHOLD_MINUTES, ge=0)
    customer_contact: str = DEFAULT_CUSTOMER_CONTACT
    from_email: str = DEFAULT_FROM_EMAIL


def load_config(path: Optional[str] = None) -> FreightWatchConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FREIGHTWATCH_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FREIGHTWATCH_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FreightWatchConfig(**data)
    else:
        config = FreightWatchConfig()

    env_db_url = os.getenv("FREIGHTWATCH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_backend = os.getenv("FREIGHTWATCH_TRANSPORT")
    if env_backend:
        config.transport.backend = env_backend.lower()  # type: ignore[assignment]

    env_namespace = os.getenv("FREIGHTWATCH_NAMESPACE")
    if env_namespace:
        config.transport.namespace = env_namespace

    env_threshold = os.getenv("DELAY_THRESHOLD_MINUTES")
    if env_threshold:
        config.delay_threshold_minutes = int(env_threshold)

    env_contact = os.getenv("CUSTOMER_CONTACT")
    if env_contact:
        config.customer_contact = env_contact
    return config

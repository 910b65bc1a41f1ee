"""Execution history backends for freightwatch workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FreightWatchConfig, load_config
from .inmemory import InMemoryHistoryRepository
from .models import (
    TERMINAL_STATES,
    ProcessInstance,
    StepRecord,
    StepStatus,
    WorkflowState,
)
from .repository import HistoryRepository
from .sqlite import SQLiteHistoryRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresHistoryRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresHistoryRepository = None  # type: ignore


def get_repository(
    database_url: Optional[str] = None, config: Optional[FreightWatchConfig] = None
) -> HistoryRepository:
    """Factory function to build an execution history repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FREIGHTWATCH_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Every call constructs a
    new repository; callers share one by passing it along.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FREIGHTWATCH_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryHistoryRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteHistoryRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresHistoryRepository is None:
            raise RuntimeError("Postgres support not available, install asyncpg")
        return PostgresHistoryRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "TERMINAL_STATES",
    "HistoryRepository",
    "InMemoryHistoryRepository",
    "PostgresHistoryRepository",
    "ProcessInstance",
    "SQLiteHistoryRepository",
    "StepRecord",
    "StepStatus",
    "WorkflowState",
    "get_repository",
]

"""Dispatch queue backends."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import FreightWatchConfig, TransportConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _inmemory(settings: TransportConfig) -> BaseTransport:
    return InMemoryTransport(namespace=settings.namespace)


def _redis(settings: TransportConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
        namespace=settings.namespace,
    )


TRANSPORT_BUILDERS: Dict[str, Callable[[TransportConfig], BaseTransport]] = {
    "inmemory": _inmemory,
    "redis": _redis,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[FreightWatchConfig] = None
) -> BaseTransport:
    """Build the queue backend named by ``backend``, the environment or the config.

    The in-memory backend only connects workers and runtimes in the same
    process; use ``redis`` to run them separately.
    """
    config = config or load_config()
    name = (backend or os.getenv("FREIGHTWATCH_TRANSPORT") or config.transport.backend).lower()
    try:
        builder = TRANSPORT_BUILDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    return builder(config.transport)


__all__ = ["TRANSPORT_BUILDERS", "BaseTransport", "InMemoryTransport", "get_transport"]

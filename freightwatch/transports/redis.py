"""Redis transport for cross-process dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..constants import DEFAULT_NAMESPACE
from ..contracts import QueueMessage
from ..errors import DispatchUnavailable
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawRedis = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedis]):
    """Redis lists used as work queues; BRPOP hands each message to one consumer."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except RedisError as e:
            self._redis = None
            raise DispatchUnavailable(
                f"Redis at {self.host}:{self.port} unreachable: {e}"
            ) from e

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: QueueMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()

        try:
            await self._redis.lpush(self.queue_name(topic), message.to_json())
        except RedisError as e:
            raise DispatchUnavailable(f"Failed to publish to {topic}: {e}") from e

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedis, QueueMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            try:
                result = await self._redis.brpop(queue_name, timeout=1)
            except RedisError as e:
                raise DispatchUnavailable(f"Failed to poll {topic}: {e}") from e

            if result:
                _, message_json = result
                try:
                    message = QueueMessage.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Dropping malformed message on {queue_name}: {e}")
                    continue
                yield (queue_name, message_json), message

    async def ack(self, raw_message: RawRedis) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawRedis, requeue: bool = True) -> None:
        if requeue:
            queue_name, message_json = raw_message
            try:
                await self._redis.rpush(queue_name, message_json)
            except RedisError as e:
                raise DispatchUnavailable(f"Failed to requeue on {queue_name}: {e}") from e

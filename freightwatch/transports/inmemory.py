"""In-memory transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..constants import DEFAULT_NAMESPACE
from ..contracts import QueueMessage
from .base import BaseTransport

RawInMemory = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawInMemory]):
    """Simple in-process queue.

    Messages are stored as JSON so that publishers and consumers never share
    mutable objects, the same as with a real broker.
    """

    def __init__(
        self, namespace: str = DEFAULT_NAMESPACE, poll_interval: float = 0.01
    ) -> None:
        self.namespace = namespace
        self.poll_interval = poll_interval
        self._queues: Dict[str, Deque[RawInMemory]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    def pending(self, topic: str) -> int:
        """Number of undelivered messages on ``topic``."""
        return len(self._queues[self.queue_name(topic)])

    async def publish(self, topic: str, message: QueueMessage) -> None:
        """Publish message to in-memory queue."""
        queue = self.queue_name(topic)
        async with self._lock:
            self._queues[queue].append((queue, message.to_json()))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemory, QueueMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        queue = self.queue_name(topic)

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            raw_message: Optional[RawInMemory] = None
            async with self._lock:
                if self._queues[queue]:
                    raw_message = self._queues[queue].popleft()

            if raw_message is not None:
                yield raw_message, QueueMessage.from_json(raw_message[1])
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawInMemory) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawInMemory, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].appendleft(raw_message)

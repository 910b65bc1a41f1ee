"""Queue interface shared by the dispatch backends."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import DEFAULT_NAMESPACE
from ..contracts import QueueMessage, StepCompletion, StepTask

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Work queues keyed by topic.

    Every message published on a topic is handed to at most one subscriber of
    that topic. Topic names are prefixed with ``namespace`` so that several
    deployments can share one broker.
    """

    namespace: str = DEFAULT_NAMESPACE

    def queue_name(self, topic: str) -> str:
        return f"{self.namespace}:{topic}"

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def publish_task(self, task_queue: str, task: StepTask) -> None:
        await self.publish(task_queue, QueueMessage(task=task))

    async def publish_completion(self, reply_to: str, completion: StepCompletion) -> None:
        await self.publish(reply_to, QueueMessage(completion=completion))

    @abc.abstractmethod
    async def publish(self, topic: str, message: QueueMessage) -> None:
        """Enqueue ``message``; raises ``DispatchUnavailable`` if the broker is down."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, QueueMessage]]:
        """Yield ``(raw, message)`` pairs until ``lifespan`` seconds have passed.

        The raw message is what :meth:`ack` and :meth:`nack` expect back. With
        ``lifespan=None`` the subscription runs until cancelled.
        """

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark ``raw_message`` as processed."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give ``raw_message`` back to the queue; brokers without requeue just ack."""
        await self.ack(raw_message)

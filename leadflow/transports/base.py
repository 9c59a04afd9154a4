"""Event bus interface shared by webhook handlers and the event listener."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import ProviderEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of ``ProviderEvent`` envelopes.

    Webhook handlers publish normalized events; ``EventListener`` consumes
    them, acking events the gateway handled and nacking them when the run
    store is unavailable. Events that can never be handled are nacked without
    requeue and end up in the topic's dead-letter queue.
    """

    async def __aenter__(self) -> "BaseTransport[RawMessageT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""

    @abc.abstractmethod
    async def publish(self, topic: str, event: ProviderEvent) -> None:
        """Queue ``event`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, ProviderEvent]]:
        """Yield raw transport message and decoded event pairs.

        Args:
            topic: The topic to consume
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark the event as handled."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Put the event back on its topic, or dead-letter it when ``requeue`` is False."""
        raise NotImplementedError

    @abc.abstractmethod
    async def depth(self, topic: str) -> int:
        """Number of events waiting on ``topic``."""
        raise NotImplementedError

    @staticmethod
    def dead_letter_topic(topic: str) -> str:
        return f"{topic}.dead"

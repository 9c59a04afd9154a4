"""In-process event bus."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import ProviderEvent
from .base import BaseTransport

# (topic, event) so a nack knows where to put the event back.
RawEvent = Tuple[str, ProviderEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Per-topic deques, used by tests and single-process deployments."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[ProviderEvent]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: str, event: ProviderEvent) -> None:
        async with self._lock:
            self._queues[topic].append(event.model_copy(deep=True))

    async def _pop(self, topic: str) -> Optional[ProviderEvent]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, ProviderEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            event = await self._pop(topic)
            if event is None:
                await asyncio.sleep(self._poll_interval)
                continue
            yield (topic, event), event

    async def ack(self, raw_message: RawEvent) -> None:
        """Popped events are gone; nothing to confirm."""

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        topic, event = raw_message
        target = topic if requeue else self.dead_letter_topic(topic)
        async with self._lock:
            self._queues[target].append(event)

    async def depth(self, topic: str) -> int:
        return len(self._queues[topic])

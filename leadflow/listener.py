"""Consume provider events from the bus and hand them to the gateway."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import PROVIDER_EVENTS_TOPIC
from .errors import LeadflowError, StorageError
from .gateway import EventGateway
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventListener:
    """Listens on the provider events topic.

    Events are requeued while the run store is unavailable and dead-lettered
    when the gateway rejects them for any other reason.
    """

    def __init__(
        self,
        transport: BaseTransport,
        gateway: EventGateway,
        topic: str = PROVIDER_EVENTS_TOPIC,
    ) -> None:
        self._transport = transport
        self._gateway = gateway
        self._topic = topic
        self.handled = 0
        self.dead_lettered = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process events until ``lifespan`` seconds have passed (forever if None)."""
        async with self._transport:
            async for raw_message, event in self._transport.subscribe(self._topic, lifespan=lifespan):
                try:
                    result = await self._gateway.on_provider_event(event)
                except StorageError as e:
                    logger.error(f"Run store unavailable, requeueing {event.event_type}: {e}")
                    await self._transport.nack(raw_message, requeue=True)
                    continue
                except LeadflowError as e:
                    logger.error(f"Dead-lettering {event.event_type}: {e}")
                    await self._transport.nack(raw_message, requeue=False)
                    self.dead_lettered += 1
                    continue
                self.handled += 1
                logger.info(f"Event {event.event_type} -> {result.status} {result.run_ids}")
                await self._transport.ack(raw_message)

"""Redis lists as a cross-process provider event queue."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import ProviderEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (queue key, JSON payload) as popped from Redis.
RawRedisMessage = Tuple[str, str]

KEY_PREFIX = "leadflow"


class RedisTransport(BaseTransport[RawRedisMessage]):
    """LPUSH to publish, BRPOP to consume: events are delivered oldest first.

    Malformed payloads and events nacked without requeue are moved to the
    topic's dead-letter list instead of being dropped.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        block_seconds: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self.block_seconds = block_seconds
        self._redis: Optional[redis.Redis] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{KEY_PREFIX}:{topic}"

    async def connect(self) -> None:
        if self._redis is not None:
            return
        if self.url:
            client = redis.Redis.from_url(self.url, decode_responses=True)
        else:
            client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await client.ping()
        self._redis = client
        logger.info(f"Connected to Redis event bus at {self.url or f'{self.host}:{self.port}'}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> redis.Redis:
        await self.connect()
        return self._redis

    async def publish(self, topic: str, event: ProviderEvent) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), event.model_dump_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawRedisMessage, ProviderEvent]]:
        client = await self._client()
        key = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            result = await client.brpop(key, timeout=self.block_seconds)
            if not result:
                continue
            _, payload = result
            try:
                event = ProviderEvent.model_validate_json(payload)
            except ValidationError as e:
                logger.error(f"Dead-lettering malformed event on {key}: {e}")
                await client.lpush(self.queue_name(self.dead_letter_topic(topic)), payload)
                continue
            yield (topic, payload), event

    async def ack(self, raw_message: RawRedisMessage) -> None:
        """BRPOP already removed the event."""

    async def nack(self, raw_message: RawRedisMessage, requeue: bool = True) -> None:
        topic, payload = raw_message
        client = await self._client()
        if requeue:
            # RPUSH puts it back at the consuming end, ahead of newer events.
            await client.rpush(self.queue_name(topic), payload)
        else:
            await client.lpush(self.queue_name(self.dead_letter_topic(topic)), payload)

    async def depth(self, topic: str) -> int:
        client = await self._client()
        return await client.llen(self.queue_name(topic))

"""Provider event bus backends."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, RedisConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(settings: RedisConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        url=os.getenv("LEADFLOW_REDIS_URL") or settings.url,
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> BaseTransport:
    """Build the event bus named by ``backend``, ``LEADFLOW_TRANSPORT`` or the config."""

    config = config or load_config()
    name = (backend or os.getenv("LEADFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        return _redis_transport(config.transport.redis)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]

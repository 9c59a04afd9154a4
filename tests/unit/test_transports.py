"""Transport and listener tests."""

import asyncio

import pytest

from fixtures.fakes import make_runtime, make_template
from leadflow.config import LeadflowConfig
from leadflow.contracts import EventResult, ProviderEvent, RunStatus
from leadflow.errors import StorageError, TemplateError
from leadflow.listener import EventListener
from leadflow.transports import get_transport
from leadflow.transports.inmemory import InMemoryTransport
from leadflow.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    await transport.publish("events", ProviderEvent(event_type="call_ended", correlation_id="call-1"))

    received = False
    async for raw_msg, event in transport.subscribe("events", lifespan=1):
        assert event.correlation_id == "call-1"
        await transport.ack(raw_msg)
        received = True
        break

    assert received
    assert await transport.depth("events") == 0


@pytest.mark.asyncio
async def test_inmemory_nack_requeues():
    transport = InMemoryTransport()
    await transport.publish("events", ProviderEvent(event_type="call_ended"))

    async for raw_msg, _ in transport.subscribe("events", lifespan=1):
        await transport.nack(raw_msg, requeue=True)
        break

    assert await transport.depth("events") == 1


def test_redis_transport_settings():
    transport = RedisTransport(host="redis.internal", port=6380)

    assert transport.host == "redis.internal"
    assert transport.port == 6380
    assert transport.queue_name("provider_events") == "leadflow:provider_events"


@pytest.mark.asyncio
async def test_listener_applies_published_events(clock):
    template = make_template(
        "call_flow",
        nodes=[{"id": "call", "action": "call", "config": {"callback_timeout_minutes": 30}}],
    )
    runtime = make_runtime(template, clock=clock)
    run, _ = await runtime.start_run("call_flow", "c1")
    await runtime.sweeper.sweep()

    await runtime.transport.publish(
        "provider_events",
        ProviderEvent(event_type="call_ended", correlation_id="call-1", outcome="answered", success=True),
    )
    listener = EventListener(runtime.transport, runtime.gateway)
    await listener.start(lifespan=0.2)

    assert listener.handled == 1
    stored = await runtime.repository.get_run(run.id)
    assert stored.status == RunStatus.PENDING


@pytest.mark.asyncio
async def test_listener_requeues_when_store_is_down():
    class DownGateway:
        async def on_provider_event(self, event) -> EventResult:
            await asyncio.sleep(0.05)
            raise StorageError("database is locked")

    transport = InMemoryTransport()
    await transport.publish("provider_events", ProviderEvent(event_type="call_ended"))
    listener = EventListener(transport, DownGateway())

    await listener.start(lifespan=0.12)

    assert listener.handled == 0
    assert await transport.depth("provider_events") == 1


@pytest.mark.asyncio
async def test_inmemory_nack_without_requeue_dead_letters():
    transport = InMemoryTransport()
    await transport.publish("events", ProviderEvent(event_type="call_ended", correlation_id="call-9"))

    async for raw_msg, _ in transport.subscribe("events", lifespan=1):
        await transport.nack(raw_msg, requeue=False)
        break

    assert await transport.depth("events") == 0
    assert await transport.depth(transport.dead_letter_topic("events")) == 1


@pytest.mark.asyncio
async def test_listener_dead_letters_rejected_events():
    class RejectingGateway:
        async def on_provider_event(self, event) -> EventResult:
            raise TemplateError("workflow new_lead was deleted")

    transport = InMemoryTransport()
    await transport.publish("provider_events", ProviderEvent(event_type="call_ended"))
    listener = EventListener(transport, RejectingGateway())

    await listener.start(lifespan=0.2)

    assert listener.handled == 0
    assert listener.dead_lettered == 1
    assert await transport.depth("provider_events") == 0
    assert await transport.depth("provider_events.dead") == 1


def test_redis_transport_prefers_url(monkeypatch):
    monkeypatch.setenv("LEADFLOW_REDIS_URL", "redis://cache.internal:6390/2")

    transport = get_transport("redis", config=LeadflowConfig())

    assert isinstance(transport, RedisTransport)
    assert transport.url == "redis://cache.internal:6390/2"

"""
Tests for the event bus implementation.

This module tests publishing, subscription matching, handler ordering
and error isolation of the in-process event bus.
"""

from typing import AsyncGenerator, List

import pytest

from ssh_broker.core.domain.events import Event, EventNames, EventPriority
from ssh_broker.core.services.event_bus import EventBus


class TestEventBus:
    """Test cases for the event bus."""

    @pytest.fixture
    async def event_bus(self) -> AsyncGenerator[EventBus, None]:
        bus = EventBus()
        await bus.start()
        yield bus
        await bus.stop()

    @pytest.mark.asyncio
    async def test_publish_and_subscribe(self, event_bus: EventBus) -> None:
        received: List[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        subscription_id = await event_bus.subscribe(EventNames.CONNECTION_CLOSED, handler)
        event_id = await event_bus.publish(EventNames.CONNECTION_CLOSED, {'connection_id': 'ssh-1'},
                                           source="test")

        # handlers have run by the time publish returns
        assert len(received) == 1
        assert received[0].name == "connection.closed"
        assert received[0].data == {'connection_id': 'ssh-1'}
        assert received[0].event_id == event_id
        assert received[0].source == "test"

        assert await event_bus.unsubscribe(subscription_id)
        await event_bus.publish(EventNames.CONNECTION_CLOSED, {})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_wildcard_subscription(self, event_bus: EventBus) -> None:
        names: List[str] = []

        await event_bus.subscribe("tunnel.*", lambda event: names.append(event.name))

        await event_bus.publish(EventNames.TUNNEL_CREATED)
        await event_bus.publish(EventNames.TUNNEL_CLOSED)
        await event_bus.publish(EventNames.SESSION_DELETED)

        assert names == ["tunnel.created", "tunnel.closed"]

    @pytest.mark.asyncio
    async def test_handlers_run_in_priority_order(self, event_bus: EventBus) -> None:
        order: List[str] = []

        await event_bus.subscribe("session.*", lambda e: order.append("low"), EventPriority.LOW)
        await event_bus.subscribe("session.failed", lambda e: order.append("critical"),
                                  EventPriority.CRITICAL)
        await event_bus.subscribe("session.failed", lambda e: order.append("normal"))

        await event_bus.publish(EventNames.SESSION_FAILED)

        assert order == ["critical", "normal", "low"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, event_bus: EventBus) -> None:
        received: List[Event] = []

        async def broken(event: Event) -> None:
            raise RuntimeError("boom")

        await event_bus.subscribe("connection.opened", broken, EventPriority.HIGH)
        await event_bus.subscribe("connection.opened", received.append)

        await event_bus.publish(EventNames.CONNECTION_OPENED, {'connection_id': 'ssh-2'})

        assert len(received) == 1
        metrics = await event_bus.get_metrics()
        assert metrics['events_failed'] == 1
        assert metrics['events_processed'] == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_id(self, event_bus: EventBus) -> None:
        assert not await event_bus.unsubscribe("missing")

    @pytest.mark.asyncio
    async def test_health_and_metrics(self, event_bus: EventBus) -> None:
        await event_bus.subscribe("x", lambda e: None)
        await event_bus.publish("x")

        health = await event_bus.check_health()
        assert health['healthy']
        assert health['status'] == 'running'
        assert health['details']['events_published'] == 1
        assert health['details']['subscriptions_count'] == 1

    def test_event_to_dict(self) -> None:
        event = Event(name="tunnel.failed", data={'tunnel_id': 't'}, priority=EventPriority.HIGH)
        data = event.to_dict()
        assert data['name'] == "tunnel.failed"
        assert data['priority'] == EventPriority.HIGH.value
        assert data['data'] == {'tunnel_id': 't'}

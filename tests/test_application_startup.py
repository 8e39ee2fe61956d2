"""
Tests for ApplicationStartup.

This module tests how the broker components are wired together, the
startup sequence and shutdown procedures.
"""

from pathlib import Path
from typing import Awaitable, Callable, List
from unittest.mock import AsyncMock, patch

import pytest

from ssh_broker.application.startup import ApplicationStartup
from ssh_broker.infrastructure.config.models import BrokerConfig, PoolConfig, SessionStoreConfig
from ssh_broker.infrastructure.persistence.session_store import SessionStore

from conftest import FakeTransport, make_config


def broker_config(database_url: str = "sqlite:///:memory:") -> BrokerConfig:
    return BrokerConfig(
        allowed_hosts=['*'],
        pool=PoolConfig(monitor_enabled=False),
        sessions=SessionStoreConfig(database_url=database_url, cleanup_interval_s=0),
    )


@pytest.fixture
def startup() -> ApplicationStartup:
    return ApplicationStartup(broker_config(), transport=FakeTransport(),
                              store=SessionStore("sqlite:///:memory:"))


def record_calls(startup: ApplicationStartup, method: str, calls: List[str]) -> None:
    """Wrap each component's ``method`` so that calls are recorded in order."""
    for component in startup.components:
        async def side_effect(original: Callable[[], Awaitable[None]] = getattr(component, method),
                              name: str = component.name) -> None:
            calls.append(name)
            await original()
        setattr(component, method, AsyncMock(side_effect=side_effect))


class TestWiring:

    def test_components_share_one_event_bus(self, startup: ApplicationStartup) -> None:
        assert startup.connection_manager.event_bus is startup.event_bus
        assert [c.name for c in startup.components] == [
            "EventBus", "ConnectionManager", "TunnelManager", "JumpHostManager", "SessionManager"]

    def test_instances_are_isolated(self) -> None:
        first = ApplicationStartup(broker_config(), transport=FakeTransport(),
                                   store=SessionStore("sqlite:///:memory:"))
        second = ApplicationStartup(broker_config(), transport=FakeTransport(),
                                    store=SessionStore("sqlite:///:memory:"))

        assert first.event_bus is not second.event_bus
        assert first.connection_manager.registry is not second.connection_manager.registry


class TestStartStop:

    @pytest.mark.asyncio
    async def test_start_in_order_and_stop_in_reverse(self, startup: ApplicationStartup) -> None:
        started: List[str] = []
        stopped: List[str] = []
        record_calls(startup, 'start', started)
        record_calls(startup, 'stop', stopped)

        await startup.start_application()
        await startup.stop_application()

        assert started == [c.name for c in startup.components]
        assert stopped == list(reversed(started))

    @pytest.mark.asyncio
    async def test_failed_start_stops_started_components(self, startup: ApplicationStartup) -> None:
        stopped: List[str] = []
        record_calls(startup, 'stop', stopped)

        with patch.object(startup.jump_host_manager, 'start',
                          AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(RuntimeError, match="boom"):
                await startup.start_application()

        assert stopped == ["TunnelManager", "ConnectionManager", "EventBus"]

    @pytest.mark.asyncio
    async def test_stop_continues_after_component_error(self, startup: ApplicationStartup) -> None:
        await startup.start_application()
        stopped: List[str] = []
        record_calls(startup, 'stop', stopped)
        original_stop = startup.tunnel_manager.stop

        async def stuck() -> None:
            await original_stop()
            raise RuntimeError("stuck")
        startup.tunnel_manager.stop = AsyncMock(side_effect=stuck)

        await startup.stop_application()

        assert stopped == ["SessionManager", "JumpHostManager", "TunnelManager",
                           "ConnectionManager", "EventBus"]


class TestRunningBroker:

    @pytest.mark.asyncio
    async def test_sessions_survive_restart(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'sessions.db'}"
        transport = FakeTransport()

        first = ApplicationStartup(broker_config(url), transport=transport)
        await first.start_application()
        try:
            connection = await first.connection_manager.get_or_create(make_config(host="app"))
            persisted = await first.session_manager.persist_session({'connection_id': connection.id})
            assert persisted.success
        finally:
            await first.stop_application()

        assert transport.sessions[0].is_closed()

        second = ApplicationStartup(broker_config(url), transport=transport)
        await second.start_application()
        try:
            listed = second.session_manager.list_sessions().data['sessions']
            assert [s['session_id'] for s in listed] == [persisted.data['session_id']]
            assert listed[0]['status'] == 'persisted'
        finally:
            await second.stop_application()

    @pytest.mark.asyncio
    async def test_check_health(self, startup: ApplicationStartup) -> None:
        await startup.start_application()
        try:
            health = await startup.check_health()
        finally:
            await startup.stop_application()

        assert health['healthy'] is True
        assert set(health['components']) == {c.name for c in startup.components}
        assert health['components']['SessionManager']['status'] == 'running'

    @pytest.mark.asyncio
    async def test_check_health_reports_component_errors(self, startup: ApplicationStartup) -> None:
        startup.tunnel_manager.check_health = AsyncMock(side_effect=RuntimeError("broken"))

        health = await startup.check_health()

        assert health['healthy'] is False
        assert health['components']['TunnelManager'] == {
            'healthy': False, 'status': 'error', 'error': 'broken'}

"""
Tests for the tunnel manager over real localhost sockets.
"""

import asyncio
from datetime import timedelta
from typing import Any, AsyncGenerator, Callable, List, Tuple

import pytest

from ssh_broker.core.domain.connection import Connection, ConnectionConfig, ConnectionStatus
from ssh_broker.core.domain.events import Event, EventNames
from ssh_broker.core.domain.results import utc_now
from ssh_broker.core.domain.tunnel import LocalTunnelConfig, TunnelStatus
from ssh_broker.infrastructure.config.models import TunnelDefaults
from ssh_broker.infrastructure.services.ssh.connection_manager import ConnectionManager
from ssh_broker.infrastructure.services.ssh.tunnel_manager import TunnelManager

from conftest import FakeTransport, SteppedSleep

MONITOR_INTERVAL = 30.0


async def roundtrip(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        writer.write(payload)
        await writer.drain()
        return await asyncio.wait_for(reader.readexactly(len(payload)), timeout=2.0)
    finally:
        writer.close()


def endpoint_port(endpoint: str) -> int:
    return int(endpoint.rsplit(':', 1)[1])


@pytest.fixture
async def tunnel_manager(connection_manager: ConnectionManager) -> AsyncGenerator[TunnelManager, None]:
    manager = TunnelManager(connection_manager)
    await manager.start()
    yield manager
    await manager.stop()


@pytest.fixture
async def connection(connection_manager: ConnectionManager,
                     config_factory: Callable[..., ConnectionConfig]) -> Connection:
    return await connection_manager.get_or_create(config_factory())


class TestLocalTunnel:

    @pytest.mark.asyncio
    async def test_forwards_bytes(self, tunnel_manager: TunnelManager, connection: Connection,
                                  transport: FakeTransport, echo_server: int,
                                  eventually: Callable[..., Any]) -> None:
        result = await tunnel_manager.create_tunnel({
            'type': 'local',
            'connection_id': connection.id,
            'bind_address': '127.0.0.1',
            'local_port': 0,
            'remote_host': '127.0.0.1',
            'remote_port': echo_server,
        })

        assert result.success, result.error
        assert result.data['status'] == 'active'
        assert result.data['remote_endpoint'] == f"127.0.0.1:{echo_server}"
        port = endpoint_port(result.data['local_endpoint'])
        assert port != 0

        assert await roundtrip(port, b"ping") == b"ping"

        tunnel_id = result.data['tunnel_id']
        tunnel = tunnel_manager.get_tunnel(tunnel_id)
        await eventually(lambda: tunnel.bytes_sent == 4 and tunnel.bytes_received == 4)
        assert transport.sessions[0].opened == [('127.0.0.1', echo_server)]

        metrics = tunnel_manager.monitor_tunnel(tunnel_id).data
        assert metrics['total_connections'] == 1
        assert metrics['bytes_transferred'] == 8
        assert metrics['health'] == 'healthy'
        await eventually(lambda: connection.bytes_sent == 4 and connection.bytes_received == 4)

    @pytest.mark.asyncio
    async def test_failed_sub_connection_does_not_stop_the_tunnel(
            self, tunnel_manager: TunnelManager, connection: Connection,
            transport: FakeTransport, echo_server: int, eventually: Callable[..., Any]) -> None:
        result = await tunnel_manager.create_local_tunnel(LocalTunnelConfig(
            connection_id=connection.id, bind_address='127.0.0.1',
            remote_host='127.0.0.1', remote_port=echo_server))
        port = endpoint_port(result.data['local_endpoint'])
        tunnel = tunnel_manager.get_tunnel(result.data['tunnel_id'])

        transport.sessions[0].refuse_channels = True
        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
        writer.close()
        await eventually(lambda: tunnel.error_count == 1)

        transport.sessions[0].refuse_channels = False
        assert await roundtrip(port, b"still up") == b"still up"
        assert tunnel.status == TunnelStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_bind_conflict(self, tunnel_manager: TunnelManager, connection: Connection) -> None:
        blocker = await asyncio.start_server(lambda r, w: None, host='127.0.0.1', port=0)
        taken = blocker.sockets[0].getsockname()[1]
        try:
            result = await tunnel_manager.create_tunnel({
                'type': 'local', 'connection_id': connection.id, 'bind_address': '127.0.0.1',
                'local_port': taken, 'remote_host': 'db.internal', 'remote_port': 5432,
            })
        finally:
            blocker.close()
            await blocker.wait_closed()

        assert not result.success
        assert "Failed to bind" in result.error
        assert tunnel_manager.list_tunnels().data['count'] == 0

    @pytest.mark.asyncio
    async def test_invalid_config_and_unknown_connection(self, tunnel_manager: TunnelManager,
                                                         connection: Connection) -> None:
        bad_type = await tunnel_manager.create_tunnel({'type': 'udp', 'connection_id': connection.id})
        assert not bad_type.success
        assert "Unknown tunnel type" in bad_type.error

        bad_port = await tunnel_manager.create_tunnel({
            'type': 'local', 'connection_id': connection.id,
            'remote_host': 'db.internal', 'remote_port': 70000,
        })
        assert "remote_port must be between" in bad_port.error

        missing = await tunnel_manager.create_tunnel({
            'type': 'local', 'connection_id': 'ssh-missing',
            'remote_host': 'db.internal', 'remote_port': 5432,
        })
        assert missing.error == "Connection not found: ssh-missing"


class TestRemoteTunnel:

    @pytest.mark.asyncio
    async def test_forwards_inbound_channels(self, tunnel_manager: TunnelManager,
                                             connection: Connection, echo_server: int) -> None:
        result = await tunnel_manager.create_tunnel({
            'type': 'remote',
            'connection_id': connection.id,
            'bind_address': '127.0.0.1',
            'remote_port': 0,
            'local_host': '127.0.0.1',
            'local_port': echo_server,
        })

        assert result.success, result.error
        assert result.data['local_endpoint'] == f"127.0.0.1:{echo_server}"
        remote_port = endpoint_port(result.data['remote_endpoint'])
        assert await roundtrip(remote_port, b"from the far side") == b"from the far side"


class TestDynamicTunnel:

    @pytest.mark.asyncio
    async def test_socks5_connect(self, tunnel_manager: TunnelManager, connection: Connection,
                                  transport: FakeTransport, echo_server: int) -> None:
        transport.routes[('example.com', 443)] = ('127.0.0.1', echo_server)
        result = await tunnel_manager.create_tunnel({
            'type': 'dynamic', 'connection_id': connection.id,
            'bind_address': '127.0.0.1', 'local_port': 0,
        })

        assert result.success, result.error
        assert result.data['remote_endpoint'] == 'dynamic'
        assert result.data['local_endpoint'].startswith('socks5://127.0.0.1:')
        port = endpoint_port(result.data['local_endpoint'])

        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        try:
            writer.write(bytes([5, 1, 0]))
            assert await asyncio.wait_for(reader.readexactly(2), timeout=2.0) == bytes([5, 0])
            writer.write(bytes([5, 1, 0, 3, 11]) + b"example.com" + (443).to_bytes(2, 'big'))
            reply = await asyncio.wait_for(reader.readexactly(10), timeout=2.0)
            assert reply[:2] == bytes([5, 0])

            writer.write(b"GET / HTTP/1.1\r\n")
            echoed = await asyncio.wait_for(reader.readexactly(16), timeout=2.0)
            assert echoed == b"GET / HTTP/1.1\r\n"
        finally:
            writer.close()

        assert transport.sessions[0].opened == [('example.com', 443)]

    @pytest.mark.asyncio
    async def test_unreachable_destination_gets_socks_failure(
            self, tunnel_manager: TunnelManager, connection: Connection,
            transport: FakeTransport, eventually: Callable[..., Any]) -> None:
        result = await tunnel_manager.create_tunnel({
            'type': 'dynamic', 'connection_id': connection.id,
            'bind_address': '127.0.0.1', 'local_port': 0,
        })
        port = endpoint_port(result.data['local_endpoint'])
        tunnel = tunnel_manager.get_tunnel(result.data['tunnel_id'])
        transport.sessions[0].refuse_channels = True

        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        try:
            writer.write(bytes([5, 1, 0]))
            await asyncio.wait_for(reader.readexactly(2), timeout=2.0)
            writer.write(bytes([5, 1, 0, 1, 10, 9, 9, 9]) + (80).to_bytes(2, 'big'))
            reply = await asyncio.wait_for(reader.readexactly(10), timeout=2.0)
        finally:
            writer.close()

        assert reply[1] == 0x04
        await eventually(lambda: tunnel.error_count == 1)


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_tunnel_releases_listener_and_pin(
            self, tunnel_manager: TunnelManager, connection_manager: ConnectionManager,
            connection: Connection, echo_server: int) -> None:
        events: List[Event] = []
        await connection_manager.event_bus.subscribe(EventNames.TUNNEL_CLOSED, events.append)
        result = await tunnel_manager.create_local_tunnel(LocalTunnelConfig(
            connection_id=connection.id, bind_address='127.0.0.1',
            remote_host='127.0.0.1', remote_port=echo_server))
        tunnel_id = result.data['tunnel_id']
        port = endpoint_port(result.data['local_endpoint'])

        connection.last_used = utc_now() - timedelta(days=1)
        assert await connection_manager.prune_idle(1000) == 0

        closed = await tunnel_manager.close_tunnel(tunnel_id)

        assert closed.success
        assert events[0].data['reason'] == 'requested'
        assert not tunnel_manager.get_tunnel_status(tunnel_id).success
        with pytest.raises(OSError):
            await asyncio.open_connection('127.0.0.1', port)
        assert not (await tunnel_manager.close_tunnel(tunnel_id)).success

        connection.last_used = utc_now() - timedelta(days=1)
        assert await connection_manager.prune_idle(1000) == 1

    @pytest.mark.asyncio
    async def test_connection_loss_closes_its_tunnels(
            self, tunnel_manager: TunnelManager, connection_manager: ConnectionManager,
            config_factory: Callable[..., ConnectionConfig], transport: FakeTransport,
            eventually: Callable[..., Any]) -> None:
        doomed = await connection_manager.get_or_create(config_factory(host="app-1"))
        survivor = await connection_manager.get_or_create(config_factory(host="app-2"))
        ids = []
        for owner in (doomed, doomed, survivor):
            result = await tunnel_manager.create_tunnel({
                'type': 'dynamic', 'connection_id': owner.id,
                'bind_address': '127.0.0.1', 'local_port': 0,
            })
            ids.append(result.data['tunnel_id'])
        tunnels = [tunnel_manager.get_tunnel(i) for i in ids]

        transport.live_session("app-1").kill()

        await eventually(lambda: tunnel_manager.list_tunnels().data['count'] == 1)
        assert tunnels[0].status == TunnelStatus.CLOSED
        assert tunnels[1].status == TunnelStatus.CLOSED
        assert tunnel_manager.tunnels_for_connection(survivor.id) == [tunnels[2]]

    @pytest.mark.asyncio
    async def test_cleanup_closes_everything(self, tunnel_manager: TunnelManager,
                                             connection: Connection) -> None:
        for _ in range(2):
            await tunnel_manager.create_tunnel({
                'type': 'dynamic', 'connection_id': connection.id,
                'bind_address': '127.0.0.1', 'local_port': 0,
            })
        assert await tunnel_manager.cleanup() == 2
        assert tunnel_manager.list_tunnels().data['count'] == 0


class TestAutoRestart:

    @pytest.fixture
    async def stepped_sleep(self) -> SteppedSleep:
        return SteppedSleep(MONITOR_INTERVAL)

    @pytest.fixture
    async def restarting_manager(self, connection_manager: ConnectionManager,
                                 stepped_sleep: SteppedSleep) -> AsyncGenerator[TunnelManager, None]:
        manager = TunnelManager(
            connection_manager,
            defaults=TunnelDefaults(monitor_interval_s=MONITOR_INTERVAL, max_restart_attempts=3),
            sleep=stepped_sleep,
        )
        await manager.start()
        yield manager
        await manager.stop()

    async def _remote_tunnel(self, manager: TunnelManager, connection: Connection,
                             echo_server: int) -> Tuple[str, int]:
        result = await manager.create_tunnel({
            'type': 'remote', 'connection_id': connection.id, 'bind_address': '127.0.0.1',
            'remote_port': 0, 'local_host': '127.0.0.1', 'local_port': echo_server,
            'auto_restart': True,
        })
        assert result.success, result.error
        assert result.data['auto_restart'] is True
        return result.data['tunnel_id'], endpoint_port(result.data['remote_endpoint'])

    @pytest.mark.asyncio
    async def test_restarts_in_place(self, restarting_manager: TunnelManager,
                                     connection_manager: ConnectionManager,
                                     connection: Connection, transport: FakeTransport,
                                     stepped_sleep: SteppedSleep, echo_server: int,
                                     eventually: Callable[..., Any]) -> None:
        restarted: List[Event] = []
        await connection_manager.event_bus.subscribe(EventNames.TUNNEL_RESTARTED, restarted.append)
        tunnel_id, _ = await self._remote_tunnel(restarting_manager, connection, echo_server)

        transport.sessions[0].listeners[0].close()
        stepped_sleep.tick()

        await eventually(lambda: len(restarted) == 1)
        assert stepped_sleep.delays[:2] == [MONITOR_INTERVAL, 1.0]
        tunnel = restarting_manager.get_tunnel(tunnel_id)
        assert tunnel.status == TunnelStatus.ACTIVE
        assert tunnel.reconnect_attempts == 0
        new_port = endpoint_port(tunnel.remote_endpoint)
        assert await roundtrip(new_port, b"back") == b"back"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, restarting_manager: TunnelManager,
                                               connection: Connection, transport: FakeTransport,
                                               stepped_sleep: SteppedSleep, echo_server: int,
                                               eventually: Callable[..., Any]) -> None:
        tunnel_id, _ = await self._remote_tunnel(restarting_manager, connection, echo_server)
        # unusable but not closed, so the tunnel is not torn down
        connection.status = ConnectionStatus.FAILED

        transport.sessions[0].listeners[0].close()
        stepped_sleep.tick()

        await eventually(lambda: len(stepped_sleep.delays) == 4)
        await asyncio.sleep(0.05)
        assert stepped_sleep.delays == [MONITOR_INTERVAL, 1.0, 2.0, 4.0]
        status = restarting_manager.get_tunnel_status(tunnel_id).data
        assert status['status'] == 'failed'
        assert status['metrics']['reconnect_attempts'] == 3

    @pytest.mark.asyncio
    async def test_error_burst_keeps_active_relays(self, restarting_manager: TunnelManager,
                                                   connection_manager: ConnectionManager,
                                                   connection: Connection, transport: FakeTransport,
                                                   stepped_sleep: SteppedSleep, echo_server: int,
                                                   eventually: Callable[..., Any]) -> None:
        failures: List[Event] = []
        await connection_manager.event_bus.subscribe(EventNames.TUNNEL_FAILED, failures.append)
        result = await restarting_manager.create_tunnel({
            'type': 'local', 'connection_id': connection.id, 'bind_address': '127.0.0.1',
            'local_port': 0, 'remote_host': '127.0.0.1', 'remote_port': echo_server,
            'auto_restart': True,
        })
        port = endpoint_port(result.data['local_endpoint'])
        tunnel = restarting_manager.get_tunnel(result.data['tunnel_id'])

        reader, writer = await asyncio.open_connection('127.0.0.1', port)
        try:
            writer.write(b"first")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(5), timeout=2.0) == b"first"

            transport.sessions[0].refuse_channels = True
            for _ in range(6):
                sibling_reader, sibling_writer = await asyncio.open_connection('127.0.0.1', port)
                assert await asyncio.wait_for(sibling_reader.read(), timeout=2.0) == b""
                sibling_writer.close()
            await eventually(lambda: tunnel.error_count == 6)
            assert restarting_manager.monitor_tunnel(tunnel.id).data['health'] == 'failed'

            stepped_sleep.tick()
            await eventually(lambda: len(stepped_sleep.delays) == 2)

            writer.write(b"second")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(6), timeout=2.0) == b"second"
        finally:
            writer.close()

        assert failures == []
        assert tunnel.status == TunnelStatus.ACTIVE
        assert stepped_sleep.delays == [MONITOR_INTERVAL, MONITOR_INTERVAL]

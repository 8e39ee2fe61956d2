"""
Tunnel manager: local, remote and dynamic (SOCKS) forwarding over pooled
connections.

Every accepted sub-connection gets its own channel over the owning
connection and its own relay task; a failing sub-connection is counted
against the tunnel's health and never affects its siblings.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from . import socks
from .connection_manager import ConnectionManager
from .registry import TunnelRegistry
from .relay import close_writer, relay
from ....core.domain.connection import Connection, HealthState
from ....core.domain.events import Event, EventNames
from ....core.domain.results import OperationResult, utc_now
from ....core.domain.tunnel import (
    DynamicTunnelConfig, LocalTunnelConfig, RemoteTunnelConfig, Tunnel, TunnelConfig,
    TunnelStatus, tunnel_config_from_dict
)
from ....core.exceptions import BrokerError, ConnectError, TunnelError
from ....core.interfaces.lifecycle import IComponent
from ....core.interfaces.transport import ISSHListener
from ....core.services.backoff import exponential_delay
from ...config.models import TunnelDefaults

logger = logging.getLogger(__name__)

SOCKS_HANDSHAKE_TIMEOUT = 30.0
CLOSE_TIMEOUT = 5.0


@dataclass
class _TunnelRuntime:
    """Listener and tasks backing one tunnel."""
    server: Optional[asyncio.AbstractServer] = None
    listener: Optional[ISSHListener] = None
    relays: Set['asyncio.Task[Any]'] = field(default_factory=set)
    monitor: Optional['asyncio.Task[None]'] = None
    closing: bool = False


class TunnelManager(IComponent):
    """Creates, monitors and tears down tunnels."""

    def __init__(self, connection_manager: ConnectionManager,
                 defaults: Optional[TunnelDefaults] = None,
                 registry: Optional[TunnelRegistry] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self._cm = connection_manager
        self._defaults = defaults or TunnelDefaults()
        self._registry = registry or TunnelRegistry()
        self._event_bus = connection_manager.event_bus
        self._sleep = sleep or asyncio.sleep

        self._runtime: Dict[str, _TunnelRuntime] = {}
        self._subscription_id: Optional[str] = None
        self._running = False

    @property
    def name(self) -> str:
        return "TunnelManager"

    @property
    def registry(self) -> TunnelRegistry:
        return self._registry

    async def start(self) -> None:
        await self._ensure_subscribed()
        self._running = True
        logger.info("Tunnel manager started")

    async def stop(self) -> None:
        self._running = False
        await self.cleanup()
        if self._subscription_id:
            await self._event_bus.unsubscribe(self._subscription_id)
            self._subscription_id = None
        logger.info("Tunnel manager stopped")

    async def check_health(self) -> Dict[str, Any]:
        tunnels = self._registry.all()
        failed = [t.id for t in tunnels if t.health(self._defaults.error_window_s) == HealthState.FAILED]
        return {
            'healthy': not failed,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'tunnels_total': len(tunnels),
                'tunnels_active': sum(1 for t in tunnels if t.status == TunnelStatus.ACTIVE),
                'tunnels_failed': failed,
            }
        }

    # Creation

    async def create_tunnel(self, config: Union[TunnelConfig, Dict[str, Any]]) -> OperationResult:
        """Create a tunnel of whichever variant ``config`` describes."""
        try:
            if isinstance(config, dict):
                config = tunnel_config_from_dict(config)
        except (BrokerError, TypeError) as e:
            return OperationResult.fail(f"Invalid tunnel config: {e}")

        if isinstance(config, LocalTunnelConfig):
            return await self.create_local_tunnel(config)
        if isinstance(config, RemoteTunnelConfig):
            return await self.create_remote_tunnel(config)
        if isinstance(config, DynamicTunnelConfig):
            return await self.create_dynamic_tunnel(config)
        return OperationResult.fail(f"Unsupported tunnel config: {type(config).__name__}")

    async def create_local_tunnel(self, config: LocalTunnelConfig) -> OperationResult:
        """Listen locally and carry each connection to ``remote_host:remote_port``."""
        return await self._create(config)

    async def create_remote_tunnel(self, config: RemoteTunnelConfig) -> OperationResult:
        """Listen on the remote side and carry each channel to ``local_host:local_port``."""
        return await self._create(config)

    async def create_dynamic_tunnel(self, config: DynamicTunnelConfig) -> OperationResult:
        """Local SOCKS listener; each request is carried to the destination it names."""
        return await self._create(config)

    async def _create(self, config: TunnelConfig) -> OperationResult:
        try:
            config.validate()
            connection = self._require_connection(config.connection_id)
        except BrokerError as e:
            return OperationResult.fail(str(e))

        await self._ensure_subscribed()

        tunnel = Tunnel(config=config)
        runtime = _TunnelRuntime()
        try:
            await self._bind(tunnel, runtime, connection)
        except TunnelError as e:
            tunnel.status = TunnelStatus.FAILED
            tunnel.record_error(str(e))
            logger.error(f"Failed to create {config.type.value} tunnel: {e}")
            return OperationResult.fail(str(e))

        tunnel.status = TunnelStatus.ACTIVE
        self._registry.add(tunnel)
        self._runtime[tunnel.id] = runtime
        self._cm.pin(connection.id)

        if config.restartable:
            runtime.monitor = asyncio.create_task(self._monitor(tunnel))

        logger.info(f"{config.type.value.capitalize()} tunnel {tunnel.id} active: "
                    f"{tunnel.local_endpoint} -> {tunnel.remote_endpoint}")
        await self._event_bus.publish(EventNames.TUNNEL_CREATED, {
            'tunnel_id': tunnel.id,
            'type': config.type.value,
            'connection_id': config.connection_id,
            'local_endpoint': tunnel.local_endpoint,
            'remote_endpoint': tunnel.remote_endpoint,
        }, source=self.name)

        return OperationResult.ok({
            'tunnel_id': tunnel.id,
            'type': config.type.value,
            'connection_id': config.connection_id,
            'status': tunnel.status.value,
            'local_endpoint': tunnel.local_endpoint,
            'remote_endpoint': tunnel.remote_endpoint,
            'keep_alive': config.keep_alive,
            'auto_restart': config.auto_restart,
        })

    def _require_connection(self, connection_id: str) -> Connection:
        connection = self._cm.peek_connection(connection_id)
        if connection is None:
            raise ConnectError(f"Connection not found: {connection_id}")
        if not connection.is_live():
            raise ConnectError(f"Connection {connection_id} is not active")
        return connection

    async def _bind(self, tunnel: Tunnel, runtime: _TunnelRuntime,
                    connection: Connection) -> None:
        """Open the listener for ``tunnel`` and fill in its endpoints."""
        config = tunnel.config

        if isinstance(config, RemoteTunnelConfig):
            assert connection.session is not None
            try:
                runtime.listener = await connection.session.start_server(
                    partial(self._handle_remote, tunnel, runtime),
                    config.bind_address, config.remote_port)
            except Exception as e:
                raise TunnelError(
                    f"Failed to listen on remote {config.bind_address}:{config.remote_port}: {e}")
            port = config.remote_port or runtime.listener.port
            tunnel.remote_endpoint = f"{config.bind_address}:{port}"
            tunnel.local_endpoint = f"{config.local_host}:{config.local_port}"
            return

        if isinstance(config, LocalTunnelConfig):
            handler = partial(self._handle_local, tunnel, runtime)
        else:
            handler = partial(self._handle_dynamic, tunnel, runtime)

        try:
            runtime.server = await asyncio.start_server(
                handler, host=config.bind_address, port=config.local_port)
        except OSError as e:
            raise TunnelError(f"Failed to bind {config.bind_address}:{config.local_port}: {e}")

        port = runtime.server.sockets[0].getsockname()[1]
        if isinstance(config, LocalTunnelConfig):
            tunnel.local_endpoint = f"{config.bind_address}:{port}"
            tunnel.remote_endpoint = f"{config.remote_host}:{config.remote_port}"
        else:
            tunnel.local_endpoint = f"socks{config.socks_version}://{config.bind_address}:{port}"
            tunnel.remote_endpoint = "dynamic"

    # Sub-connection handlers

    async def _handle_local(self, tunnel: Tunnel, runtime: _TunnelRuntime,
                            reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        config = tunnel.config
        assert isinstance(config, LocalTunnelConfig)
        self._begin(tunnel, runtime)
        try:
            channel = await self._open_channel(tunnel, config.remote_host, config.remote_port)
            await self._relay(tunnel, reader, writer, *channel)
        except TunnelError as e:
            tunnel.record_error(str(e))
            logger.warning(f"Tunnel {tunnel.id} sub-connection failed: {e}")
        finally:
            close_writer(writer)
            self._end(tunnel, runtime)

    async def _handle_dynamic(self, tunnel: Tunnel, runtime: _TunnelRuntime,
                              reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        config = tunnel.config
        assert isinstance(config, DynamicTunnelConfig)
        version = config.socks_version
        self._begin(tunnel, runtime)
        try:
            try:
                request = await asyncio.wait_for(
                    socks.read_request(reader, writer, version),
                    timeout=config.timeout_seconds or SOCKS_HANDSHAKE_TIMEOUT)
            except socks.SocksError as e:
                if e.reply:
                    writer.write(e.reply)
                    await writer.drain()
                raise TunnelError(f"SOCKS request rejected: {e}")
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError,
                    asyncio.TimeoutError, ConnectionError) as e:
                raise TunnelError(f"SOCKS handshake failed: {e.__class__.__name__}")

            try:
                channel = await self._open_channel(tunnel, request.host, request.port)
            except TunnelError:
                writer.write(socks.failure_reply(version, socks.REP_HOST_UNREACHABLE))
                await writer.drain()
                raise

            writer.write(socks.success_reply(version))
            await writer.drain()
            logger.debug(f"Tunnel {tunnel.id} SOCKS{version} -> {request.host}:{request.port}")
            await self._relay(tunnel, reader, writer, *channel)
        except TunnelError as e:
            tunnel.record_error(str(e))
            logger.warning(f"Tunnel {tunnel.id} sub-connection failed: {e}")
        except ConnectionError as e:
            tunnel.record_error(f"Client connection error: {e}")
        finally:
            close_writer(writer)
            self._end(tunnel, runtime)

    async def _handle_remote(self, tunnel: Tunnel, runtime: _TunnelRuntime,
                             channel_reader: Any, channel_writer: Any) -> None:
        config = tunnel.config
        assert isinstance(config, RemoteTunnelConfig)
        self._begin(tunnel, runtime)
        try:
            try:
                local_reader, local_writer = await asyncio.open_connection(
                    config.local_host, config.local_port)
            except OSError as e:
                raise TunnelError(
                    f"Failed to connect to {config.local_host}:{config.local_port}: {e}")
            # inbound channel is the initiator; its bytes arrive over SSH
            await self._relay(tunnel, channel_reader, channel_writer,
                              local_reader, local_writer, inbound=True)
        except TunnelError as e:
            tunnel.record_error(str(e))
            logger.warning(f"Tunnel {tunnel.id} sub-connection failed: {e}")
        finally:
            close_writer(channel_writer)
            self._end(tunnel, runtime)

    def _begin(self, tunnel: Tunnel, runtime: _TunnelRuntime) -> None:
        task = asyncio.current_task()
        if task is not None:
            runtime.relays.add(task)
        tunnel.total_connections += 1
        tunnel.active_connections += 1
        tunnel.last_activity = utc_now()

    def _end(self, tunnel: Tunnel, runtime: _TunnelRuntime) -> None:
        task = asyncio.current_task()
        if task is not None:
            runtime.relays.discard(task)
        tunnel.active_connections -= 1

    async def _open_channel(self, tunnel: Tunnel, host: str, port: int) -> Any:
        connection = self._cm.peek_connection(tunnel.connection_id)
        if connection is None or not connection.is_live() or connection.session is None:
            raise TunnelError(f"Connection {tunnel.connection_id} is not active")
        try:
            return await connection.session.open_connection(host, port)
        except Exception as e:
            raise TunnelError(f"Failed to open channel to {host}:{port}: {e}")

    async def _relay(self, tunnel: Tunnel, reader: Any, writer: Any,
                     channel_reader: Any, channel_writer: Any, inbound: bool = False) -> None:
        connection_id = tunnel.connection_id

        def outbound_bytes(n: int) -> None:
            tunnel.bytes_sent += n
            tunnel.last_activity = utc_now()
            self._cm.record_traffic(connection_id, sent=n)

        def inbound_bytes(n: int) -> None:
            tunnel.bytes_received += n
            tunnel.last_activity = utc_now()
            self._cm.record_traffic(connection_id, received=n)

        result = await relay(
            reader, writer, channel_reader, channel_writer,
            on_sent=inbound_bytes if inbound else outbound_bytes,
            on_received=outbound_bytes if inbound else inbound_bytes,
            buffer_size=self._defaults.buffer_size)
        if result.error:
            tunnel.record_error(f"Relay error: {result.error}")

    # Queries

    def get_tunnel(self, tunnel_id: str) -> Optional[Tunnel]:
        return self._registry.get(tunnel_id)

    def tunnels_for_connection(self, connection_id: str) -> List[Tunnel]:
        return self._registry.for_connection(connection_id)

    def list_tunnels(self, connection_id: Optional[str] = None) -> OperationResult:
        tunnels = (self._registry.for_connection(connection_id) if connection_id
                   else self._registry.all())
        return OperationResult.ok({
            'tunnels': [t.to_dict() for t in tunnels],
            'count': len(tunnels),
        })

    def get_tunnel_status(self, tunnel_id: str) -> OperationResult:
        tunnel = self._registry.get(tunnel_id)
        if tunnel is None:
            return OperationResult.fail(f"Tunnel not found: {tunnel_id}")
        data = tunnel.to_dict()
        data['metrics'] = tunnel.metrics(self._defaults.error_window_s)
        return OperationResult.ok(data)

    def monitor_tunnel(self, tunnel_id: str) -> OperationResult:
        """Uptime, throughput, sub-connection counts and health."""
        tunnel = self._registry.get(tunnel_id)
        if tunnel is None:
            return OperationResult.fail(f"Tunnel not found: {tunnel_id}")
        return OperationResult.ok(tunnel.metrics(self._defaults.error_window_s))

    # Teardown

    async def close_tunnel(self, tunnel_id: str) -> OperationResult:
        tunnel = self._registry.get(tunnel_id)
        if tunnel is None:
            return OperationResult.fail(f"Tunnel not found: {tunnel_id}")

        await self._teardown(tunnel, reason='requested')
        return OperationResult.ok({
            'tunnel_id': tunnel_id,
            'closed': True,
            'bytes_transferred': tunnel.bytes_transferred,
            'total_connections': tunnel.total_connections,
        })

    async def cleanup(self) -> int:
        """Close every tunnel."""
        tunnels = self._registry.all()
        for tunnel in tunnels:
            await self._teardown(tunnel, reason='cleanup')
        return len(tunnels)

    async def _teardown(self, tunnel: Tunnel, reason: str) -> None:
        runtime = self._runtime.pop(tunnel.id, None)
        self._registry.remove(tunnel.id)

        if runtime is not None:
            runtime.closing = True
            monitor = runtime.monitor
            if monitor is not None and monitor is not asyncio.current_task() and not monitor.done():
                monitor.cancel()
            await self._stop_listener(runtime)
            self._cm.unpin(tunnel.connection_id)

        tunnel.status = TunnelStatus.CLOSED
        tunnel.closed_at = utc_now()
        logger.info(f"Tunnel {tunnel.id} closed ({reason})")
        await self._event_bus.publish(EventNames.TUNNEL_CLOSED, {
            'tunnel_id': tunnel.id,
            'connection_id': tunnel.connection_id,
            'reason': reason,
        }, source=self.name)

    async def _stop_listener(self, runtime: _TunnelRuntime) -> None:
        if runtime.server is not None:
            runtime.server.close()
        if runtime.listener is not None:
            runtime.listener.close()

        relays = [t for t in runtime.relays if t is not asyncio.current_task()]
        for task in relays:
            task.cancel()
        if relays:
            await asyncio.gather(*relays, return_exceptions=True)
        runtime.relays.clear()

        try:
            if runtime.server is not None:
                await asyncio.wait_for(runtime.server.wait_closed(), timeout=CLOSE_TIMEOUT)
            if runtime.listener is not None:
                await asyncio.wait_for(runtime.listener.wait_closed(), timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for tunnel listener to close")

    async def _on_connection_closed(self, event: Event) -> None:
        connection_id = (event.data or {}).get('connection_id')
        for tunnel in self._registry.for_connection(connection_id):
            await self._teardown(tunnel, reason='connection closed')

    async def _ensure_subscribed(self) -> None:
        if self._subscription_id is None:
            self._subscription_id = await self._event_bus.subscribe(
                EventNames.CONNECTION_CLOSED, self._on_connection_closed)

    # Auto-restart

    async def _monitor(self, tunnel: Tunnel) -> None:
        interval = tunnel.config.monitor_interval or self._defaults.monitor_interval_s
        while True:
            await self._sleep(interval)
            runtime = self._runtime.get(tunnel.id)
            if runtime is None or runtime.closing:
                return

            problem = self._detect_failure(runtime)
            if problem is None:
                continue

            logger.warning(f"Tunnel {tunnel.id} failure detected: {problem}")
            if not await self._restart(tunnel, problem):
                return

    def _detect_failure(self, runtime: _TunnelRuntime) -> Optional[str]:
        # only a lost listener warrants a restart; error rates are reported by monitor_tunnel
        if runtime.server is not None and not runtime.server.is_serving():
            return "listener stopped"
        if runtime.listener is not None and runtime.listener.is_closed():
            return "remote listener closed"
        return None

    async def _restart(self, tunnel: Tunnel, reason: str) -> bool:
        """Re-bind ``tunnel`` in place with capped exponential backoff."""
        tunnel.status = TunnelStatus.FAILED
        tunnel.last_error = reason
        await self._event_bus.publish(EventNames.TUNNEL_FAILED, {
            'tunnel_id': tunnel.id,
            'connection_id': tunnel.connection_id,
            'reason': reason,
        }, source=self.name)

        while tunnel.reconnect_attempts < self._defaults.max_restart_attempts:
            tunnel.reconnect_attempts += 1
            delay_ms = exponential_delay(
                tunnel.reconnect_attempts,
                self._defaults.restart_base_delay_ms,
                self._defaults.restart_max_delay_ms)
            logger.info(f"Restarting tunnel {tunnel.id} in {delay_ms / 1000:.1f}s "
                        f"(attempt {tunnel.reconnect_attempts}/{self._defaults.max_restart_attempts})")
            await self._sleep(delay_ms / 1000.0)

            runtime = self._runtime.get(tunnel.id)
            if runtime is None or runtime.closing:
                return False

            connection = self._cm.peek_connection(tunnel.connection_id)
            if connection is None or not connection.is_live():
                tunnel.record_error(f"Connection {tunnel.connection_id} is not active")
                continue

            await self._stop_listener(runtime)
            fresh = _TunnelRuntime(monitor=runtime.monitor)
            try:
                await self._bind(tunnel, fresh, connection)
            except TunnelError as e:
                tunnel.record_error(str(e))
                logger.warning(f"Tunnel {tunnel.id} restart failed: {e}")
                continue

            self._runtime[tunnel.id] = fresh
            tunnel.status = TunnelStatus.ACTIVE
            tunnel.error_times.clear()
            tunnel.reconnect_attempts = 0
            logger.info(f"Tunnel {tunnel.id} restarted")
            await self._event_bus.publish(EventNames.TUNNEL_RESTARTED, {
                'tunnel_id': tunnel.id,
                'local_endpoint': tunnel.local_endpoint,
            }, source=self.name)
            return True

        tunnel.status = TunnelStatus.FAILED
        logger.error(f"Tunnel {tunnel.id} failed after "
                     f"{self._defaults.max_restart_attempts} restart attempts")
        return False

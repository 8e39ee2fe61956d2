"""
Connection manager: pooled, authenticated SSH connections.

Connections are pooled by ``(host, port, username)``. Concurrent requests
for the same key are serialised by a per-key lock, so there is never more
than one live connection per key.
"""

import asyncio
import fnmatch
import ipaddress
import logging
import re
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from .registry import ConnectionRegistry
from ....core.domain.connection import (
    Connection, ConnectionConfig, ConnectionStatus, HealthReport, HealthState
)
from ....core.domain.events import EventNames
from ....core.domain.results import OperationResult
from ....core.exceptions import (
    BrokerError, BrokerTimeoutError, ConfigError, ConnectError, HostNotAllowed,
    PoolExhausted, ProbeFailure
)
from ....core.interfaces.lifecycle import IComponent
from ....core.interfaces.messaging import IEventBus
from ....core.interfaces.transport import ISSHTransport
from ....core.services.event_bus import EventBus
from ...config.models import PoolConfig

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = ['localhost', '127.0.0.1']
MFA_CODE_PATTERN = re.compile(r'\d{6}')
PROBE_COMMAND = 'true'


class ConnectionManager(IComponent):
    """
    Pool of SSH connections with allow-listing, health probes and idle pruning.
    """

    def __init__(self, transport: ISSHTransport,
                 allowed_hosts: Optional[List[str]] = None,
                 pool_config: Optional[PoolConfig] = None,
                 event_bus: Optional[IEventBus] = None,
                 registry: Optional[ConnectionRegistry] = None):
        self._transport = transport
        self._allowed_hosts = list(allowed_hosts) if allowed_hosts is not None \
            else list(DEFAULT_ALLOWED_HOSTS)
        self._config = pool_config or PoolConfig()
        self._event_bus = event_bus or EventBus()
        self._registry = registry or ConnectionRegistry()

        self._watch_tasks: Dict[str, 'asyncio.Task[None]'] = {}
        self._pins: Dict[str, int] = {}
        self._monitor_task: Optional['asyncio.Task[None]'] = None
        self._running = False

    @property
    def name(self) -> str:
        return "ConnectionManager"

    @property
    def event_bus(self) -> IEventBus:
        return self._event_bus

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def config(self) -> PoolConfig:
        return self._config

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._config.monitor_enabled:
            self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(
            f"Connection manager started (max {self._config.max_connections} connections, "
            f"allowed hosts: {', '.join(self._allowed_hosts) or 'none'})")

    async def stop(self) -> None:
        self._running = False
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        await self.disconnect_all()
        logger.info("Connection manager stopped")

    async def check_health(self) -> Dict[str, Any]:
        status = self.get_pool_status()
        return {
            'healthy': status['failed'] == 0,
            'status': 'running' if self._running else 'stopped',
            'details': status,
        }

    # Allow-list

    def is_host_allowed(self, host: str) -> bool:
        """Exact names, glob patterns (``*.internal``) and CIDR ranges."""
        for pattern in self._allowed_hosts:
            if pattern == '*' or pattern == host:
                return True
            if '/' in pattern:
                try:
                    if ipaddress.ip_address(host) in ipaddress.ip_network(pattern, strict=False):
                        return True
                except ValueError:
                    continue
            elif any(c in pattern for c in '*?[') and fnmatch.fnmatch(host, pattern):
                return True
        return False

    # Connecting

    async def connect(self, config: Union[ConnectionConfig, Dict[str, Any]]) -> OperationResult:
        """
        Open (or reuse) the connection for ``config``.

        Returns:
            OperationResult with ``connection_id`` on success. ``reused`` is
            True when a live pooled connection for the same key was returned.
        """
        try:
            config = self._coerce_config(config)
            connection, reused = await self._acquire(config)
        except BrokerError as e:
            logger.warning(f"Connection failed: {e}")
            return OperationResult.fail(str(e))
        except Exception as e:
            logger.error(f"Unexpected error while connecting: {e}")
            return OperationResult.fail(f"Connection failed: {e}")

        return OperationResult.ok(self._connect_data(connection, reused))

    async def connect_with_mfa(self, config: Union[ConnectionConfig, Dict[str, Any]],
                               mfa_code: str) -> OperationResult:
        """Connect answering keyboard-interactive prompts with a 6-digit code."""
        if not isinstance(mfa_code, str) or not MFA_CODE_PATTERN.fullmatch(mfa_code):
            return OperationResult.fail("MFA code must be exactly 6 digits")

        try:
            config = self._coerce_config(config)
            connection, reused = await self._acquire(config, mfa_code=mfa_code)
        except BrokerError as e:
            logger.warning(f"MFA connection failed: {e}")
            return OperationResult.fail(str(e))
        except Exception as e:
            logger.error(f"Unexpected error during MFA connection: {e}")
            return OperationResult.fail(f"MFA connection failed: {e}")

        data = self._connect_data(connection, reused)
        data['mfa_verified'] = True
        return OperationResult.ok(data)

    async def get_or_create(self, config: ConnectionConfig,
                            via: Optional[Connection] = None) -> Connection:
        """
        Return the live pooled connection for ``config``'s key, or open one.

        Args:
            config: Connection parameters
            via: Existing connection to tunnel a new connection through

        Raises:
            ConfigError, HostNotAllowed, AuthError, BrokerTimeoutError,
            PoolExhausted, ConnectError
        """
        connection, _ = await self._acquire(config, via=via)
        return connection

    async def _acquire(self, config: ConnectionConfig, via: Optional[Connection] = None,
                       mfa_code: Optional[str] = None) -> Tuple[Connection, bool]:
        errors = config.validation_errors()
        if errors:
            raise ConfigError(
                f"Invalid connection config for {config.host or '<no host>'}: {'; '.join(errors)}")
        if not self.is_host_allowed(config.host):
            raise HostNotAllowed(
                f"Host {config.host} is not in the allowed hosts list", host=config.host)

        async with self._registry.hold_key(config.pool_key):
            # one live connection per key, whichever route opened it
            existing = self._registry.get_by_key(config.pool_key)
            if existing is not None:
                if existing.is_live():
                    existing.touch()
                    logger.debug(f"Reusing pooled connection {existing.id} for {config.label}")
                    return existing, True
                await self._close(existing, reason='stale')

            return await self._open(config, via, mfa_code), False

    async def _open(self, config: ConnectionConfig, via: Optional[Connection],
                    mfa_code: Optional[str]) -> Connection:
        if len(self._registry) >= self._config.max_connections:
            raise PoolExhausted(
                f"Connection pool exhausted ({self._config.max_connections} connections)",
                host=config.host)
        if via is not None and not via.is_live():
            raise ConnectError(f"Connection {via.id} to tunnel through is not active",
                               host=config.host)

        connection = Connection(config=config, via=via.id if via else None)
        timeout = config.timeout_ms / 1000.0
        logger.info(f"Connecting to {config.label}"
                    + (f" via {via.config.label}" if via else ""))

        try:
            session = await asyncio.wait_for(
                self._transport.connect(
                    config, tunnel=via.session if via else None, mfa_code=mfa_code),
                timeout=timeout)
        except asyncio.TimeoutError:
            raise BrokerTimeoutError(
                f"Connection to {config.label} timed out after {config.timeout_ms}ms",
                host=config.host)

        connection.session = session
        connection.status = ConnectionStatus.CONNECTED
        connection.touch()
        self._registry.add(connection)
        self._watch_tasks[connection.id] = asyncio.create_task(self._watch(connection))

        logger.info(f"Connected to {config.label} ({connection.id})")
        await self._event_bus.publish(EventNames.CONNECTION_OPENED, {
            'connection_id': connection.id,
            'host': config.host,
            'port': config.port,
            'username': config.username,
            'via': connection.via,
        }, source=self.name)
        return connection

    # Lookup

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Look up a connection and mark it as used."""
        connection = self._registry.get(connection_id)
        if connection is not None:
            connection.touch()
        return connection

    def peek_connection(self, connection_id: str) -> Optional[Connection]:
        """Look up a connection without touching ``last_used``."""
        return self._registry.get(connection_id)

    def list_connections(self) -> OperationResult:
        connections = [c.to_dict() for c in self._registry.all()]
        return OperationResult.ok({'connections': connections, 'count': len(connections)})

    def get_pool_status(self) -> Dict[str, Any]:
        connections = self._registry.all()
        by_status = {status.value: 0 for status in ConnectionStatus}
        for connection in connections:
            by_status[connection.status.value] += 1
        return {
            'total': len(connections),
            'max_connections': self._config.max_connections,
            **by_status,
            'bytes_sent': sum(c.bytes_sent for c in connections),
            'bytes_received': sum(c.bytes_received for c in connections),
        }

    def pin(self, connection_id: str) -> None:
        """Keep a connection from being pruned while resources depend on it."""
        self._pins[connection_id] = self._pins.get(connection_id, 0) + 1

    def unpin(self, connection_id: str) -> None:
        count = self._pins.get(connection_id, 0) - 1
        if count > 0:
            self._pins[connection_id] = count
        else:
            self._pins.pop(connection_id, None)

    def record_traffic(self, connection_id: str, sent: int = 0, received: int = 0) -> None:
        connection = self._registry.get(connection_id)
        if connection is not None:
            connection.bytes_sent += sent
            connection.bytes_received += received
            connection.touch()

    # Health

    async def probe(self, connection: Connection, timeout_ms: Optional[float] = None) -> float:
        """
        Run a trivial command and measure the round trip.

        Returns:
            Latency in milliseconds

        Raises:
            ProbeFailure: If the connection is closed, the command fails or
                the timeout expires
        """
        if connection.session is None or connection.session.is_closed():
            raise ProbeFailure(f"Connection {connection.id} is closed")

        timeout = (timeout_ms or self._config.health_check_timeout_ms) / 1000.0
        started = time.perf_counter()
        try:
            await asyncio.wait_for(
                connection.session.run(PROBE_COMMAND, timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProbeFailure(
                f"Probe of {connection.config.label} timed out after {timeout * 1000:.0f}ms")
        except Exception as e:
            raise ProbeFailure(f"Probe of {connection.config.label} failed: {e}")

        latency = (time.perf_counter() - started) * 1000.0
        connection.last_latency_ms = latency
        return latency

    async def health_check(self, connection: Union[Connection, str]) -> OperationResult:
        """
        Probe a connection and update its status and success rate.

        The connection is never torn down here, whatever the outcome.
        """
        if isinstance(connection, str):
            found = self._registry.get(connection)
            if found is None:
                return OperationResult.fail(f"Connection not found: {connection}")
            connection = found

        previous = connection.status
        connection.commands_executed += 1
        try:
            latency: Optional[float] = await self.probe(connection)
            error = None
        except ProbeFailure as e:
            latency = None
            error = str(e)

        if error is not None:
            state = HealthState.FAILED
            connection.error_count += 1
            connection.last_error = error
            connection.status = ConnectionStatus.FAILED
            logger.warning(f"Health check failed for {connection.id}: {error}")
        elif latency is not None and latency >= self._config.degraded_latency_ms:
            state = HealthState.DEGRADED
            connection.status = ConnectionStatus.DEGRADED
        else:
            state = HealthState.HEALTHY
            connection.status = ConnectionStatus.CONNECTED

        if connection.status == ConnectionStatus.DEGRADED and previous != ConnectionStatus.DEGRADED:
            await self._event_bus.publish(EventNames.CONNECTION_DEGRADED, {
                'connection_id': connection.id,
                'latency_ms': latency,
            }, source=self.name)

        report = HealthReport(
            connection_id=connection.id,
            state=state,
            latency_ms=latency,
            success_rate=connection.success_rate,
            error_count=connection.error_count,
            error=error,
        )
        return OperationResult.ok(report.to_dict())

    async def prune_idle(self, max_idle_ms: Optional[float] = None) -> int:
        """
        Close connections unused for longer than ``max_idle_ms``.

        Pinned connections and connections carrying other connections are kept.

        Returns:
            Number of connections closed
        """
        threshold = (max_idle_ms if max_idle_ms is not None
                     else self._config.max_idle_time_ms) / 1000.0
        carriers = {c.via for c in self._registry.all() if c.via}
        pruned = 0

        for connection in self._registry.all():
            if connection.id in self._pins or connection.id in carriers:
                continue
            if connection.idle_seconds() > threshold:
                logger.info(
                    f"Pruning idle connection {connection.id} ({connection.config.label})")
                await self._close(connection, reason='idle')
                pruned += 1

        return pruned

    async def run_maintenance(self) -> Dict[str, int]:
        """Prune idle connections, then health-check the rest."""
        pruned = await self.prune_idle()
        connections = self._registry.all()
        if connections:
            await asyncio.gather(*(self.health_check(c) for c in connections))
        return {'pruned': pruned, 'checked': len(connections)}

    async def _monitor_loop(self) -> None:
        interval = self._config.health_check_interval_ms / 1000.0
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Connection monitor error: {e}")

    # Teardown

    async def disconnect(self, connection_id: str) -> OperationResult:
        connection = self._registry.get(connection_id)
        if connection is None:
            return OperationResult.fail(f"Connection not found: {connection_id}")

        await self._close(connection, reason='requested')
        return OperationResult.ok({'connection_id': connection_id, 'disconnected': True})

    async def disconnect_all(self) -> int:
        # tunnelled connections first so carriers close last
        connections = sorted(self._registry.all(), key=lambda c: c.via is None)
        for connection in connections:
            if self._registry.get(connection.id) is connection:
                await self._close(connection, reason='shutdown')
        return len(connections)

    async def _watch(self, connection: Connection) -> None:
        """Detect a session closed by the remote side or the network."""
        assert connection.session is not None
        await connection.session.wait_closed()
        if self._registry.get(connection.id) is connection:
            logger.warning(f"Connection {connection.id} to {connection.config.label} lost")
            connection.status = ConnectionStatus.FAILED
            connection.last_error = "Connection lost"
            self._watch_tasks.pop(connection.id, None)
            await self._close(connection, reason='lost')

    async def _close(self, connection: Connection, reason: str) -> None:
        self._registry.remove(connection.id)
        self._pins.pop(connection.id, None)

        task = self._watch_tasks.pop(connection.id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        session = connection.session
        if session is not None and not session.is_closed():
            session.close()
            try:
                await asyncio.wait_for(session.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for {connection.id} to close")

        logger.info(f"Connection {connection.id} closed ({reason})")
        await self._event_bus.publish(EventNames.CONNECTION_CLOSED, {
            'connection_id': connection.id,
            'host': connection.host,
            'reason': reason,
        }, source=self.name)

    # Helpers

    def _coerce_config(self, config: Union[ConnectionConfig, Dict[str, Any]]) -> ConnectionConfig:
        if isinstance(config, ConnectionConfig):
            return config
        if isinstance(config, dict):
            return ConnectionConfig.from_dict(config)
        raise ConfigError(f"Unsupported connection config type: {type(config).__name__}")

    def _connect_data(self, connection: Connection, reused: bool) -> Dict[str, Any]:
        return {
            'connection_id': connection.id,
            'host': connection.host,
            'port': connection.port,
            'username': connection.username,
            'connected': True,
            'reused': reused,
        }

"""
Shared fixtures: an in-process SSH transport backed by real localhost sockets.

``FakeTransport`` hands out ``FakeSession`` objects. A session's outbound
channels are plain TCP connections (optionally re-routed, so that a test
can pretend to reach ``example.com:443``), and its remote listeners are
local servers. Closing a session closes every session tunnelled through it,
like a real SSH connection carrying other connections.
"""

import asyncio
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import pytest

from ssh_broker.core.domain.connection import AuthMethod, ConnectionConfig
from ssh_broker.core.domain.jump import JumpHostConfig
from ssh_broker.core.exceptions import AuthError, ConnectError
from ssh_broker.core.interfaces.transport import (
    ChannelHandler, ISSHListener, ISSHSession, ISSHTransport, StreamPair
)
from ssh_broker.core.services.event_bus import EventBus
from ssh_broker.infrastructure.config.models import PoolConfig
from ssh_broker.infrastructure.services.ssh.connection_manager import ConnectionManager


class FakeListener(ISSHListener):
    """A "remote" listener, really a local server on 127.0.0.1."""

    def __init__(self, server: asyncio.AbstractServer) -> None:
        self._server = server
        self._closed = False

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    def close(self) -> None:
        self._closed = True
        self._server.close()

    async def wait_closed(self) -> None:
        await self._server.wait_closed()

    def is_closed(self) -> bool:
        return self._closed


class FakeSession(ISSHSession):
    def __init__(self, transport: 'FakeTransport', config: ConnectionConfig,
                 tunnel: Optional['FakeSession'] = None, mfa_code: Optional[str] = None) -> None:
        self.transport = transport
        self.config = config
        self.tunnel = tunnel
        self.mfa_code = mfa_code
        self.commands: List[str] = []
        self.opened: List[Tuple[str, int]] = []
        self.listeners: List[FakeListener] = []
        self.children: List['FakeSession'] = []
        self.fail_commands = False
        self.refuse_channels = False
        self._closed = asyncio.Event()

    async def run(self, command: str, timeout: Optional[float] = None) -> int:
        if self.is_closed():
            raise ConnectionError("session closed")
        if self.fail_commands:
            raise ConnectionError("channel open failed")
        self.commands.append(command)
        latency_ms = self.transport.latency.get(self.config.host, 0.0)
        if latency_ms:
            await asyncio.sleep(latency_ms / 1000.0)
        return 0

    async def open_connection(self, host: str, port: int) -> StreamPair:
        self.opened.append((host, port))
        if self.is_closed() or self.refuse_channels:
            raise ConnectionError(f"open failed for {host}:{port}")
        target_host, target_port = self.transport.routes.get((host, port), (host, port))
        return await asyncio.open_connection(target_host, target_port)

    async def start_server(self, handler: ChannelHandler, host: str, port: int) -> ISSHListener:
        if self.is_closed():
            raise ConnectionError("session closed")
        server = await asyncio.start_server(handler, host='127.0.0.1', port=port)
        listener = FakeListener(server)
        self.listeners.append(listener)
        return listener

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for listener in self.listeners:
            listener.close()
        for child in self.children:
            child.close()

    def kill(self) -> None:
        """Simulate the remote side dropping the connection."""
        self.close()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def is_closed(self) -> bool:
        return self._closed.is_set()


class FakeTransport(ISSHTransport):
    def __init__(self) -> None:
        self.sessions: List[FakeSession] = []
        # (host, port, username, tunnel session) per connect call
        self.connect_calls: List[Tuple[str, int, str, Optional[FakeSession]]] = []
        self.latency: Dict[str, float] = {}
        self.auth_failures: Set[str] = set()
        self.unreachable: Set[str] = set()
        self.routes: Dict[Tuple[str, int], Tuple[str, int]] = {}
        self.connect_delay = 0.0

    async def connect(self, config: ConnectionConfig, tunnel: Optional[ISSHSession] = None,
                      mfa_code: Optional[str] = None) -> ISSHSession:
        self.connect_calls.append((config.host, config.port, config.username, tunnel))
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if tunnel is not None and tunnel.is_closed():
            raise ConnectError("tunnel session closed", host=config.host)
        if config.host in self.auth_failures:
            raise AuthError(f"Authentication failed for {config.label}", host=config.host)
        if config.host in self.unreachable:
            raise ConnectError(f"Connection refused by {config.host}", host=config.host)

        session = FakeSession(self, config, tunnel, mfa_code)
        if isinstance(tunnel, FakeSession):
            tunnel.children.append(session)
        self.sessions.append(session)
        return session

    def sessions_for(self, host: str) -> List[FakeSession]:
        return [s for s in self.sessions if s.config.host == host]

    def live_session(self, host: str) -> FakeSession:
        return next(s for s in self.sessions_for(host) if not s.is_closed())


class SteppedSleep:
    """Records every delay; sleeps of ``interval`` block until ``tick``."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self.delays: List[float] = []
        self._ticks: 'asyncio.Queue[None]' = asyncio.Queue()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if seconds == self.interval:
            await self._ticks.get()
        else:
            await asyncio.sleep(0)

    def tick(self) -> None:
        self._ticks.put_nowait(None)


def make_config(host: str = "10.0.0.5", username: str = "deploy", **kwargs: Any) -> ConnectionConfig:
    kwargs.setdefault('auth_method', AuthMethod.PASSWORD)
    kwargs.setdefault('password', "secret")
    return ConnectionConfig(host=host, username=username, **kwargs)


def make_hop(host: str, **kwargs: Any) -> JumpHostConfig:
    kwargs.setdefault('username', "jump")
    kwargs.setdefault('auth_method', AuthMethod.KEY)
    kwargs.setdefault('key_path', "~/.ssh/id_ed25519")
    return JumpHostConfig(host=host, **kwargs)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def config_factory() -> Callable[..., ConnectionConfig]:
    return make_config


@pytest.fixture
def hop_factory() -> Callable[..., JumpHostConfig]:
    return make_hop


@pytest.fixture
async def connection_manager(transport: FakeTransport) -> AsyncGenerator[ConnectionManager, None]:
    """Connection manager over the fake transport with background monitoring off."""
    manager = ConnectionManager(
        transport,
        allowed_hosts=['*'],
        pool_config=PoolConfig(monitor_enabled=False),
        event_bus=EventBus(),
    )
    await manager.start()
    yield manager
    await manager.stop()


@pytest.fixture
async def echo_server() -> AsyncGenerator[int, None]:
    """A TCP echo server on 127.0.0.1; yields its port."""
    writers: Set[asyncio.StreamWriter] = set()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writers.add(writer)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writers.discard(writer)
            writer.close()

    server = await asyncio.start_server(handle, host='127.0.0.1', port=0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    for writer in list(writers):
        writer.close()
    await asyncio.wait_for(server.wait_closed(), timeout=2.0)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Wait until a predicate holds, failing the test after ``timeout`` seconds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return wait


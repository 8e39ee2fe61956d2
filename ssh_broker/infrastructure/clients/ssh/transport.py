"""
asyncssh implementation of the SSH transport interfaces.
"""

import asyncio
import logging
from typing import Any, List, Optional

import asyncssh

from .config import to_asyncssh_kwargs
from ....core.domain.connection import ConnectionConfig
from ....core.exceptions import AuthError, BrokerTimeoutError, ConfigError, ConnectError
from ....core.interfaces.transport import (
    ChannelHandler, ISSHListener, ISSHSession, ISSHTransport, StreamPair
)

logger = logging.getLogger(__name__)


class _BrokerClient(asyncssh.SSHClient):
    """Client callbacks: close tracking and keyboard-interactive answers."""

    def __init__(self, mfa_code: Optional[str] = None) -> None:
        self._mfa_code = mfa_code
        self.closed = asyncio.Event()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            logger.debug(f"SSH connection lost: {exc}")
        self.closed.set()

    def kbdint_auth_requested(self) -> Optional[str]:
        return '' if self._mfa_code else None

    def kbdint_challenge_received(self, name: str, instructions: str, lang: str,
                                  prompts: List[Any]) -> Optional[List[str]]:
        if not self._mfa_code:
            return None
        return [self._mfa_code for _ in prompts]


class AsyncSSHListener(ISSHListener):
    """Remote listener opened with ``start_server``."""

    def __init__(self, listener: Any) -> None:
        self._listener = listener
        self._closed = False

    @property
    def port(self) -> int:
        return int(self._listener.get_port())

    def close(self) -> None:
        self._closed = True
        self._listener.close()

    async def wait_closed(self) -> None:
        await self._listener.wait_closed()
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed


class AsyncSSHSession(ISSHSession):
    """Wrapper around an ``asyncssh.SSHClientConnection``."""

    def __init__(self, connection: Any, client: _BrokerClient) -> None:
        self._conn = connection
        self._client = client

    @property
    def raw_connection(self) -> Any:
        return self._conn

    async def run(self, command: str, timeout: Optional[float] = None) -> int:
        result = await self._conn.run(command, check=False, timeout=timeout)
        return result.exit_status if result.exit_status is not None else -1

    async def open_connection(self, host: str, port: int) -> StreamPair:
        return await self._conn.open_connection(host, port)  # type: ignore[no-any-return]

    async def start_server(self, handler: ChannelHandler, host: str,
                           port: int) -> ISSHListener:
        listener = await self._conn.start_server(
            lambda orig_host, orig_port: handler, host, port)
        return AsyncSSHListener(listener)

    def close(self) -> None:
        self._conn.close()

    async def wait_closed(self) -> None:
        await self._client.closed.wait()

    def is_closed(self) -> bool:
        return self._client.closed.is_set()


class AsyncSSHTransport(ISSHTransport):
    """Opens SSH sessions with asyncssh, mapping its errors to broker errors."""

    def __init__(self, known_hosts_path: Optional[str] = None) -> None:
        self._known_hosts_path = known_hosts_path

    async def connect(self, config: ConnectionConfig,
                      tunnel: Optional[ISSHSession] = None,
                      mfa_code: Optional[str] = None) -> ISSHSession:
        kwargs = to_asyncssh_kwargs(config, self._known_hosts_path)

        if tunnel is not None:
            if not isinstance(tunnel, AsyncSSHSession):
                raise ConfigError("tunnel must be a session opened by this transport")
            kwargs['tunnel'] = tunnel.raw_connection

        if mfa_code:
            kwargs['kbdint_auth'] = True

        client = _BrokerClient(mfa_code)
        host = kwargs.pop('host')
        try:
            connection = await asyncssh.connect(
                host, client_factory=lambda: client, **kwargs)
        except asyncssh.PermissionDenied as e:
            raise AuthError(f"Authentication failed for {config.label}: {e.reason}",
                            host=config.host)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            # unreadable key file or wrong passphrase
            raise AuthError(f"Unable to load client key for {config.label}: {e}",
                            host=config.host)
        except asyncio.TimeoutError as e:
            raise BrokerTimeoutError(f"Timed out connecting to {config.label}: {e}",
                                     host=config.host)
        except (OSError, asyncssh.Error) as e:
            raise ConnectError(f"Failed to connect to {config.label}: {e}",
                               host=config.host)

        logger.debug(f"asyncssh session opened to {config.label}"
                     + (" (tunnelled)" if tunnel is not None else ""))
        return AsyncSSHSession(connection, client)

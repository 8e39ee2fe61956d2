"""
SSH transport interfaces.

The broker never speaks the SSH wire protocol itself. It relies on a
transport that can open authenticated sessions (optionally tunnelled
through another session), run a command, open outbound channels and
accept inbound ones.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from ..domain.connection import ConnectionConfig

# (reader, writer) pair of a channel; asyncio streams or a compatible API
StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]
ChannelHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class ISSHListener(ABC):
    """A listener opened on the remote side of a session."""

    @property
    @abstractmethod
    def port(self) -> int:
        """Port the remote side is listening on."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    async def wait_closed(self) -> None:
        pass

    @abstractmethod
    def is_closed(self) -> bool:
        pass


class ISSHSession(ABC):
    """An authenticated SSH session."""

    @abstractmethod
    async def run(self, command: str, timeout: Optional[float] = None) -> int:
        """
        Run a command and return its exit status.

        Raises:
            asyncio.TimeoutError: If the command does not finish in time.
        """
        pass

    @abstractmethod
    async def open_connection(self, host: str, port: int) -> StreamPair:
        """Open a direct channel to ``host:port`` from the remote side."""
        pass

    @abstractmethod
    async def start_server(self, handler: ChannelHandler, host: str,
                           port: int) -> ISSHListener:
        """
        Ask the remote side to listen on ``host:port``.

        ``handler`` is awaited for every inbound channel.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    async def wait_closed(self) -> None:
        """Wait until the session is closed, by either side."""
        pass

    @abstractmethod
    def is_closed(self) -> bool:
        pass


class ISSHTransport(ABC):
    """Factory for SSH sessions."""

    @abstractmethod
    async def connect(self, config: 'ConnectionConfig',
                      tunnel: Optional[ISSHSession] = None,
                      mfa_code: Optional[str] = None) -> ISSHSession:
        """
        Open and authenticate a session.

        Args:
            config: Connection parameters
            tunnel: Existing session to tunnel this connection through
            mfa_code: One-time code answered to keyboard-interactive prompts

        Raises:
            AuthError: If the credentials are rejected
            ConnectError: If the endpoint cannot be reached
        """
        pass

"""
Registries holding live broker resources.

Each manager receives its registry through its constructor, so separate
broker instances never share state.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ....core.domain.connection import Connection, PoolKey
from ....core.domain.jump import JumpChain
from ....core.domain.session import SessionInfo
from ....core.domain.tunnel import Tunnel


@dataclass
class KeyLock:
    """Serializes opens for one pool key; ``users`` counts holders and waiters."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class ConnectionRegistry:
    """The connection pool: connections by id and by pool key."""
    by_id: Dict[str, Connection] = field(default_factory=dict)
    by_key: Dict[PoolKey, str] = field(default_factory=dict)
    key_locks: Dict[PoolKey, KeyLock] = field(default_factory=dict)

    @asynccontextmanager
    async def hold_key(self, key: PoolKey) -> AsyncIterator[None]:
        entry = self.key_locks.get(key)
        if entry is None:
            entry = self.key_locks[key] = KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            self._discard_lock(key)

    def _discard_lock(self, key: PoolKey) -> None:
        entry = self.key_locks.get(key)
        if entry is not None and entry.users == 0 and key not in self.by_key:
            del self.key_locks[key]

    def add(self, connection: Connection) -> None:
        self.by_id[connection.id] = connection
        self.by_key[connection.pool_key] = connection.id

    def remove(self, connection_id: str) -> Optional[Connection]:
        connection = self.by_id.pop(connection_id, None)
        if connection is not None and self.by_key.get(connection.pool_key) == connection_id:
            del self.by_key[connection.pool_key]
            self._discard_lock(connection.pool_key)
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.by_id.get(connection_id)

    def get_by_key(self, key: PoolKey) -> Optional[Connection]:
        connection_id = self.by_key.get(key)
        return self.by_id.get(connection_id) if connection_id else None

    def all(self) -> List[Connection]:
        return list(self.by_id.values())

    def __len__(self) -> int:
        return len(self.by_id)


@dataclass
class TunnelRegistry:
    """Tunnels by id."""
    by_id: Dict[str, Tunnel] = field(default_factory=dict)

    def add(self, tunnel: Tunnel) -> None:
        self.by_id[tunnel.id] = tunnel

    def remove(self, tunnel_id: str) -> Optional[Tunnel]:
        return self.by_id.pop(tunnel_id, None)

    def get(self, tunnel_id: str) -> Optional[Tunnel]:
        return self.by_id.get(tunnel_id)

    def for_connection(self, connection_id: str) -> List[Tunnel]:
        return [t for t in self.by_id.values() if t.connection_id == connection_id]

    def all(self) -> List[Tunnel]:
        return list(self.by_id.values())


@dataclass
class JumpChainRegistry:
    """Jump chains by id plus the successful-path cache."""
    by_id: Dict[str, JumpChain] = field(default_factory=dict)
    # target host -> (hop labels in the order used, expiry)
    path_cache: Dict[str, Tuple[List[str], datetime]] = field(default_factory=dict)

    def add(self, chain: JumpChain) -> None:
        self.by_id[chain.id] = chain

    def remove(self, chain_id: str) -> Optional[JumpChain]:
        return self.by_id.pop(chain_id, None)

    def get(self, chain_id: str) -> Optional[JumpChain]:
        return self.by_id.get(chain_id)

    def all(self) -> List[JumpChain]:
        return list(self.by_id.values())


@dataclass
class SessionRegistry:
    """In-memory session table and per-session recovery tasks."""
    by_id: Dict[str, SessionInfo] = field(default_factory=dict)
    recovery_tasks: Dict[str, 'asyncio.Task[None]'] = field(default_factory=dict)

    def add(self, info: SessionInfo) -> None:
        self.by_id[info.session_id] = info

    def remove(self, session_id: str) -> Optional[SessionInfo]:
        return self.by_id.pop(session_id, None)

    def get(self, session_id: str) -> Optional[SessionInfo]:
        return self.by_id.get(session_id)

    def all(self) -> List[SessionInfo]:
        return list(self.by_id.values())

"""
Connection domain models.

A ``Connection`` is one authenticated SSH session to a remote endpoint,
identified by an opaque id and pooled by ``(host, port, username)``.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from .results import utc_now

if TYPE_CHECKING:
    from ..interfaces.transport import ISSHSession


PoolKey = Tuple[str, int, str]


class AuthMethod(Enum):
    """Supported authentication methods."""
    KEY = "key"
    PASSWORD = "password"


class ConnectionStatus(Enum):
    """Connection lifecycle states."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"


class HealthState(Enum):
    """Outcome of a health probe."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


def new_id(prefix: str) -> str:
    """Opaque resource identifier such as ``ssh-1f2e3d4c5b6a``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class ConnectionConfig:
    """Parameters needed to open one SSH connection."""

    host: str = ""
    username: str = ""
    port: int = 22
    auth_method: AuthMethod = AuthMethod.KEY
    key_path: Optional[str] = None
    password: Optional[str] = None
    passphrase: Optional[str] = None

    # Readiness timeout for connect + authentication
    timeout_ms: int = 30000
    keep_alive_interval_s: Optional[float] = None
    known_hosts_path: Optional[str] = None
    strict_host_key_checking: bool = False
    compression: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.auth_method, str):
            try:
                self.auth_method = AuthMethod(self.auth_method)
            except ValueError:
                # left as a string so validation_errors() can report it
                pass

    @property
    def pool_key(self) -> PoolKey:
        return (self.host, self.port, self.username)

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def validation_errors(self) -> List[str]:
        """Return every problem with this config; empty when usable."""
        errors = []
        if not self.host:
            errors.append("host is required")
        if not self.username:
            errors.append("username is required")
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            errors.append(f"port must be between 1 and 65535, got {self.port}")
        if not isinstance(self.auth_method, AuthMethod):
            errors.append(f"unsupported auth method: {self.auth_method}")
        elif self.auth_method == AuthMethod.KEY and not self.key_path:
            errors.append("key_path is required for key authentication")
        elif self.auth_method == AuthMethod.PASSWORD and not self.password:
            errors.append("password is required for password authentication")
        if self.timeout_ms <= 0:
            errors.append(f"timeout_ms must be positive, got {self.timeout_ms}")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if isinstance(self.auth_method, AuthMethod):
            data['auth_method'] = self.auth_method.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class HealthReport:
    """Result of probing one connection."""
    connection_id: str
    state: HealthState
    latency_ms: Optional[float]
    success_rate: float
    error_count: int
    checked_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'status': self.state.value,
            'latency_ms': self.latency_ms,
            'success_rate': self.success_rate,
            'error_count': self.error_count,
            'checked_at': self.checked_at.isoformat(),
            'error': self.error,
        }


@dataclass
class Connection:
    """A pooled, authenticated connection."""

    config: ConnectionConfig
    session: Optional['ISSHSession'] = None
    id: str = field(default_factory=lambda: new_id("ssh"))
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    created_at: datetime = field(default_factory=utc_now)
    last_used: datetime = field(default_factory=utc_now)
    # id of the connection this one is tunnelled through
    via: Optional[str] = None

    error_count: int = 0
    commands_executed: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    last_latency_ms: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def username(self) -> str:
        return self.config.username

    @property
    def pool_key(self) -> PoolKey:
        return self.config.pool_key

    @property
    def success_rate(self) -> float:
        return 1.0 - self.error_count / max(self.commands_executed, 1)

    def is_live(self) -> bool:
        """True while the connection can carry traffic."""
        if self.status not in (ConnectionStatus.CONNECTED, ConnectionStatus.DEGRADED):
            return False
        return self.session is not None and not self.session.is_closed()

    def touch(self) -> None:
        self.last_used = utc_now()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utc_now()) - self.last_used).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.id,
            'host': self.host,
            'port': self.port,
            'username': self.username,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'last_used': self.last_used.isoformat(),
            'via': self.via,
            'error_count': self.error_count,
            'commands_executed': self.commands_executed,
            'success_rate': self.success_rate,
            'bytes_sent': self.bytes_sent,
            'bytes_received': self.bytes_received,
            'last_latency_ms': self.last_latency_ms,
            'last_error': self.last_error,
        }

"""
Tunnel domain models.

Tunnel configurations form a tagged union discriminated by ``type``:
``LocalTunnelConfig``, ``RemoteTunnelConfig`` and ``DynamicTunnelConfig``.
"""

import time
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Deque, Dict, Optional, Union

from .connection import HealthState, new_id
from .results import utc_now
from ..exceptions import ConfigError


class TunnelType(Enum):
    """Tunnel variants."""
    LOCAL = "local"
    REMOTE = "remote"
    DYNAMIC = "dynamic"


class TunnelStatus(Enum):
    """Tunnel lifecycle states."""
    ESTABLISHING = "establishing"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"


def _check_port(name: str, port: int, allow_zero: bool = False) -> None:
    low = 0 if allow_zero else 1
    if not isinstance(port, int) or not (low <= port <= 65535):
        raise ConfigError(f"{name} must be between {low} and 65535, got {port}")


@dataclass
class _TunnelConfigBase:
    connection_id: str = ""
    bind_address: str = "localhost"
    keep_alive: bool = False
    auto_restart: bool = False
    # seconds between monitor checks; None uses the manager default
    monitor_interval: Optional[float] = None
    timeout_seconds: Optional[float] = None

    type: ClassVar[TunnelType]

    def validate(self) -> None:
        if not self.connection_id:
            raise ConfigError("connection_id is required")
        if self.monitor_interval is not None and self.monitor_interval <= 0:
            raise ConfigError("monitor_interval must be positive")

    @property
    def restartable(self) -> bool:
        return self.auto_restart or self.keep_alive

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data['type'] = self.type.value
        return data


@dataclass
class LocalTunnelConfig(_TunnelConfigBase):
    """Local listener whose connections are carried to ``remote_host:remote_port``."""
    local_port: int = 0
    remote_host: str = ""
    remote_port: int = 0

    type: ClassVar[TunnelType] = TunnelType.LOCAL

    def validate(self) -> None:
        super().validate()
        # port 0 asks the OS for an ephemeral port
        _check_port("local_port", self.local_port, allow_zero=True)
        _check_port("remote_port", self.remote_port)
        if not self.remote_host:
            raise ConfigError("remote_host is required")


@dataclass
class RemoteTunnelConfig(_TunnelConfigBase):
    """Remote listener whose channels are carried to ``local_host:local_port``."""
    remote_port: int = 0
    local_host: str = "localhost"
    local_port: int = 0

    type: ClassVar[TunnelType] = TunnelType.REMOTE

    def validate(self) -> None:
        super().validate()
        _check_port("remote_port", self.remote_port, allow_zero=True)
        _check_port("local_port", self.local_port)
        if not self.local_host:
            raise ConfigError("local_host is required")


@dataclass
class DynamicTunnelConfig(_TunnelConfigBase):
    """Local SOCKS listener; each request names its own destination."""
    local_port: int = 0
    socks_version: int = 5

    type: ClassVar[TunnelType] = TunnelType.DYNAMIC

    def validate(self) -> None:
        super().validate()
        _check_port("local_port", self.local_port, allow_zero=True)
        if self.socks_version not in (4, 5):
            raise ConfigError(f"socks_version must be 4 or 5, got {self.socks_version}")


TunnelConfig = Union[LocalTunnelConfig, RemoteTunnelConfig, DynamicTunnelConfig]

_CONFIG_TYPES: Dict[TunnelType, type] = {
    TunnelType.LOCAL: LocalTunnelConfig,
    TunnelType.REMOTE: RemoteTunnelConfig,
    TunnelType.DYNAMIC: DynamicTunnelConfig,
}


def tunnel_config_from_dict(data: Dict[str, Any]) -> TunnelConfig:
    """Rebuild a tunnel config from its ``to_dict`` form."""
    try:
        tunnel_type = TunnelType(data.get('type'))
    except ValueError:
        raise ConfigError(f"Unknown tunnel type: {data.get('type')!r}")
    config_cls = _CONFIG_TYPES[tunnel_type]
    known = {f.name for f in fields(config_cls)}
    return config_cls(**{k: v for k, v in data.items() if k in known})  # type: ignore[no-any-return]


@dataclass
class Tunnel:
    """A live forwarding tunnel owned by one connection."""

    config: TunnelConfig
    id: str = field(default_factory=lambda: new_id("tunnel"))
    status: TunnelStatus = TunnelStatus.ESTABLISHING
    local_endpoint: str = ""
    remote_endpoint: str = ""

    bytes_sent: int = 0
    bytes_received: int = 0
    active_connections: int = 0
    total_connections: int = 0
    error_count: int = 0
    error_times: Deque[float] = field(default_factory=lambda: deque(maxlen=100))
    reconnect_attempts: int = 0

    created_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def type(self) -> TunnelType:
        return self.config.type

    @property
    def connection_id(self) -> str:
        return self.config.connection_id

    @property
    def bytes_transferred(self) -> int:
        return self.bytes_sent + self.bytes_received

    def record_error(self, message: str) -> None:
        self.error_count += 1
        self.error_times.append(time.monotonic())
        self.last_error = message

    def recent_errors(self, window_s: float) -> int:
        cutoff = time.monotonic() - window_s
        return sum(1 for t in self.error_times if t >= cutoff)

    def health(self, window_s: float = 60.0) -> HealthState:
        if self.status == TunnelStatus.FAILED:
            return HealthState.FAILED
        errors = self.recent_errors(window_s)
        if errors > 5:
            return HealthState.FAILED
        if errors > 2:
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    def uptime_seconds(self) -> float:
        end = self.closed_at or utc_now()
        return (end - self.created_at).total_seconds()

    def metrics(self, window_s: float = 60.0) -> Dict[str, Any]:
        uptime = self.uptime_seconds()
        return {
            'tunnel_id': self.id,
            'status': self.status.value,
            'health': self.health(window_s).value,
            'uptime_seconds': uptime,
            'bytes_sent': self.bytes_sent,
            'bytes_received': self.bytes_received,
            'bytes_transferred': self.bytes_transferred,
            'throughput_bps': self.bytes_transferred / uptime if uptime > 0 else 0.0,
            'active_connections': self.active_connections,
            'total_connections': self.total_connections,
            'error_count': self.error_count,
            'recent_errors': self.recent_errors(window_s),
            'reconnect_attempts': self.reconnect_attempts,
            'last_activity': self.last_activity.isoformat() if self.last_activity else None,
            'last_error': self.last_error,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tunnel_id': self.id,
            'type': self.type.value,
            'connection_id': self.connection_id,
            'status': self.status.value,
            'local_endpoint': self.local_endpoint,
            'remote_endpoint': self.remote_endpoint,
            'created_at': self.created_at.isoformat(),
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'bytes_transferred': self.bytes_transferred,
            'active_connections': self.active_connections,
            'error_count': self.error_count,
            'config': self.config.to_dict(),
        }

"""
Session domain models.

A session is a durable snapshot of one connection and the resources
layered on it, so that the whole graph can be recreated later.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .connection import ConnectionConfig, new_id
from .jump import JumpChainConfig
from .results import utc_now
from .tunnel import TunnelConfig, tunnel_config_from_dict
from ..exceptions import ConfigError


DEFAULT_SAVE_OPTIONS = {'tunnels': True, 'port_forwards': True, 'jump_chain': True}


class RecoveryStrategy(Enum):
    IMMEDIATE = "immediate"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RecoveryState(Enum):
    STABLE = "stable"
    RECOVERING = "recovering"
    FAILED = "failed"


class SessionStatus(Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    PERSISTED = "persisted"


class ResourceType(Enum):
    """Kinds of rows in the session resource table."""
    TUNNEL = "tunnel"
    PORT_FORWARD = "port_forward"
    JUMP_CHAIN = "jump_chain"


@dataclass
class PortForwardRule:
    """A caller-declared forwarding rule recreated as a local tunnel."""
    local_port: int
    remote_host: str
    remote_port: int
    protocol: str = "tcp"
    bind_address: str = "localhost"
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if self.protocol not in ("tcp", "udp"):
            raise ConfigError(f"protocol must be tcp or udp, got {self.protocol}")

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PortForwardRule':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RecoveryPolicy:
    """Auto-recovery parameters for one session."""
    max_attempts: int = 3
    backoff_ms: int = 5000
    strategy: RecoveryStrategy = RecoveryStrategy.EXPONENTIAL

    def __post_init__(self) -> None:
        if isinstance(self.strategy, str):
            self.strategy = RecoveryStrategy(self.strategy)
        if self.max_attempts < 1:
            raise ConfigError("max_recovery_attempts must be at least 1")
        if self.backoff_ms < 0:
            raise ConfigError("recovery_backoff_ms cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_attempts': self.max_attempts,
            'backoff_ms': self.backoff_ms,
            'strategy': self.strategy.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RecoveryPolicy':
        return cls(**data)


@dataclass
class SessionConfig:
    """Request to snapshot a connection into a session."""
    connection_id: str
    persist: bool = True
    auto_recover: bool = False
    max_recovery_attempts: int = 3
    recovery_backoff_ms: int = 5000
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.EXPONENTIAL
    save_tunnel_state: bool = True
    save_port_forwards: bool = True
    save_jump_chain: bool = True
    port_forwards: List[PortForwardRule] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.recovery_strategy, str):
            self.recovery_strategy = RecoveryStrategy(self.recovery_strategy)
        self.port_forwards = [
            PortForwardRule.from_dict(rule) if isinstance(rule, dict) else rule
            for rule in self.port_forwards
        ]

    @property
    def save_options(self) -> Dict[str, bool]:
        return {
            'tunnels': self.save_tunnel_state,
            'port_forwards': self.save_port_forwards,
            'jump_chain': self.save_jump_chain,
        }

    @property
    def recovery_policy(self) -> RecoveryPolicy:
        return RecoveryPolicy(
            max_attempts=self.max_recovery_attempts,
            backoff_ms=self.recovery_backoff_ms,
            strategy=self.recovery_strategy,
        )


@dataclass
class SessionData:
    """Serialisable snapshot of a session."""
    connection_config: ConnectionConfig
    session_id: str = field(default_factory=lambda: new_id("session"))
    created_at: datetime = field(default_factory=utc_now)
    last_active: datetime = field(default_factory=utc_now)
    persist: bool = True
    auto_recover: bool = False
    recovery_policy: RecoveryPolicy = field(default_factory=RecoveryPolicy)
    connection_metadata: Dict[str, Any] = field(default_factory=dict)
    tunnels: List[TunnelConfig] = field(default_factory=list)
    port_forwards: List[PortForwardRule] = field(default_factory=list)
    jump_chain: Optional[JumpChainConfig] = None
    recovery_count: int = 0
    last_recovery_attempt: Optional[datetime] = None
    recovery_state: RecoveryState = RecoveryState.STABLE
    # which resources a re-snapshot captures
    save_options: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_SAVE_OPTIONS))

    def state_dict(self) -> Dict[str, Any]:
        """Fields stored in the ``state_data`` column."""
        return {
            'connection_metadata': dict(self.connection_metadata),
            'recovery_policy': self.recovery_policy.to_dict(),
            'save_options': dict(self.save_options),
            'last_recovery_attempt': (
                self.last_recovery_attempt.isoformat() if self.last_recovery_attempt else None
            ),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'connection_config': self.connection_config.to_dict(),
            'created_at': self.created_at.isoformat(),
            'last_active': self.last_active.isoformat(),
            'persist': self.persist,
            'auto_recover': self.auto_recover,
            'recovery_count': self.recovery_count,
            'recovery_state': self.recovery_state.value,
            'tunnels': [tunnel.to_dict() for tunnel in self.tunnels],
            'port_forwards': [rule.to_dict() for rule in self.port_forwards],
            'jump_chain': self.jump_chain.to_dict() if self.jump_chain else None,
            **self.state_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionData':
        last_attempt = data.get('last_recovery_attempt')
        jump_chain = data.get('jump_chain')
        return cls(
            session_id=data['session_id'],
            connection_config=ConnectionConfig.from_dict(data['connection_config']),
            created_at=datetime.fromisoformat(data['created_at']),
            last_active=datetime.fromisoformat(data['last_active']),
            persist=bool(data.get('persist', True)),
            auto_recover=bool(data.get('auto_recover', False)),
            recovery_policy=RecoveryPolicy.from_dict(data.get('recovery_policy') or {}),
            connection_metadata=dict(data.get('connection_metadata') or {}),
            tunnels=[tunnel_config_from_dict(t) for t in data.get('tunnels') or []],
            port_forwards=[PortForwardRule.from_dict(r) for r in data.get('port_forwards') or []],
            jump_chain=JumpChainConfig.from_dict(jump_chain) if jump_chain else None,
            recovery_count=int(data.get('recovery_count', 0)),
            last_recovery_attempt=datetime.fromisoformat(last_attempt) if last_attempt else None,
            recovery_state=RecoveryState(data.get('recovery_state', 'stable')),
            save_options={**DEFAULT_SAVE_OPTIONS, **(data.get('save_options') or {})},
        )


@dataclass
class SessionInfo:
    """In-memory view of a session."""
    data: SessionData
    connection_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def session_id(self) -> str:
        return self.data.session_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'connection_id': self.connection_id,
            'status': self.status.value,
            'host': self.data.connection_config.host,
            'username': self.data.connection_config.username,
            'created_at': self.data.created_at.isoformat(),
            'last_active': self.data.last_active.isoformat(),
            'persisted': self.data.persist,
            'auto_recover': self.data.auto_recover,
            'recovery_count': self.data.recovery_count,
            'recovery_state': self.data.recovery_state.value,
            'has_tunnels': bool(self.data.tunnels),
            'has_port_forwards': bool(self.data.port_forwards),
            'has_jump_chain': self.data.jump_chain is not None,
        }


@dataclass
class RecoveryResult:
    """Outcome of restoring a session."""
    session_id: str
    connection_id: str
    tunnels: List[str] = field(default_factory=list)
    port_forwards: List[str] = field(default_factory=list)
    jump_chain: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    recovery_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'connection_id': self.connection_id,
            'recovered_resources': {
                'tunnels': len(self.tunnels),
                'port_forwards': len(self.port_forwards),
                'jump_chain': self.jump_chain is not None,
            },
            'tunnel_ids': list(self.tunnels),
            'port_forward_tunnel_ids': list(self.port_forwards),
            'jump_chain_id': self.jump_chain,
            'warnings': list(self.warnings),
            'recovery_time_ms': self.recovery_time_ms,
        }

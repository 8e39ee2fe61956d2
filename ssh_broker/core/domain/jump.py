"""
Jump host (bastion) chain domain models.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .connection import ConnectionConfig, new_id
from .results import utc_now


class JumpStrategy(Enum):
    """How the hop order of a chain is chosen."""
    SEQUENTIAL = "sequential"
    OPTIMAL = "optimal"
    FAILOVER = "failover"


class JumpChainStatus(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class JumpHostConfig(ConnectionConfig):
    """Connection parameters of one intermediate hop."""
    forward_agent: bool = False
    max_latency_ms: Optional[float] = None
    priority: int = 0

    @property
    def hop_label(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class JumpChainConfig:
    """A target reached through an ordered list of jump hosts."""
    target: ConnectionConfig
    jumps: List[JumpHostConfig] = field(default_factory=list)
    strategy: JumpStrategy = JumpStrategy.SEQUENTIAL
    max_total_latency_ms: Optional[float] = None
    timeout_per_hop_ms: Optional[int] = None
    parallel_probe: bool = False
    cache_successful_path: bool = False
    cache_duration_minutes: float = 60

    def __post_init__(self) -> None:
        if isinstance(self.strategy, str):
            self.strategy = JumpStrategy(self.strategy)
        if isinstance(self.target, dict):
            self.target = ConnectionConfig.from_dict(self.target)
        self.jumps = [
            JumpHostConfig.from_dict(hop) if isinstance(hop, dict) else hop
            for hop in self.jumps
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'target': self.target.to_dict(),
            'jumps': [hop.to_dict() for hop in self.jumps],
            'strategy': self.strategy.value,
            'max_total_latency_ms': self.max_total_latency_ms,
            'timeout_per_hop_ms': self.timeout_per_hop_ms,
            'parallel_probe': self.parallel_probe,
            'cache_successful_path': self.cache_successful_path,
            'cache_duration_minutes': self.cache_duration_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JumpChainConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class HopRecord:
    """One hop of an established chain."""
    host: str
    port: int
    connection_id: str
    latency_ms: float
    connect_time_ms: float
    via: Optional[str] = None
    connected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'port': self.port,
            'connection_id': self.connection_id,
            'latency_ms': self.latency_ms,
            'connect_time_ms': self.connect_time_ms,
            'via': self.via,
            'connected_at': self.connected_at.isoformat(),
        }


@dataclass
class JumpChain:
    """An established (or attempted) jump chain."""
    config: JumpChainConfig
    id: str = field(default_factory=lambda: new_id("chain"))
    status: JumpChainStatus = JumpChainStatus.CONNECTING
    hops: List[HopRecord] = field(default_factory=list)
    target_connection_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    connected_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reconnect_attempts: int = 0
    used_cached_path: bool = False
    last_error: Optional[str] = None

    @property
    def total_latency_ms(self) -> float:
        return sum(hop.latency_ms for hop in self.hops)

    @property
    def hop_count(self) -> int:
        return len(self.hops)

    @property
    def path(self) -> List[str]:
        return [f"{hop.host}:{hop.port}" for hop in self.hops]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chain_id': self.id,
            'status': self.status.value,
            'connection_id': self.target_connection_id,
            'target': self.config.target.label,
            'jumps': [hop.hop_label for hop in self.config.jumps],
            'path_taken': self.path,
            'hops': [hop.to_dict() for hop in self.hops],
            'total_latency_ms': self.total_latency_ms,
            'hop_count': self.hop_count,
            'strategy': self.config.strategy.value,
            'used_cached_path': self.used_cached_path,
            'created_at': self.created_at.isoformat(),
            'reconnect_attempts': self.reconnect_attempts,
            'last_error': self.last_error,
        }


@dataclass
class ValidationResult:
    """Outcome of validating a jump chain."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'valid': self.valid, 'errors': list(self.errors), 'warnings': list(self.warnings)}

"""
Configuration models and data structures.

This module defines the broker configuration, providing typed defaults
and validation for every manager.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class PoolConfig:
    """Connection pool configuration."""
    max_connections: int = 10
    max_idle_time_ms: int = 300000
    health_check_interval_ms: int = 60000
    health_check_timeout_ms: int = 10000
    degraded_latency_ms: float = 1000
    connect_timeout_ms: int = 30000
    monitor_enabled: bool = True


@dataclass
class TunnelDefaults:
    """Defaults applied to tunnels that do not override them."""
    bind_address: str = "localhost"
    monitor_interval_s: float = 30.0
    max_restart_attempts: int = 5
    restart_base_delay_ms: int = 1000
    restart_max_delay_ms: int = 30000
    error_window_s: float = 60.0
    buffer_size: int = 65536


@dataclass
class JumpDefaults:
    """Jump host manager configuration."""
    probe_timeout_ms: int = 5000
    timeout_per_hop_ms: int = 30000
    cache_duration_minutes: float = 60
    hop_warning_threshold: int = 3
    strict_latency_warning_ms: float = 100


@dataclass
class SessionStoreConfig:
    """Session persistence and recovery configuration."""
    database_url: str = "sqlite:///data/sessions.db"
    check_interval_s: float = 30.0
    max_backoff_ms: int = 60000
    expiry_days: float = 7
    cleanup_interval_s: float = 3600.0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
    log_directory: str = "logs"
    max_file_size: str = "10MB"
    backup_count: int = 5
    console_enabled: bool = True
    file_enabled: bool = True


@dataclass
class BrokerConfig:
    """Main broker configuration."""

    name: str = "SSH Broker"
    version: str = "0.1.0"
    debug: bool = False

    allowed_hosts: List[str] = field(default_factory=lambda: ["localhost", "127.0.0.1"])
    known_hosts_path: Optional[str] = None

    pool: PoolConfig = field(default_factory=PoolConfig)
    tunnels: TunnelDefaults = field(default_factory=TunnelDefaults)
    jump: JumpDefaults = field(default_factory=JumpDefaults)
    sessions: SessionStoreConfig = field(default_factory=SessionStoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    config_file_path: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate_pool()
        self._validate_intervals()
        self._validate_logging()

    def _validate_pool(self) -> None:
        if self.pool.max_connections < 1:
            raise ValueError(
                f"max_connections must be at least 1, got {self.pool.max_connections}")
        if not isinstance(self.allowed_hosts, list):
            raise ValueError("allowed_hosts must be a list")

    def _validate_intervals(self) -> None:
        """Validate timeout and interval values."""
        intervals = [
            ("pool.max_idle_time_ms", self.pool.max_idle_time_ms),
            ("pool.health_check_interval_ms", self.pool.health_check_interval_ms),
            ("pool.health_check_timeout_ms", self.pool.health_check_timeout_ms),
            ("pool.connect_timeout_ms", self.pool.connect_timeout_ms),
            ("tunnels.monitor_interval_s", self.tunnels.monitor_interval_s),
            ("tunnels.restart_base_delay_ms", self.tunnels.restart_base_delay_ms),
            ("jump.probe_timeout_ms", self.jump.probe_timeout_ms),
            ("jump.timeout_per_hop_ms", self.jump.timeout_per_hop_ms),
            ("sessions.check_interval_s", self.sessions.check_interval_s),
            ("sessions.expiry_days", self.sessions.expiry_days),
        ]

        for name, value in intervals:
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

    def _validate_logging(self) -> None:
        valid_levels = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")
        if self.logging.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.logging.level}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BrokerConfig':
        """Create configuration from dictionary."""
        return cls(
            name=data.get('name', 'SSH Broker'),
            version=data.get('version', '0.1.0'),
            debug=data.get('debug', False),
            allowed_hosts=list(data.get('allowed_hosts', ["localhost", "127.0.0.1"])),
            known_hosts_path=data.get('known_hosts_path'),
            pool=PoolConfig(**data.get('pool', {})),
            tunnels=TunnelDefaults(**data.get('tunnels', {})),
            jump=JumpDefaults(**data.get('jump', {})),
            sessions=SessionStoreConfig(**data.get('sessions', {})),
            logging=LoggingConfig(**data.get('logging', {})),
            config_file_path=data.get('config_file_path'),
        )

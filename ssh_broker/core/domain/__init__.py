"""
Domain models for connections, tunnels, jump chains and sessions.
"""

from .connection import (
    AuthMethod, Connection, ConnectionConfig, ConnectionStatus, HealthReport, HealthState,
)
from .events import Event, EventNames, EventPriority
from .jump import (
    HopRecord, JumpChain, JumpChainConfig, JumpChainStatus, JumpHostConfig, JumpStrategy,
    ValidationResult,
)
from .results import OperationResult
from .session import (
    PortForwardRule, RecoveryPolicy, RecoveryResult, RecoveryState, RecoveryStrategy,
    ResourceType, SessionConfig, SessionData, SessionInfo, SessionStatus,
)
from .tunnel import (
    DynamicTunnelConfig, LocalTunnelConfig, RemoteTunnelConfig, Tunnel, TunnelConfig,
    TunnelStatus, TunnelType, tunnel_config_from_dict,
)

__all__ = [
    "AuthMethod",
    "Connection",
    "ConnectionConfig",
    "ConnectionStatus",
    "HealthReport",
    "HealthState",
    "Event",
    "EventNames",
    "EventPriority",
    "HopRecord",
    "JumpChain",
    "JumpChainConfig",
    "JumpChainStatus",
    "JumpHostConfig",
    "JumpStrategy",
    "ValidationResult",
    "OperationResult",
    "PortForwardRule",
    "RecoveryPolicy",
    "RecoveryResult",
    "RecoveryState",
    "RecoveryStrategy",
    "ResourceType",
    "SessionConfig",
    "SessionData",
    "SessionInfo",
    "SessionStatus",
    "DynamicTunnelConfig",
    "LocalTunnelConfig",
    "RemoteTunnelConfig",
    "Tunnel",
    "TunnelConfig",
    "TunnelStatus",
    "TunnelType",
    "tunnel_config_from_dict",
]

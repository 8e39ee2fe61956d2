"""
Broker configuration models and loader.
"""

from .loader import ConfigLoader
from .models import (
    BrokerConfig, JumpDefaults, LoggingConfig, PoolConfig, SessionStoreConfig, TunnelDefaults,
)

__all__ = [
    "ConfigLoader",
    "BrokerConfig",
    "JumpDefaults",
    "LoggingConfig",
    "PoolConfig",
    "SessionStoreConfig",
    "TunnelDefaults",
]

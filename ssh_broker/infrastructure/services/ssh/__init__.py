"""
SSH services for the broker.

This module provides the four managers and the registries they share.
"""

from .connection_manager import ConnectionManager
from .jump_host_manager import JumpHostManager
from .registry import ConnectionRegistry, JumpChainRegistry, SessionRegistry, TunnelRegistry
from .session_manager import SessionManager
from .tunnel_manager import TunnelManager

__all__ = [
    "ConnectionManager",
    "JumpHostManager",
    "SessionManager",
    "TunnelManager",
    "ConnectionRegistry",
    "JumpChainRegistry",
    "SessionRegistry",
    "TunnelRegistry",
]

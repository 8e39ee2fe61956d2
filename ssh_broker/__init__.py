"""
SSH Broker - pooled SSH connections, tunnels, jump host chains and
recoverable sessions on top of asyncio.
"""

__version__ = "0.1.0"

from .core.domain.results import OperationResult
from .core.interfaces.lifecycle import IComponent, IHealthCheckable, IStartable, IStoppable
from .core.interfaces.transport import ISSHSession, ISSHTransport

__all__ = [
    "OperationResult",
    "IComponent",
    "IHealthCheckable",
    "IStartable",
    "IStoppable",
    "ISSHSession",
    "ISSHTransport",
]

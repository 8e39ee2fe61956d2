"""
Interfaces describing component lifecycles, messaging and the SSH transport.
"""

from .lifecycle import IComponent, IHealthCheckable, IStartable, IStoppable
from .messaging import IEventBus
from .transport import ISSHListener, ISSHSession, ISSHTransport

__all__ = [
    "IComponent",
    "IHealthCheckable",
    "IStartable",
    "IStoppable",
    "IEventBus",
    "ISSHListener",
    "ISSHSession",
    "ISSHTransport",
]

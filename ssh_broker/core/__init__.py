"""
Core module containing domain models, interfaces and shared services.

Nothing in this package depends on asyncssh or the database layer.
"""

from .domain.events import Event, EventPriority
from .domain.results import OperationResult
from .interfaces.lifecycle import IComponent, IHealthCheckable, IStartable, IStoppable
from .interfaces.messaging import IEventBus

__all__ = [
    "Event",
    "EventPriority",
    "OperationResult",
    "IComponent",
    "IHealthCheckable",
    "IStartable",
    "IStoppable",
    "IEventBus",
]

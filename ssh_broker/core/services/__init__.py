"""
Core services shared by the managers.
"""

from .backoff import exponential_delay, recovery_delay
from .event_bus import EventBus

__all__ = ["EventBus", "exponential_delay", "recovery_delay"]

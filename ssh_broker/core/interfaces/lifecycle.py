"""
Lifecycle interfaces for broker components.

Every manager is started and stopped by the application runtime and can
report its health.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class IStartable(ABC):
    """Interface for components that can be started."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the component and any background tasks it owns.

        Raises:
            Exception: If the component fails to start.
        """
        pass


class IStoppable(ABC):
    """Interface for components that can be stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop the component, cancelling background tasks and releasing
        the resources it holds.
        """
        pass


class IHealthCheckable(ABC):
    """Interface for components that can report their health status."""

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """
        Check the health status of the component.

        Returns:
            Dict with at least:
            - 'healthy': bool indicating if component is healthy
            - 'status': str describing current status
            - 'details': Dict with additional health details
        """
        pass


class IComponent(IStartable, IStoppable, IHealthCheckable):
    """Base interface for the broker's managers and services."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the component name."""
        pass

    @property
    def version(self) -> str:
        """Get the component version."""
        return "1.0.0"

"""
Lifecycle management interfaces for components that need startup/shutdown behavior.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class IStartable(ABC):
    """Interface for components that can be started."""

    @abstractmethod
    async def start(self) -> None:
        """
        Start the component.

        Raises:
            Exception: If the component fails to start.
        """
        pass


class IStoppable(ABC):
    """Interface for components that can be stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop the component gracefully, releasing any resources it holds.
        """
        pass


class IHealthCheckable(ABC):
    """Interface for components that can report their health status."""

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """
        Check the health status of the component.

        Returns:
            Dict containing at least:
            - 'healthy': bool indicating if component is healthy
            - 'status': str describing current status
            - 'details': Dict with additional health details
        """
        pass


class IComponent(IStartable, IStoppable, IHealthCheckable):
    """Base interface for components managed by the application startup."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the component name."""
        pass

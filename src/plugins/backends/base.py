"""
Backend Plugin Base - Abstract interface for resource and room providers.

A backend enumerates the bookable items it knows about and describes each
one on request. Backends are discovered via Python entry points or shipped
built in, and the sync job treats each one as independently failable.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from plugins.base import LiveItem


class BackendPlugin(ABC):
    """
    Abstract base class shared by resource and room backends.

    Backends raise BackendUnavailable when they cannot be reached right now.
    Any cached data belonging to them is then kept as is until a later run.
    """

    @property
    @abstractmethod
    def backend_identifier(self) -> str:
        """Unique identifier stored alongside every item this backend reports."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the backend with configuration.

        Called once when the backend is first requested from the registry.

        Args:
            config: Backend-specific configuration dictionary
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the backend."""
        return None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load backend-specific configuration from environment variables.

        Override this method in subclasses to define how the backend
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this backend.
        """
        return {}


class ResourceBackend(BackendPlugin):
    """Backend providing resources (projectors, TVs, ...)."""

    @abstractmethod
    async def list_all_resources(self) -> List[str]:
        """
        List the identifiers of every resource the backend exposes.

        Raises:
            BackendUnavailable: If the backend is temporarily unreachable.
        """
        pass

    @abstractmethod
    async def get_resource(self, resource_id: str) -> LiveItem:
        """
        Fetch a single resource.

        Args:
            resource_id: Identifier as returned by list_all_resources()

        Raises:
            BackendUnavailable: If the backend is temporarily unreachable.
            BackendError: If the resource cannot be loaded.
        """
        pass


class RoomBackend(BackendPlugin):
    """Backend providing rooms."""

    @abstractmethod
    async def list_all_rooms(self) -> List[str]:
        """
        List the identifiers of every room the backend exposes.

        Raises:
            BackendUnavailable: If the backend is temporarily unreachable.
        """
        pass

    @abstractmethod
    async def get_room(self, room_id: str) -> LiveItem:
        """
        Fetch a single room.

        Args:
            room_id: Identifier as returned by list_all_rooms()

        Raises:
            BackendUnavailable: If the backend is temporarily unreachable.
            BackendError: If the room cannot be loaded.
        """
        pass

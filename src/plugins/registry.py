"""
Backend Registry - Discovery and registration of backends.

This module provides the central registry for resource and room backends,
handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.backends.base import BackendPlugin, ResourceBackend, RoomBackend
from plugins.base import ItemKind, logger

ENTRY_POINT_GROUPS = {
    ItemKind.RESOURCE: "calsync.resource_backends",
    ItemKind.ROOM: "calsync.room_backends",
}

_BASE_CLASSES = {
    ItemKind.RESOURCE: ResourceBackend,
    ItemKind.ROOM: RoomBackend,
}


class BackendRegistry:
    """
    Central registry for all backends.

    Backends are registered per item kind. Instances are created and
    initialized lazily, once, the first time they are requested.
    """

    def __init__(self):
        # Registered backend classes (not instantiated), keyed by identifier
        self._backends: Dict[ItemKind, Dict[str, Type[BackendPlugin]]] = {
            kind: {} for kind in ItemKind
        }

        # Cached backend metadata (identifier, version)
        self._backend_info: Dict[ItemKind, Dict[str, Dict[str, str]]] = {
            kind: {} for kind in ItemKind
        }

        # Instantiated and initialized backends
        self._instances: Dict[ItemKind, Dict[str, BackendPlugin]] = {
            kind: {} for kind in ItemKind
        }

        # Backend configurations loaded from environment
        self._backend_configs: Dict[ItemKind, Dict[str, Dict[str, Any]]] = {
            kind: {} for kind in ItemKind
        }

        # Backends allowed to run; empty means every registered backend
        self._enabled: Dict[ItemKind, List[str]] = {kind: [] for kind in ItemKind}

    # Registration methods

    def register_backend(
        self, kind: ItemKind, backend_class: Type[BackendPlugin]
    ) -> None:
        """
        Register a backend class for an item kind.

        Args:
            kind: The kind of item the backend provides
            backend_class: The ResourceBackend or RoomBackend subclass

        Raises:
            TypeError: If the class does not implement the backend for that kind
        """
        base = _BASE_CLASSES[kind]
        if not issubclass(backend_class, base):
            raise TypeError(
                f"{backend_class.__name__} is not a {base.__name__} "
                f"and cannot provide {kind.value}s"
            )

        # Temporary instance to read identifier and version
        temp_instance = backend_class()
        backend_id = temp_instance.backend_identifier
        version = temp_instance.version

        if backend_id in self._backends[kind]:
            logger.warning(f"Overwriting existing {kind.value} backend: {backend_id}")

        self._backends[kind][backend_id] = backend_class
        self._backend_info[kind][backend_id] = {
            "backend_identifier": backend_id,
            "version": version,
        }
        self._backend_configs[kind][backend_id] = backend_class.load_config_from_env()
        logger.info(f"Registered {kind.value} backend: {backend_id} v{version}")

    def register_resource_backend(self, backend_class: Type[ResourceBackend]) -> None:
        """Register a resource backend class."""
        self.register_backend(ItemKind.RESOURCE, backend_class)

    def register_room_backend(self, backend_class: Type[RoomBackend]) -> None:
        """Register a room backend class."""
        self.register_backend(ItemKind.ROOM, backend_class)

    def set_enabled_backends(self, kind: ItemKind, backend_ids: List[str]) -> None:
        """
        Restrict which registered backends are used for a kind.

        Args:
            kind: The item kind
            backend_ids: Identifiers to enable; empty enables all
        """
        for backend_id in backend_ids:
            if backend_id not in self._backends[kind]:
                logger.warning(
                    f"Enabled {kind.value} backend '{backend_id}' is not registered"
                )
        self._enabled[kind] = list(backend_ids)

    def update_backend_config(
        self, kind: ItemKind, backend_id: str, overrides: Dict[str, Any]
    ) -> None:
        """Merge configuration overrides into a backend's env-loaded config."""
        self._backend_configs[kind].setdefault(backend_id, {}).update(overrides)

    # Instantiation methods

    async def get_backend(
        self, kind: ItemKind, backend_id: str
    ) -> Optional[BackendPlugin]:
        """
        Get an initialized backend instance.

        Args:
            kind: The item kind
            backend_id: The backend identifier

        Returns:
            The initialized backend, or None if it is unknown or disabled
        """
        if not self.has_backend(kind, backend_id):
            return None

        if backend_id not in self._instances[kind]:
            backend = self._backends[kind][backend_id]()
            await backend.initialize(self.get_backend_config(kind, backend_id))
            self._instances[kind][backend_id] = backend
            logger.info(f"Initialized {kind.value} backend: {backend_id}")

        return self._instances[kind][backend_id]

    async def get_backends(self, kind: ItemKind) -> List[BackendPlugin]:
        """
        Get every enabled backend of a kind, initialized.

        Backends whose initialize() fails are logged and left out.
        """
        backends = []
        for backend_id in self.list_backends(kind):
            try:
                backend = await self.get_backend(kind, backend_id)
            except Exception as e:
                logger.error(
                    f"Failed to initialize {kind.value} backend '{backend_id}': {e}",
                    exc_info=True,
                )
                continue
            if backend is not None:
                backends.append(backend)
        return backends

    async def close_all(self) -> None:
        """Close and forget all backend instances."""
        for kind in ItemKind:
            for backend_id, backend in self._instances[kind].items():
                try:
                    await backend.close()
                except Exception as e:
                    logger.error(
                        f"Error closing {kind.value} backend '{backend_id}': {e}"
                    )
            self._instances[kind].clear()

    # Discovery methods

    def list_backends(self, kind: ItemKind) -> List[str]:
        """List enabled backend identifiers for a kind."""
        registered = list(self._backends[kind].keys())
        enabled = self._enabled[kind]
        if not enabled:
            return registered
        return [b for b in registered if b in enabled]

    def has_backend(self, kind: ItemKind, backend_id: str) -> bool:
        """Check if a backend is registered and enabled."""
        return backend_id in self.list_backends(kind)

    def get_backend_info(
        self, kind: ItemKind, backend_id: str
    ) -> Optional[Dict[str, str]]:
        """
        Get information about a registered backend.

        Returns:
            Dictionary with 'backend_identifier' and 'version', or None if not found
        """
        return self._backend_info[kind].get(backend_id)

    def get_backend_config(self, kind: ItemKind, backend_id: str) -> Dict[str, Any]:
        """Get configuration for a backend, or an empty dict if not found."""
        return dict(self._backend_configs[kind].get(backend_id, {}))


# Global registry instance
_registry: Optional[BackendRegistry] = None


def get_registry() -> BackendRegistry:
    """Get the global backend registry singleton."""
    global _registry
    if _registry is None:
        _registry = BackendRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_backends(registry: Optional[BackendRegistry] = None) -> None:
    """
    Register the built-in backends and discover installed ones via entry points.

    The HTTP directory backends are only registered when a directory URL
    is configured, so an unconfigured install has no backends at all.
    """
    registry = registry or get_registry()

    try:
        from plugins.backends.http import (
            HTTPDirectoryResourceBackend,
            HTTPDirectoryRoomBackend,
            is_configured,
        )

        if is_configured():
            registry.register_resource_backend(HTTPDirectoryResourceBackend)
            registry.register_room_backend(HTTPDirectoryRoomBackend)
    except ImportError as e:
        logger.warning(f"Could not load HTTP directory backend: {e}")

    for kind, group in ENTRY_POINT_GROUPS.items():
        for ep in entry_points(group=group):
            try:
                registry.register_backend(kind, ep.load())
            except Exception as e:
                logger.warning(f"Could not load {kind.value} backend {ep.name}: {e}")

"""
Plugin system for the calendar cache sync service.

This package provides the backend architecture: the live item types
backends return, the backend interfaces, and the registry that finds them.
"""

from plugins.base import (
    BackendError,
    BackendNotFound,
    BackendUnavailable,
    ItemKind,
    LiveItem,
    MetadataProvider,
    Resource,
    ResourceWithMetadata,
    Room,
    RoomWithMetadata,
)
from plugins.backends.base import BackendPlugin, ResourceBackend, RoomBackend
from plugins.registry import BackendRegistry, get_registry

__all__ = [
    "BackendError",
    "BackendNotFound",
    "BackendUnavailable",
    "ItemKind",
    "LiveItem",
    "MetadataProvider",
    "Resource",
    "ResourceWithMetadata",
    "Room",
    "RoomWithMetadata",
    "BackendPlugin",
    "ResourceBackend",
    "RoomBackend",
    "BackendRegistry",
    "get_registry",
]

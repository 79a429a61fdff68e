"""
Core backend types shared across the plugin system.

Live items are what a backend hands back for a single resource or room.
Metadata support is an optional capability: an item provides it by also
implementing MetadataProvider, and callers check for it with isinstance().
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ItemKind(Enum):
    """Kinds of bookable items kept in the cache."""

    RESOURCE = "resource"
    ROOM = "room"


class BackendError(Exception):
    """Base class for failures raised by a backend."""


class BackendUnavailable(BackendError):
    """The backend is temporarily unreachable; cached data must be kept."""


class BackendNotFound(BackendError):
    """No backend is registered under the requested identifier."""


@dataclass
class LiveItem:
    """Identity of a resource or room as currently reported by its backend."""

    id: str
    display_name: str
    email: str = ""
    # Groups allowed to book this item, in backend order. Empty = unrestricted.
    group_restrictions: List[str] = field(default_factory=list)


class MetadataProvider(ABC):
    """Capability for live items that expose key/value metadata."""

    @abstractmethod
    def get_all_available_metadata_keys(self) -> List[str]:
        """Return every metadata key this item currently exposes."""
        pass

    @abstractmethod
    def get_metadata_for_key(self, key: str) -> Optional[str]:
        """Return the value for a key, or None if it has no value."""
        pass


@dataclass
class Resource(LiveItem):
    """Plain resource without metadata."""


@dataclass
class Room(LiveItem):
    """Plain room without metadata."""


class DictMetadataProvider(MetadataProvider):
    """MetadataProvider backed by a ``metadata`` dict attribute."""

    metadata: Dict[str, Optional[str]]

    def get_all_available_metadata_keys(self) -> List[str]:
        return list(self.metadata.keys())

    def get_metadata_for_key(self, key: str) -> Optional[str]:
        return self.metadata.get(key)


@dataclass
class ResourceWithMetadata(DictMetadataProvider, Resource):
    """Resource carrying a metadata mapping."""

    metadata: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class RoomWithMetadata(DictMetadataProvider, Room):
    """Room carrying a metadata mapping."""

    metadata: Dict[str, Optional[str]] = field(default_factory=dict)

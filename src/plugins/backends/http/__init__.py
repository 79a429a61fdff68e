"""HTTP directory backends."""

from plugins.backends.http.backend import (
    HTTPDirectoryResourceBackend,
    HTTPDirectoryRoomBackend,
    is_configured,
)

__all__ = [
    "HTTPDirectoryResourceBackend",
    "HTTPDirectoryRoomBackend",
    "is_configured",
]

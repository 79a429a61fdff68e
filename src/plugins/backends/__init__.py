"""
Backend plugins package.

Backends provide the live resources and rooms mirrored into the cache.
Third-party backends register through the 'calsync.resource_backends' and
'calsync.room_backends' entry point groups.
"""

from plugins.backends.base import BackendPlugin, ResourceBackend, RoomBackend

__all__ = ["BackendPlugin", "ResourceBackend", "RoomBackend"]

"""
HTTP Directory Backend - Implements resource and room backends over HTTP.

Reads a JSON directory service exposing:

    GET {base_url}/resources          -> ["res1", "res2"] or {"items": [...]}
    GET {base_url}/resources/{id}     -> {"id": ..., "display_name": ..., ...}

and the same pair of endpoints under /rooms.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Type
from urllib.parse import quote

import aiohttp

from plugins.backends.base import ResourceBackend, RoomBackend
from plugins.base import (
    BackendError,
    BackendUnavailable,
    LiveItem,
    Resource,
    ResourceWithMetadata,
    Room,
    RoomWithMetadata,
)

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    """Whether a directory URL is present in the environment."""
    return bool(os.getenv("HTTP_DIRECTORY_URL"))


class _HTTPDirectoryBackend:
    """Shared HTTP plumbing for the resource and room directory backends."""

    collection: str = ""
    plain_item_class: Type[LiveItem] = LiveItem
    metadata_item_class: Type[LiveItem] = LiveItem

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.timeout: int = 30

    @property
    def backend_identifier(self) -> str:
        return "http_directory"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP directory configuration from environment variables."""
        return {
            "base_url": os.getenv("HTTP_DIRECTORY_URL", ""),
            "token": os.getenv("HTTP_DIRECTORY_TOKEN", ""),
            "timeout": int(os.getenv("HTTP_DIRECTORY_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the backend with configuration."""
        self.base_url = config.get("base_url", self.base_url).rstrip("/")
        self.token = config.get("token") or None
        self.timeout = config.get("timeout", self.timeout)

        if not self.base_url:
            logger.warning(
                "HTTP directory URL not configured. Set HTTP_DIRECTORY_URL."
            )

        logger.debug(
            f"HTTP directory backend initialized for {self.collection}: "
            f"base_url={self.base_url}, timeout={self.timeout}s"
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for directory requests."""
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_json(self, path: str) -> Any:
        """
        GET a path below the base URL and decode the JSON body.

        Raises:
            BackendUnavailable: On timeouts, connection errors and 5xx responses
            BackendError: On any other non-200 response
        """
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=self._get_headers()) as response:
                    if response.status == 200:
                        return await response.json()
                    error_text = await response.text()
                    if response.status >= 500:
                        raise BackendUnavailable(
                            f"Directory returned {response.status} for {url}"
                        )
                    raise BackendError(
                        f"Directory request failed: {response.status} - {error_text}"
                    )
        except asyncio.TimeoutError as e:
            raise BackendUnavailable(f"Timed out after {self.timeout}s: {url}") from e
        except aiohttp.ClientError as e:
            raise BackendUnavailable(f"Could not reach directory: {e}") from e

    async def _list_ids(self) -> List[str]:
        data = await self._get_json(f"/{self.collection}")
        ids = data.get("items") if isinstance(data, dict) else data
        # Anything but a list of ids would empty the cache of this backend
        if not isinstance(ids, list):
            raise BackendError(
                f"Directory listing of {self.collection} is not a list of ids: "
                f"{str(data)[:200]}"
            )
        return [str(item_id) for item_id in ids]

    async def _get_item(self, item_id: str) -> LiveItem:
        data = await self._get_json(f"/{self.collection}/{quote(item_id, safe='')}")
        return self._parse_item(item_id, data)

    def _parse_item(self, item_id: str, data: Dict[str, Any]) -> LiveItem:
        """Build a live item from a directory entry."""
        fields = {
            "id": str(data.get("id", item_id)),
            "display_name": data.get("display_name") or "",
            "email": data.get("email") or "",
            "group_restrictions": list(data.get("group_restrictions") or []),
        }
        metadata = data.get("metadata")
        if metadata is None:
            return self.plain_item_class(**fields)
        return self.metadata_item_class(
            metadata={
                str(key): (None if value is None else str(value))
                for key, value in metadata.items()
            },
            **fields,
        )


class HTTPDirectoryResourceBackend(_HTTPDirectoryBackend, ResourceBackend):
    """Resource backend reading the directory's /resources endpoints."""

    collection = "resources"
    plain_item_class = Resource
    metadata_item_class = ResourceWithMetadata

    async def list_all_resources(self) -> List[str]:
        return await self._list_ids()

    async def get_resource(self, resource_id: str) -> LiveItem:
        return await self._get_item(resource_id)


class HTTPDirectoryRoomBackend(_HTTPDirectoryBackend, RoomBackend):
    """Room backend reading the directory's /rooms endpoints."""

    collection = "rooms"
    plain_item_class = Room
    metadata_item_class = RoomWithMetadata

    async def list_all_rooms(self) -> List[str]:
        return await self._list_ids()

    async def get_room(self, room_id: str) -> LiveItem:
        return await self._get_item(room_id)

"""
Metadata extraction for live resources and rooms.
"""

import logging
from typing import Any, Dict

from plugins.base import MetadataProvider

logger = logging.getLogger(__name__)


def extract_metadata(item: Any) -> Dict[str, str]:
    """
    Collect the key/value metadata a live item exposes.

    Items without the MetadataProvider capability have no metadata. Keys
    whose value lookup returns None are left out rather than stored empty.

    Args:
        item: A live item as returned by a backend

    Returns:
        Mapping of metadata key to value
    """
    if not isinstance(item, MetadataProvider):
        return {}

    metadata = {}
    for key in item.get_all_available_metadata_keys():
        value = item.get_metadata_for_key(key)
        if value is None:
            logger.debug(f"Skipping metadata key '{key}' without a value")
            continue
        metadata[key] = value
    return metadata

"""
Cache Reconciler - converges cached resources and rooms to backend state.

For every backend of a kind, the reconciler lists what the backend exposes,
drops cached items it no longer reports, and inserts or updates the rest,
metadata included. A backend that cannot be listed is skipped and its
cached items are left exactly as they were.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from db import CachedItem, DatabaseManager, StoreIntegrityError
from metadata import extract_metadata
from plugins.backends.base import BackendPlugin
from plugins.base import BackendError, BackendNotFound, BackendUnavailable, ItemKind
from plugins.registry import BackendRegistry

logger = logging.getLogger(__name__)

_LIST_METHODS = {
    ItemKind.RESOURCE: "list_all_resources",
    ItemKind.ROOM: "list_all_rooms",
}

_GET_METHODS = {
    ItemKind.RESOURCE: "get_resource",
    ItemKind.ROOM: "get_room",
}


class ItemOutcome(Enum):
    """What happened to a single item during a run."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    INSERTED = "inserted"
    DELETED = "deleted"
    UNTOUCHED = "untouched"


@dataclass
class SyncResult:
    """Summary of one reconciliation run for an item kind."""

    kind: ItemKind
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    skipped: int = 0
    metadata_inserted: int = 0
    metadata_updated: int = 0
    metadata_deleted: int = 0
    failed_backends: List[str] = field(default_factory=list)
    orphaned_backends: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def has_changes(self) -> bool:
        return bool(
            self.inserted
            or self.updated
            or self.deleted
            or self.metadata_inserted
            or self.metadata_updated
            or self.metadata_deleted
        )

    def record(self, outcome: ItemOutcome) -> None:
        """Count an item outcome."""
        if outcome is ItemOutcome.INSERTED:
            self.inserted += 1
        elif outcome is ItemOutcome.UPDATED:
            self.updated += 1
        elif outcome is ItemOutcome.UNCHANGED:
            self.unchanged += 1
        elif outcome is ItemOutcome.DELETED:
            self.deleted += 1
        else:
            self.skipped += 1


class CacheReconciler:
    """
    Reconciles the cache of one item kind against all registered backends.

    Backends are processed independently. Listing failures skip the whole
    backend; a failure to fetch a single item skips only that item. Store
    errors other than rejected writes propagate to the caller once
    every backend has been processed.
    """

    def __init__(
        self,
        db: DatabaseManager,
        registry: BackendRegistry,
        max_concurrent_backends: int = 1,
        purge_orphaned_backends: bool = False,
    ):
        self.db = db
        self.registry = registry
        self.max_concurrent_backends = max(1, max_concurrent_backends)
        self.purge_orphaned_backends = purge_orphaned_backends

    async def reconcile(self, kind: ItemKind) -> SyncResult:
        """
        Run a full reconciliation pass for one item kind.

        Args:
            kind: Resource or room

        Returns:
            SyncResult describing what changed
        """
        start_time = time.monotonic()
        result = SyncResult(kind=kind)

        cached_by_backend: Dict[str, List[CachedItem]] = {}
        for item in await self.db.find_all_for_kind(kind):
            cached_by_backend.setdefault(item.backend_id, []).append(item)

        backend_ids = self.registry.list_backends(kind)
        semaphore = asyncio.Semaphore(self.max_concurrent_backends)

        async def run_one(backend_id: str) -> None:
            async with semaphore:
                backend = await self._load_backend(kind, backend_id, result)
                if backend is None:
                    return
                await self._reconcile_backend(
                    kind, backend, cached_by_backend.get(backend_id, []), result
                )

        outcomes = await asyncio.gather(
            *(run_one(backend_id) for backend_id in backend_ids),
            return_exceptions=True,
        )

        await self._handle_orphaned_backends(kind, list(cached_by_backend), result)

        result.duration_seconds = time.monotonic() - start_time
        logger.info(
            f"Reconciled {kind.value}s in {result.duration_seconds:.2f}s: "
            f"{result.inserted} inserted, {result.updated} updated, "
            f"{result.deleted} deleted, {result.unchanged} unchanged, "
            f"{result.skipped} skipped, "
            f"{len(result.failed_backends)} backend(s) unavailable"
        )

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return result

    async def reconcile_backend(self, kind: ItemKind, backend_id: str) -> SyncResult:
        """
        Run a reconciliation pass for a single backend.

        Raises:
            BackendNotFound: If no enabled backend has this identifier
        """
        start_time = time.monotonic()
        if not self.registry.has_backend(kind, backend_id):
            raise BackendNotFound(f"No {kind.value} backend named '{backend_id}'")
        result = SyncResult(kind=kind)
        backend = await self._load_backend(kind, backend_id, result)
        if backend is None:
            result.duration_seconds = time.monotonic() - start_time
            return result
        cached_items = await self.db.find_all_for_backend(kind, backend_id)
        await self._reconcile_backend(kind, backend, cached_items, result)
        result.duration_seconds = time.monotonic() - start_time
        return result

    async def _load_backend(
        self, kind: ItemKind, backend_id: str, result: SyncResult
    ) -> Optional[BackendPlugin]:
        """Get an initialized backend, recording it as failed if it will not start."""
        try:
            return await self.registry.get_backend(kind, backend_id)
        except Exception as e:
            logger.error(
                f"{kind.value.capitalize()} backend '{backend_id}' could not be "
                f"initialized, keeping its cache: {e}",
                exc_info=True,
            )
            result.failed_backends.append(backend_id)
            return None

    async def _reconcile_backend(
        self,
        kind: ItemKind,
        backend: BackendPlugin,
        cached_items: List[CachedItem],
        result: SyncResult,
    ) -> None:
        """Converge one backend's cached items to its live listing."""
        backend_id = backend.backend_identifier

        try:
            listed = await getattr(backend, _LIST_METHODS[kind])()
        except BackendUnavailable as e:
            logger.warning(
                f"{kind.value.capitalize()} backend '{backend_id}' is temporarily "
                f"unavailable, keeping its cache: {e}"
            )
            result.failed_backends.append(backend_id)
            return
        except Exception as e:
            logger.error(
                f"Listing {kind.value}s of backend '{backend_id}' failed, "
                f"keeping its cache: {e}",
                exc_info=True,
            )
            result.failed_backends.append(backend_id)
            return

        # Duplicates in a listing collapse to one item, first position wins
        live_ids = list(dict.fromkeys(str(external_id) for external_id in listed))
        live_id_set = set(live_ids)
        cached_by_external_id = {item.external_id: item for item in cached_items}

        for item in cached_items:
            if item.external_id not in live_id_set:
                await self.db.delete_item(kind, item.id)
                result.record(ItemOutcome.DELETED)

        for external_id in live_ids:
            outcome = await self._reconcile_item(
                kind,
                backend,
                external_id,
                cached_by_external_id.get(external_id),
                result,
            )
            result.record(outcome)

    async def _reconcile_item(
        self,
        kind: ItemKind,
        backend: BackendPlugin,
        external_id: str,
        cached: Optional[CachedItem],
        result: SyncResult,
    ) -> ItemOutcome:
        """Insert or update one listed item and replace its metadata."""
        backend_id = backend.backend_identifier

        try:
            live_item = await getattr(backend, _GET_METHODS[kind])(external_id)
            live_metadata = extract_metadata(live_item)
        except BackendError as e:
            logger.warning(
                f"Could not fetch {kind.value} {backend_id}/{external_id}, "
                f"leaving it as cached: {e}"
            )
            return ItemOutcome.UNTOUCHED
        except Exception as e:
            logger.error(
                f"Fetching {kind.value} {backend_id}/{external_id} failed, "
                f"leaving it as cached: {e}",
                exc_info=True,
            )
            return ItemOutcome.UNTOUCHED

        display_name = live_item.display_name or ""
        email = live_item.email or ""
        group_restrictions = list(getattr(live_item, "group_restrictions", None) or [])

        try:
            if cached is None:
                item_id = await self.db.insert_item(
                    kind,
                    backend_id=backend_id,
                    external_id=external_id,
                    display_name=display_name,
                    email=email,
                    group_restrictions=group_restrictions,
                )
                stored_metadata: Dict[str, str] = {}
                outcome = ItemOutcome.INSERTED
            else:
                item_id = cached.id
                if (
                    cached.display_name != display_name
                    or cached.email != email
                    or cached.group_restrictions != group_restrictions
                ):
                    await self.db.update_item(
                        kind,
                        item_id,
                        display_name=display_name,
                        email=email,
                        group_restrictions=group_restrictions,
                    )
                    outcome = ItemOutcome.UPDATED
                else:
                    outcome = ItemOutcome.UNCHANGED
                stored_metadata = await self.db.get_metadata(kind, item_id)

            metadata_changed = await self._sync_metadata(
                kind, item_id, stored_metadata, live_metadata, result
            )
        except StoreIntegrityError as e:
            logger.error(f"Skipping {kind.value} {backend_id}/{external_id}: {e}")
            return ItemOutcome.UNTOUCHED

        if outcome is ItemOutcome.UNCHANGED and metadata_changed:
            return ItemOutcome.UPDATED
        return outcome

    async def _sync_metadata(
        self,
        kind: ItemKind,
        item_id: int,
        stored: Dict[str, str],
        live: Dict[str, str],
        result: SyncResult,
    ) -> bool:
        """
        Replace an item's stored metadata with the live mapping by diffing.

        Returns:
            True if any metadata row was written
        """
        changed = False

        for key, value in live.items():
            if key not in stored:
                await self.db.insert_metadata(kind, item_id, key, value)
                result.metadata_inserted += 1
                changed = True
            elif stored[key] != value:
                await self.db.update_metadata(kind, item_id, key, value)
                result.metadata_updated += 1
                changed = True

        for key in stored:
            if key not in live:
                await self.db.delete_metadata(kind, item_id, key)
                result.metadata_deleted += 1
                changed = True

        return changed

    async def _handle_orphaned_backends(
        self, kind: ItemKind, cached_backend_ids: List[str], result: SyncResult
    ) -> None:
        """Report, and optionally purge, cached backends nobody provides anymore."""
        for backend_id in sorted(cached_backend_ids):
            if not self.registry.has_backend(kind, backend_id):
                result.orphaned_backends.append(backend_id)

        if not result.orphaned_backends:
            return

        if not self.purge_orphaned_backends:
            logger.warning(
                f"Cached {kind.value}s belong to unregistered backend(s) "
                f"{', '.join(result.orphaned_backends)}; leaving them in place"
            )
            return

        for backend_id in result.orphaned_backends:
            result.deleted += await self.db.delete_items_for_backend(kind, backend_id)

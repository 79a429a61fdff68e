"""
Sync Job - periodic refresh of the resource and room cache.

run() is the single parameterless entry point: it reconciles resources,
then rooms. start() calls it on a fixed interval until stop() is called.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from db import DatabaseManager
from plugins.base import ItemKind
from plugins.registry import BackendRegistry, get_registry
from reconciler import CacheReconciler, SyncResult

logger = logging.getLogger(__name__)


@dataclass
class SyncJobConfig:
    """Configuration for the sync job."""

    sync_interval: int = 3600
    max_concurrent_backends: int = 1
    purge_orphaned_backends: bool = False
    error_retry_delay: int = 10  # pause after an unexpected error, in seconds


class SyncJob:
    """
    Background job keeping the cache in line with the backends.

    Each run processes every item kind. A kind that fails with an
    unexpected error does not keep the other kind from being processed.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: Optional[BackendRegistry] = None,
        config: Optional[SyncJobConfig] = None,
    ):
        self.db = db_manager
        self.registry = registry or get_registry()
        self.config = config or SyncJobConfig()
        self.reconciler = CacheReconciler(
            db=self.db,
            registry=self.registry,
            max_concurrent_backends=self.config.max_concurrent_backends,
            purge_orphaned_backends=self.config.purge_orphaned_backends,
        )
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._run_lock = asyncio.Lock()

    async def run(self) -> Dict[ItemKind, SyncResult]:
        """
        Reconcile resources and rooms once.

        Returns:
            SyncResult per kind that completed

        Raises:
            Exception: The first unexpected error, after both kinds were tried
        """
        results: Dict[ItemKind, SyncResult] = {}
        first_error: Optional[Exception] = None

        async with self._run_lock:
            for kind in ItemKind:
                try:
                    results[kind] = await self.reconciler.reconcile(kind)
                except Exception as e:
                    logger.error(
                        f"Reconciling {kind.value}s failed: {e}", exc_info=True
                    )
                    if first_error is None:
                        first_error = e

        if first_error is not None:
            raise first_error
        return results

    async def start(self):
        """Run the job every sync_interval seconds until stopped."""
        logger.info(
            f"Starting cache sync job (interval: {self.config.sync_interval}s)"
        )
        self.running = True
        self._shutdown_event.clear()

        while self.running:
            delay = self.config.sync_interval
            try:
                await self.run()
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")
                delay = min(delay, self.config.error_retry_delay)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Cache sync job stopped")

    async def stop(self):
        """Stop the loop after the current run finishes."""
        logger.info("Stopping cache sync job")
        self.running = False
        self._shutdown_event.set()

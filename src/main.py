"""
Main entry point for the calendar cache sync service.

This module wires configuration, backends, the database and the sync job.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config, get_config
from db import DatabaseManager
from job import SyncJob, SyncJobConfig
from plugins.base import ItemKind
from plugins.registry import BackendRegistry, get_registry, register_builtin_backends

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the service."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def configure_registry(config: Config, registry: BackendRegistry) -> None:
    """Register backends and apply enabled lists and config overrides."""
    register_builtin_backends(registry)

    registry.set_enabled_backends(
        ItemKind.RESOURCE, config.backends.enabled_resource_backends
    )
    registry.set_enabled_backends(ItemKind.ROOM, config.backends.enabled_room_backends)

    for backend_id, overrides in config.backends.backend_configs.items():
        for kind in ItemKind:
            registry.update_backend_config(kind, backend_id, overrides)


def create_database(config: Config) -> DatabaseManager:
    """Build a DatabaseManager from configuration."""
    db_config = config.database
    return DatabaseManager(
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=db_config.min_pool_size,
        max_pool_size=db_config.max_pool_size,
    )


class Application:
    """Main application that runs the sync job against configured backends."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.registry: Optional[BackendRegistry] = None
        self.db: Optional[DatabaseManager] = None
        self.job: Optional[SyncJob] = None

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing calendar cache sync")

        self.registry = get_registry()
        configure_registry(self.config, self.registry)

        self.db = create_database(self.config)
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        sync_config = self.config.sync
        self.job = SyncJob(
            db_manager=self.db,
            registry=self.registry,
            config=SyncJobConfig(
                sync_interval=sync_config.sync_interval,
                max_concurrent_backends=sync_config.max_concurrent_backends,
                purge_orphaned_backends=sync_config.purge_orphaned_backends,
            ),
        )

        for kind in ItemKind:
            backends = self.registry.list_backends(kind)
            logger.info(
                f"{kind.value.capitalize()} backends: {', '.join(backends) or 'none'}"
            )

    async def start(self):
        """Start the application."""
        if not self.job:
            await self.initialize()

        try:
            await self.job.start()
        except asyncio.CancelledError:
            logger.info("Sync job cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping calendar cache sync")

        if self.job:
            await self.job.stop()

        if self.registry:
            await self.registry.close_all()

        if self.db:
            await self.db.close()

        logger.info("Calendar cache sync stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.sync.log_level)
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        if app.job:
            asyncio.create_task(app.job.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

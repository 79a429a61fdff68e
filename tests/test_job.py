"""Unit tests for job.py - Periodic cache sync job."""

import pytest
from unittest.mock import AsyncMock

from fakes import FakeBackend, StaticBackendRegistry
from job import SyncJob, SyncJobConfig
from plugins.base import ItemKind, Resource, RoomWithMetadata
from reconciler import SyncResult


class TestSyncJobConfig:
    """Tests for SyncJobConfig dataclass."""

    def test_default_values(self):
        config = SyncJobConfig()
        assert config.sync_interval == 3600
        assert config.max_concurrent_backends == 1
        assert config.purge_orphaned_backends is False
        assert config.error_retry_delay == 10


class TestSyncJob:
    """Tests for SyncJob construction."""

    def test_init(self, store):
        registry = StaticBackendRegistry([])
        config = SyncJobConfig(max_concurrent_backends=4, purge_orphaned_backends=True)

        job = SyncJob(store, registry=registry, config=config)

        assert job.db is store
        assert job.reconciler.registry is registry
        assert job.reconciler.max_concurrent_backends == 4
        assert job.reconciler.purge_orphaned_backends is True
        assert job.running is False

    def test_init_default_registry(self, store):
        from plugins.registry import get_registry

        job = SyncJob(store)

        assert job.registry is get_registry()
        assert job.config.sync_interval == 3600


@pytest.mark.asyncio
class TestSyncJobRun:
    """Tests for a single sync run."""

    async def test_run_syncs_both_kinds(self, store):
        backend = FakeBackend(
            "backend4",
            items=[
                Resource(id="res8", display_name="Beamer"),
                RoomWithMetadata(
                    id="room1", display_name="Board room", metadata={"seats": "12"}
                ),
            ],
        )
        job = SyncJob(store, registry=StaticBackendRegistry([backend]))

        results = await job.run()

        assert set(results) == {ItemKind.RESOURCE, ItemKind.ROOM}
        assert results[ItemKind.RESOURCE].inserted == 2
        assert results[ItemKind.ROOM].metadata_inserted == 1
        assert len(store.rows(ItemKind.RESOURCE)) == 2
        assert len(store.rows(ItemKind.ROOM)) == 2

    async def test_run_continues_after_kind_failure(self, store):
        job = SyncJob(store, registry=StaticBackendRegistry([]))
        room_result = SyncResult(kind=ItemKind.ROOM)

        async def reconcile(kind):
            if kind is ItemKind.RESOURCE:
                raise RuntimeError("connection lost")
            return room_result

        job.reconciler.reconcile = AsyncMock(side_effect=reconcile)

        with pytest.raises(RuntimeError, match="connection lost"):
            await job.run()

        assert job.reconciler.reconcile.await_count == 2


@pytest.mark.asyncio
class TestSyncJobLoop:
    """Tests for the periodic loop."""

    async def test_stop(self, store):
        job = SyncJob(store, registry=StaticBackendRegistry([]))
        job.running = True

        await job.stop()

        assert job.running is False

    async def test_start_runs_until_stopped(self, store):
        job = SyncJob(
            store,
            registry=StaticBackendRegistry([]),
            config=SyncJobConfig(sync_interval=3600),
        )
        runs = 0

        async def run():
            nonlocal runs
            runs += 1
            await job.stop()
            return {}

        job.run = run

        await job.start()

        assert runs == 1
        assert job.running is False

    async def test_start_retries_after_error(self, store):
        job = SyncJob(
            store,
            registry=StaticBackendRegistry([]),
            config=SyncJobConfig(sync_interval=3600, error_retry_delay=0),
        )
        runs = 0

        async def run():
            nonlocal runs
            runs += 1
            if runs == 1:
                raise RuntimeError("database unavailable")
            await job.stop()
            return {}

        job.run = run

        await job.start()

        assert runs == 2

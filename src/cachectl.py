#!/usr/bin/env python3
"""
CLI tool for the calendar resource and room cache.
Runs one-off syncs and inspects what is cached.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from config import get_config
from main import configure_logging, configure_registry, create_database
from migrate import get_pending_migrations, run_migrations
from plugins.base import BackendNotFound, ItemKind
from plugins.registry import BackendRegistry, get_registry
from reconciler import CacheReconciler, SyncResult

KIND_CHOICE = click.Choice([kind.value for kind in ItemKind])


@asynccontextmanager
async def open_database():
    """Connect to the configured database for the duration of a command."""
    db = create_database(get_config())
    await db.connect()
    try:
        yield db
    finally:
        await db.close()


def build_registry() -> BackendRegistry:
    """Registry with every configured backend registered."""
    registry = get_registry()
    configure_registry(get_config(), registry)
    return registry


def _echo_structured(data: Any, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, indent=2))


def _result_rows(results: List[SyncResult]) -> List[List[Any]]:
    return [
        [
            r.kind.value,
            r.inserted,
            r.updated,
            r.deleted,
            r.unchanged,
            r.skipped,
            ", ".join(r.failed_backends) or "-",
            ", ".join(r.orphaned_backends) or "-",
            f"{r.duration_seconds:.2f}s",
        ]
        for r in results
    ]


@click.group()
@click.option("--log-level", default="WARNING", help="Logging level")
def cli(log_level):
    """Calendar cache CLI - sync and inspect cached resources and rooms"""
    configure_logging(log_level)


@cli.command()
@click.option("--kind", "-k", type=KIND_CHOICE, help="Only sync this kind")
@click.option("--backend", "-b", help="Only sync this backend (requires --kind)")
def sync(kind, backend):
    """Run a reconciliation pass now"""
    if backend and not kind:
        raise click.UsageError("--backend requires --kind")

    async def _run() -> List[SyncResult]:
        registry = build_registry()
        sync_config = get_config().sync
        try:
            async with open_database() as db:
                reconciler = CacheReconciler(
                    db=db,
                    registry=registry,
                    max_concurrent_backends=sync_config.max_concurrent_backends,
                    purge_orphaned_backends=sync_config.purge_orphaned_backends,
                )
                if backend:
                    return [
                        await reconciler.reconcile_backend(ItemKind(kind), backend)
                    ]
                kinds = [ItemKind(kind)] if kind else list(ItemKind)
                return [await reconciler.reconcile(k) for k in kinds]
        finally:
            await registry.close_all()

    try:
        results = asyncio.run(_run())
    except BackendNotFound as e:
        raise click.ClickException(str(e))

    headers = [
        "Kind",
        "Inserted",
        "Updated",
        "Deleted",
        "Unchanged",
        "Skipped",
        "Unavailable",
        "Orphaned",
        "Time",
    ]
    click.echo(tabulate(_result_rows(results), headers=headers, tablefmt="grid"))


@cli.command()
@click.option("--status", is_flag=True, help="Only list pending migrations")
def migrate(status):
    """Apply pending cache schema migrations"""

    async def _run():
        async with open_database() as db:
            if status:
                return await get_pending_migrations(db.pool)
            return await run_migrations(db.pool)

    result = asyncio.run(_run())

    if status:
        if not result:
            click.echo("Cache schema is up to date")
        for version, filename, _ in result:
            click.echo(f"pending: {version} ({filename})")
    else:
        click.echo(f"Applied {result} migration(s)")


@cli.command(name="list")
@click.argument("kind", type=KIND_CHOICE)
@click.option("--backend", "-b", help="Only show items of this backend")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def list_items(kind, backend, output):
    """List cached resources or rooms"""

    async def _run():
        async with open_database() as db:
            if backend:
                return await db.find_all_for_backend(ItemKind(kind), backend)
            return await db.find_all_for_kind(ItemKind(kind))

    items = asyncio.run(_run())

    if output != "table":
        _echo_structured([asdict(item) for item in items], output)
        return

    rows = [
        [
            item.id,
            item.backend_id,
            item.external_id,
            item.display_name,
            item.email,
            ", ".join(item.group_restrictions) or "-",
        ]
        for item in items
    ]
    headers = ["ID", "Backend", "External ID", "Name", "Email", "Groups"]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("item_id", type=int)
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def metadata(kind, item_id, output):
    """Show the cached metadata of an item"""

    async def _run() -> Optional[Dict[str, Any]]:
        async with open_database() as db:
            item = await db.get_item(ItemKind(kind), item_id)
            if item is None:
                return None
            return {
                "item": asdict(item),
                "metadata": await db.get_metadata(ItemKind(kind), item_id),
            }

    result = asyncio.run(_run())

    if result is None:
        raise click.ClickException(f"No cached {kind} with ID {item_id}")

    if output != "table":
        _echo_structured(result, output)
        return

    item = result["item"]
    click.echo(f"{item['display_name']} ({item['backend_id']}/{item['external_id']})")
    if not result["metadata"]:
        click.echo("No metadata")
        return
    rows = sorted(result["metadata"].items())
    click.echo(tabulate(rows, headers=["Key", "Value"], tablefmt="grid"))


@cli.command()
def backends():
    """List registered backends"""
    registry = build_registry()

    rows = []
    for kind in ItemKind:
        for backend_id in registry.list_backends(kind):
            info = registry.get_backend_info(kind, backend_id) or {}
            rows.append([kind.value, backend_id, info.get("version", "-")])

    if not rows:
        click.echo("No backends registered")
        return
    click.echo(tabulate(rows, headers=["Kind", "Backend", "Version"], tablefmt="grid"))


if __name__ == "__main__":
    cli()

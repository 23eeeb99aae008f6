"""Database Schema Operator CLI (schemactl).

Operator and developer tool for working with DatabaseSchema manifests.

Usage:
    schemactl run ./manifests           # Run the operator loop locally
    schemactl reconcile schema.yaml     # Reconcile once, until settled
    schemactl hash schema.yaml          # Print the desired-state hash
    schemactl render schema.yaml        # Print the rendered engine config
    schemactl status schema.yaml        # Print published status
"""

from __future__ import annotations

import asyncio
import json
import os
import subprocess
import sys
from pathlib import Path

import click

from .config import (
    DEFAULT_ENGINE_BINARY,
    DEFAULT_ENV_NAME,
    ConfigurationError,
    parse_dev_db_urls,
)
from .data import DataExtractor
from .dependency import WatchIndex
from .devdb import ConfiguredDevDB
from .engine import atlas_engine_factory
from .events import EventRecorder
from .models import SchemaResource
from .reconciler import Reconciler, ReconcileResult
from .spec_loader import Manifests, SpecLoadError, load_manifest_file
from .store import InMemoryObjectStore, InMemoryResourceStore

# Passes run by `reconcile` before giving up on an immediately requeued resource
DEFAULT_MAX_PASSES = 5


def run_command(cmd: list[str], *, env: dict[str, str] | None = None) -> None:
    """Run a command in the foreground.

    Raises:
        click.ClickException: If the command fails.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        result = subprocess.run(cmd, env=full_env, check=False)
    except FileNotFoundError as e:
        raise click.ClickException(f"Command not found: {cmd[0]}") from e
    if result.returncode != 0:
        raise click.ClickException(f"Command failed with exit code {result.returncode}")


def load_manifest(path: str) -> tuple[Manifests, InMemoryObjectStore]:
    """Load a manifest file and the objects it defines."""
    try:
        manifests = load_manifest_file(Path(path))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    objects = InMemoryObjectStore()
    for key, data in manifests.secrets.items():
        objects.set_secret(key.namespace, key.name, data)
    for key, data in manifests.config_maps.items():
        objects.set_config_map(key.namespace, key.name, data)
    return manifests, objects


def select_resources(manifests: Manifests, name: str | None) -> list[SchemaResource]:
    resources = [r for r in manifests.resources if name is None or r.metadata.name == name]
    if not resources:
        raise click.ClickException(
            f"No DatabaseSchema named '{name}'" if name else "No DatabaseSchema found"
        )
    return resources


def dev_db_option(value: str) -> dict[str, str]:
    try:
        return parse_dev_db_urls(value)
    except ConfigurationError as e:
        raise click.BadParameter(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="schemactl")
def cli() -> None:
    """Database Schema Operator CLI (schemactl).

    \b
    Quick Start:
        schemactl render schema.yaml      # Inspect what the engine will see
        schemactl reconcile schema.yaml   # Apply it once
    """
    pass


@cli.command()
@click.argument("manifests_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--status-dir", type=click.Path(file_okay=False), help="Publish status JSON here")
@click.option("--engine-binary", default=DEFAULT_ENGINE_BINARY, help="Migration engine executable")
@click.option("--dev-db-urls", default="", envvar="DEV_DB_URLS", help="scheme=url pairs")
@click.option("--log-level", default="INFO", help="Log level")
def run(
    manifests_dir: str,
    status_dir: str | None,
    engine_binary: str,
    dev_db_urls: str,
    log_level: str,
) -> None:
    """Run the operator loop locally.

    \b
    Examples:
        schemactl run ./manifests
        schemactl run ./manifests --status-dir ./status --dev-db-urls postgres=postgres://...
    """
    env = {
        "MANIFESTS_DIR": str(Path(manifests_dir).resolve()),
        "ENGINE_BINARY": engine_binary,
        "DEV_DB_URLS": dev_db_urls,
        "LOG_LEVEL": log_level,
    }
    if status_dir:
        env["STATUS_DIR"] = str(Path(status_dir).resolve())

    click.echo(f"Running operator on {manifests_dir}...")
    run_command([sys.executable, "-m", "schema_operator.main"], env=env)


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "-n", help="Only the DatabaseSchema with this name")
@click.option("--engine-binary", default=DEFAULT_ENGINE_BINARY, help="Migration engine executable")
@click.option("--dev-db-urls", default="", envvar="DEV_DB_URLS", help="scheme=url pairs")
@click.option("--max-passes", default=DEFAULT_MAX_PASSES, show_default=True, type=click.IntRange(1))
def reconcile(
    manifest: str,
    name: str | None,
    engine_binary: str,
    dev_db_urls: str,
    max_passes: int,
) -> None:
    """Reconcile the resources of a manifest once.

    Passes are repeated while a resource asks for an immediate requeue.
    Delayed requeues (transient errors, pending approval) are reported
    instead of waited for.
    """
    manifests, objects = load_manifest(manifest)
    resources = select_resources(manifests, name)

    store = InMemoryResourceStore()
    for res in resources:
        store.put(res)
    events = EventRecorder()
    reconciler = Reconciler(
        store=store,
        objects=objects,
        engine_factory=atlas_engine_factory(engine_binary),
        devdb=ConfiguredDevDB(dev_db_option(dev_db_urls)),
        watch_index=WatchIndex(),
        events=events,
    )

    async def reconcile_all() -> list[ReconcileResult]:
        results = []
        for res in resources:
            for _ in range(max_passes):
                result = await reconciler.reconcile(res.key)
                if not result.requeue:
                    break
            results.append(result)
        return results

    failed = False
    for result in asyncio.run(reconcile_all()):
        current = store.get(result.key)
        condition = current.ready_condition() if current else None
        status = "Ready" if current and current.is_ready() else "NotReady"
        click.echo(f"{result.key}: {status} ({condition.reason if condition else '-'})")
        if condition and condition.message:
            click.echo(f"  {condition.message}")
        if result.requeue_after:
            click.echo(f"  retry in {result.requeue_after:g}s")
        if result.error is not None:
            failed = True

    for ev in events.events():
        click.echo(f"  [{ev.type.value}] {ev.resource} {ev.reason}: {ev.message}", err=True)

    if failed:
        sys.exit(1)


@cli.command("hash")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "-n", help="Only the DatabaseSchema with this name")
def hash_cmd(manifest: str, name: str | None) -> None:
    """Print the desired-state hash of each resource."""
    manifests, objects = load_manifest(manifest)
    extractor = DataExtractor(objects)
    for res in select_resources(manifests, name):
        try:
            data = extractor.extract(res)
        except Exception as e:
            raise click.ClickException(f"{res.key}: {e}") from e
        click.echo(f"{res.key}\t{data.hash()}")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "-n", help="Only the DatabaseSchema with this name")
@click.option("--env-name", default=DEFAULT_ENV_NAME, help="Name of the rendered env block")
@click.option("--dev-db-urls", default="", envvar="DEV_DB_URLS", help="scheme=url pairs")
def render(manifest: str, name: str | None, env_name: str, dev_db_urls: str) -> None:
    """Print the engine config rendered for each resource."""
    manifests, objects = load_manifest(manifest)
    extractor = DataExtractor(objects, env_name=env_name)
    devdb = ConfiguredDevDB(dev_db_option(dev_db_urls))

    for res in select_resources(manifests, name):
        try:
            data = extractor.extract(res)
            if not data.dev_url:
                data.dev_url = asyncio.run(devdb.acquire(res, data.url))
            config = data.render()
        except Exception as e:
            raise click.ClickException(f"{res.key}: {e}") from e
        click.secho(f"# {res.key}", fg="cyan")
        click.echo(config)


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--status-dir",
    envvar="STATUS_DIR",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory the operator publishes status to",
)
@click.option("--name", "-n", help="Only the DatabaseSchema with this name")
@click.option("--json", "as_json", is_flag=True, help="Print raw status JSON")
def status(manifest: str, status_dir: str, name: str | None, as_json: bool) -> None:
    """Print the published status of each resource."""
    manifests, _ = load_manifest(manifest)
    store = InMemoryResourceStore(status_dir=Path(status_dir))
    for res in select_resources(manifests, name):
        store.put(res)
        current = store.get(res.key)
        if current is None:
            raise click.ClickException(f"Resource {res.key} vanished from the status store")
        if as_json:
            click.echo(json.dumps({str(res.key): current.status_dict()}, indent=2))
            continue

        condition = current.ready_condition()
        if condition is None:
            click.echo(f"{res.key}: no status published")
            continue
        color = "green" if condition.status else "yellow"
        click.secho(
            f"{res.key}: {'Ready' if condition.status else 'NotReady'} ({condition.reason})",
            fg=color,
        )
        if current.status.plan_link:
            click.echo(f"  plan: {current.status.plan_link}")
        if current.status.last_applied:
            click.echo(f"  last applied: {current.status.last_applied}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

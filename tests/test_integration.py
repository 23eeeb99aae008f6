"""Integration tests for the operator loop.

These tests load real manifest files and drive the manager and the
reconciler against the scripted engine from engine_mock.
"""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any

import pytest
import yaml
from engine_mock import MockOperatorContext, resource_manifest

from schema_operator.config import OperatorConfig
from schema_operator.manager import Manager
from schema_operator.models import ResourceKey

KEY = ResourceKey("default", "users")


def write_manifests(path: Path, *docs: dict[str, Any]) -> None:
    path.write_text(yaml.safe_dump_all(docs))


def secret(name: str, **values: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": "default"},
        "data": {k: base64.b64encode(v.encode()).decode() for k, v in values.items()},
    }


def config_map(name: str, **values: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "default"},
        "data": values,
    }


class TestOperatorIntegration:
    """Integration tests for Manager and Reconciler."""

    @pytest.fixture
    def manifests_dir(self, tmp_path: Path) -> Path:
        path = tmp_path / "manifests"
        path.mkdir()
        return path

    def _manager(self, ctx: MockOperatorContext, manifests_dir: Path) -> Manager:
        config = OperatorConfig(manifests_dir=manifests_dir, max_concurrent_reconciles=2)
        return Manager(config, ctx.reconciler, ctx.store, ctx.objects)

    async def _drain(self, ctx: MockOperatorContext, keys: set[ResourceKey]) -> None:
        for key in sorted(keys):
            await ctx.reconcile_until_settled(key)

    @pytest.mark.asyncio
    async def test_applies_resource_from_manifests(self, manifests_dir: Path) -> None:
        """Test a resource whose target URL and schema come from other objects."""
        manifest = resource_manifest(
            urlFrom={"secretKeyRef": {"name": "db-creds", "key": "url"}},
        )
        manifest["spec"]["schema"] = {"configMapKeyRef": {"name": "users-schema", "key": "schema.sql"}}
        write_manifests(
            manifests_dir / "users.yaml",
            secret("db-creds", url="postgres://app:pass@db:5432/app"),
            config_map("users-schema", **{"schema.sql": "CREATE TABLE users (id int);"}),
            manifest,
        )

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            changed = manager.sync()
            assert changed == {KEY}

            await self._drain(ctx, changed)

            assert ctx.get(KEY).is_ready()
            assert 'url = "postgres://app:pass@db:5432/app"' in ctx.rendered_configs[-1]
            assert 'src = "file://schema.sql"' in ctx.rendered_configs[-1]

    @pytest.mark.asyncio
    async def test_unchanged_manifests_are_not_requeued(self, manifests_dir: Path) -> None:
        """Test that a resync without changes queues nothing."""
        write_manifests(manifests_dir / "users.yaml", resource_manifest())

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            await self._drain(ctx, manager.sync())

            assert manager.sync() == set()
            assert ctx.get(KEY).is_ready()

    @pytest.mark.asyncio
    async def test_secret_change_requeues_dependents(self, manifests_dir: Path) -> None:
        """Test that changing a referenced secret reconciles the resource."""
        manifest = resource_manifest(urlFrom={"secretKeyRef": {"name": "db-creds", "key": "url"}})
        write_manifests(
            manifests_dir / "users.yaml",
            secret("db-creds", url="postgres://db-a/app"),
            manifest,
        )

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            await self._drain(ctx, manager.sync())

            write_manifests(
                manifests_dir / "users.yaml",
                secret("db-creds", url="postgres://db-b/app"),
                manifest,
            )
            changed = manager.sync()
            assert changed == {KEY}

            await self._drain(ctx, changed)
            assert 'url = "postgres://db-b/app"' in ctx.rendered_configs[-1]

    @pytest.mark.asyncio
    async def test_secret_removal_fails_dependents(self, manifests_dir: Path) -> None:
        """Test that a deleted secret is no longer resolved for its dependents."""
        manifest = resource_manifest(urlFrom={"secretKeyRef": {"name": "db-creds", "key": "url"}})
        write_manifests(
            manifests_dir / "users.yaml",
            secret("db-creds", url="postgres://db-a/app"),
            manifest,
        )

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            await self._drain(ctx, manager.sync())
            assert ctx.get(KEY).is_ready()
            configs_before = len(ctx.rendered_configs)

            write_manifests(manifests_dir / "users.yaml", manifest)
            changed = manager.sync()
            assert changed == {KEY}
            assert ctx.objects.secrets() == {}

            result = await ctx.reconciler.reconcile(KEY)

            res = ctx.get(KEY)
            assert not res.is_ready()
            assert result.reason == "ReadSchema"
            assert result.requeue_after > 0
            cond = res.ready_condition()
            assert cond is not None
            assert cond.message == "secrets default/db-creds not found"
            assert len(ctx.rendered_configs) == configs_before

    @pytest.mark.asyncio
    async def test_schema_change_reapplies(self, manifests_dir: Path) -> None:
        """Test that an edited schema goes through drift detection and apply."""
        write_manifests(manifests_dir / "users.yaml", resource_manifest())

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            await self._drain(ctx, manager.sync())
            first_hash = ctx.get(KEY).status.observed_hash

            write_manifests(
                manifests_dir / "users.yaml",
                resource_manifest(sql="CREATE TABLE users (id int, email text);"),
            )
            await self._drain(ctx, manager.sync())

            res = ctx.get(KEY)
            assert res.is_ready()
            assert res.status.observed_hash != first_hash
            real_applies = [c for c in ctx.engine.calls_to("schema_apply") if not c.params.dry_run]
            assert len(real_applies) == 2

    @pytest.mark.asyncio
    async def test_removed_resource(self, manifests_dir: Path) -> None:
        """Test that removed resources leave the store."""
        write_manifests(manifests_dir / "users.yaml", resource_manifest())

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            manager.sync()

            (manifests_dir / "users.yaml").unlink()
            assert manager.sync() == set()
            assert ctx.store.get(KEY) is None

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, manifests_dir: Path) -> None:
        """Test the worker loop end to end."""
        write_manifests(
            manifests_dir / "schemas.yaml",
            resource_manifest("users"),
            resource_manifest("orders", sql="CREATE TABLE orders (id int);"),
        )

        with MockOperatorContext() as ctx:
            manager = self._manager(ctx, manifests_dir)
            task = asyncio.create_task(manager.run())

            orders = ResourceKey("default", "orders")
            for _ in range(200):
                if ctx.store.keys() and all(ctx.get(k).is_ready() for k in (KEY, orders)):
                    break
                await asyncio.sleep(0.01)

            manager.shutdown()
            await asyncio.wait_for(task, timeout=5)

            assert ctx.get(KEY).is_ready()
            assert ctx.get(orders).is_ready()

"""Tests for the dependency watch index."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from schema_operator.dependency import (
    ObjectRef,
    RefKind,
    WatchIndex,
    resource_refs,
    watch_refs,
)
from schema_operator.models import ResourceKey, SchemaResource


def _resource(spec: dict) -> SchemaResource:
    return SchemaResource.model_validate(
        {"metadata": {"name": "users", "namespace": "prod"}, "spec": spec}
    )


class TestObjectRef:
    """Tests for ObjectRef."""

    def test_constructors(self) -> None:
        """Test kind-specific constructors."""
        assert ObjectRef.secret("ns", "a") == ObjectRef(RefKind.SECRET, "ns", "a")
        assert ObjectRef.config_map("ns", "a").kind == RefKind.CONFIG_MAP

    def test_secret_and_config_map_differ(self) -> None:
        """Test that objects of different kinds never collide."""
        assert ObjectRef.secret("ns", "a") != ObjectRef.config_map("ns", "a")

    def test_str(self) -> None:
        """Test string form."""
        assert str(ObjectRef.secret("ns", "a")) == "Secret:ns/a"


class TestWatchIndex:
    """Tests for WatchIndex."""

    def test_register_and_lookup(self) -> None:
        """Test that registered dependents are returned."""
        index = WatchIndex()
        ref = ObjectRef.secret("prod", "creds")
        index.register(ref, ResourceKey("prod", "users"))
        index.register(ref, ResourceKey("prod", "orders"))

        assert index.lookup_dependents(ref) == {
            ResourceKey("prod", "users"),
            ResourceKey("prod", "orders"),
        }

    def test_register_is_idempotent(self) -> None:
        """Test that repeated registration is a no-op."""
        index = WatchIndex()
        ref = ObjectRef.secret("prod", "creds")

        assert index.register(ref, ResourceKey("prod", "users")) is True
        assert index.register(ref, ResourceKey("prod", "users")) is False
        assert len(index.lookup_dependents(ref)) == 1

    def test_unknown_ref(self) -> None:
        """Test lookup of an object nobody references."""
        assert WatchIndex().lookup_dependents(ObjectRef.secret("a", "b")) == frozenset()

    def test_lookup_returns_snapshot(self) -> None:
        """Test that later registrations do not change an earlier lookup."""
        index = WatchIndex()
        ref = ObjectRef.config_map("prod", "schema")
        index.register(ref, ResourceKey("prod", "a"))
        snapshot = index.lookup_dependents(ref)
        index.register(ref, ResourceKey("prod", "b"))

        assert snapshot == {ResourceKey("prod", "a")}

    def test_invalid_shard_count(self) -> None:
        """Test that at least one shard is required."""
        with pytest.raises(ValueError):
            WatchIndex(shard_count=0)

    def test_concurrent_registration(self) -> None:
        """Test that concurrent registration loses no entries."""
        index = WatchIndex(shard_count=4)
        refs = [ObjectRef.secret("ns", f"s{i}") for i in range(20)]
        keys = [ResourceKey("ns", f"r{i}") for i in range(50)]

        def register_all(key: ResourceKey) -> None:
            for ref in refs:
                index.register(ref, key)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(register_all, keys))

        assert len(index) == len(refs)
        for ref in refs:
            assert index.lookup_dependents(ref) == frozenset(keys)


class TestResourceRefs:
    """Tests for reference discovery."""

    def test_no_refs(self) -> None:
        """Test a resource without references."""
        res = _resource({"url": "postgres://db", "schema": {"sql": "x"}})
        assert resource_refs(res) == []

    def test_all_refs(self) -> None:
        """Test that every referencing field is discovered."""
        res = _resource(
            {
                "urlFrom": {"secretKeyRef": {"name": "url", "key": "u"}},
                "credentials": {"passwordFrom": {"secretKeyRef": {"name": "pw", "key": "p"}}},
                "devURLFrom": {"secretKeyRef": {"name": "dev", "key": "d"}},
                "cloud": {"tokenFrom": {"secretKeyRef": {"name": "token", "key": "t"}}},
                "schema": {"configMapKeyRef": {"name": "schema", "key": "schema.sql"}},
            }
        )

        assert resource_refs(res) == [
            ObjectRef.config_map("prod", "schema"),
            ObjectRef.secret("prod", "token"),
            ObjectRef.secret("prod", "url"),
            ObjectRef.secret("prod", "pw"),
            ObjectRef.secret("prod", "dev"),
        ]

    def test_shared_secret_listed_once(self) -> None:
        """Test that one secret referenced twice is listed once."""
        res = _resource(
            {
                "urlFrom": {"secretKeyRef": {"name": "db", "key": "url"}},
                "devURLFrom": {"secretKeyRef": {"name": "db", "key": "dev"}},
            }
        )
        assert resource_refs(res) == [ObjectRef.secret("prod", "db")]

    def test_watch_refs(self) -> None:
        """Test registering a resource's references."""
        index = WatchIndex()
        res = _resource({"urlFrom": {"secretKeyRef": {"name": "db", "key": "url"}}})

        assert watch_refs(index, res) == 1
        assert watch_refs(index, res) == 0
        assert index.lookup_dependents(ObjectRef.secret("prod", "db")) == {res.key}

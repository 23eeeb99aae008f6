"""Dependency tracking between resources and the objects they reference.

A DatabaseSchema can read its target URL, dev URL, password or registry token
from secrets, and its desired schema from a config entry. When one of those
objects changes, every resource that referenced it must be reconciled again.

DESIGN:
- Resources register their references at the end of every reconciliation
- The trigger source asks the index which resources depend on a changed object
- Entries are never pruned: a stale entry causes one harmless extra
  reconciliation, a missing entry would cause a missed one
- Shards keep unrelated keys from contending on a single lock

EXAMPLE:
```python
index = WatchIndex()
index.register(ObjectRef.secret("prod", "db-creds"), ResourceKey("prod", "users"))
index.lookup_dependents(ObjectRef.secret("prod", "db-creds"))
# frozenset({ResourceKey(namespace='prod', name='users')})
```
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from .models import ResourceKey, SchemaResource

logger = logging.getLogger(__name__)

DEFAULT_SHARD_COUNT = 16


class RefKind(str, Enum):
    """Kinds of objects a resource can reference."""

    SECRET = "Secret"
    CONFIG_MAP = "ConfigMap"


class ObjectRef(NamedTuple):
    """Identity of a referenced object."""

    kind: RefKind
    namespace: str
    name: str

    @classmethod
    def secret(cls, namespace: str, name: str) -> ObjectRef:
        return cls(RefKind.SECRET, namespace, name)

    @classmethod
    def config_map(cls, namespace: str, name: str) -> ObjectRef:
        return cls(RefKind.CONFIG_MAP, namespace, name)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.namespace}/{self.name}"


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[ObjectRef, set[ResourceKey]] = field(default_factory=dict)


class WatchIndex:
    """Concurrency-safe mapping of referenced objects to dependent resources.

    Registration is idempotent and safe from any thread or task. Lookups
    return an immutable snapshot so callers can iterate without holding a
    lock.
    """

    def __init__(self, shard_count: int = DEFAULT_SHARD_COUNT) -> None:
        """Initialize the index.

        Args:
            shard_count: Number of independently locked shards.

        Raises:
            ValueError: If shard_count is less than 1.
        """
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._shards = [_Shard() for _ in range(shard_count)]

    def _shard(self, ref: ObjectRef) -> _Shard:
        return self._shards[hash(ref) % len(self._shards)]

    def register(self, ref: ObjectRef, dependent: ResourceKey) -> bool:
        """Record that ``dependent`` must be reconciled when ``ref`` changes.

        Args:
            ref: Referenced object.
            dependent: Resource that references it.

        Returns:
            True if the entry is new, False if it was already registered.
        """
        shard = self._shard(ref)
        with shard.lock:
            dependents = shard.entries.setdefault(ref, set())
            if dependent in dependents:
                return False
            dependents.add(dependent)

        logger.debug(
            "Registered watch dependency",
            extra={"ref": str(ref), "dependent": str(dependent)},
        )
        return True

    def lookup_dependents(self, ref: ObjectRef) -> frozenset[ResourceKey]:
        """Return the resources that depend on ``ref``."""
        shard = self._shard(ref)
        with shard.lock:
            return frozenset(shard.entries.get(ref, ()))

    def __len__(self) -> int:
        """Number of distinct referenced objects."""
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total


def resource_refs(res: SchemaResource) -> list[ObjectRef]:
    """List the secrets and config entries a resource references.

    Args:
        res: Resource to inspect.

    Returns:
        Referenced objects in a stable order, without duplicates.
    """
    spec = res.spec
    ns = res.namespace
    refs: list[ObjectRef] = []

    if c := spec.schema_.config_map_key_ref:
        refs.append(ObjectRef.config_map(ns, c.name))

    for source in (
        spec.cloud.token_from,
        spec.url_from,
        spec.credentials.password_from,
        spec.dev_url_from,
    ):
        if s := source.secret_key_ref:
            ref = ObjectRef.secret(ns, s.name)
            if ref not in refs:
                refs.append(ref)

    return refs


def watch_refs(index: WatchIndex, res: SchemaResource) -> int:
    """Register every reference of ``res`` in the index.

    Returns:
        Number of newly registered entries.
    """
    return sum(index.register(ref, res.key) for ref in resource_refs(res))

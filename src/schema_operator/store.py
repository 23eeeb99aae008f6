"""Stores for resources and the secrets/config entries they reference.

The reconciler only reads resources and writes their status. Manifests are
the source of truth for specs; status is owned by the operator and
optionally published as JSON files so that other tools can observe it.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import (
    ConfigMapKeyRef,
    ResourceKey,
    SchemaResource,
    SchemaResourceStatus,
    SecretKeyRef,
)

logger = logging.getLogger(__name__)


class ReferenceNotFoundError(Exception):
    """Raised when a referenced secret, config entry or key does not exist."""

    pass


class StoreError(Exception):
    """Raised when status cannot be persisted."""

    pass


# =============================================================================
# Secrets and config entries
# =============================================================================


class ObjectStore(Protocol):
    """Read access to secrets and config entries."""

    def get_secret(self, namespace: str, ref: SecretKeyRef) -> str: ...

    def get_config_map(self, namespace: str, name: str) -> dict[str, str]: ...

    def resolve(self, namespace: str, ref: SecretKeyRef | ConfigMapKeyRef) -> str: ...


class InMemoryObjectStore:
    """Secrets and config entries held in memory, keyed by namespace and name."""

    def __init__(self) -> None:
        self._secrets: dict[ResourceKey, dict[str, str]] = {}
        self._config_maps: dict[ResourceKey, dict[str, str]] = {}

    def set_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self._secrets[ResourceKey(namespace, name)] = dict(data)

    def set_config_map(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self._config_maps[ResourceKey(namespace, name)] = dict(data)

    def delete_secret(self, namespace: str, name: str) -> None:
        self._secrets.pop(ResourceKey(namespace, name), None)

    def delete_config_map(self, namespace: str, name: str) -> None:
        self._config_maps.pop(ResourceKey(namespace, name), None)

    def secrets(self) -> dict[ResourceKey, dict[str, str]]:
        return {k: dict(v) for k, v in self._secrets.items()}

    def config_maps(self) -> dict[ResourceKey, dict[str, str]]:
        return {k: dict(v) for k, v in self._config_maps.items()}

    def get_secret(self, namespace: str, ref: SecretKeyRef) -> str:
        data = self._secrets.get(ResourceKey(namespace, ref.name))
        if data is None:
            raise ReferenceNotFoundError(f"secrets {namespace}/{ref.name} not found")
        if ref.key not in data:
            raise ReferenceNotFoundError(
                f'secrets {namespace}/{ref.name} does not contain key "{ref.key}"'
            )
        return data[ref.key]

    def get_config_map(self, namespace: str, name: str) -> dict[str, str]:
        data = self._config_maps.get(ResourceKey(namespace, name))
        if data is None:
            raise ReferenceNotFoundError(f"configmaps {namespace}/{name} not found")
        return dict(data)

    def resolve(self, namespace: str, ref: SecretKeyRef | ConfigMapKeyRef) -> str:
        """Resolve a single referenced value."""
        if isinstance(ref, SecretKeyRef):
            return self.get_secret(namespace, ref)
        data = self.get_config_map(namespace, ref.name)
        if ref.key not in data:
            raise ReferenceNotFoundError(
                f'configmaps {namespace}/{ref.name} does not contain key "{ref.key}"'
            )
        return data[ref.key]


# =============================================================================
# Resources
# =============================================================================


class ResourceStore(Protocol):
    """Read resources and write their status."""

    def get(self, key: ResourceKey) -> SchemaResource | None: ...

    def update_status(self, res: SchemaResource) -> None: ...


class InMemoryResourceStore:
    """Resources held in memory.

    ``get`` returns a copy, so a reconciliation pass only changes the stored
    resource through ``update_status``. When a status directory is given,
    every status update is also written to ``<ns>.<name>.status.json`` and
    previously published status is picked up when a resource is first added.
    """

    def __init__(self, status_dir: Path | None = None) -> None:
        self._resources: dict[ResourceKey, SchemaResource] = {}
        self._status_dir = status_dir

    def keys(self) -> list[ResourceKey]:
        return list(self._resources)

    def get(self, key: ResourceKey) -> SchemaResource | None:
        res = self._resources.get(key)
        return res.model_copy(deep=True) if res is not None else None

    def put(self, res: SchemaResource) -> None:
        """Add or replace a resource spec, keeping the status the operator owns."""
        existing = self._resources.get(res.key)
        res = res.model_copy(deep=True)
        if existing is not None:
            res.status = existing.status.model_copy(deep=True)
        elif (status := self._load_status(res.key)) is not None:
            res.status = status
        self._resources[res.key] = res

    def delete(self, key: ResourceKey) -> None:
        self._resources.pop(key, None)

    def update_status(self, res: SchemaResource) -> None:
        stored = self._resources.get(res.key)
        if stored is None:
            logger.debug("Resource deleted before status update", extra={"resource": str(res.key)})
            return
        stored.status = res.status.model_copy(deep=True)
        if self._status_dir is not None:
            self._write_status(stored)

    def _status_path(self, key: ResourceKey) -> Path:
        if self._status_dir is None:
            raise StoreError("No status directory configured")
        return self._status_dir / f"{key.namespace}.{key.name}.status.json"

    def _load_status(self, key: ResourceKey) -> SchemaResourceStatus | None:
        if self._status_dir is None:
            return None
        path = self._status_path(key)
        if not path.exists():
            return None
        try:
            return SchemaResourceStatus.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(
                "Ignoring unreadable status file",
                extra={"path": str(path), "error": str(e)},
            )
            return None

    def _write_status(self, res: SchemaResource) -> None:
        path = self._status_path(res.key)
        payload = json.dumps(res.status_dict(), indent=2, sort_keys=True)
        tmp: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".status-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, path)
        except OSError as e:
            if tmp is not None:
                Path(tmp).unlink(missing_ok=True)
            raise StoreError(f"Failed to write status file {path}: {e}") from e

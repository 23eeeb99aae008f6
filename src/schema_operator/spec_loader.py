"""Manifest loading with validation.

Manifests are multi-document YAML files holding DatabaseSchema resources and
the Secrets and ConfigMaps they reference. Documents of other kinds are
skipped so that manifests can be shared with other tools.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import KIND, ResourceKey, SchemaResource

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


@dataclass
class Manifests:
    """Objects loaded from one or more manifest files."""

    resources: list[SchemaResource] = field(default_factory=list)
    secrets: dict[ResourceKey, dict[str, str]] = field(default_factory=dict)
    config_maps: dict[ResourceKey, dict[str, str]] = field(default_factory=dict)

    def merge(self, other: Manifests) -> None:
        """Add the objects of ``other``; duplicate resources are rejected."""
        known = {res.key for res in self.resources}
        for res in other.resources:
            if res.key in known:
                raise SpecLoadError(f"Duplicate {KIND} {res.key}")
            known.add(res.key)
            self.resources.append(res)
        self.secrets.update(other.secrets)
        self.config_maps.update(other.config_maps)


def _object_key(doc: dict[str, Any], path: Path) -> ResourceKey:
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise SpecLoadError(f"{doc.get('kind')} without metadata.name in {path}")
    return ResourceKey(str(metadata.get("namespace") or "default"), str(metadata["name"]))


def _string_map(value: Any, what: str, path: Path) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SpecLoadError(f"{what} must be a mapping in {path}")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _secret_data(doc: dict[str, Any], path: Path) -> dict[str, str]:
    """Decode secret values; ``stringData`` overrides base64 ``data``."""
    data: dict[str, str] = {}
    for k, v in _string_map(doc.get("data"), "Secret data", path).items():
        try:
            data[k] = base64.b64decode(v, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SpecLoadError(f"Secret key '{k}' is not valid base64 in {path}") from e
    data.update(_string_map(doc.get("stringData"), "Secret stringData", path))
    return data


def _format_validation_error(e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def parse_manifests(content: str, path: Path) -> Manifests:
    """Parse the documents of one manifest file.

    Args:
        content: YAML text, possibly holding several documents.
        path: Origin of the content, used in error messages.

    Returns:
        The resources, secrets and config entries found.

    Raises:
        SpecLoadError: If the YAML is invalid or a document fails validation.
    """
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    manifests = Manifests()
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise SpecLoadError(f"Manifest documents must be YAML mappings: {path}")

        kind = doc.get("kind")
        if kind == KIND:
            try:
                res = SchemaResource.model_validate(doc)
            except ValidationError as e:
                raise SpecLoadError(
                    f"Validation failed for {path}:\n{_format_validation_error(e)}"
                ) from e
            manifests.merge(Manifests(resources=[res]))
        elif kind == SECRET_KIND:
            manifests.secrets[_object_key(doc, path)] = _secret_data(doc, path)
        elif kind == CONFIG_MAP_KIND:
            manifests.config_maps[_object_key(doc, path)] = _string_map(
                doc.get("data"), "ConfigMap data", path
            )
        else:
            logger.debug("Skipping manifest document", extra={"kind": kind, "path": str(path)})

    return manifests


def load_manifest_file(path: Path) -> Manifests:
    """Load and validate one manifest file.

    Raises:
        SpecLoadError: If the file cannot be read, is too large, or is invalid.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    return parse_manifests(content, path)


def load_manifests(manifests_dir: Path) -> Manifests:
    """Load every manifest file of a directory, in name order.

    Args:
        manifests_dir: Directory containing ``*.yaml``/``*.yml`` files.

    Returns:
        All objects found.

    Raises:
        SpecLoadError: If the directory is missing or any file is invalid.
    """
    if not manifests_dir.is_dir():
        raise SpecLoadError(f"Manifests directory not found: {manifests_dir}")

    manifests = Manifests()
    files = sorted(p for p in manifests_dir.iterdir() if p.suffix in MANIFEST_SUFFIXES)
    for path in files:
        manifests.merge(load_manifest_file(path))

    logger.info(
        "Loaded manifests from %s",
        manifests_dir,
        extra={
            "files": len(files),
            "resources": len(manifests.resources),
            "secrets": len(manifests.secrets),
            "config_maps": len(manifests.config_maps),
        },
    )
    return manifests

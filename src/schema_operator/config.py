"""Configuration management with validation.

Operator settings are read from the environment once at startup and
validated eagerly so that a misconfigured operator never starts reconciling.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 10
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES = 64

# Delay before a transient failure is retried
DEFAULT_TRANSIENT_REQUEUE_SECONDS = 5

# Fixed poll delay while a schema plan waits for a human decision
APPROVAL_POLL_SECONDS = 5

# Name of the environment block rendered into the engine config file
DEFAULT_ENV_NAME = "operator"

DEFAULT_ENGINE_BINARY = "atlas"

# Applied/pending SQL kept in status messages
SQL_LIMIT_SIZE = 1024

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_SCHEMA_SIZE_BYTES = 4 * 1024 * 1024  # 4MB max inline/config-entry schema

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_dev_db_urls(value: str) -> dict[str, str]:
    """Parse a ``scheme=url`` comma-separated mapping.

    Args:
        value: Raw value, e.g. ``"postgres=postgres://dev:5432/dev,mysql=mysql://dev/dev"``.

    Returns:
        Mapping of target URL scheme to dev database URL.

    Raises:
        ConfigurationError: If an entry is not in ``scheme=url`` form.
    """
    urls: dict[str, str] = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        scheme, sep, url = item.partition("=")
        if not sep or not scheme.strip() or not url.strip():
            raise ConfigurationError(f"DEV_DB_URLS entries must be scheme=url: {item}")
        urls[scheme.strip().lower()] = url.strip()
    return urls


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    status_dir: Path | None = None

    # Migration engine
    engine_binary: str = DEFAULT_ENGINE_BINARY
    env_name: str = DEFAULT_ENV_NAME

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    transient_requeue_seconds: int = DEFAULT_TRANSIENT_REQUEUE_SECONDS

    # Concurrency
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Dev databases keyed by target URL scheme
    dev_db_urls: dict[str, str] = field(default_factory=dict)

    # Logging
    enable_audit_logging: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.engine_binary:
            errors.append("ENGINE_BINARY is required")

        if not self.env_name:
            errors.append("env name is required")

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if self.transient_requeue_seconds < 1:
            errors.append("TRANSIENT_REQUEUE_SECONDS must be at least 1")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        # Path validation
        if not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if self.status_dir is not None and self.status_dir.exists() and not self.status_dir.is_dir():
            errors.append(f"STATUS_DIR is not a directory: {self.status_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            MANIFESTS_DIR: Directory of resource, secret and config manifests (default: /manifests)
            STATUS_DIR: If set, resource status is published there as JSON files
            ENGINE_BINARY: Migration engine executable (default: atlas)
            RESYNC_INTERVAL: Seconds between manifest resyncs (default: 300)
            TRANSIENT_REQUEUE_SECONDS: Retry delay for transient failures (default: 5)
            MAX_CONCURRENT_RECONCILES: Parallel reconciliations (default: 4)
            DEV_DB_URLS: Comma-separated scheme=url pairs for dev databases
            ENABLE_AUDIT_LOGGING: Enable JSON logs (default: true)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        status_dir = os.environ.get("STATUS_DIR")

        return cls(
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            status_dir=Path(status_dir) if status_dir else None,
            engine_binary=os.environ.get("ENGINE_BINARY", DEFAULT_ENGINE_BINARY),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            transient_requeue_seconds=get_int(
                "TRANSIENT_REQUEUE_SECONDS", DEFAULT_TRANSIENT_REQUEUE_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            dev_db_urls=parse_dev_db_urls(os.environ.get("DEV_DB_URLS", "")),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

"""Dev database provisioning.

The engine normalizes the desired schema against an empty "dev" database of
the same engine as the target. Resources may name one explicitly; otherwise
the operator provides one here.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import urlsplit

from .models import SchemaResource

logger = logging.getLogger(__name__)

SQLITE_DEV_URL = "sqlite://dev?mode=memory"

# URL scheme aliases that share a dev database
SCHEME_ALIASES: dict[str, str] = {
    "postgresql": "postgres",
    "maria": "mariadb",
    "sqlite3": "sqlite",
    "libsql": "sqlite",
}


class DevDBError(Exception):
    """Raised when no dev database can be provided for a target."""

    pass


class DevDBProvisioner(Protocol):
    """Provide dev databases and release them once a resource is Ready."""

    async def acquire(self, res: SchemaResource, target_url: str) -> str: ...

    async def cleanup(self, res: SchemaResource) -> None: ...


def target_scheme(url: str) -> str:
    """Normalized engine scheme of a database URL."""
    scheme = urlsplit(url).scheme.lower().split("+", 1)[0]
    return SCHEME_ALIASES.get(scheme, scheme)


class ConfiguredDevDB:
    """Dev databases configured per target engine.

    SQLite targets get an in-memory dev database when none is configured.
    """

    def __init__(self, urls: dict[str, str] | None = None) -> None:
        """Initialize the provisioner.

        Args:
            urls: Mapping of target URL scheme to dev database URL.
        """
        self._urls = {target_scheme(f"{k}://"): v for k, v in (urls or {}).items()}
        self._acquired: set[str] = set()

    async def acquire(self, res: SchemaResource, target_url: str) -> str:
        """Return the dev database URL for the target's engine.

        Raises:
            DevDBError: If no dev database is configured for the engine.
        """
        scheme = target_scheme(target_url)
        if not scheme:
            raise DevDBError("cannot determine the database engine of the target url")

        url = self._urls.get(scheme)
        if url is None and scheme == "sqlite":
            url = SQLITE_DEV_URL
        if url is None:
            raise DevDBError(f'no dev database configured for scheme "{scheme}"')

        self._acquired.add(str(res.key))
        logger.debug(
            "Acquired dev database",
            extra={"resource": str(res.key), "scheme": scheme},
        )
        return url

    async def cleanup(self, res: SchemaResource) -> None:
        """Release the dev database of a Ready resource.

        Configured dev databases are shared, so nothing is torn down.
        """
        if str(res.key) in self._acquired:
            self._acquired.discard(str(res.key))
            logger.debug("Released dev database", extra={"resource": str(res.key)})

"""Tests for dev database provisioning."""

from __future__ import annotations

import pytest
from engine_mock import resource_manifest

from schema_operator.devdb import SQLITE_DEV_URL, ConfiguredDevDB, DevDBError, target_scheme
from schema_operator.models import SchemaResource


@pytest.fixture
def res() -> SchemaResource:
    return SchemaResource.model_validate(resource_manifest())


class TestTargetScheme:
    """Tests for target_scheme."""

    @pytest.mark.parametrize(
        ("url", "scheme"),
        [
            ("postgres://db/app", "postgres"),
            ("postgresql://db/app", "postgres"),
            ("MySQL://db/app", "mysql"),
            ("maria://db/app", "mariadb"),
            ("mysql+unix:///var/run/mysqld.sock", "mysql"),
            ("sqlite3://file.db", "sqlite"),
            ("not a url", ""),
        ],
    )
    def test_scheme(self, url: str, scheme: str) -> None:
        """Test scheme normalization."""
        assert target_scheme(url) == scheme


class TestConfiguredDevDB:
    """Tests for ConfiguredDevDB."""

    @pytest.mark.asyncio
    async def test_configured_scheme(self, res: SchemaResource) -> None:
        """Test that aliases share a configured dev database."""
        devdb = ConfiguredDevDB({"postgresql": "postgres://dev/dev"})
        assert await devdb.acquire(res, "postgres://db/app") == "postgres://dev/dev"

    @pytest.mark.asyncio
    async def test_sqlite_fallback(self, res: SchemaResource) -> None:
        """Test the in-memory dev database for SQLite targets."""
        assert await ConfiguredDevDB().acquire(res, "sqlite://app.db") == SQLITE_DEV_URL

    @pytest.mark.asyncio
    async def test_unconfigured_scheme(self, res: SchemaResource) -> None:
        """Test that unknown engines fail."""
        with pytest.raises(DevDBError, match='no dev database configured for scheme "mysql"'):
            await ConfiguredDevDB().acquire(res, "mysql://db/app")

    @pytest.mark.asyncio
    async def test_unknown_engine(self, res: SchemaResource) -> None:
        """Test that a URL without a scheme fails."""
        with pytest.raises(DevDBError, match="cannot determine the database engine"):
            await ConfiguredDevDB().acquire(res, "")

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, res: SchemaResource) -> None:
        """Test that cleanup may be called for every Ready pass."""
        devdb = ConfiguredDevDB()
        await devdb.acquire(res, "sqlite://app.db")

        await devdb.cleanup(res)
        await devdb.cleanup(res)

"""Tests for the schemactl CLI."""

from __future__ import annotations

import hashlib
import json
import stat
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from engine_mock import resource_manifest

from schema_operator.cli import cli
from schema_operator.models import SchemaResource
from schema_operator.store import InMemoryResourceStore

SQL = "CREATE TABLE users (id int);"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "users.yaml"
    path.write_text(yaml.safe_dump(resource_manifest(sql=SQL, url="sqlite://app.db")))
    return path


class TestHashCommand:
    """Tests for `schemactl hash`."""

    def test_prints_hash(self, runner: CliRunner, manifest: Path) -> None:
        """Test the printed hash of an inline schema."""
        result = runner.invoke(cli, ["hash", str(manifest)])

        assert result.exit_code == 0, result.output
        assert result.output == f"default/users\t{hashlib.sha256(SQL.encode()).hexdigest()}\n"

    def test_unknown_name(self, runner: CliRunner, manifest: Path) -> None:
        """Test selecting a resource that does not exist."""
        result = runner.invoke(cli, ["hash", str(manifest), "--name", "orders"])

        assert result.exit_code != 0
        assert "No DatabaseSchema named 'orders'" in result.output


class TestRenderCommand:
    """Tests for `schemactl render`."""

    def test_renders_config(self, runner: CliRunner, manifest: Path) -> None:
        """Test rendering with the SQLite dev database fallback."""
        result = runner.invoke(cli, ["render", str(manifest), "--env-name", "local"])

        assert result.exit_code == 0, result.output
        assert "# default/users" in result.output
        assert 'env "local" {' in result.output
        assert 'dev = "sqlite://dev?mode=memory"' in result.output

    def test_missing_dev_database(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that a target without a dev database fails."""
        path = tmp_path / "pg.yaml"
        path.write_text(yaml.safe_dump(resource_manifest()))

        result = runner.invoke(cli, ["render", str(path)])

        assert result.exit_code != 0
        assert 'no dev database configured for scheme "postgres"' in result.output

    def test_dev_db_urls_option(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test configuring dev databases on the command line."""
        path = tmp_path / "pg.yaml"
        path.write_text(yaml.safe_dump(resource_manifest()))

        result = runner.invoke(
            cli, ["render", str(path), "--dev-db-urls", "postgres=postgres://dev/dev"]
        )

        assert result.exit_code == 0, result.output
        assert 'dev = "postgres://dev/dev"' in result.output


class TestStatusCommand:
    """Tests for `schemactl status`."""

    def test_no_status(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        """Test a resource without published status."""
        status_dir = tmp_path / "status"
        status_dir.mkdir()

        result = runner.invoke(cli, ["status", str(manifest), "--status-dir", str(status_dir)])

        assert result.exit_code == 0, result.output
        assert "default/users: no status published" in result.output

    def test_published_status(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        """Test reading status published by the operator."""
        status_dir = tmp_path / "status"
        store = InMemoryResourceStore(status_dir=status_dir)
        res = SchemaResource.model_validate(yaml.safe_load(manifest.read_text()))
        store.put(res)
        res.set_ready(observed_hash="h", last_applied=1_700_000_000, plan_link="https://x/1")
        store.update_status(res)

        result = runner.invoke(cli, ["status", str(manifest), "--status-dir", str(status_dir)])

        assert result.exit_code == 0, result.output
        assert "default/users: Ready (Applied)" in result.output
        assert "plan: https://x/1" in result.output
        assert "last applied: 1700000000" in result.output

        result = runner.invoke(
            cli, ["status", str(manifest), "--status-dir", str(status_dir), "--json"]
        )
        assert json.loads(result.output)["default/users"]["observed_hash"] == "h"


class TestReconcileCommand:
    """Tests for `schemactl reconcile` against a fake engine binary."""

    def _engine(self, tmp_path: Path, apply_output: str) -> Path:
        binary = tmp_path / "atlas"
        binary.write_text(
            "#!/bin/sh\n"
            'case "$1" in\n'
            "  whoami) echo 'Error: not logged in' >&2; exit 1 ;;\n"
            f"  *) echo '{apply_output}' ;;\n"
            "esac\n"
        )
        binary.chmod(binary.stat().st_mode | stat.S_IEXEC)
        return binary

    def test_reconcile_until_ready(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        """Test that a new resource is applied in one invocation."""
        engine = self._engine(tmp_path, json.dumps({"Changes": {"Applied": [SQL]}}))

        result = runner.invoke(cli, ["reconcile", str(manifest), "--engine-binary", str(engine)])

        assert result.exit_code == 0, result.output
        assert "default/users: Ready (Applied)" in result.output

    def test_reconcile_failure(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        """Test the exit code of a failed apply."""
        engine = self._engine(tmp_path, json.dumps({"Error": "connection refused"}))

        result = runner.invoke(cli, ["reconcile", str(manifest), "--engine-binary", str(engine)])

        assert result.exit_code == 1
        assert "NotReady" in result.output
        assert "connection refused" in result.output

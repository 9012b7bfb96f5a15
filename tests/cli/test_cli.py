"""Tests for the CLI commands."""

import pytest
from click.testing import CliRunner

from calsync.cli import _load, cli
from calsync.config import CalsyncConfig
from calsync.errors import AuthenticationError

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def quiet_logging(monkeypatch):
    monkeypatch.setattr("calsync.cli.configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def config_dir(tmp_path):
    """A config directory with a custom port and database target."""
    (tmp_path / "calsync.toml").write_text(
        '[calsync]\nport = 8600\n\n[calsync.db]\nname = "cal_test"\nschema = "cal"\n'
    )
    return tmp_path


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestLoad:
    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        assert _load(tmp_path) == CalsyncConfig()

    def test_reads_config_directory(self, config_dir):
        config = _load(config_dir)
        assert config.port == 8600
        assert config.db.name == "cal_test"

    def test_invalid_config_exits(self, runner, tmp_path, quiet_logging):
        (tmp_path / "calsync.toml").write_text("[calsync]\nport = 0\n")

        result = runner.invoke(cli, ["sync", "--config", str(tmp_path), "1"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestSync:
    def test_sync_failure_exits_with_message(self, runner, tmp_path, quiet_logging, monkeypatch):
        async def _fail(config, calendar_id, *, push_first):
            raise AuthenticationError("401 from server")

        monkeypatch.setattr("calsync.cli._sync_once", _fail)

        result = runner.invoke(cli, ["sync", "--config", str(tmp_path), "7"])

        assert result.exit_code == 1
        assert "Sync failed: 401 from server" in result.output

    def test_sync_passes_arguments(self, runner, tmp_path, quiet_logging, monkeypatch):
        calls = []

        async def _record(config, calendar_id, *, push_first):
            calls.append((calendar_id, push_first))

        monkeypatch.setattr("calsync.cli._sync_once", _record)

        result = runner.invoke(cli, ["sync", "--config", str(tmp_path), "7", "--push"])

        assert result.exit_code == 0
        assert calls == [(7, True)]


class TestMigrate:
    def test_migrate_runs_all_chains(self, runner, config_dir, quiet_logging, monkeypatch):
        calls = []
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("POSTGRES_PORT", raising=False)
        monkeypatch.setattr(
            "calsync.migrations.run_migrations",
            lambda dsn, chain="core", schema=None: calls.append((dsn, chain, schema)),
        )

        result = runner.invoke(cli, ["migrate", "--config", str(config_dir)])

        assert result.exit_code == 0, result.output
        assert "Database cal_test is at head" in result.output
        [(dsn, chain, schema)] = calls
        assert dsn.endswith("@db.internal:5432/cal_test")
        assert (chain, schema) == ("all", "cal")


class TestCleanup:
    def test_cleanup_reports_removed(self, runner, tmp_path, quiet_logging, monkeypatch):
        async def _cleanup(config, days):
            assert days == 7
            return 3

        monkeypatch.setattr("calsync.cli._cleanup", _cleanup)

        result = runner.invoke(
            cli, ["cleanup-notifications", "--config", str(tmp_path), "--days", "7"]
        )

        assert result.exit_code == 0
        assert "Removed 3 notification(s)" in result.output

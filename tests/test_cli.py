"""Tests for the calsync CLI commands."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from calsync.cli import cli
from calsync.config import CONFIG_FILENAME
from calsync.sync.results import BatchResult

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("calsync.cli.configure_logging") as configure:
        yield configure


def _services(*, renewal: BatchResult | None = None, due: BatchResult | None = None):
    services = MagicMock()
    services.renewal.run_once = AsyncMock(return_value=renewal or BatchResult())
    services.orchestrator.sync_due = AsyncMock(return_value=due or BatchResult())
    services.stop = AsyncMock()
    return services


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestConfigLoading:
    def test_logging_follows_config_file(self, runner, tmp_path, quiet_logging):
        (tmp_path / CONFIG_FILENAME).write_text(
            '[service]\nname = "calsync-cli"\n\n[service.logging]\nlevel = "debug"\n'
        )
        services = _services()
        with patch("calsync.cli.connect_services", AsyncMock(return_value=services)):
            result = runner.invoke(cli, ["--config-dir", str(tmp_path), "sync-due"])

        assert result.exit_code == 0
        kwargs = quiet_logging.call_args.kwargs
        assert kwargs["level"] == "DEBUG"
        assert kwargs["service_name"] == "calsync-cli"

    def test_invalid_config_exits_2(self, runner, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[service.logging]\nformat = "xml"\n')

        result = runner.invoke(cli, ["--config-dir", str(tmp_path), "sync-due"])

        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestMaintenanceCommands:
    def test_renew_webhooks_reports_batch(self, runner, tmp_path):
        batch = BatchResult()
        batch.record_success()
        batch.record_skip()
        services = _services(renewal=batch)
        with patch("calsync.cli.connect_services", AsyncMock(return_value=services)):
            result = runner.invoke(cli, ["--config-dir", str(tmp_path), "renew-webhooks"])

        assert result.exit_code == 0
        assert "processed=2 succeeded=1 failed=0 skipped=1" in result.output
        services.stop.assert_awaited_once()

    def test_sync_due_failure_exits_1(self, runner, tmp_path):
        batch = BatchResult()
        batch.record_failure("cfg-1: Remote calendar request failed")
        services = _services(due=batch)
        with patch("calsync.cli.connect_services", AsyncMock(return_value=services)):
            result = runner.invoke(cli, ["--config-dir", str(tmp_path), "sync-due"])

        assert result.exit_code == 1
        assert "  - cfg-1: Remote calendar request failed" in result.output
        services.stop.assert_awaited_once()

    def test_services_are_stopped_when_the_pass_raises(self, runner, tmp_path):
        services = _services()
        services.renewal.run_once.side_effect = RuntimeError("pool closed")
        with patch("calsync.cli.connect_services", AsyncMock(return_value=services)):
            result = runner.invoke(cli, ["--config-dir", str(tmp_path), "renew-webhooks"])

        assert result.exit_code != 0
        assert isinstance(result.exception, RuntimeError)
        services.stop.assert_awaited_once()

    def test_init_db_provisions_and_creates_schema(self, runner, tmp_path):
        database = MagicMock()
        database.provision = AsyncMock()
        database.connect = AsyncMock(return_value="pool")
        database.close = AsyncMock()
        with (
            patch("calsync.cli.Database.from_config", return_value=database) as from_config,
            patch("calsync.cli.ensure_schema", AsyncMock()) as ensure,
        ):
            result = runner.invoke(cli, ["--config-dir", str(tmp_path), "init-db"])

        assert result.exit_code == 0, result.output
        assert from_config.call_args.args[0].name == "calsync"
        ensure.assert_awaited_once_with("pool")
        database.close.assert_awaited_once()
        assert "Database calsync is ready" in result.output

    def test_serve_runs_uvicorn(self, runner, tmp_path):
        with patch("uvicorn.run") as run:
            result = runner.invoke(
                cli, ["--config-dir", str(tmp_path), "serve", "--port", "9191"]
            )

        assert result.exit_code == 0, result.output
        assert run.call_args.kwargs["port"] == 9191
        assert run.call_args.kwargs["log_config"] is None

"""Smoke tests for the CLI.

These tests verify the command-line surface without running any external
tools: the pipeline itself is patched wherever a run would start.
"""

import json
import os
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from imx_bootstack import __version__
from imx_bootstack.cli import app
from imx_bootstack.errors import OperationCancelled, ToolExecutionError
from imx_bootstack.pipeline import PipelineResult

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Run every command away from any .env file and IMX_BOOT_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("IMX_BOOT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def quiet_logging():
    with patch("imx_bootstack.logs.configure_logging") as mock_logging:
        yield mock_logging


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.output

    def test_run_help_exits_with_failure(self) -> None:
        """-h prints usage and exits 1."""
        result = runner.invoke(app, ["run", "-h"])
        assert result.exit_code == 1
        assert "--build-target" in result.output


class TestCLIRun:
    """Test the run command's invocation checks."""

    def test_workdir_required(self) -> None:
        result = runner.invoke(app, ["run", "-t", "kernel"])
        assert result.exit_code == 1
        assert "Working directory is required" in result.stdout

    def test_flash_without_device(self, tmp_path) -> None:
        with patch("imx_bootstack.pipeline.run_pipeline") as mock_run:
            result = runner.invoke(app, ["run", "-w", str(tmp_path), "-t", "flash"])

        assert result.exit_code == 1
        assert "flash device is required" in result.stdout.lower()
        mock_run.assert_not_called()

    def test_unknown_target(self, tmp_path) -> None:
        result = runner.invoke(app, ["run", "-w", str(tmp_path), "-t", "rootfs"])
        assert result.exit_code == 1
        assert "Unknown build target" in result.stdout

    def test_rootfs_tarball_rejected(self, tmp_path) -> None:
        result = runner.invoke(
            app, ["run", "-w", str(tmp_path), "-r", str(tmp_path / "rootfs.tar.gz")]
        )
        assert result.exit_code == 1
        assert "not supported" in result.stdout

    def test_invalid_custom_dts(self, tmp_path) -> None:
        result = runner.invoke(app, ["run", "-w", str(tmp_path), "-d", " , "])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_cancel_exits_zero(self, tmp_path, quiet_logging) -> None:
        with patch(
            "imx_bootstack.pipeline.run_pipeline",
            side_effect=OperationCancelled(),
        ):
            result = runner.invoke(
                app, ["run", "-w", str(tmp_path), "-t", "flash", "-f", "/dev/sdb"]
            )

        assert result.exit_code == 0
        assert "cancelled" in result.stdout.lower()

    def test_successful_run(self, tmp_path, quiet_logging) -> None:
        outcome = PipelineResult(
            run_id="run-1", target="dts", executed=["sync-kernel", "dts"]
        )
        with patch(
            "imx_bootstack.pipeline.run_pipeline", return_value=outcome
        ) as mock_run:
            result = runner.invoke(
                app,
                ["run", "-w", str(tmp_path), "-t", "dts", "-d", "foo,bar", "--resume"],
            )

        assert result.exit_code == 0
        assert "Target dts finished" in result.stdout
        assert "sync-kernel, dts" in result.stdout
        settings, request = mock_run.call_args.args
        assert settings.custom_dts == "foo,bar"
        assert str(request) == "dts"
        assert mock_run.call_args.kwargs["resume"] is True
        assert (tmp_path / ".imx-bootstack.sqlite").is_file()

    def test_device_alias_and_dry_run(self, tmp_path, quiet_logging) -> None:
        outcome = PipelineResult(run_id="run-1", target="flash")
        with patch(
            "imx_bootstack.pipeline.run_pipeline", return_value=outcome
        ) as mock_run:
            result = runner.invoke(
                app,
                ["run", "-w", str(tmp_path), "-t", "flash", "--device", "/dev/sdb", "-n"],
            )

        assert result.exit_code == 0
        assert "Dry-run mode" in result.stdout
        settings = mock_run.call_args.args[0]
        assert settings.flash_device == "/dev/sdb"
        assert settings.dry_run is True

    def test_step_failure(self, tmp_path, quiet_logging) -> None:
        with patch(
            "imx_bootstack.pipeline.run_pipeline",
            side_effect=ToolExecutionError("Command failed: make -j4", returncode=2),
        ):
            result = runner.invoke(app, ["run", "-w", str(tmp_path), "-t", "kernel"])

        assert result.exit_code == 1
        assert "Command failed: make -j4" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_without_workdir(self) -> None:
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Working directory: (not set)" in result.stdout
        assert "aarch64-linux-gnu-" in result.stdout

    def test_config_json(self, tmp_path) -> None:
        result = runner.invoke(app, ["config", "--json", "-w", str(tmp_path)])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["arch"] == "arm64"
        assert data["workdir"] == str(tmp_path.resolve())

    def test_missing_env_file(self, tmp_path) -> None:
        result = runner.invoke(app, ["config", "--env-file", str(tmp_path / "nope")])
        assert result.exit_code == 1
        assert "Environment file not found" in result.stdout


class TestCLIHistory:
    """Test CLI history command."""

    def test_empty_history(self, tmp_path) -> None:
        result = runner.invoke(app, ["history", "-w", str(tmp_path)])
        assert result.exit_code == 0
        assert "No history records found" in result.stdout

    def test_empty_history_json(self, tmp_path) -> None:
        result = runner.invoke(app, ["history", "-w", str(tmp_path), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"stages": [], "flashes": []}

    def test_invalid_status(self, tmp_path) -> None:
        result = runner.invoke(app, ["history", "-w", str(tmp_path), "-s", "bogus"])
        assert result.exit_code == 1
        assert "Invalid status" in result.stdout

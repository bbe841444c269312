"""Tests for legacy_invoker module."""

import subprocess as sp
from unittest.mock import MagicMock, patch

import pytest

from bridge_config import BridgeConfig
from commander_errors import CommandTimeoutError, NotInstalledError, RealCommandError
from legacy_invoker import LegacyInvoker

from helpers import completed


@pytest.fixture
def invoker(config: BridgeConfig) -> LegacyInvoker:
    return LegacyInvoker(config)


class TestBuildArgs:
    def test_plain_args(self, invoker: LegacyInvoker) -> None:
        assert invoker.build_args("get", ["abc", "--format=json"]) == [
            "keeper", "get", "abc", "--format=json",
        ]

    def test_quoted_args_are_tokenized(self, invoker: LegacyInvoker) -> None:
        args = invoker.build_args("record-add", ["'--title=My API key'", "--record-type=login"])
        assert args == ["keeper", "record-add", "--title=My API key", "--record-type=login"]

    def test_custom_executable(self, config: BridgeConfig) -> None:
        config.commander.executable = "/opt/keeper/bin/keeper"
        assert LegacyInvoker(config).build_args("--version")[0] == "/opt/keeper/bin/keeper"

    def test_unbalanced_quote_rejects(self, invoker: LegacyInvoker) -> None:
        with pytest.raises(RealCommandError, match="Cannot parse arguments for 'search'"):
            invoker.build_args("search", ["it's"])


class TestRun:
    @patch("subprocess.run")
    def test_strips_benign_stdout(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        mock_run.return_value = completed("Logging in to Keeper Commander\nActual output\n")
        assert invoker.run("list") == "Actual output"

    @patch("subprocess.run")
    def test_stderr_error_rejects(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        mock_run.return_value = completed(stderr="error: something failed")
        with pytest.raises(RealCommandError) as exc_info:
            invoker.run("get", ["missing"])
        assert str(exc_info.value) == "error: something failed"

    @patch("subprocess.run")
    def test_benign_stderr_is_ignored(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        mock_run.return_value = completed("ok\n", stderr="Syncing...\n")
        assert invoker.run("sync-down") == "ok"

    @patch("subprocess.run")
    def test_nonzero_exit_rejects(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        mock_run.return_value = completed("", stderr="usage: keeper get", returncode=2)
        with pytest.raises(RealCommandError, match="exited with code 2"):
            invoker.run("get")

    @patch("subprocess.run", side_effect=FileNotFoundError("keeper"))
    def test_missing_executable(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        with pytest.raises(NotInstalledError, match="not found"):
            invoker.run("--version")

    @patch("subprocess.run", side_effect=sp.TimeoutExpired("keeper", 1))
    def test_timeout(self, mock_run: MagicMock, invoker: LegacyInvoker) -> None:
        with pytest.raises(CommandTimeoutError):
            invoker.run("this-device", timeout=1)

    @patch("subprocess.run")
    def test_stdin_detached_and_timeout_forwarded(
        self, mock_run: MagicMock, invoker: LegacyInvoker
    ) -> None:
        mock_run.return_value = completed("Keeper Commander, version 16.11.0")
        invoker.run("--version", timeout=7)

        kwargs = mock_run.call_args[1]
        assert mock_run.call_args[0][0] == ["keeper", "--version"]
        assert kwargs["stdin"] == sp.DEVNULL
        assert kwargs["timeout"] == 7
        assert kwargs["capture_output"] is True

    @patch("subprocess.run")
    def test_unbalanced_quote_never_spawns(
        self, mock_run: MagicMock, invoker: LegacyInvoker
    ) -> None:
        with pytest.raises(RealCommandError):
            invoker.run("record-add", ['"--title=Half quoted'])
        mock_run.assert_not_called()

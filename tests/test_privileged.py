"""
Tests for the privileged command executors.

run_command is patched so nothing is actually executed with elevation.
"""

from unittest.mock import patch

import pytest

from persistwatch.containment.privileged import (
    CommandOutput,
    DirectExecutor,
    OsascriptExecutor,
    SudoExecutor,
    default_executor,
    run_command,
)
from persistwatch.core.exceptions import PermissionDeniedError

RUN = "persistwatch.containment.privileged.run_command"


class TestCommandOutput:

    def test_output_combines_streams(self):
        assert CommandOutput(stdout="a", stderr="b").output == "a\nb"
        assert CommandOutput(stderr="b").output == "b"
        assert CommandOutput(stdout="a", returncode=0).ok
        assert not CommandOutput().ok


class TestRunCommand:

    def test_missing_binary_reported(self):
        result = run_command(["/nonexistent/persistwatch-tool"])
        assert result.returncode == 127
        assert not result.ok

    def test_runs_shell_command(self):
        result = DirectExecutor().run("echo contained")
        assert result.ok
        assert result.stdout.strip() == "contained"


class TestExecutors:

    @patch(RUN)
    def test_sudo_is_non_interactive(self, mock_run):
        mock_run.return_value = CommandOutput(stdout="ok", returncode=0)
        SudoExecutor().run("/sbin/pfctl -s rules")
        argv = mock_run.call_args.args[0]
        assert argv[:4] == ["sudo", "-n", "/bin/sh", "-c"]
        assert argv[4] == "/sbin/pfctl -s rules"

    @patch(RUN)
    def test_sudo_denied(self, mock_run):
        mock_run.return_value = CommandOutput(stderr="sudo: a password is required", returncode=1)
        with pytest.raises(PermissionDeniedError):
            SudoExecutor().run("true")

    @patch(RUN)
    def test_sudo_command_failure_is_returned(self, mock_run):
        mock_run.return_value = CommandOutput(stderr="pfctl: syntax error", returncode=1)
        assert SudoExecutor().run("true").returncode == 1

    @patch(RUN)
    def test_osascript_escapes_quotes(self, mock_run):
        mock_run.return_value = CommandOutput(returncode=0)
        OsascriptExecutor().run('echo "hi"')
        script = mock_run.call_args.args[0][2]
        assert script == 'do shell script "echo \\"hi\\"" with administrator privileges'

    @patch(RUN)
    def test_osascript_cancelled(self, mock_run):
        mock_run.return_value = CommandOutput(stderr="execution error: User canceled. (-128)", returncode=1)
        with pytest.raises(PermissionDeniedError):
            OsascriptExecutor().run("true")


class TestDefaultExecutor:

    @pytest.mark.parametrize("kind,cls", [
        ("direct", DirectExecutor),
        ("sudo", SudoExecutor),
        ("OSASCRIPT", OsascriptExecutor),
    ])
    def test_by_name(self, kind, cls):
        assert isinstance(default_executor(kind), cls)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PERSISTWATCH_PRIVILEGE", "direct")
        assert isinstance(default_executor(), DirectExecutor)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            default_executor("doas")

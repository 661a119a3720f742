from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import CommandError


def test_run_captures_output(monkeypatch, tmp_path: Path) -> None:
    seen: dict[str, object] = {}

    def fake_run(command, **kwargs):  # type: ignore[no-untyped-def]
        seen["command"] = command
        seen["cwd"] = kwargs["cwd"]
        return subprocess.CompletedProcess(command, 0, stdout="built\n", stderr="")

    monkeypatch.setattr("pushdeploy.core.command_runner.subprocess.run", fake_run)

    result = CommandRunner().run(["npm", "run", "build"], cwd=tmp_path)

    assert result.output == "built"
    assert result.command == "npm run build"
    assert seen == {"command": ["npm", "run", "build"], "cwd": tmp_path}


def test_non_zero_exit_raises_unless_unchecked(monkeypatch) -> None:
    def fake_run(command, **kwargs):  # type: ignore[no-untyped-def]
        del kwargs
        return subprocess.CompletedProcess(command, 2, stdout="", stderr="npm ERR! missing script")

    monkeypatch.setattr("pushdeploy.core.command_runner.subprocess.run", fake_run)
    runner = CommandRunner()

    with pytest.raises(CommandError) as excinfo:
        runner.run(["npm", "run", "build"])
    assert excinfo.value.returncode == 2
    assert "missing script" in excinfo.value.output

    assert runner.run(["npm", "run", "build"], check=False).returncode == 2


def test_timeout_and_missing_binary_become_command_errors(monkeypatch) -> None:
    def timeout(command, **kwargs):  # type: ignore[no-untyped-def]
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr("pushdeploy.core.command_runner.subprocess.run", timeout)
    with pytest.raises(CommandError, match="timed out after 3"):
        CommandRunner().run(["git", "fetch"], timeout=3)

    def missing(command, **kwargs):  # type: ignore[no-untyped-def]
        raise FileNotFoundError(2, "No such file or directory", command[0])

    monkeypatch.setattr("pushdeploy.core.command_runner.subprocess.run", missing)
    with pytest.raises(CommandError) as excinfo:
        CommandRunner().run(["pm2", "restart", "demo"])
    assert excinfo.value.returncode is None


def test_stdout_is_kept_apart_from_stderr(monkeypatch) -> None:
    def fake_run(command, **kwargs):  # type: ignore[no-untyped-def]
        del kwargs
        return subprocess.CompletedProcess(
            command, 0, stdout="abc123\n", stderr="warning: refname 'HEAD' is ambiguous.\n"
        )

    monkeypatch.setattr("pushdeploy.core.command_runner.subprocess.run", fake_run)

    result = CommandRunner().run(["git", "rev-parse", "HEAD"])

    assert result.stdout == "abc123"
    assert "ambiguous" in result.output

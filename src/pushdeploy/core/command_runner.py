"""Subprocess execution for deploy commands."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from pushdeploy.core.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    """Result from running an external command."""

    command: str
    returncode: int
    output: str
    stdout: str = ""


class CommandRunner:
    """Run external commands and raise on failure."""

    def __init__(self, *, default_timeout: float | None = 1800.0) -> None:
        self._default_timeout = default_timeout

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        command_text = shlex.join(command)
        merged_env = {**os.environ, **env} if env else None
        logger.debug("Running %s (cwd=%s)", command_text, cwd)
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                env=merged_env,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(command_text, None, f"timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise CommandError(command_text, None, str(exc)) from exc

        output = ((completed.stdout or "") + (completed.stderr or "")).strip()
        if check and completed.returncode != 0:
            raise CommandError(command_text, completed.returncode, output)
        return CommandResult(
            command=command_text,
            returncode=completed.returncode,
            output=output,
            stdout=(completed.stdout or "").strip(),
        )

    def run_shell(
        self,
        script: str,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell pipeline such as ``curl ... | bash``."""
        return self.run(["bash", "-c", script], cwd=cwd, env=env, timeout=timeout)

    @staticmethod
    def exists(name: str) -> bool:
        return shutil.which(name) is not None

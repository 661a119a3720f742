"""Supervisor-specific restart primitives."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pushdeploy.core.command_runner import CommandResult, CommandRunner
from pushdeploy.core.errors import CommandError, FallbackExhaustedError, RestartFailureError
from pushdeploy.core.fallback import FallbackChain

logger = logging.getLogger(__name__)


class ServiceController(Protocol):
    """Start-or-restart, stop and status for one supervised service."""

    family: str

    def restart(self, work_dir: Path) -> None: ...

    def stop(self, work_dir: Path) -> None: ...

    def status(self, work_dir: Path) -> str: ...


def privileged(command: list[str]) -> list[str]:
    geteuid = getattr(os, "geteuid", None)
    if callable(geteuid) and geteuid() == 0:
        return command
    return ["sudo", *command]


class Pm2Controller:
    """Long-running process manager (PM2) for interpreted apps."""

    family = "pm2"

    def __init__(
        self,
        runner: CommandRunner,
        app_name: str,
        *,
        ecosystem_file: str = "ecosystem.config.cjs",
    ) -> None:
        self._runner = runner
        self.app_name = app_name
        self.ecosystem_file = ecosystem_file

    def restart(self, work_dir: Path) -> None:
        chain = FallbackChain(f"pm2 process {self.app_name}")
        chain.add(
            "pm2 restart",
            lambda: self._runner.run(["pm2", "restart", self.app_name], cwd=work_dir),
        )
        chain.add(
            "pm2 start ecosystem",
            lambda: self._runner.run(["pm2", "start", self.ecosystem_file], cwd=work_dir),
        )
        try:
            chain.run()
        except FallbackExhaustedError as exc:
            raise RestartFailureError(str(exc)) from exc
        try:
            self._runner.run(["pm2", "save"], cwd=work_dir)
        except CommandError as exc:
            logger.warning("pm2 save failed: %s", exc)

    def stop(self, work_dir: Path) -> None:
        self._runner.run(["pm2", "stop", self.app_name], cwd=work_dir)

    def status(self, work_dir: Path) -> str:
        result = self._runner.run(["pm2", "jlist"], cwd=work_dir)
        try:
            processes = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return "unknown"
        for process in processes:
            if isinstance(process, dict) and process.get("name") == self.app_name:
                return str(process.get("pm2_env", {}).get("status", "unknown"))
        return "missing"


class SystemdController:
    """systemd unit wrapping a compiled binary."""

    family = "systemd"

    def __init__(self, runner: CommandRunner, unit_name: str) -> None:
        self._runner = runner
        self.unit_name = unit_name

    def restart(self, work_dir: Path) -> None:
        try:
            self._runner.run(privileged(["systemctl", "restart", self.unit_name]), cwd=work_dir)
        except CommandError as exc:
            raise RestartFailureError(str(exc)) from exc

    def stop(self, work_dir: Path) -> None:
        self._runner.run(privileged(["systemctl", "stop", self.unit_name]), cwd=work_dir)

    def status(self, work_dir: Path) -> str:
        result = self._runner.run(
            ["systemctl", "is-active", self.unit_name], cwd=work_dir, check=False
        )
        return result.stdout or "unknown"


class ComposeController:
    """docker compose stack."""

    family = "compose"

    def __init__(
        self,
        runner: CommandRunner,
        project_name: str,
        *,
        compose_file: str = "docker-compose.yml",
    ) -> None:
        self._runner = runner
        self.project_name = project_name
        self.compose_file = compose_file

    def compose_args(self, *args: str) -> list[list[str]]:
        """Candidate invocations: the compose plugin, then the legacy binary."""
        options = ["-f", self.compose_file, "-p", self.project_name, *args]
        return [["docker", "compose", *options], ["docker-compose", *options]]

    def restart(self, work_dir: Path) -> None:
        chain = FallbackChain(f"compose stack {self.project_name}")
        for command in self.compose_args("up", "-d", "--remove-orphans"):
            chain.add(" ".join(command[:2]), self._bind(command, work_dir))
        try:
            chain.run()
        except FallbackExhaustedError as exc:
            raise RestartFailureError(str(exc)) from exc

    def stop(self, work_dir: Path) -> None:
        chain = FallbackChain(f"compose stack {self.project_name}")
        for command in self.compose_args("down"):
            chain.add(" ".join(command[:2]), self._bind(command, work_dir))
        chain.run()

    def status(self, work_dir: Path) -> str:
        command = self.compose_args("ps", "--status", "running", "-q")[0]
        result = self._runner.run(command, cwd=work_dir, check=False)
        if result.returncode != 0:
            return "unknown"
        return "running" if result.stdout else "stopped"

    def _bind(self, command: list[str], work_dir: Path) -> Callable[[], CommandResult]:
        return lambda: self._runner.run(command, cwd=work_dir)


class FpmController:
    """PHP-FPM pool paired with the nginx reverse proxy."""

    family = "php-fpm"

    def __init__(
        self,
        runner: CommandRunner,
        *,
        fpm_service: str = "php-fpm",
        proxy_service: str = "nginx",
    ) -> None:
        self._runner = runner
        self.fpm_service = fpm_service
        self.proxy_service = proxy_service

    def restart(self, work_dir: Path) -> None:
        for service in (self.fpm_service, self.proxy_service):
            chain = FallbackChain(f"service {service}")
            for verb in ("reload", "restart"):
                command = privileged(["systemctl", verb, service])
                chain.add(f"systemctl {verb}", self._bind(command, work_dir))
            try:
                chain.run()
            except FallbackExhaustedError as exc:
                raise RestartFailureError(str(exc)) from exc

    def stop(self, work_dir: Path) -> None:
        self._runner.run(privileged(["systemctl", "stop", self.fpm_service]), cwd=work_dir)

    def status(self, work_dir: Path) -> str:
        result = self._runner.run(
            ["systemctl", "is-active", self.fpm_service], cwd=work_dir, check=False
        )
        return result.stdout or "unknown"

    def _bind(self, command: list[str], work_dir: Path) -> Callable[[], CommandResult]:
        return lambda: self._runner.run(command, cwd=work_dir)

"""Render and install supervisor definitions for a backend's service unit."""

from __future__ import annotations

import json
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

from pushdeploy.config import DeployConfig
from pushdeploy.core.backends import BackendDescriptor
from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.service_controllers import privileged
from pushdeploy.models.backend import BackendVariant, RestartPolicy, ServiceUnit

logger = logging.getLogger(__name__)

SYSTEMD_DIR = Path("/etc/systemd/system")
FPM_POOL_DIR = Path("/etc/php/8.2/fpm/pool.d")


@dataclass(slots=True)
class RenderedUnit:
    """A supervisor definition ready to be written."""

    path: Path
    content: str
    systemd: bool = False

    @property
    def unit_name(self) -> str:
        return self.path.name


def render_systemd(unit: ServiceUnit, *, description: str | None = None) -> str:
    restart = "always" if unit.restart_policy is RestartPolicy.ALWAYS else "on-failure"
    lines = [
        "[Unit]",
        f"Description={description or unit.name}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
    ]
    if unit.user:
        lines.append(f"User={unit.user}")
    lines.append(f"WorkingDirectory={unit.working_directory}")
    lines.extend(
        f"Environment={shlex.quote(f'{key}={value}')}"
        for key, value in sorted(unit.environment.items())
    )
    lines.extend(
        [
            f"ExecStart={shlex.join(unit.command)}",
            f"Restart={restart}",
            f"RestartSec={unit.restart_delay_seconds}",
        ]
    )
    if unit.limits.max_memory:
        lines.append(f"MemoryMax={unit.limits.max_memory}")
    if unit.limits.cpu_quota:
        lines.append(f"CPUQuota={unit.limits.cpu_quota}")
    if unit.limits.open_files:
        lines.append(f"LimitNOFILE={unit.limits.open_files}")
    lines.extend(
        [
            "StandardOutput=journal",
            "StandardError=journal",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
        ]
    )
    return "\n".join(lines) + "\n"


def render_pm2_ecosystem(unit: ServiceUnit) -> str:
    script, *args = unit.command or ["npm", "start"]
    log_prefix = unit.log_dir / unit.name
    app: dict[str, object] = {
        "name": unit.name,
        "script": script,
        "args": shlex.join(args),
        "cwd": str(unit.working_directory),
        "instances": 1,
        "autorestart": unit.restart_policy is not RestartPolicy.ON_FAILURE,
        "restart_delay": unit.restart_delay_seconds * 1000,
        "watch": False,
        "env": unit.environment,
        "error_file": f"{log_prefix}-error.log",
        "out_file": f"{log_prefix}-out.log",
        "log_file": f"{log_prefix}-combined.log",
        "time": True,
    }
    if unit.limits.max_memory:
        app["max_memory_restart"] = unit.limits.max_memory
    return "module.exports = " + json.dumps({"apps": [app]}, indent=2) + ";\n"


def render_compose_override(unit: ServiceUnit, service: str = "app") -> str:
    lines = [
        "services:",
        f"  {service}:",
        f"    restart: {unit.restart_policy.value}",
    ]
    if unit.environment:
        lines.append("    environment:")
        lines.extend(
            f"      {key}: {json.dumps(value)}" for key, value in sorted(unit.environment.items())
        )
    if unit.limits.max_memory:
        lines.append(f"    mem_limit: {unit.limits.max_memory.lower()}")
    if unit.limits.open_files:
        lines.extend(
            [
                "    ulimits:",
                f"      nofile: {unit.limits.open_files}",
            ]
        )
    return "\n".join(lines) + "\n"


def render_fpm_pool(unit: ServiceUnit, *, socket_dir: Path = Path("/run/php")) -> str:
    user = unit.user or "www-data"
    lines = [
        f"[{unit.name}]",
        f"user = {user}",
        f"group = {user}",
        f"listen = {socket_dir / unit.name}.sock",
        f"listen.owner = {user}",
        f"listen.group = {user}",
        f"chdir = {unit.working_directory}",
        "pm = dynamic",
        "pm.max_children = 10",
        "pm.start_servers = 2",
        "pm.min_spare_servers = 1",
        "pm.max_spare_servers = 3",
        f"php_admin_value[error_log] = {unit.log_dir / unit.name}-fpm-error.log",
        "php_admin_flag[log_errors] = on",
    ]
    lines.extend(f"env[{key}] = {value}" for key, value in sorted(unit.environment.items()))
    return "\n".join(lines) + "\n"


class ServiceInstaller:
    """Write the supervisor definition of an application and register it."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        systemd_dir: Path = SYSTEMD_DIR,
        fpm_pool_dir: Path = FPM_POOL_DIR,
    ) -> None:
        self._runner = runner or CommandRunner()
        self._systemd_dir = systemd_dir
        self._fpm_pool_dir = fpm_pool_dir

    def render(self, descriptor: BackendDescriptor) -> RenderedUnit:
        unit = descriptor.unit
        if descriptor.variant is BackendVariant.INTERPRETED:
            return RenderedUnit(
                path=descriptor.work_dir / "ecosystem.config.cjs",
                content=render_pm2_ecosystem(unit),
            )
        if descriptor.variant is BackendVariant.COMPILED:
            return RenderedUnit(
                path=self._systemd_dir / f"{unit.name}.service",
                content=render_systemd(unit),
                systemd=True,
            )
        if descriptor.variant is BackendVariant.CONTAINERIZED:
            return RenderedUnit(
                path=descriptor.work_dir / "docker-compose.override.yml",
                content=render_compose_override(unit),
            )
        return RenderedUnit(
            path=self._fpm_pool_dir / f"{unit.name}.conf",
            content=render_fpm_pool(unit),
        )

    def render_listener(self, config: DeployConfig, config_path: Path) -> RenderedUnit:
        """systemd unit that keeps the webhook listener running."""
        unit = ServiceUnit(
            name=f"{config.app_name}-webhook",
            working_directory=config.app_dir,
            command=[
                sys.executable,
                "-m",
                "pushdeploy.cli",
                "serve",
                "--config",
                str(config_path.resolve()),
            ],
            environment={"PUSHDEPLOY_LOG_FILE": str(config.default_log_file())},
        )
        return RenderedUnit(
            path=self._systemd_dir / f"{unit.name}.service",
            content=render_systemd(unit, description=f"Webhook listener for {config.app_name}"),
            systemd=True,
        )

    def install(self, rendered: RenderedUnit, *, enable: bool = True) -> None:
        self._write(rendered.path, rendered.content)
        logger.info("Wrote %s", rendered.path)
        if not rendered.systemd:
            return
        self._runner.run(privileged(["systemctl", "daemon-reload"]))
        if enable:
            self._runner.run(privileged(["systemctl", "enable", "--now", rendered.unit_name]))
            logger.info("Enabled %s", rendered.unit_name)

    def _write(self, path: Path, content: str) -> None:
        if os.access(path.parent, os.W_OK):
            path.write_text(content, encoding="utf-8")
            return
        # Root-owned directories such as /etc/systemd/system.
        self._runner.run(privileged(["mkdir", "-p", str(path.parent)]))
        self._runner.run_shell(
            f"printf %s {shlex.quote(content)} | {shlex.join(privileged(['tee', str(path)]))}"
            " > /dev/null"
        )

"""Backend descriptor registry.

Every variant-specific decision lives here: how dependencies are installed,
how the artifact is built, which supervisor restarts it and which paths the
health prober should try. The pipeline only talks to :class:`BackendDescriptor`.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeAlias

from pushdeploy.config import DeployConfig
from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import (
    BuildFailureError,
    CommandError,
    FallbackExhaustedError,
    RestartFailureError,
    UnknownBackendError,
)
from pushdeploy.core.fallback import FallbackChain
from pushdeploy.core.service_controllers import (
    ComposeController,
    FpmController,
    Pm2Controller,
    ServiceController,
    SystemdController,
)
from pushdeploy.models.backend import BackendVariant, RestartPolicy, ServiceUnit

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PATHS = ("/health", "/healthz", "/api/health", "/")

Command: TypeAlias = tuple[str, ...]


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """Immutable description of how one application is built and run."""

    variant: BackendVariant
    work_dir: Path
    controller: ServiceController
    unit: ServiceUnit
    artifact: Path
    install_commands: tuple[Command, ...] = ()
    install_marker: str | None = None
    build_commands: tuple[Command, ...] = ()
    health_paths: tuple[str, ...] = DEFAULT_HEALTH_PATHS

    @property
    def artifact_path(self) -> Path:
        return self.work_dir / self.artifact

    @property
    def has_build_step(self) -> bool:
        return bool(self.build_commands)

    def install_dependencies(self, runner: CommandRunner) -> None:
        if not self.install_commands:
            return
        if self.install_marker and not (self.work_dir / self.install_marker).exists():
            logger.info("No %s found, skipping dependency install", self.install_marker)
            return
        self._run_alternatives(runner, "dependency install", self.install_commands)

    def build(self, runner: CommandRunner) -> None:
        if not self.has_build_step:
            logger.info("%s backend has no build step", self.variant.value)
            return
        self._run_alternatives(runner, "build", self.build_commands)
        if not self.artifact_path.exists():
            msg = f"Build finished but artifact {self.artifact_path} is missing"
            raise BuildFailureError(msg)

    def restart(self) -> None:
        try:
            self.controller.restart(self.work_dir)
        except CommandError as exc:
            raise RestartFailureError(str(exc)) from exc

    def _run_alternatives(
        self,
        runner: CommandRunner,
        label: str,
        commands: tuple[Command, ...],
    ) -> None:
        chain = FallbackChain(f"{self.unit.name} {label}")
        for command in commands:
            chain.add(shlex.join(command), _command_action(runner, command, self.work_dir))
        try:
            chain.run()
        except FallbackExhaustedError as exc:
            raise BuildFailureError(str(exc)) from exc


def _command_action(runner: CommandRunner, command: Command, cwd: Path) -> Callable[[], object]:
    return lambda: runner.run(list(command), cwd=cwd)


class BackendRegistry:
    """Closed set of backend variants."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()
        self._builders: dict[BackendVariant, Callable[[DeployConfig], BackendDescriptor]] = {
            BackendVariant.INTERPRETED: self._interpreted,
            BackendVariant.COMPILED: self._compiled,
            BackendVariant.CONTAINERIZED: self._containerized,
            BackendVariant.SUPERVISED: self._supervised,
        }

    @staticmethod
    def variants() -> list[str]:
        return [variant.value for variant in BackendVariant]

    @staticmethod
    def parse(selector: str | BackendVariant) -> BackendVariant:
        if isinstance(selector, BackendVariant):
            return selector
        try:
            return BackendVariant(selector.strip().lower())
        except ValueError as exc:
            choices = ", ".join(BackendRegistry.variants())
            msg = f"Unknown backend {selector!r}; expected one of: {choices}"
            raise UnknownBackendError(msg) from exc

    def get(self, selector: str | BackendVariant, config: DeployConfig) -> BackendDescriptor:
        variant = self.parse(selector)
        descriptor = self._builders[variant](config)
        override = config.extra.get("BUILD_COMMAND")
        if override:
            # Same descriptor, operator-supplied build command.
            return replace(descriptor, build_commands=(tuple(shlex.split(override)),))
        return descriptor

    def _interpreted(self, config: DeployConfig) -> BackendDescriptor:
        port = str(config.app_port)
        return BackendDescriptor(
            variant=BackendVariant.INTERPRETED,
            work_dir=config.app_dir,
            controller=Pm2Controller(self._runner, config.app_name),
            unit=ServiceUnit(
                name=config.app_name,
                working_directory=config.app_dir,
                command=["npx", "serve", "-s", "dist", "-l", port],
                environment={"NODE_ENV": "production", "PORT": port},
            ),
            artifact=Path("dist"),
            install_commands=(("npm", "ci"), ("npm", "install")),
            install_marker="package.json",
            build_commands=(("npm", "run", "build"),),
        )

    def _compiled(self, config: DeployConfig) -> BackendDescriptor:
        binary = Path("bin") / config.app_name
        return BackendDescriptor(
            variant=BackendVariant.COMPILED,
            work_dir=config.app_dir,
            controller=SystemdController(self._runner, config.app_name),
            unit=ServiceUnit(
                name=config.app_name,
                working_directory=config.app_dir,
                command=[str(config.app_dir / binary)],
                environment={"APP_ENV": "production", "PORT": str(config.app_port)},
                restart_policy=RestartPolicy.ON_FAILURE,
            ),
            artifact=binary,
            install_commands=(("go", "mod", "download"),),
            install_marker="go.mod",
            build_commands=(("go", "build", "-o", str(binary), "."),),
        )

    def _containerized(self, config: DeployConfig) -> BackendDescriptor:
        compose_file = config.extra.get("COMPOSE_FILE", "docker-compose.yml")
        controller = ComposeController(self._runner, config.app_name, compose_file=compose_file)
        return BackendDescriptor(
            variant=BackendVariant.CONTAINERIZED,
            work_dir=config.app_dir,
            controller=controller,
            unit=ServiceUnit(
                name=config.app_name,
                working_directory=config.app_dir,
                environment={"PORT": str(config.app_port)},
                restart_policy=RestartPolicy.UNLESS_STOPPED,
            ),
            artifact=Path(compose_file),
            build_commands=tuple(tuple(cmd) for cmd in controller.compose_args("build")),
        )

    def _supervised(self, config: DeployConfig) -> BackendDescriptor:
        fpm_service = config.extra.get("PHP_FPM_SERVICE", "php-fpm")
        return BackendDescriptor(
            variant=BackendVariant.SUPERVISED,
            work_dir=config.app_dir,
            controller=FpmController(self._runner, fpm_service=fpm_service),
            unit=ServiceUnit(
                name=config.app_name,
                working_directory=config.app_dir,
                environment={"APP_ENV": "production"},
                user="www-data",
            ),
            artifact=Path("public") / "index.php",
            install_commands=(
                ("composer", "install", "--no-dev", "--optimize-autoloader", "--no-interaction"),
            ),
            install_marker="composer.json",
            health_paths=("/health", "/health.php", "/"),
        )


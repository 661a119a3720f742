"""Restore the last known-good revision after a failed deploy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pushdeploy.core.backends import BackendDescriptor
from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import CommandError, DeployError, RollbackError
from pushdeploy.core.git_manager import GitManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RollbackResult:
    """What the rollback managed to do."""

    revision: str
    rebuilt: bool
    restarted: bool
    warnings: list[str] = field(default_factory=list)


class RollbackController:
    """Reset the tree to a prior revision, rebuild it and restart the service.

    Install and build failures are logged and swallowed: the previous artifact
    is usually still on disk, so the restart is attempted regardless. Reset and
    restart failures raise :class:`RollbackError`.
    """

    def __init__(self, git_manager: GitManager, runner: CommandRunner) -> None:
        self._git = git_manager
        self._runner = runner

    def rollback(self, to_revision: str, descriptor: BackendDescriptor) -> RollbackResult:
        work_dir = descriptor.work_dir
        logger.warning("Rolling back %s to %s", descriptor.unit.name, to_revision)
        try:
            self._git.reset_hard(work_dir, to_revision)
        except CommandError as exc:
            msg = f"Could not reset working tree to {to_revision}: {exc}"
            raise RollbackError(msg) from exc

        warnings: list[str] = []
        rebuilt = True
        try:
            descriptor.install_dependencies(self._runner)
            descriptor.build(self._runner)
        except DeployError as exc:
            rebuilt = False
            warnings.append(str(exc))
            logger.error(
                "Rollback rebuild of %s failed, restarting existing artifact: %s", to_revision, exc
            )

        try:
            descriptor.restart()
        except DeployError as exc:
            msg = f"Could not restart service after rollback to {to_revision}: {exc}"
            raise RollbackError(msg) from exc

        logger.warning("Rollback restart completed at %s", to_revision)
        return RollbackResult(
            revision=to_revision, rebuilt=rebuilt, restarted=True, warnings=warnings
        )

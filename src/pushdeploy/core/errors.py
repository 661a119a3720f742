"""Error taxonomy for the deploy subsystem."""

from __future__ import annotations


class DeployError(Exception):
    """Base class for deploy subsystem errors."""


class ConfigError(DeployError):
    """Deploy configuration is missing or malformed."""


class CommandError(DeployError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, command: str, returncode: int | None, output: str) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"{command} failed ({returncode}): {output.strip()}")


class UnknownBackendError(DeployError):
    """Backend selector is not part of the registry."""


class FallbackExhaustedError(DeployError):
    """Every strategy of a fallback chain failed."""

    def __init__(self, target: str, failures: list[str]) -> None:
        self.target = target
        self.failures = failures
        detail = "; ".join(failures) if failures else "no strategies configured"
        super().__init__(f"No working strategy for {target}: {detail}")


class InstallationError(FallbackExhaustedError):
    """A runtime or tool could not be installed by any strategy."""


class LockBusyError(DeployError):
    """Lock is held by a live process."""

    def __init__(self, owner_pid: int) -> None:
        self.owner_pid = owner_pid
        super().__init__(f"Deploy lock is held by live process {owner_pid}")


class LockContentionError(LockBusyError):
    """Another deploy is in progress; the attempt was aborted on entry."""


class FetchFailureError(DeployError):
    """Source synchronization failed after exhausting retries."""


class BuildFailureError(DeployError):
    """Dependency install or build command failed."""


class RestartFailureError(DeployError):
    """Service restart primitive failed."""


class RollbackError(DeployError):
    """Rollback could not restore the previous revision. Needs an operator."""


class HealthCheckInconclusive(DeployError):
    """Health probe ended without an accepted response. Recorded as a warning, never raised."""

"""Deploy pipeline state machine.

Each non-terminal state owns one stage. A stage returns a :class:`StageOutcome`
and the next state is looked up in an explicit transition table, so the
control flow of a deploy can be read off ``_ON_SUCCESS`` and ``_ON_FAILURE``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import TypeAlias
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from pushdeploy.config import DeployConfig, ServiceSettings
from pushdeploy.core.backends import BackendDescriptor, BackendRegistry
from pushdeploy.core.command_runner import CommandRunner
from pushdeploy.core.errors import (
    BuildFailureError,
    CommandError,
    DeployError,
    FetchFailureError,
    HealthCheckInconclusive,
    LockBusyError,
    LockContentionError,
    RestartFailureError,
    RollbackError,
)
from pushdeploy.core.fallback import retry
from pushdeploy.core.git_manager import GitManager
from pushdeploy.core.health_prober import HealthProber
from pushdeploy.core.lock_manager import LockManager
from pushdeploy.core.rollback_controller import RollbackController
from pushdeploy.core.service_installer import ServiceInstaller
from pushdeploy.models.deployment import DeploymentAttempt, DeployState, LockToken
from pushdeploy.models.events import DeployEvent, EventType

logger = logging.getLogger(__name__)

Sleeper: TypeAlias = Callable[[float], None]

_ON_SUCCESS: dict[DeployState, DeployState] = {
    DeployState.IDLE: DeployState.LOCKED,
    DeployState.LOCKED: DeployState.SYNCING,
    DeployState.SYNCING: DeployState.BUILDING,
    DeployState.BUILDING: DeployState.RESTARTING,
    DeployState.RESTARTING: DeployState.HEALTH_CHECKING,
    DeployState.HEALTH_CHECKING: DeployState.SUCCEEDED,
}

# ROLLED_BACK is provisional: it becomes FAILED when the rollback itself fails.
_ON_FAILURE: dict[DeployState, DeployState] = {
    DeployState.IDLE: DeployState.ABORTED,
    DeployState.LOCKED: DeployState.FAILED,
    DeployState.SYNCING: DeployState.ROLLED_BACK,
    DeployState.BUILDING: DeployState.ROLLED_BACK,
    DeployState.RESTARTING: DeployState.ROLLED_BACK,
    DeployState.HEALTH_CHECKING: DeployState.FAILED,
}


@dataclass(slots=True)
class StageOutcome:
    """Result of running the stage owned by one state."""

    ok: bool
    error: DeployError | None = None

    @classmethod
    def success(cls) -> StageOutcome:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: DeployError) -> StageOutcome:
        return cls(ok=False, error=error)


@dataclass(slots=True)
class PipelineOptions:
    """Timing knobs for one pipeline."""

    probe_attempts: int = 10
    probe_interval_seconds: float = 2.0
    settle_seconds: float = 2.0
    fetch_retries: int = 3
    retry_delay_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> PipelineOptions:
        return cls(
            probe_attempts=settings.probe_attempts,
            probe_interval_seconds=settings.probe_interval_seconds,
            settle_seconds=settings.settle_seconds,
            fetch_retries=settings.fetch_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
        )


@dataclass(slots=True)
class _Run:
    attempt: DeploymentAttempt
    token: LockToken | None = None
    stages: dict[DeployState, Callable[[], StageOutcome]] = field(default_factory=dict)


class DeployPipeline:
    """Lock, sync, build, restart and verify one application.

    One instance may be shared between triggers. Every :meth:`run` call keeps
    its state in a private run record, and the lock decides which call gets to
    mutate the working tree.
    """

    def __init__(
        self,
        *,
        config: DeployConfig,
        descriptor: BackendDescriptor,
        lock_manager: LockManager,
        git_manager: GitManager,
        runner: CommandRunner,
        prober: HealthProber,
        rollback_controller: RollbackController | None = None,
        options: PipelineOptions | None = None,
        sleeper: Sleeper | None = None,
        state_paths: Sequence[Path] = (),
    ) -> None:
        self.config = config
        self.descriptor = descriptor
        self.lock_manager = lock_manager
        self._git = git_manager
        self._runner = runner
        self._prober = prober
        self._rollback = rollback_controller or RollbackController(git_manager, runner)
        self.options = options or PipelineOptions()
        self._sleep = sleeper or time.sleep
        # Files pushdeploy keeps next to the checkout; git must never stash them.
        self._state_paths = tuple(state_paths)
        self.last_attempt: DeploymentAttempt | None = None

    @classmethod
    def from_config(
        cls,
        config: DeployConfig,
        settings: ServiceSettings,
        *,
        runner: CommandRunner | None = None,
    ) -> DeployPipeline:
        runner = runner or CommandRunner()
        git = GitManager(runner)
        descriptor = BackendRegistry(runner).get(config.backend, config)
        db_path = settings.db_path
        return cls(
            config=config,
            descriptor=descriptor,
            lock_manager=LockManager(settings.lock_path or config.default_lock_path()),
            git_manager=git,
            runner=runner,
            prober=HealthProber(request_timeout=settings.probe_timeout_seconds),
            rollback_controller=RollbackController(git, runner),
            options=PipelineOptions.from_settings(settings),
            state_paths=(
                settings.config_path,
                db_path,
                db_path.with_name(db_path.name + "-journal"),
                ServiceInstaller(runner).render(descriptor).path,
                settings.log_file or config.default_log_file(),
            ),
        )

    def run(self, token: LockToken | None = None) -> DeploymentAttempt:
        """Drive one attempt to a terminal state. Never raises for deploy failures.

        ``token`` is a lock the caller already holds; it is released when the
        attempt ends.
        """
        attempt = DeploymentAttempt()
        run = _Run(attempt=attempt, token=token)
        run.stages = {
            DeployState.IDLE: lambda: self._acquire(run),
            DeployState.LOCKED: lambda: self._prepare(run),
            DeployState.SYNCING: lambda: self._sync(run),
            DeployState.BUILDING: lambda: self._build(run),
            DeployState.RESTARTING: lambda: self._restart(run),
            DeployState.HEALTH_CHECKING: lambda: self._check_health(run),
        }
        self._record(attempt, EventType.DEPLOY_TRIGGERED, {"app": self.config.app_name})
        logger.info("Deployment %s started for %s", attempt.id, self.config.app_name)

        try:
            while not attempt.state.terminal:
                state = attempt.state
                outcome = run.stages[state]()
                if outcome.ok:
                    self._transition(attempt, _ON_SUCCESS[state])
                    continue
                self._record_failure(attempt, state, outcome.error)
                target = _ON_FAILURE[state]
                if target is DeployState.ROLLED_BACK:
                    target = self._roll_back(run)
                self._transition(attempt, target)
        except Exception:
            logger.exception("Deployment %s crashed in %s", attempt.id, attempt.state.value)
            self._transition(attempt, DeployState.FAILED)
            raise
        finally:
            if run.token is not None:
                self.lock_manager.release(run.token)
            attempt.finished_at = datetime.now(UTC)
            if attempt.state is not DeployState.ABORTED:
                self.last_attempt = attempt

        self._record(
            attempt,
            EventType.DEPLOY_COMPLETED,
            {"state": attempt.state.value, "degraded": attempt.degraded},
        )
        self._log_summary(attempt)
        return attempt

    # Stages

    def _acquire(self, run: _Run) -> StageOutcome:
        if run.token is not None:
            logger.info("Using deploy lock taken by the trigger (pid %s)", run.token.owner_pid)
            return StageOutcome.success()
        try:
            run.token = self.lock_manager.acquire()
        except LockBusyError as exc:
            error = LockContentionError(exc.owner_pid)
            self._record(
                run.attempt, EventType.LOCK_CONTENTION, {"owner_pid": exc.owner_pid}
            )
            return StageOutcome.failure(error)
        return StageOutcome.success()

    def _prepare(self, run: _Run) -> StageOutcome:
        try:
            revision = self._git.current_revision(self.descriptor.work_dir)
        except CommandError as exc:
            return StageOutcome.failure(FetchFailureError(f"Cannot read current revision: {exc}"))
        run.attempt.starting_revision = revision
        run.attempt.rollback_revision = revision
        logger.info("Current revision %s recorded as rollback target", revision)
        return StageOutcome.success()

    def _sync(self, run: _Run) -> StageOutcome:
        work_dir = self.descriptor.work_dir
        patterns = self.state_patterns()
        try:
            added = self._git.exclude_paths(work_dir, patterns) if patterns else []
        except (CommandError, OSError) as exc:
            return StageOutcome.failure(
                FetchFailureError(f"Cannot exclude deploy state files from git: {exc}")
            )
        if added:
            logger.info("Excluded %s from git", ", ".join(added))

        try:
            self._git.stash_local_changes(work_dir)
        except CommandError as exc:
            logger.warning("Could not stash local changes: %s", exc)

        try:
            retry(
                lambda: self._git.fetch(work_dir),
                attempts=self.options.fetch_retries,
                delay_seconds=self.options.retry_delay_seconds,
                description="git fetch",
                retry_on=(CommandError,),
                sleeper=self._sleep,
            )
            branch = self._git.resolve_default_branch(work_dir, self.config.branch)
            target = self._git.remote_revision(work_dir, branch)
        except CommandError as exc:
            return StageOutcome.failure(FetchFailureError(str(exc)))

        run.attempt.target_revision = target
        if target == run.attempt.starting_revision:
            logger.info("Already at %s on %s, redeploying", target, branch)
        try:
            self._git.reset_hard(work_dir, target)
        except CommandError as exc:
            return StageOutcome.failure(FetchFailureError(str(exc)))
        self._record(
            run.attempt,
            EventType.SYNC_COMPLETED,
            {"branch": branch, "from": run.attempt.starting_revision, "to": target},
        )
        return StageOutcome.success()

    def _build(self, run: _Run) -> StageOutcome:
        try:
            self.descriptor.install_dependencies(self._runner)
            self.descriptor.build(self._runner)
        except BuildFailureError as exc:
            return StageOutcome.failure(exc)
        except DeployError as exc:
            return StageOutcome.failure(BuildFailureError(str(exc)))
        self._record(run.attempt, EventType.BUILD_COMPLETED, {"revision": run.attempt.target_revision})
        return StageOutcome.success()

    def _restart(self, run: _Run) -> StageOutcome:
        try:
            self.descriptor.restart()
        except RestartFailureError as exc:
            return StageOutcome.failure(exc)
        except DeployError as exc:
            return StageOutcome.failure(RestartFailureError(str(exc)))
        self._record(run.attempt, EventType.RESTART_COMPLETED, {"unit": self.descriptor.unit.name})
        return StageOutcome.success()

    def _check_health(self, run: _Run) -> StageOutcome:
        attempt = run.attempt
        if self.options.settle_seconds > 0:
            logger.info("Waiting %ss for the service to settle", self.options.settle_seconds)
            self._sleep(self.options.settle_seconds)
        result = self._prober.probe(
            self.config.base_url,
            self.options.probe_attempts,
            self.options.probe_interval_seconds,
            self.descriptor.health_paths,
        )
        attempt.health = result
        self._record(
            attempt,
            EventType.HEALTH_CHECKED,
            {
                "verdict": result.verdict.value,
                "attempts": result.attempts,
                "elapsed_seconds": round(result.elapsed_seconds, 3),
                "url": result.healthy_url,
            },
        )
        if not result.healthy:
            attempt.degraded = True
            warning = HealthCheckInconclusive(
                f"Health check {result.verdict.value} after {result.attempts} attempts; "
                "deployment kept, check the service manually"
            )
            attempt.warnings.append(str(warning))
            logger.warning("%s", warning)
        return StageOutcome.success()

    # Rollback and bookkeeping

    def _roll_back(self, run: _Run) -> DeployState:
        attempt = run.attempt
        revision = attempt.rollback_revision
        if revision is None:
            return DeployState.FAILED
        self._record(attempt, EventType.ROLLBACK_STARTED, {"to": revision})
        try:
            result = self._rollback.rollback(revision, self.descriptor)
        except RollbackError as exc:
            attempt.errors.append(str(exc))
            self._record(attempt, EventType.ERROR, {"phase": "rollback", "message": str(exc)})
            logger.critical("Rollback to %s failed, manual intervention required: %s", revision, exc)
            return DeployState.FAILED
        attempt.warnings.extend(result.warnings)
        self._record(
            attempt,
            EventType.ROLLBACK_COMPLETED,
            {"to": revision, "rebuilt": result.rebuilt},
        )
        return DeployState.ROLLED_BACK

    def _record_failure(
        self, attempt: DeploymentAttempt, state: DeployState, error: DeployError | None
    ) -> None:
        message = str(error) if error is not None else f"{state.value} failed"
        attempt.errors.append(message)
        if isinstance(error, LockContentionError):
            logger.warning("Deployment %s aborted: %s", attempt.id, message)
            return
        self._record(attempt, EventType.ERROR, {"phase": state.value, "message": message})
        logger.error("Deployment %s failed while %s: %s", attempt.id, state.value, message)

    def _transition(self, attempt: DeploymentAttempt, target: DeployState) -> None:
        previous = attempt.state
        attempt.state = target
        attempt.history.append(target)
        logger.info("Deployment %s: %s -> %s", attempt.id, previous.value, target.value)
        self._record(
            attempt, EventType.STATE_CHANGED, {"from": previous.value, "to": target.value}
        )

    def _record(
        self,
        attempt: DeploymentAttempt,
        event_type: EventType,
        payload: dict[str, str | int | float | bool | None],
    ) -> None:
        attempt.events.append(
            DeployEvent(attempt_id=attempt.id, event_type=event_type, payload=payload)
        )

    def _log_summary(self, attempt: DeploymentAttempt) -> None:
        if attempt.state is DeployState.SUCCEEDED:
            suffix = " (degraded)" if attempt.degraded else ""
            logger.info(
                "Deployment %s succeeded%s at %s", attempt.id, suffix, attempt.target_revision
            )
        elif attempt.state is DeployState.ROLLED_BACK:
            logger.warning(
                "Deployment %s rolled back from %s to %s",
                attempt.id,
                attempt.target_revision,
                attempt.rollback_revision,
            )
        elif attempt.state is DeployState.FAILED:
            logger.error("Deployment %s failed, manual intervention required", attempt.id)

    def state_patterns(self) -> list[str]:
        """Anchored ``info/exclude`` patterns for state files inside the checkout."""
        work_dir = self.descriptor.work_dir.resolve()
        paths = (self.lock_manager.lock_path, self.lock_manager.reclaim_path, *self._state_paths)
        patterns: list[str] = []
        for path in paths:
            try:
                relative = path.resolve().relative_to(work_dir)
            except ValueError:
                continue
            patterns.append("/" + relative.as_posix())
        return patterns

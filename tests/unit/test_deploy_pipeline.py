from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from pushdeploy.config import DeployConfig, ServiceSettings
from pushdeploy.core.backends import BackendDescriptor
from pushdeploy.core.deploy_pipeline import DeployPipeline, PipelineOptions
from pushdeploy.core.health_prober import HealthProber
from pushdeploy.core.lock_manager import LockManager
from pushdeploy.models.backend import BackendVariant, ServiceUnit
from pushdeploy.models.deployment import DeploymentAttempt, DeployState, HealthVerdict
from pushdeploy.models.events import EventType
from tests.support.deploy_fakes import FakeClock, FakeController, FakeGit, FakeRunner

Handler = Callable[[httpx.Request], httpx.Response]


def _healthy(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200 if request.url.path == "/health" else 404)


def _descriptor(work_dir: Path, controller: FakeController) -> BackendDescriptor:
    (work_dir / "package.json").write_text("{}", encoding="utf-8")
    (work_dir / "dist").mkdir(exist_ok=True)
    return BackendDescriptor(
        variant=BackendVariant.INTERPRETED,
        work_dir=work_dir,
        controller=controller,
        unit=ServiceUnit(name="demo", working_directory=work_dir),
        artifact=Path("dist"),
        install_commands=(("npm", "ci"), ("npm", "install")),
        install_marker="package.json",
        build_commands=(("npm", "run", "build"),),
    )


def _pipeline(
    work_dir: Path,
    *,
    git: FakeGit,
    runner: FakeRunner,
    controller: FakeController,
    handler: Handler = _healthy,
    clock: FakeClock | None = None,
    options: PipelineOptions | None = None,
    state_paths: tuple[Path, ...] = (),
) -> DeployPipeline:
    clock = clock or FakeClock()
    prober = HealthProber(
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=clock,
        sleeper=clock.sleep,
    )
    return DeployPipeline(
        config=DeployConfig(app_name="demo", app_dir=work_dir, app_port=3000),
        descriptor=_descriptor(work_dir, controller),
        lock_manager=LockManager(work_dir / ".deploy.lock"),
        git_manager=git,  # type: ignore[arg-type]
        runner=runner,  # type: ignore[arg-type]
        prober=prober,
        options=options or PipelineOptions(settle_seconds=0, retry_delay_seconds=0),
        sleeper=clock.sleep,
        state_paths=state_paths,
    )


def _event_types(attempt: DeploymentAttempt) -> list[EventType]:
    return [event.event_type for event in attempt.events]


def test_successful_deploy_walks_every_state(tmp_path: Path) -> None:
    git = FakeGit()
    runner = FakeRunner()
    controller = FakeController()
    pipeline = _pipeline(tmp_path, git=git, runner=runner, controller=controller)

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert attempt.history == [
        DeployState.IDLE,
        DeployState.LOCKED,
        DeployState.SYNCING,
        DeployState.BUILDING,
        DeployState.RESTARTING,
        DeployState.HEALTH_CHECKING,
        DeployState.SUCCEEDED,
    ]
    assert attempt.rollback_revision == "xyz789"
    assert attempt.target_revision == "abc123"
    assert attempt.degraded is False
    assert git.head == "abc123"
    assert git.calls[:4] == ["current_revision", "exclude", "stash", "fetch"]
    assert git.excluded == ["/.deploy.lock", "/.deploy.lock.reclaim"]
    assert runner.calls == ["npm ci", "npm run build"]
    assert controller.restarts == 1
    assert not (tmp_path / ".deploy.lock").exists()
    assert pipeline.last_attempt is attempt
    assert _event_types(attempt)[0] is EventType.DEPLOY_TRIGGERED
    assert _event_types(attempt)[-1] is EventType.DEPLOY_COMPLETED


def test_build_failure_rolls_back_to_previous_revision(tmp_path: Path, caplog) -> None:
    caplog.set_level(logging.INFO, logger="pushdeploy")
    git = FakeGit(head="xyz789", remote_head="abc123")
    runner = FakeRunner(fail=["npm run build"])
    controller = FakeController()
    pipeline = _pipeline(tmp_path, git=git, runner=runner, controller=controller)

    attempt = pipeline.run()

    assert attempt.state is DeployState.ROLLED_BACK
    assert attempt.history[-2:] == [DeployState.BUILDING, DeployState.ROLLED_BACK]
    assert git.head == "xyz789"
    assert [call for call in git.calls if call.startswith("reset:")] == [
        "reset:abc123",
        "reset:xyz789",
    ]
    # The failed build never reached restart; the one restart is the rollback's.
    assert controller.restarts == 1
    assert not (tmp_path / ".deploy.lock").exists()

    messages = [record.getMessage() for record in caplog.records]
    assert any("failed while building" in message for message in messages)
    assert any("Rollback restart completed at xyz789" in message for message in messages)

    errors = [event for event in attempt.events if event.event_type is EventType.ERROR]
    assert errors[0].payload["phase"] == "building"
    assert EventType.ROLLBACK_COMPLETED in _event_types(attempt)


def test_restart_failure_rolls_back_and_restarts_previous_revision(tmp_path: Path) -> None:
    git = FakeGit()
    controller = FakeController(fail_restarts=1)
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=controller)

    attempt = pipeline.run()

    assert attempt.state is DeployState.ROLLED_BACK
    assert controller.restarts == 2
    assert git.head == "xyz789"
    assert "unit failed to start" in attempt.errors[0]


def test_failed_rollback_ends_in_failed_state(tmp_path: Path, caplog) -> None:
    caplog.set_level(logging.INFO, logger="pushdeploy")
    git = FakeGit()
    runner = FakeRunner(fail=["npm run build"])
    controller = FakeController(fail_restarts=1)
    pipeline = _pipeline(tmp_path, git=git, runner=runner, controller=controller)

    attempt = pipeline.run()

    assert attempt.state is DeployState.FAILED
    assert len(attempt.errors) == 2
    assert "Could not restart service after rollback" in attempt.errors[-1]
    assert not (tmp_path / ".deploy.lock").exists()
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)


def test_second_trigger_during_sync_aborts_without_mutation(tmp_path: Path) -> None:
    second_git = FakeGit()
    second_runner = FakeRunner()
    second_controller = FakeController()
    second = _pipeline(
        tmp_path, git=second_git, runner=second_runner, controller=second_controller
    )

    first_git = FakeGit()
    observed: list[tuple[DeploymentAttempt, bool]] = []

    def trigger_second() -> None:
        if not observed:
            observed.append((second.run(), (tmp_path / ".deploy.lock").exists()))

    first_git.on_fetch = trigger_second
    first = _pipeline(tmp_path, git=first_git, runner=FakeRunner(), controller=FakeController())

    first_attempt = first.run()

    rejected, lock_still_held = observed[0]
    assert rejected.state is DeployState.ABORTED
    assert rejected.history == [DeployState.IDLE, DeployState.ABORTED]
    assert "held by live process" in rejected.errors[0]
    assert EventType.LOCK_CONTENTION in _event_types(rejected)
    assert second_git.calls == []
    assert second_runner.calls == []
    assert second_controller.restarts == 0
    assert second.last_attempt is None
    assert lock_still_held is True
    assert first_attempt.state is DeployState.SUCCEEDED


def test_redeploying_same_revision_is_idempotent(tmp_path: Path) -> None:
    git = FakeGit(head="abc123", remote_head="abc123")
    controller = FakeController()
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=controller)

    first = pipeline.run()
    second = pipeline.run()

    assert first.state is DeployState.SUCCEEDED
    assert second.state is DeployState.SUCCEEDED
    assert git.head == "abc123"
    assert first.history == second.history
    assert controller.restarts == 2
    assert not (tmp_path / ".deploy.lock").exists()


def test_health_passing_on_fourth_attempt_succeeds_after_about_eight_seconds(
    tmp_path: Path,
) -> None:
    health_calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal health_calls
        if request.url.path != "/health":
            return httpx.Response(404)
        health_calls += 1
        return httpx.Response(200 if health_calls == 4 else 503)

    clock = FakeClock()
    pipeline = _pipeline(
        tmp_path,
        git=FakeGit(),
        runner=FakeRunner(),
        controller=FakeController(),
        handler=handler,
        clock=clock,
        options=PipelineOptions(
            probe_attempts=10,
            probe_interval_seconds=2.0,
            settle_seconds=2.0,
            retry_delay_seconds=0,
        ),
    )

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert attempt.degraded is False
    assert attempt.health is not None
    assert attempt.health.attempts == 4
    assert attempt.health.healthy_url == "http://localhost:3000/health"
    assert clock.elapsed == pytest.approx(8.0)


def test_unhealthy_service_is_a_degraded_success_not_a_rollback(tmp_path: Path) -> None:
    git = FakeGit()
    controller = FakeController()
    pipeline = _pipeline(
        tmp_path,
        git=git,
        runner=FakeRunner(),
        controller=controller,
        handler=lambda request: httpx.Response(503),
        options=PipelineOptions(probe_attempts=3, probe_interval_seconds=1.0, settle_seconds=0),
    )

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert attempt.degraded is True
    assert attempt.health is not None
    assert attempt.health.verdict is HealthVerdict.UNHEALTHY
    assert "unhealthy" in attempt.warnings[0]
    assert git.head == "abc123"
    assert controller.restarts == 1


def test_fetch_is_retried_with_fixed_delay(tmp_path: Path) -> None:
    clock = FakeClock()
    git = FakeGit(fetch_failures=2)
    pipeline = _pipeline(
        tmp_path,
        git=git,
        runner=FakeRunner(),
        controller=FakeController(),
        clock=clock,
        options=PipelineOptions(fetch_retries=3, retry_delay_seconds=5.0, settle_seconds=0),
    )

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert git.calls.count("fetch") == 3
    assert clock.sleeps == [5.0, 5.0]


def test_exhausted_fetch_rolls_back(tmp_path: Path) -> None:
    git = FakeGit(fetch_failures=5)
    runner = FakeRunner()
    controller = FakeController()
    pipeline = _pipeline(
        tmp_path,
        git=git,
        runner=runner,
        controller=controller,
        options=PipelineOptions(fetch_retries=3, retry_delay_seconds=0, settle_seconds=0),
    )

    attempt = pipeline.run()

    assert attempt.state is DeployState.ROLLED_BACK
    assert attempt.history[-2:] == [DeployState.SYNCING, DeployState.ROLLED_BACK]
    assert git.calls.count("fetch") == 3
    assert "Could not resolve host" in attempt.errors[0]
    assert git.head == "xyz789"
    assert controller.restarts == 1


def test_missing_default_branch_is_a_sync_failure(tmp_path: Path) -> None:
    git = FakeGit(branches=("develop",))
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=FakeController())

    attempt = pipeline.run()

    assert attempt.state is DeployState.ROLLED_BACK
    assert attempt.target_revision is None
    assert "no default branch" in attempt.errors[0]


def test_master_is_used_when_main_is_missing(tmp_path: Path) -> None:
    git = FakeGit(branches=("master",))
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=FakeController())

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert "remote_revision:master" in git.calls


def test_state_files_inside_the_checkout_are_excluded_before_stashing(tmp_path: Path) -> None:
    git = FakeGit()
    pipeline = _pipeline(
        tmp_path,
        git=git,
        runner=FakeRunner(),
        controller=FakeController(),
        state_paths=(
            tmp_path / ".deploy-config",
            tmp_path / ".pushdeploy" / "events.db",
            tmp_path.parent / "elsewhere.log",
        ),
    )

    attempt = pipeline.run()

    assert attempt.state is DeployState.SUCCEEDED
    assert git.calls.index("exclude") < git.calls.index("stash")
    assert git.excluded == [
        "/.deploy.lock",
        "/.deploy.lock.reclaim",
        "/.deploy-config",
        "/.pushdeploy/events.db",
    ]


def test_state_paths_from_config_cover_config_store_and_generated_unit(tmp_path: Path) -> None:
    config = DeployConfig(app_name="demo", app_dir=tmp_path, app_port=3000)
    settings = ServiceSettings(
        config_path=tmp_path / ".deploy-config",
        db_path=tmp_path / ".pushdeploy" / "events.db",
        log_file=tmp_path / "deploy.log",
    )

    pipeline = DeployPipeline.from_config(config, settings, runner=FakeRunner())  # type: ignore[arg-type]

    assert pipeline.state_patterns() == [
        "/.deploy.lock",
        "/.deploy.lock.reclaim",
        "/.deploy-config",
        "/.pushdeploy/events.db",
        "/.pushdeploy/events.db-journal",
        "/ecosystem.config.cjs",
        "/deploy.log",
    ]


def test_unwritable_exclude_file_fails_sync_before_stashing(tmp_path: Path) -> None:
    git = FakeGit()
    git.exclude_fails = True
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=FakeController())

    attempt = pipeline.run()

    assert attempt.state is DeployState.ROLLED_BACK
    assert "stash" not in git.calls
    assert "Cannot exclude deploy state files" in attempt.errors[0]
    assert not (tmp_path / ".deploy.lock").exists()


def test_lock_taken_by_the_caller_is_used_and_released(tmp_path: Path) -> None:
    git = FakeGit()
    held: list[bool] = []
    git.on_fetch = lambda: held.append((tmp_path / ".deploy.lock").exists())
    pipeline = _pipeline(tmp_path, git=git, runner=FakeRunner(), controller=FakeController())
    token = pipeline.lock_manager.acquire()

    attempt = pipeline.run(token)

    assert attempt.state is DeployState.SUCCEEDED
    assert held == [True]
    assert EventType.LOCK_CONTENTION not in _event_types(attempt)
    assert pipeline.lock_manager.holder() is None

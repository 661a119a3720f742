from __future__ import annotations

from pathlib import Path

import pytest

from pushdeploy.core.backends import BackendDescriptor
from pushdeploy.core.errors import RollbackError
from pushdeploy.core.rollback_controller import RollbackController
from pushdeploy.models.backend import BackendVariant, ServiceUnit
from tests.support.deploy_fakes import FakeController, FakeGit, FakeRunner


def _descriptor(tmp_path: Path, controller: FakeController) -> BackendDescriptor:
    (tmp_path / "go.mod").write_text("module demo\n", encoding="utf-8")
    (tmp_path / "bin").mkdir()
    (tmp_path / "bin" / "demo").write_text("", encoding="utf-8")
    return BackendDescriptor(
        variant=BackendVariant.COMPILED,
        work_dir=tmp_path,
        controller=controller,
        unit=ServiceUnit(name="demo", working_directory=tmp_path),
        artifact=Path("bin") / "demo",
        install_commands=(("go", "mod", "download"),),
        install_marker="go.mod",
        build_commands=(("go", "build", "-o", "bin/demo", "."),),
    )


def test_rollback_resets_rebuilds_and_restarts(tmp_path: Path) -> None:
    git = FakeGit(head="abc123")
    runner = FakeRunner()
    controller = FakeController()

    result = RollbackController(git, runner).rollback(  # type: ignore[arg-type]
        "xyz789", _descriptor(tmp_path, controller)
    )

    assert git.head == "xyz789"
    assert runner.calls == ["go mod download", "go build -o bin/demo ."]
    assert controller.restarts == 1
    assert result.rebuilt is True
    assert result.restarted is True


def test_rebuild_failure_still_restarts_previous_artifact(tmp_path: Path) -> None:
    git = FakeGit(head="abc123")
    controller = FakeController()

    result = RollbackController(git, FakeRunner(fail=["go build"])).rollback(  # type: ignore[arg-type]
        "xyz789", _descriptor(tmp_path, controller)
    )

    assert result.rebuilt is False
    assert "go build" in result.warnings[0]
    assert controller.restarts == 1


def test_reset_failure_raises_without_restart(tmp_path: Path) -> None:
    git = FakeGit(head="abc123")
    git.reset_fails = True
    controller = FakeController()

    with pytest.raises(RollbackError, match="Could not reset"):
        RollbackController(git, FakeRunner()).rollback(  # type: ignore[arg-type]
            "xyz789", _descriptor(tmp_path, controller)
        )

    assert controller.restarts == 0


def test_restart_failure_raises_rollback_error(tmp_path: Path) -> None:
    controller = FakeController(fail_restarts=1)

    with pytest.raises(RollbackError, match="Could not restart"):
        RollbackController(FakeGit(), FakeRunner()).rollback(  # type: ignore[arg-type]
            "xyz789", _descriptor(tmp_path, controller)
        )

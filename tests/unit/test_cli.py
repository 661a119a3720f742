from __future__ import annotations

from pathlib import Path

import pytest

from pushdeploy import cli
from pushdeploy.config import DeployConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PUSHDEPLOY_CONFIG_PATH", "PUSHDEPLOY_LOG_FILE", "PUSHDEPLOY_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def _write_config(tmp_path: Path, backend: str) -> Path:
    path = tmp_path / ".deploy-config"
    DeployConfig(app_name="shop", app_dir=tmp_path, backend=backend).save(path)
    return path


def test_render_unit_prints_systemd_unit_for_compiled_backend(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = _write_config(tmp_path, "compiled")

    code = cli.main(["render-unit", "--config", str(path)])

    out = capsys.readouterr().out
    assert code == 0
    assert out.startswith("# /etc/systemd/system/shop.service\n")
    assert f"ExecStart={tmp_path / 'bin' / 'shop'}" in out
    assert "Restart=on-failure" in out


def test_render_unit_listener_runs_serve_with_config(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = _write_config(tmp_path, "interpreted")

    code = cli.main(["render-unit", "--listener", "--config", str(path)])

    out = capsys.readouterr().out
    assert code == 0
    assert "shop-webhook.service" in out
    assert f"pushdeploy.cli serve --config {path.resolve()}" in out


def test_missing_config_exits_with_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli.main(["status", "--config", str(tmp_path / "absent")])

    assert code == 2
    assert "Deploy config not found" in capsys.readouterr().err


def test_unknown_backend_in_config_is_reported(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = _write_config(tmp_path, "cobol")

    code = cli.main(["render-unit", "--config", str(path)])

    assert code == 1
    assert capsys.readouterr().out == ""

"""Service settings and the persisted deploy configuration record."""

from __future__ import annotations

import os
import re
import secrets
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from pushdeploy.core.errors import ConfigError

DEFAULT_CONFIG_NAME = ".deploy-config"

_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

# Keys owned by DeployConfig; anything else in the file is carried through untouched.
_FIELD_KEYS = {
    "APP_NAME": "app_name",
    "APP_DIR": "app_dir",
    "APP_PORT": "app_port",
    "WEBHOOK_PORT": "webhook_port",
    "WEBHOOK_SECRET": "webhook_secret",
    "BACKEND": "backend",
    "BRANCH": "branch",
    "RUNTIME_VERSION": "runtime_version",
}


class ServiceSettings(BaseSettings):
    """Process-level settings. Readable from ``PUSHDEPLOY_*`` environment variables."""

    model_config = {"env_prefix": "PUSHDEPLOY_"}

    config_path: Path = Path(DEFAULT_CONFIG_NAME)
    log_file: Path | None = None
    db_path: Path = Path(".pushdeploy/events.db")
    lock_path: Path | None = None
    host: str = "0.0.0.0"
    port: int | None = None
    probe_attempts: int = 10
    probe_interval_seconds: float = 2.0
    probe_timeout_seconds: float = 5.0
    settle_seconds: float = 2.0
    fetch_retries: int = 3
    retry_delay_seconds: float = 5.0


class DeployConfig(BaseModel):
    """Flat key-value record written at setup and read on every deploy."""

    app_name: str
    app_dir: Path
    app_port: int = 3000
    webhook_port: int = 9000
    webhook_secret: str = Field(default_factory=lambda: secrets.token_hex(32))
    backend: str = "interpreted"
    branch: str = "main"
    runtime_version: str | None = None
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("app_name")
    @classmethod
    def _normalize_app_name(cls, value: str) -> str:
        name = re.sub(r"[^a-z0-9-]", "-", value.strip().lower())
        if not name:
            msg = "app_name must not be empty"
            raise ValueError(msg)
        return name

    @field_validator("runtime_version")
    @classmethod
    def _blank_version(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def hook_id(self) -> str:
        return f"{self.app_name}-deploy"

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.app_port}"

    def default_log_file(self) -> Path:
        return Path("/var/log") / f"{self.app_name}-deploy.log"

    def default_lock_path(self) -> Path:
        return self.app_dir / ".deploy.lock"

    @classmethod
    def load(cls, path: Path) -> DeployConfig:
        if not path.is_file():
            msg = f"Deploy config not found: {path}"
            raise ConfigError(msg)
        values: dict[str, str] = {}
        for number, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or not _KEY_PATTERN.match(key):
                msg = f"{path}:{number}: expected KEY=VALUE, got {raw_line!r}"
                raise ConfigError(msg)
            values[key] = _unquote(value.strip())

        fields: dict[str, object] = {
            field: values.pop(key) for key, field in _FIELD_KEYS.items() if key in values
        }
        fields["extra"] = values
        try:
            return cls.model_validate(fields)
        except ValidationError as exc:
            msg = f"Invalid deploy config {path}: {exc}"
            raise ConfigError(msg) from exc

    def save(self, path: Path) -> None:
        lines = [
            f"{key}={_format_value(getattr(self, field))}"
            for key, field in _FIELD_KEYS.items()
            if getattr(self, field) is not None
        ]
        lines.extend(f"{key}={value}" for key, value in sorted(self.extra.items()))
        path.parent.mkdir(parents=True, exist_ok=True)
        # Created 0600; an existing file is tightened before the secret is written.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write("\n".join(lines) + "\n")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _format_value(value: object) -> str:
    return str(value)

"""Backend variant and service unit models."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class BackendVariant(str, Enum):
    """Supported runtime and service-management styles."""

    INTERPRETED = "interpreted"
    COMPILED = "compiled"
    CONTAINERIZED = "containerized"
    SUPERVISED = "supervised"


class RestartPolicy(str, Enum):
    """When the supervisor brings the service back after it exits."""

    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class ResourceLimits(BaseModel):
    """Soft limits applied by the supervisor."""

    max_memory: str | None = "500M"
    cpu_quota: str | None = None
    open_files: int | None = None


class ServiceUnit(BaseModel):
    """Template for the long-running service unit of one application."""

    name: str
    working_directory: Path
    command: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    restart_delay_seconds: int = 5
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    user: str | None = None
    log_dir: Path = Path("/var/log")

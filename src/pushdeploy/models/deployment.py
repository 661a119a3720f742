"""Deployment attempt, lock token and health probe records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pushdeploy.models.events import AttemptRecord, DeployEvent


class DeployState(str, Enum):
    """Pipeline states. The last four are terminal."""

    IDLE = "idle"
    LOCKED = "locked"
    SYNCING = "syncing"
    BUILDING = "building"
    RESTARTING = "restarting"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {DeployState.SUCCEEDED, DeployState.ROLLED_BACK, DeployState.FAILED, DeployState.ABORTED}
)


class HealthVerdict(str, Enum):
    """Overall result of one probe round."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INCONCLUSIVE = "inconclusive"


@dataclass(slots=True)
class EndpointCheck:
    """One request against one candidate endpoint."""

    attempt: int
    url: str
    status_code: int | None = None
    error: str | None = None

    @property
    def alive(self) -> bool:
        return self.status_code is not None


@dataclass(slots=True)
class HealthProbeResult:
    """Outcome of polling candidate endpoints."""

    verdict: HealthVerdict
    checks: list[EndpointCheck] = field(default_factory=list)
    attempts: int = 0
    elapsed_seconds: float = 0.0
    healthy_url: str | None = None

    @property
    def healthy(self) -> bool:
        return self.verdict is HealthVerdict.HEALTHY

    @property
    def endpoints(self) -> list[str]:
        return list(dict.fromkeys(check.url for check in self.checks))

    def status_codes(self) -> dict[str, int | None]:
        """Latest status code seen per endpoint."""
        latest: dict[str, int | None] = {}
        for check in self.checks:
            latest[check.url] = check.status_code
        return latest


@dataclass(slots=True)
class LockToken:
    """Proof that the holder owns the deploy lock."""

    owner_pid: int
    acquired_at: datetime
    token_id: str = field(default_factory=lambda: uuid4().hex)
    hostname: str = ""

    def as_payload(self) -> dict[str, str | int]:
        return {
            "owner_pid": self.owner_pid,
            "acquired_at": self.acquired_at.isoformat(),
            "token_id": self.token_id,
            "hostname": self.hostname,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> LockToken:
        return cls(
            owner_pid=int(str(payload["owner_pid"])),
            acquired_at=datetime.fromisoformat(str(payload["acquired_at"])),
            token_id=str(payload["token_id"]),
            hostname=str(payload.get("hostname", "")),
        )


@dataclass(slots=True)
class DeploymentAttempt:
    """Ephemeral record of one pipeline run."""

    id: str = field(default_factory=lambda: uuid4().hex[:12])
    triggered_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: DeployState = DeployState.IDLE
    starting_revision: str | None = None
    target_revision: str | None = None
    rollback_revision: str | None = None
    degraded: bool = False
    health: HealthProbeResult | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    events: list[DeployEvent] = field(default_factory=list)
    history: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is DeployState.SUCCEEDED

    def as_payload(self) -> dict[str, str | bool | None]:
        return {
            "id": self.id,
            "state": self.state.value,
            "triggered_at": self.triggered_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "starting_revision": self.starting_revision,
            "target_revision": self.target_revision,
            "rollback_revision": self.rollback_revision,
            "degraded": self.degraded,
            "health": self.health.verdict.value if self.health else None,
            "error": self.errors[-1] if self.errors else None,
        }

    def to_record(self, app_name: str) -> AttemptRecord:
        return AttemptRecord(
            id=self.id,
            app_name=app_name,
            state=self.state.value,
            starting_revision=self.starting_revision,
            target_revision=self.target_revision,
            rollback_revision=self.rollback_revision,
            degraded=self.degraded,
            health=self.health.verdict.value if self.health else None,
            error=self.errors[-1] if self.errors else None,
            triggered_at=self.triggered_at,
            finished_at=self.finished_at,
        )

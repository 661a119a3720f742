"""Event models for the deploy log trail."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event categories emitted by the deploy pipeline."""

    DEPLOY_TRIGGERED = "deploy.triggered"
    LOCK_CONTENTION = "lock.contention"
    STATE_CHANGED = "state.changed"
    SYNC_COMPLETED = "sync.completed"
    BUILD_COMPLETED = "build.completed"
    RESTART_COMPLETED = "restart.completed"
    HEALTH_CHECKED = "health.checked"
    ROLLBACK_STARTED = "rollback.started"
    ROLLBACK_COMPLETED = "rollback.completed"
    DEPLOY_COMPLETED = "deploy.completed"
    ERROR = "error"


class DeployEvent(BaseModel):
    """Append-only event emitted during one deployment attempt."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    attempt_id: str
    event_type: EventType
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AttemptRecord(BaseModel):
    """Persisted summary of one finished deployment attempt."""

    id: str
    app_name: str
    state: str
    starting_revision: str | None = None
    target_revision: str | None = None
    rollback_revision: str | None = None
    degraded: bool = False
    health: str | None = None
    error: str | None = None
    triggered_at: datetime
    finished_at: datetime | None = None

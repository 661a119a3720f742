"""Deploy API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Acknowledgment returned to the push trigger."""

    message: str
    status: str
    hook_id: str


class AttemptResponse(BaseModel):
    """Summary of one deployment attempt."""

    id: str
    state: str
    starting_revision: str | None = None
    target_revision: str | None = None
    rollback_revision: str | None = None
    degraded: bool = False
    health: str | None = None
    error: str | None = None
    triggered_at: datetime
    finished_at: datetime | None = None


class AttemptsResponse(BaseModel):
    """Collection of deployment attempts, newest first."""

    items: list[AttemptResponse]


class LockResponse(BaseModel):
    """Current deploy lock holder."""

    owner_pid: int
    hostname: str
    acquired_at: datetime


class DeployStatusResponse(BaseModel):
    """Lock state and most recent attempt."""

    app_name: str
    backend: str
    in_progress: bool
    lock: LockResponse | None = None
    last_attempt: AttemptResponse | None = None


class EventResponse(BaseModel):
    """Event record payload."""

    id: str
    attempt_id: str
    event_type: str
    payload: dict[str, Any]
    timestamp: datetime


class EventsResponse(BaseModel):
    """Collection of events."""

    items: list[EventResponse]

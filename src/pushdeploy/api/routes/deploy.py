"""Deploy status and event routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from pushdeploy.api.deps import get_pipeline, get_store
from pushdeploy.api.schemas.deploy import (
    AttemptResponse,
    AttemptsResponse,
    DeployStatusResponse,
    EventResponse,
    EventsResponse,
    LockResponse,
)
from pushdeploy.core.deploy_pipeline import DeployPipeline
from pushdeploy.db.store import SQLiteStore
from pushdeploy.models.events import AttemptRecord, EventType

router = APIRouter(prefix="/api/v1/deploy", tags=["deploy"])


def _attempt_response(record: AttemptRecord) -> AttemptResponse:
    return AttemptResponse.model_validate(record.model_dump(exclude={"app_name"}))


@router.get("/status", response_model=DeployStatusResponse)
async def deploy_status(
    pipeline: DeployPipeline = Depends(get_pipeline),
    store: SQLiteStore = Depends(get_store),
) -> DeployStatusResponse:
    holder = pipeline.lock_manager.holder()
    if pipeline.last_attempt is not None:
        last: AttemptRecord | None = pipeline.last_attempt.to_record(pipeline.config.app_name)
    else:
        last = await store.latest_attempt()
    return DeployStatusResponse(
        app_name=pipeline.config.app_name,
        backend=pipeline.descriptor.variant.value,
        in_progress=holder is not None,
        lock=(
            LockResponse(
                owner_pid=holder.owner_pid,
                hostname=holder.hostname,
                acquired_at=holder.acquired_at,
            )
            if holder is not None
            else None
        ),
        last_attempt=_attempt_response(last) if last is not None else None,
    )


@router.get("/attempts", response_model=AttemptsResponse)
async def list_attempts(
    limit: int = Query(default=20, ge=1, le=200),
    store: SQLiteStore = Depends(get_store),
) -> AttemptsResponse:
    records = await store.list_attempts(limit=limit)
    return AttemptsResponse(items=[_attempt_response(record) for record in records])


@router.get("/events", response_model=EventsResponse)
async def list_deploy_events(
    attempt_id: str | None = None,
    event_type: str | None = None,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    store: SQLiteStore = Depends(get_store),
) -> EventsResponse:
    parsed_event_type: EventType | None = None
    if event_type is not None:
        try:
            parsed_event_type = EventType(event_type)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid event_type",
            ) from exc

    events = await store.list_events(
        attempt_id=attempt_id,
        event_type=parsed_event_type,
        since=since,
        until=until,
    )
    return EventsResponse(
        items=[
            EventResponse(
                id=event.id,
                attempt_id=event.attempt_id,
                event_type=event.event_type.value,
                payload=event.payload,
                timestamp=event.timestamp,
            )
            for event in events
        ]
    )

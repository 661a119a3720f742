from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pushdeploy.db.store import SQLiteStore
from pushdeploy.models.deployment import DeploymentAttempt, DeployState
from pushdeploy.models.events import DeployEvent, EventType


def _attempt(state: DeployState, triggered_at: datetime) -> DeploymentAttempt:
    attempt = DeploymentAttempt(triggered_at=triggered_at, state=state)
    attempt.starting_revision = "xyz789"
    attempt.target_revision = "abc123"
    attempt.events = [
        DeployEvent(attempt_id=attempt.id, event_type=EventType.DEPLOY_TRIGGERED),
        DeployEvent(
            attempt_id=attempt.id,
            event_type=EventType.STATE_CHANGED,
            payload={"from": "idle", "to": "locked"},
        ),
    ]
    attempt.finished_at = triggered_at + timedelta(seconds=30)
    return attempt


@pytest.mark.asyncio
async def test_store_records_attempts_newest_first(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "state" / "events.db")
    now = datetime.now(UTC)
    older = _attempt(DeployState.ROLLED_BACK, now - timedelta(hours=1))
    newer = _attempt(DeployState.SUCCEEDED, now)
    newer.degraded = True

    for attempt in (older, newer):
        await store.record_attempt(attempt.to_record("shop"), attempt.events)

    latest = await store.latest_attempt()
    assert latest is not None
    assert latest.id == newer.id
    assert latest.state == "succeeded"
    assert latest.degraded is True
    assert [record.id for record in await store.list_attempts()] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_recording_twice_does_not_duplicate_events(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "events.db")
    attempt = _attempt(DeployState.SUCCEEDED, datetime.now(UTC))

    await store.record_attempt(attempt.to_record("shop"), attempt.events)
    await store.record_attempt(attempt.to_record("shop"), attempt.events)

    assert len(await store.list_events(attempt_id=attempt.id)) == 2
    assert len(await store.list_attempts()) == 1


@pytest.mark.asyncio
async def test_store_event_filters(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "events.db")
    first = _attempt(DeployState.SUCCEEDED, datetime.now(UTC))
    second = _attempt(DeployState.FAILED, datetime.now(UTC))
    await store.record_attempt(first.to_record("shop"), first.events)
    await store.record_attempt(second.to_record("shop"), second.events)

    events = await store.list_events(attempt_id=first.id, event_type=EventType.STATE_CHANGED)
    assert len(events) == 1
    assert events[0].payload == {"from": "idle", "to": "locked"}

    assert await store.list_events(since=datetime.now(UTC) + timedelta(minutes=1)) == []


@pytest.mark.asyncio
async def test_empty_store(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "events.db")

    assert await store.latest_attempt() is None
    assert await store.list_events() == []

"""Async SQLite persistence for deploy attempts and events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from pushdeploy.db.migrations import apply_migrations
from pushdeploy.models.events import AttemptRecord, DeployEvent, EventType


class SQLiteStore:
    """Data access layer for the deploy log trail."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        try:
            await apply_migrations(conn)
            yield conn
        finally:
            await conn.close()

    async def record_attempt(self, record: AttemptRecord, events: Iterable[DeployEvent]) -> None:
        """Store a finished attempt together with its events in one transaction."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO deploy_attempts(
                    id,
                    app_name,
                    state,
                    starting_revision,
                    target_revision,
                    rollback_revision,
                    degraded,
                    health,
                    error,
                    triggered_at,
                    finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state=excluded.state,
                    target_revision=excluded.target_revision,
                    degraded=excluded.degraded,
                    health=excluded.health,
                    error=excluded.error,
                    finished_at=excluded.finished_at
                """,
                (
                    record.id,
                    record.app_name,
                    record.state,
                    record.starting_revision,
                    record.target_revision,
                    record.rollback_revision,
                    int(record.degraded),
                    record.health,
                    record.error,
                    record.triggered_at.isoformat(),
                    record.finished_at.isoformat() if record.finished_at else None,
                ),
            )
            await conn.executemany(
                """
                INSERT OR IGNORE INTO deploy_events(id, attempt_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        event.id,
                        event.attempt_id,
                        event.event_type.value,
                        json.dumps(event.payload),
                        event.timestamp.isoformat(),
                    )
                    for event in events
                ],
            )
            await conn.commit()

    async def latest_attempt(self) -> AttemptRecord | None:
        attempts = await self.list_attempts(limit=1)
        return attempts[0] if attempts else None

    async def list_attempts(self, *, limit: int = 20) -> list[AttemptRecord]:
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM deploy_attempts ORDER BY triggered_at DESC LIMIT ?", (limit,)
            )
            rows = await cursor.fetchall()
        return [self._attempt_from_row(row) for row in rows]

    async def list_events(
        self,
        *,
        attempt_id: str | None = None,
        event_type: EventType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[DeployEvent]:
        query = "SELECT * FROM deploy_events WHERE 1 = 1"
        params: list[str] = []

        if attempt_id:
            query += " AND attempt_id = ?"
            params.append(attempt_id)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        if until:
            query += " AND timestamp <= ?"
            params.append(until.isoformat())

        query += " ORDER BY timestamp ASC, rowid ASC"

        async with self.connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()

        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _attempt_from_row(row: aiosqlite.Row) -> AttemptRecord:
        return AttemptRecord(
            id=str(row["id"]),
            app_name=str(row["app_name"]),
            state=str(row["state"]),
            starting_revision=row["starting_revision"],
            target_revision=row["target_revision"],
            rollback_revision=row["rollback_revision"],
            degraded=bool(row["degraded"]),
            health=row["health"],
            error=row["error"],
            triggered_at=datetime.fromisoformat(str(row["triggered_at"])),
            finished_at=datetime.fromisoformat(str(row["finished_at"])) if row["finished_at"] else None,
        )

    @staticmethod
    def _event_from_row(row: aiosqlite.Row) -> DeployEvent:
        return DeployEvent(
            id=str(row["id"]),
            attempt_id=str(row["attempt_id"]),
            event_type=EventType(str(row["event_type"])),
            payload=json.loads(str(row["payload"])),
            timestamp=datetime.fromisoformat(str(row["timestamp"])),
        )

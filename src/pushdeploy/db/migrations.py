"""SQLite schema for the deploy log trail."""

from __future__ import annotations

import aiosqlite

SCHEMA_VERSION = 1

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deploy_attempts (
        id TEXT PRIMARY KEY,
        app_name TEXT NOT NULL,
        state TEXT NOT NULL,
        starting_revision TEXT,
        target_revision TEXT,
        rollback_revision TEXT,
        degraded INTEGER NOT NULL DEFAULT 0,
        health TEXT,
        error TEXT,
        triggered_at TEXT NOT NULL,
        finished_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deploy_events (
        id TEXT PRIMARY KEY,
        attempt_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deploy_events_attempt ON deploy_events(attempt_id)",
)


async def apply_migrations(conn: aiosqlite.Connection) -> None:
    """Create missing tables and record the schema version."""
    for statement in _SCHEMA:
        await conn.execute(statement)

    cursor = await conn.execute("SELECT MAX(version) FROM schema_migrations")
    row = await cursor.fetchone()
    if row is None or row[0] != SCHEMA_VERSION:
        await conn.execute("DELETE FROM schema_migrations")
        await conn.execute("INSERT INTO schema_migrations(version) VALUES (?)", (SCHEMA_VERSION,))
    await conn.commit()

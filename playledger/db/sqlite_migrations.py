"""Database schema creation and versioning.

All CREATE TABLE statements for the play-session store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("playledger.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── Play sessions ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS play_sessions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id           INTEGER NOT NULL,
    user_id          INTEGER NOT NULL,
    started_at       TEXT NOT NULL,
    ended_at         TEXT,
    duration_seconds INTEGER
);

CREATE INDEX IF NOT EXISTS idx_play_sessions_user ON play_sessions(user_id, started_at);
CREATE INDEX IF NOT EXISTS idx_play_sessions_app  ON play_sessions(app_id, user_id);

-- At most one open row per (app, user) pair.
CREATE UNIQUE INDEX IF NOT EXISTS idx_play_sessions_open
    ON play_sessions(app_id, user_id) WHERE ended_at IS NULL;
"""


async def _current_version(db: aiosqlite.Connection) -> int:
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            return row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        return 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and indexes. Idempotent."""
    current_version = await _current_version(db)
    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Migrating schema from version {current_version} to {SCHEMA_VERSION}")
    await db.executescript(_TABLES)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")

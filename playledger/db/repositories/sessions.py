"""SQLite implementation of the play-session store."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import aiosqlite

from playledger.errors import PersistenceFailure
from playledger.models import INTERRUPTED_DURATION, PlaySession, PlaytimeTotal

logger = logging.getLogger("playledger.db")


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SqlitePlaySessionRepository:
    """SQLite-backed play-session storage.

    Every sqlite error surfaces as ``PersistenceFailure`` after the pending
    transaction is rolled back.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    @asynccontextmanager
    async def _guard(self, action: str) -> AsyncIterator[None]:
        try:
            yield
        except aiosqlite.Error as exc:
            await self._rollback()
            raise PersistenceFailure(f"Failed to {action}: {exc}") from exc

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except aiosqlite.Error as exc:
            logger.warning(f"Rollback failed: {exc}")

    # ── Tracker operations ──────────────────────────────────────────

    async def find_open_session(self, app_id: int, user_id: int) -> PlaySession | None:
        async with self._guard(f"look up open session for app {app_id}"):
            async with self.db.execute(
                "SELECT * FROM play_sessions WHERE app_id = ? AND user_id = ? AND ended_at IS NULL",
                (app_id, user_id),
            ) as cur:
                row = await cur.fetchone()
        return self._row_to_session(row) if row else None

    async def create_open_session(self, app_id: int, user_id: int, started_at: datetime) -> PlaySession:
        async with self._guard(f"open session for app {app_id}"):
            async with self.db.execute(
                "INSERT INTO play_sessions (app_id, user_id, started_at) VALUES (?, ?, ?)",
                (app_id, user_id, started_at.isoformat()),
            ) as cur:
                session_id = cur.lastrowid
            await self.db.commit()
        logger.debug(f"Opened session {session_id} (app {app_id}, user {user_id})")
        return PlaySession(id=session_id, appId=app_id, userId=user_id, startedAt=started_at)

    async def close_session(self, session_id: int, ended_at: datetime, duration_seconds: int) -> None:
        async with self._guard(f"close session {session_id}"):
            await self.db.execute(
                "UPDATE play_sessions SET ended_at = ?, duration_seconds = ? WHERE id = ? AND ended_at IS NULL",
                (ended_at.isoformat(), duration_seconds, session_id),
            )
            await self.db.commit()
        logger.debug(f"Closed session {session_id} after {duration_seconds}s")

    async def list_open_sessions(self) -> list[PlaySession]:
        async with self._guard("list open sessions"):
            async with self.db.execute(
                "SELECT * FROM play_sessions WHERE ended_at IS NULL ORDER BY started_at, id"
            ) as cur:
                rows = await cur.fetchall()
        return [self._row_to_session(r) for r in rows]

    # ── History queries ─────────────────────────────────────────────

    async def list_sessions(
        self,
        user_id: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        include_interrupted: bool = True,
        app_id: int | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[PlaySession]:
        clauses: list[str] = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if app_id is not None:
            clauses.append("app_id = ?")
            params.append(app_id)
        if since is not None:
            clauses.append("started_at >= ?")
            params.append(since.isoformat())
        if until is not None:
            clauses.append("started_at < ?")
            params.append(until.isoformat())
        if not include_interrupted:
            clauses.append("(duration_seconds IS NULL OR duration_seconds != ?)")
            params.append(INTERRUPTED_DURATION)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM play_sessions {where} ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self._guard("list sessions"):
            async with self.db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def get_playtime_totals(self, user_id: int | None = None) -> list[PlaytimeTotal]:
        """Completed-session totals per (app, user); open and interrupted rows are excluded."""
        params: list = [INTERRUPTED_DURATION]
        user_clause = ""
        if user_id is not None:
            user_clause = "AND user_id = ?"
            params.append(user_id)

        query = f"""
            SELECT app_id, user_id,
                   COUNT(*) AS session_count,
                   COALESCE(SUM(duration_seconds), 0) AS total_seconds,
                   MAX(ended_at) AS last_played_at
              FROM play_sessions
             WHERE ended_at IS NOT NULL AND duration_seconds != ? {user_clause}
             GROUP BY app_id, user_id
             ORDER BY total_seconds DESC, app_id
        """
        async with self._guard("compute playtime totals"):
            async with self.db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [
            PlaytimeTotal(
                appId=row["app_id"],
                userId=row["user_id"],
                sessionCount=row["session_count"],
                totalSeconds=row["total_seconds"],
                lastPlayedAt=_parse_timestamp(row["last_played_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> PlaySession:
        return PlaySession(
            id=row["id"],
            appId=row["app_id"],
            userId=row["user_id"],
            startedAt=_parse_timestamp(row["started_at"]),
            endedAt=_parse_timestamp(row["ended_at"]),
            durationSeconds=row["duration_seconds"],
        )

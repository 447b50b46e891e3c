"""Play-session tracker.

Polls the process list, matches it against the aggregated catalog and keeps
exactly one open play session per running (app, user) pair in the store.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Protocol

from playledger import config
from playledger.errors import PersistenceFailure
from playledger.matcher import match
from playledger.models import (
    INTERRUPTED_DURATION,
    AggregatedApp,
    PlaySession,
    ProcessObservation,
    TrackerStatus,
)
from playledger.observability import record_poll_failure

logger = logging.getLogger("playledger.tracker")

SessionKey = tuple[int, int]


class ProcessSnapshotProvider(Protocol):
    def snapshot(self) -> list[ProcessObservation]: ...


class UserProvider(Protocol):
    def current_user_id(self) -> int | None: ...


class PersistenceGateway(Protocol):
    async def find_open_session(self, app_id: int, user_id: int) -> PlaySession | None: ...

    async def create_open_session(self, app_id: int, user_id: int, started_at: datetime) -> PlaySession: ...

    async def close_session(self, session_id: int, ended_at: datetime, duration_seconds: int) -> None: ...

    async def list_open_sessions(self) -> list[PlaySession]: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_seconds(started_at: datetime, ended_at: datetime) -> int:
    return max(0, math.floor((ended_at - started_at).total_seconds()))


class SessionTracker:
    """Background poller that opens and closes play sessions.

    The open-session table is only changed after the matching store write
    succeeded, so it never claims a session the store does not have.
    """

    def __init__(
        self,
        snapshot_provider: ProcessSnapshotProvider,
        catalog_provider: Callable[[], Mapping[int, AggregatedApp]],
        user_provider: UserProvider,
        gateway: PersistenceGateway,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._snapshot_provider = snapshot_provider
        self._catalog_provider = catalog_provider
        self._user_provider = user_provider
        self._gateway = gateway
        self._clock = clock
        self._interval = self._clamp_interval(
            config.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )

        self._open: dict[SessionKey, PlaySession] = {}
        self._table_lock = threading.Lock()
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._last_poll_at: datetime | None = None
        self._last_error: str | None = None

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def poll_interval(self) -> float:
        return self._interval

    async def start(self) -> None:
        """Recover sessions left open by a previous run, then begin polling."""
        async with self._tick_lock:
            if self.is_running:
                logger.warning("Session tracker already running")
                return

            with self._table_lock:
                self._open.clear()
            await self._close_interrupted_sessions()
            self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Session tracker started (every {self._interval:g}s)")

    async def stop(self) -> None:
        """Stop polling. Open sessions stay open in the store."""
        async with self._tick_lock:
            task, self._task = self._task, None
            if task is None:
                return
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Session tracker stopped")

    async def set_poll_interval(self, seconds: float) -> float:
        """Change the polling period; a running loop is restarted without recovery."""
        interval = self._clamp_interval(seconds)
        async with self._tick_lock:
            self._interval = interval
            if self.is_running:
                task = self._task
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Poll interval set to {interval:g}s")
        return interval

    @staticmethod
    def _clamp_interval(seconds: float) -> float:
        minimum = config.MIN_POLL_INTERVAL_SECONDS
        if seconds < minimum:
            logger.warning(f"Poll interval {seconds}s below minimum, using {minimum}s")
            return minimum
        return float(seconds)

    # ── Polling ─────────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except PersistenceFailure as e:
                logger.error(f"Session store unavailable, will retry: {e}")
                record_poll_failure("persistence")
            except Exception as e:
                logger.exception(f"Session poll failed: {e}")
                record_poll_failure("error")
                self._last_error = str(e)
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> None:
        """Run a single tick. Store failures propagate to the caller."""
        async with self._tick_lock:
            try:
                await self._tick()
            except PersistenceFailure as e:
                self._last_error = str(e)
                raise

    async def _tick(self) -> None:
        snapshot = await asyncio.to_thread(self._snapshot_provider.snapshot)
        user_id = await asyncio.to_thread(self._user_provider.current_user_id)
        now = self._clock()

        running: set[SessionKey] = set()
        if user_id is None:
            logger.debug("No active user, treating nothing as running")
        else:
            running = {(app.appId, user_id) for app in match(snapshot, self._catalog_provider())}

        with self._table_lock:
            tracked = dict(self._open)

        for key, session in tracked.items():
            if key in running:
                continue
            duration = elapsed_seconds(session.startedAt, now)
            await self._gateway.close_session(session.id, now, duration)
            with self._table_lock:
                self._open.pop(key, None)
            logger.info(f"App {key[0]} stopped for user {key[1]} after {duration}s")

        for key in sorted(running - tracked.keys()):
            app_id, uid = key
            session = await self._gateway.find_open_session(app_id, uid)
            if session is None:
                session = await self._gateway.create_open_session(app_id, uid, now)
                logger.info(f"App {app_id} started for user {uid}")
            else:
                logger.info(f"Resuming open session {session.id} for app {app_id}")
            with self._table_lock:
                self._open[key] = session

        self._last_poll_at = now
        self._last_error = None

    async def _close_interrupted_sessions(self) -> None:
        sessions = await self._gateway.list_open_sessions()
        if not sessions:
            return
        now = self._clock()
        for session in sessions:
            await self._gateway.close_session(session.id, now, INTERRUPTED_DURATION)
        logger.warning(f"Closed {len(sessions)} sessions interrupted by a previous run")

    # ── Queries ─────────────────────────────────────────────────────

    def get_active_sessions(self) -> list[PlaySession]:
        with self._table_lock:
            sessions = [session.model_copy() for session in self._open.values()]
        return sorted(sessions, key=lambda s: (s.startedAt, s.appId))

    def status(self) -> TrackerStatus:
        with self._table_lock:
            open_count = len(self._open)
        return TrackerStatus(
            isRunning=self.is_running,
            pollIntervalSeconds=self._interval,
            lastPollAt=self._last_poll_at,
            lastError=self._last_error,
            openSessionCount=open_count,
        )

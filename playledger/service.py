"""Caller-facing facade over catalog ingestion and session tracking."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from playledger import config
from playledger.catalog import aggregate
from playledger.errors import FormatError, ParseError
from playledger.models import AggregatedApp, LibraryRoot, LoginUser, PlaySession, PlaytimeTotal, TrackerStatus
from playledger.observability import record_ingestion, record_parser_failure, start_span
from playledger.parsers.binary_catalog import CatalogEntry, decode
from playledger.parsers.metadata import (
    merge_installed_apps,
    parse_library_folders,
    parse_login_users,
    parse_root_manifests,
)
from playledger.tracker import PersistenceGateway, ProcessSnapshotProvider, SessionTracker, UserProvider, utc_now

logger = logging.getLogger("playledger.catalog")


class LedgerService:
    """Holds the current aggregated catalog and the session tracker.

    ``source`` provides the raw documents (see ``LocalCatalogSource``);
    ``gateway`` doubles as the history store for session queries.
    """

    def __init__(
        self,
        source,
        snapshot_provider: ProcessSnapshotProvider,
        user_provider: UserProvider,
        gateway: PersistenceGateway,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._source = source
        self._gateway = gateway
        self._catalog: dict[int, AggregatedApp] = {}
        self._catalog_lock = threading.Lock()
        self._refresh_lock = asyncio.Lock()
        self._roots: list[str] = []
        self.tracker = SessionTracker(
            snapshot_provider,
            self.get_aggregated_catalog,
            user_provider,
            gateway,
            poll_interval=poll_interval,
            clock=clock,
        )

    # ── Catalog ─────────────────────────────────────────────────────

    def get_aggregated_catalog(self) -> dict[int, AggregatedApp]:
        with self._catalog_lock:
            return dict(self._catalog)

    def get_app(self, app_id: int) -> Optional[AggregatedApp]:
        with self._catalog_lock:
            return self._catalog.get(app_id)

    @property
    def roots(self) -> list[str]:
        return list(self._roots)

    async def refresh_catalog(self, roots: list[str] | None = None) -> dict[int, AggregatedApp]:
        """Re-read every source document and swap in the new catalog."""
        async with self._refresh_lock:
            started = time.perf_counter()
            with start_span("catalog.refresh", {"catalog.roots": len(roots) if roots is not None else None}):
                try:
                    catalog, used_roots = await asyncio.to_thread(self._build_catalog, roots)
                except Exception:
                    record_ingestion("catalog", "error", (time.perf_counter() - started) * 1000)
                    raise
            record_ingestion("catalog", "ok", (time.perf_counter() - started) * 1000)
            with self._catalog_lock:
                self._catalog = catalog
            self._roots = used_roots
        logger.info(f"Catalog refreshed: {len(catalog)} apps from {len(used_roots)} roots")
        return dict(catalog)

    def _read_entries(self) -> list[CatalogEntry]:
        data = self._source.read_catalog_bytes()
        if not data:
            return []
        try:
            return decode(data, max_entries=config.MAX_CATALOG_ENTRIES)
        except FormatError as e:
            logger.error(f"Cannot decode binary catalog: {e}")
            record_parser_failure("binary_catalog")
            return []

    def _read_library_roots(self) -> list[LibraryRoot]:
        try:
            return parse_library_folders(self._source.read_library_index())
        except ParseError as e:
            logger.warning(f"Cannot parse library index: {e}")
            record_parser_failure("library_folders")
            return []

    def _build_catalog(self, roots: list[str] | None) -> tuple[dict[int, AggregatedApp], list[str]]:
        entries = self._read_entries()
        library_roots = self._read_library_roots()

        if roots is None:
            roots = [root.path for root in library_roots] or self._source.default_roots()
        else:
            wanted = {str(Path(r)) for r in roots}
            library_roots = [root for root in library_roots if str(Path(root.path)) in wanted]

        per_root = [parse_root_manifests(root, self._source.read_manifests(root)) for root in roots]
        installed = merge_installed_apps(per_root)

        catalog = aggregate(entries, library_roots, installed, executables=self._source.find_executables)
        return catalog, list(roots)

    def watch_paths(self) -> list[Path]:
        return self._source.watch_paths(self._roots)

    # ── Accounts ────────────────────────────────────────────────────

    def get_login_users(self) -> list[LoginUser]:
        """Accounts that have signed in on this machine, most recent first."""
        try:
            return parse_login_users(self._source.read_login_users())
        except ParseError as e:
            logger.warning(f"Cannot parse login users: {e}")
            record_parser_failure("login_users")
            return []

    # ── Tracking ────────────────────────────────────────────────────

    def get_active_sessions(self) -> list[PlaySession]:
        return self.tracker.get_active_sessions()

    async def start_tracking(self, interval_seconds: float | None = None) -> TrackerStatus:
        if interval_seconds is not None:
            await self.tracker.set_poll_interval(interval_seconds)
        await self.tracker.start()
        return self.tracker.status()

    async def stop_tracking(self) -> TrackerStatus:
        await self.tracker.stop()
        return self.tracker.status()

    async def set_poll_interval(self, seconds: float) -> TrackerStatus:
        await self.tracker.set_poll_interval(seconds)
        return self.tracker.status()

    def tracking_status(self) -> TrackerStatus:
        return self.tracker.status()

    # ── History ─────────────────────────────────────────────────────

    async def get_session_history(
        self,
        user_id: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        include_interrupted: bool = True,
        app_id: int | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[PlaySession]:
        return await self._gateway.list_sessions(
            user_id=user_id,
            since=since,
            until=until,
            include_interrupted=include_interrupted,
            app_id=app_id,
            limit=limit,
            offset=offset,
        )

    async def get_playtime_totals(self, user_id: int | None = None) -> list[PlaytimeTotal]:
        return await self._gateway.get_playtime_totals(user_id)

"""PlayLedger FastAPI backend, main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from playledger import config
from playledger.db import connection, migrations
from playledger.db.file_watcher import file_watcher
from playledger.db.repositories import SqlitePlaySessionRepository
from playledger.errors import PersistenceFailure
from playledger.identity import LoginUsersUserProvider
from playledger.observability import initialize as initialize_observability, shutdown as shutdown_observability
from playledger.routers.api import catalog_router, sessions_router, tracking_router, users_router
from playledger.service import LedgerService
from playledger.sources import LocalCatalogSource, PsutilProcessSnapshotProvider, discover_platform_path

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("playledger")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("PlayLedger backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Build the service
    source = LocalCatalogSource(discover_platform_path())
    service = LedgerService(
        source,
        PsutilProcessSnapshotProvider(),
        LoginUsersUserProvider(source),
        SqlitePlaySessionRepository(db),
        poll_interval=config.POLL_INTERVAL_SECONDS,
    )
    app.state.ledger = service

    # 4. Initial catalog load
    await service.refresh_catalog()

    # 5. Start file watcher
    if config.WATCH_CATALOG:
        await file_watcher.start(service, service.watch_paths())

    # 6. Start tracking
    if config.TRACK_ON_STARTUP:
        try:
            await service.start_tracking()
        except PersistenceFailure as e:
            logger.error(f"Session tracking not started: {e}")

    yield

    logger.info("PlayLedger backend shutting down")
    await service.stop_tracking()
    await file_watcher.stop()
    await connection.close_connection()
    shutdown_observability(app)


app = FastAPI(
    title="PlayLedger API",
    description="Local game catalog and play-session ledger",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(catalog_router)
app.include_router(sessions_router)
app.include_router(tracking_router)
app.include_router(users_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    service = getattr(app.state, "ledger", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "tracker": "running" if service and service.tracker.is_running else "stopped",
    }

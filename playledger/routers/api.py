"""API routers for the catalog, play sessions and the session tracker."""
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from playledger.errors import PersistenceFailure
from playledger.models import AggregatedApp, LoginUser, PlaySession, PlaytimeTotal, TrackerStatus

logger = logging.getLogger("playledger.api")

catalog_router = APIRouter(prefix="/api/catalog", tags=["catalog"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
tracking_router = APIRouter(prefix="/api/tracking", tags=["tracking"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


class CatalogRefreshRequest(BaseModel):
    roots: list[str] | None = None


class CatalogRefreshResponse(BaseModel):
    appCount: int
    installedCount: int
    roots: list[str] = Field(default_factory=list)


class StartTrackingRequest(BaseModel):
    intervalSeconds: float | None = Field(default=None, gt=0)


class PollIntervalRequest(BaseModel):
    seconds: float = Field(..., gt=0)


def _get_service(request: Request):
    service = getattr(request.app.state, "ledger", None)
    if not service:
        raise HTTPException(status_code=503, detail="Ledger service not initialized")
    return service


def _store_unavailable(exc: PersistenceFailure) -> HTTPException:
    logger.error(f"Session store error: {exc}")
    return HTTPException(status_code=503, detail=str(exc))


# ── Catalog ─────────────────────────────────────────────────────────

@catalog_router.get("", response_model=list[AggregatedApp])
def list_catalog(
    request: Request,
    installed: bool | None = Query(None, description="Only installed (true) or not installed (false) apps"),
    search: str | None = Query(None, description="Case-insensitive name filter"),
):
    """Aggregated catalog in ascending app id order."""
    catalog = _get_service(request).get_aggregated_catalog()
    apps = [catalog[app_id] for app_id in sorted(catalog)]
    if installed is not None:
        apps = [app for app in apps if app.installed == installed]
    if search:
        needle = search.lower()
        apps = [app for app in apps if app.name and needle in app.name.lower()]
    return apps


@catalog_router.get("/{app_id}", response_model=AggregatedApp)
def get_catalog_app(app_id: int, request: Request):
    app = _get_service(request).get_app(app_id)
    if app is None:
        raise HTTPException(status_code=404, detail=f"App {app_id} not in catalog")
    return app


@catalog_router.post("/refresh", response_model=CatalogRefreshResponse)
async def refresh_catalog(request: Request, payload: CatalogRefreshRequest | None = None):
    service = _get_service(request)
    roots = payload.roots if payload else None
    catalog = await service.refresh_catalog(roots)
    return CatalogRefreshResponse(
        appCount=len(catalog),
        installedCount=sum(1 for app in catalog.values() if app.installed),
        roots=service.roots,
    )


# ── Sessions ────────────────────────────────────────────────────────

@sessions_router.get("/active", response_model=list[PlaySession])
def list_active_sessions(request: Request):
    return _get_service(request).get_active_sessions()


@sessions_router.get("/totals", response_model=list[PlaytimeTotal])
async def get_playtime_totals(
    request: Request,
    user_id: int | None = Query(None, description="64-bit account id"),
):
    try:
        return await _get_service(request).get_playtime_totals(user_id)
    except PersistenceFailure as exc:
        raise _store_unavailable(exc) from exc


@sessions_router.get("", response_model=list[PlaySession])
async def list_sessions(
    request: Request,
    user_id: int | None = Query(None, description="64-bit account id"),
    app_id: int | None = Query(None, description="Filter by app id"),
    since: datetime | None = Query(None, description="ISO timestamp, inclusive lower bound on start"),
    until: datetime | None = Query(None, description="ISO timestamp, exclusive upper bound on start"),
    include_interrupted: bool = Query(True, description="Include sessions closed by crash recovery"),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    try:
        return await _get_service(request).get_session_history(
            user_id=user_id,
            since=since,
            until=until,
            include_interrupted=include_interrupted,
            app_id=app_id,
            limit=limit,
            offset=offset,
        )
    except PersistenceFailure as exc:
        raise _store_unavailable(exc) from exc


# ── Users ───────────────────────────────────────────────────────────

@users_router.get("", response_model=list[LoginUser])
def list_login_users(request: Request):
    """Accounts that have signed in on this machine, most recent first."""
    return _get_service(request).get_login_users()


# ── Tracking ────────────────────────────────────────────────────────

@tracking_router.get("/status", response_model=TrackerStatus)
def get_tracking_status(request: Request):
    return _get_service(request).tracking_status()


@tracking_router.post("/start", response_model=TrackerStatus)
async def start_tracking(request: Request, payload: StartTrackingRequest | None = None):
    interval = payload.intervalSeconds if payload else None
    try:
        return await _get_service(request).start_tracking(interval)
    except PersistenceFailure as exc:
        raise _store_unavailable(exc) from exc


@tracking_router.post("/stop", response_model=TrackerStatus)
async def stop_tracking(request: Request):
    return await _get_service(request).stop_tracking()


@tracking_router.put("/interval", response_model=TrackerStatus)
async def set_poll_interval(payload: PollIntervalRequest, request: Request):
    return await _get_service(request).set_poll_interval(payload.seconds)

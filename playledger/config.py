"""PlayLedger Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(token.strip().lower() for token in value.split(",") if token.strip())
    return items or default

# Project root (one level up from playledger/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = os.getenv("PLAYLEDGER_DB_PATH", str(PROJECT_ROOT / "data" / "playledger.db"))

# Platform install location; empty means auto-discover
STEAM_PATH = os.getenv("PLAYLEDGER_STEAM_PATH", "")

# Session tracking
POLL_INTERVAL_SECONDS = _env_float("PLAYLEDGER_POLL_INTERVAL_SECONDS", 5.0)
MIN_POLL_INTERVAL_SECONDS = _env_float("PLAYLEDGER_MIN_POLL_INTERVAL_SECONDS", 1.0)
TRACK_ON_STARTUP = _env_bool("PLAYLEDGER_TRACK_ON_STARTUP", True)

# Catalog ingestion
EXECUTABLE_SUFFIXES = _env_list("PLAYLEDGER_EXECUTABLE_SUFFIXES", (".exe",))
EXECUTABLE_SCAN_DEPTH = _env_int("PLAYLEDGER_EXECUTABLE_SCAN_DEPTH", 2)
MAX_CATALOG_ENTRIES = _env_int("PLAYLEDGER_MAX_CATALOG_ENTRIES", 100_000)
WATCH_CATALOG = _env_bool("PLAYLEDGER_WATCH_CATALOG", True)

# Observability
OTEL_ENABLED = _env_bool("PLAYLEDGER_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("PLAYLEDGER_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("PLAYLEDGER_OTEL_SERVICE_NAME", "playledger-backend")
PROM_PORT = _env_int("PLAYLEDGER_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("PLAYLEDGER_HOST", "127.0.0.1")
PORT = int(os.getenv("PLAYLEDGER_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("PLAYLEDGER_FRONTEND_ORIGIN", "http://localhost:3000")

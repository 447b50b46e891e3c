"""Filesystem catalog source and process snapshot provider.

Both are thin I/O wrappers: a missing or unreadable file reads as an empty
document and never raises.
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import psutil

from playledger import config
from playledger.models import ProcessObservation

logger = logging.getLogger("playledger.sources")

_DEFAULT_WINDOWS_PATHS = (
    "C:\\Program Files (x86)\\Steam",
    "C:\\Program Files\\Steam",
)
_DEFAULT_POSIX_PATHS = (
    "~/.steam/steam",
    "~/.local/share/Steam",
    "~/Library/Application Support/Steam",
)


def discover_platform_path() -> Optional[Path]:
    """Locate the platform install directory (env override, then well-known spots)."""
    if config.STEAM_PATH:
        return Path(config.STEAM_PATH).expanduser()

    candidates = _DEFAULT_WINDOWS_PATHS if sys.platform == "win32" else _DEFAULT_POSIX_PATHS
    for raw in candidates:
        path = Path(raw).expanduser()
        if path.is_dir():
            return path
    logger.warning("Platform install directory not found")
    return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug(f"Cannot read {path}: {exc}")
        return ""


class LocalCatalogSource:
    """Reads catalog documents from a local platform install and its libraries."""

    def __init__(
        self,
        steam_path: Optional[Path],
        executable_suffixes: tuple[str, ...] | None = None,
        scan_depth: int | None = None,
    ):
        self.steam_path = steam_path
        self.executable_suffixes = tuple(executable_suffixes or config.EXECUTABLE_SUFFIXES)
        self.scan_depth = config.EXECUTABLE_SCAN_DEPTH if scan_depth is None else scan_depth

    @property
    def catalog_path(self) -> Optional[Path]:
        return self.steam_path / "appcache" / "appinfo.vdf" if self.steam_path else None

    def read_catalog_bytes(self) -> bytes:
        path = self.catalog_path
        if path is None:
            return b""
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.warning(f"Cannot read catalog {path}: {exc}")
            return b""

    def read_library_index(self) -> str:
        if not self.steam_path:
            return ""
        for path in (
            self.steam_path / "config" / "libraryfolders.vdf",
            self.steam_path / "steamapps" / "libraryfolders.vdf",
        ):
            text = _read_text(path)
            if text:
                return text
        return ""

    def read_login_users(self) -> str:
        if not self.steam_path:
            return ""
        return _read_text(self.steam_path / "config" / "loginusers.vdf")

    def default_roots(self) -> list[str]:
        return [str(self.steam_path)] if self.steam_path else []

    def read_manifests(self, root: str) -> list[tuple[str, str]]:
        """Return ``(file name, text)`` for every app manifest under a library root."""
        apps_dir = Path(root) / "steamapps"
        try:
            names = sorted(os.listdir(apps_dir))
        except OSError as exc:
            logger.debug(f"Cannot list {apps_dir}: {exc}")
            return []

        documents: list[tuple[str, str]] = []
        for name in names:
            if name.startswith("appmanifest_") and name.endswith(".acf"):
                text = _read_text(apps_dir / name)
                if text:
                    documents.append((name, text))
        return documents

    def find_executables(self, install_path: str) -> list[str]:
        """Executables within ``scan_depth`` directory levels of an install dir."""
        base = Path(install_path)
        if not base.is_dir():
            return []

        found: list[str] = []
        base_depth = len(base.parts)
        for dirpath, dirnames, filenames in os.walk(base, onerror=lambda exc: logger.debug(f"Skipping {exc}")):
            depth = len(Path(dirpath).parts) - base_depth
            if depth + 1 >= self.scan_depth:
                dirnames[:] = []
            for name in filenames:
                if name.lower().endswith(self.executable_suffixes):
                    found.append(str(Path(dirpath) / name))
        return sorted(found)

    def watch_paths(self, roots: list[str]) -> list[Path]:
        """Directories whose changes should trigger a catalog refresh."""
        paths: list[Path] = []
        if self.steam_path:
            paths.extend([self.steam_path / "appcache", self.steam_path / "config"])
        paths.extend(Path(root) / "steamapps" for root in roots)
        unique: list[Path] = []
        for path in paths:
            if path.is_dir() and path not in unique:
                unique.append(path)
        return unique


class PsutilProcessSnapshotProvider:
    """Current process list via psutil; processes we may not inspect keep an empty path."""

    def snapshot(self) -> list[ProcessObservation]:
        observations: list[ProcessObservation] = []
        for proc in psutil.process_iter(["pid", "name", "exe"]):
            info = proc.info
            observations.append(
                ProcessObservation(
                    pid=info["pid"],
                    name=info.get("name") or "",
                    path=info.get("exe") or "",
                )
            )
        return observations

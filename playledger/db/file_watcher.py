"""Catalog file watcher using watchfiles.

Monitors the platform install and library directories and refreshes the
aggregated catalog when one of its source documents changes.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

logger = logging.getLogger("playledger.watcher")

CATALOG_FILE_NAMES = {"appinfo.vdf", "libraryfolders.vdf"}


def is_catalog_document(path: Path) -> bool:
    name = path.name.lower()
    if name in CATALOG_FILE_NAMES:
        return True
    return name.startswith("appmanifest_") and name.endswith(".acf")


class FileWatcher:
    """Background file watcher that triggers a catalog refresh on change.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self, service, watch_paths: list[Path]) -> None:
        """Start watching catalog directories in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._watch_loop(service, watch_paths))
        logger.info("File watcher started")

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, service, watch_paths: list[Path]) -> None:
        """Main watching loop."""
        watch_paths = [p for p in watch_paths if p.exists()]

        if not watch_paths:
            logger.warning("No watch paths exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {len(watch_paths)} directories: {[str(p) for p in watch_paths]}")

        try:
            async for changes in awatch(*watch_paths):
                if not self._running:
                    break

                changed = self._changed_documents(changes)
                if changed:
                    logger.info(f"Catalog documents changed: {[p.name for p in changed]}, refreshing...")
                    try:
                        await service.refresh_catalog()
                    except Exception as e:
                        logger.error(f"Error refreshing catalog: {e}")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False

    def _changed_documents(self, changes: set[tuple[Change, str]]) -> list[Path]:
        """Catalog source documents touched by a batch of changes, sorted."""
        return sorted({Path(path_str) for _, path_str in changes if is_catalog_document(Path(path_str))})


# Singleton instance
file_watcher = FileWatcher()

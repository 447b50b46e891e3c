"""Resolve running processes to catalog apps by executable path."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

from playledger.models import AggregatedApp, ProcessObservation, RunningApp

logger = logging.getLogger("playledger.matcher")

# Client process names for the platform itself (never counted as play).
PLATFORM_PROCESS_NAMES = {"steam", "steam.exe", "steam_osx"}


def normalize_path(path: str) -> str:
    return (path or "").strip().replace("\\", "/").lower()


def _paths_match(process_path: str, candidate: str) -> bool:
    if process_path == candidate:
        return True
    # One side may be reported relative to the other; only whole path segments count.
    return process_path.endswith("/" + candidate) or candidate.endswith("/" + process_path)


def match(
    snapshot: Iterable[ProcessObservation],
    catalog: Mapping[int, AggregatedApp],
) -> list[RunningApp]:
    """Pair catalog apps with running processes.

    Apps are visited in ascending id order and processes in snapshot order;
    the first pair found wins and neither side is reused.
    """
    processes = [(proc, normalize_path(proc.path)) for proc in snapshot if proc.path]
    claimed: set[int] = set()
    running: list[RunningApp] = []

    for app_id in sorted(catalog):
        app = catalog[app_id]
        candidates = {normalize_path(p): p for p in app.executables if p and p.strip()}
        if not candidates:
            continue
        for index, (proc, proc_path) in enumerate(processes):
            if index in claimed:
                continue
            hit = next((c for c in candidates if _paths_match(proc_path, c)), None)
            if hit is None:
                continue
            claimed.add(index)
            running.append(
                RunningApp(
                    appId=app_id,
                    name=app.name,
                    pid=proc.pid,
                    processPath=proc.path,
                    matchedExecutable=candidates[hit],
                )
            )
            break

    if running:
        logger.debug(f"Running apps: {[app.appId for app in running]}")
    return running


def find_platform_process(snapshot: Iterable[ProcessObservation]) -> ProcessObservation | None:
    return next((proc for proc in snapshot if (proc.name or "").lower() in PLATFORM_PROCESS_NAMES), None)

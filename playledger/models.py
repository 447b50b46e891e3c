"""Pydantic models for catalog records, process observations and play sessions."""
from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional

# Duration written to sessions that were still open when a previous run died.
INTERRUPTED_DURATION = -1

# ── Library / manifest models ──────────────────────────────────────

class LibraryRoot(BaseModel):
    index: str
    path: str
    label: str = ""
    contentId: Optional[int] = None
    totalSize: Optional[int] = None
    updateCleanBytesTally: Optional[int] = None
    lastVerified: Optional[datetime] = None
    apps: dict[int, int] = Field(default_factory=dict)  # appId -> bytes on disk in this root


class DepotRecord(BaseModel):
    manifest: Optional[int] = None
    size: Optional[int] = None


class InstalledApp(BaseModel):
    appId: int
    name: Optional[str] = None
    installDir: Optional[str] = None
    installPath: Optional[str] = None
    libraryPath: Optional[str] = None
    universe: Optional[int] = None
    launcherPath: Optional[str] = None
    stateFlags: Optional[int] = None
    lastUpdated: Optional[int] = None
    lastPlayed: Optional[int] = None
    sizeOnDisk: Optional[int] = None  # None means unknown, not empty
    stagingSize: Optional[int] = None
    buildId: Optional[int] = None
    lastOwner: Optional[int] = None
    bytesToDownload: Optional[int] = None
    bytesDownloaded: Optional[int] = None
    bytesToStage: Optional[int] = None
    bytesStaged: Optional[int] = None
    targetBuildId: Optional[int] = None
    autoUpdateBehavior: Optional[int] = None
    allowOtherDownloadsWhileRunning: Optional[int] = None
    scheduledAutoUpdate: Optional[int] = None
    installedDepots: dict[int, DepotRecord] = Field(default_factory=dict)
    sharedDepots: dict[int, int] = Field(default_factory=dict)
    userConfig: dict[str, str] = Field(default_factory=dict)
    mountedConfig: dict[str, str] = Field(default_factory=dict)


class LoginUser(BaseModel):
    steamId: int
    accountName: str = "Unknown"
    personaName: str = "Unknown"
    rememberPassword: bool = False
    wantsOfflineMode: bool = False
    skipOfflineModeWarning: bool = False
    allowAutoLogin: bool = False
    mostRecent: bool = False
    timestamp: int = 0


# ── Aggregated catalog ─────────────────────────────────────────────

class AggregatedApp(BaseModel):
    appId: int
    name: Optional[str] = None
    type: Optional[str] = None
    developer: Optional[str] = None
    publisher: Optional[str] = None
    oslist: list[str] = Field(default_factory=list)
    installed: bool = False
    installDir: Optional[str] = None
    installPath: Optional[str] = None
    libraryPath: Optional[str] = None
    sizeOnDisk: Optional[int] = None
    rootSize: Optional[int] = None  # size reported by the library index
    executables: list[str] = Field(default_factory=list)
    changeNumber: Optional[int] = None
    lastUpdated: Optional[datetime] = None


# ── Process models ─────────────────────────────────────────────────

class ProcessObservation(BaseModel):
    pid: int
    path: str = ""
    name: str = ""


class RunningApp(BaseModel):
    appId: int
    name: Optional[str] = None
    pid: int
    processPath: str
    matchedExecutable: str


# ── Session models ─────────────────────────────────────────────────

class PlaySession(BaseModel):
    id: int
    appId: int
    userId: int
    startedAt: datetime
    endedAt: Optional[datetime] = None
    durationSeconds: Optional[int] = None

    @property
    def isOpen(self) -> bool:
        return self.endedAt is None

    @property
    def isInterrupted(self) -> bool:
        return self.durationSeconds == INTERRUPTED_DURATION


class PlaytimeTotal(BaseModel):
    appId: int
    userId: int
    sessionCount: int = 0
    totalSeconds: int = 0
    lastPlayedAt: Optional[datetime] = None


class TrackerStatus(BaseModel):
    isRunning: bool = False
    pollIntervalSeconds: float = 0.0
    lastPollAt: Optional[datetime] = None
    lastError: Optional[str] = None
    openSessionCount: int = 0

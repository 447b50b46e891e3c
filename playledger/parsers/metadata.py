"""Typed readers for library indices, app manifests and login records."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from playledger.errors import ParseError
from playledger.models import DepotRecord, InstalledApp, LibraryRoot, LoginUser
from playledger.observability import record_parser_failure
from playledger.parsers.keyvalues import find_key, parse_keyvalues

logger = logging.getLogger("playledger.catalog")

_DECIMAL_KEY = re.compile(r"^\d+$")

_MANIFEST_STR_FIELDS = {
    "name": "name",
    "installdir": "installDir",
    "LauncherPath": "launcherPath",
}

_MANIFEST_INT_FIELDS = {
    "universe": "universe",
    "StateFlags": "stateFlags",
    "LastUpdated": "lastUpdated",
    "LastPlayed": "lastPlayed",
    "SizeOnDisk": "sizeOnDisk",
    "StagingSize": "stagingSize",
    "buildid": "buildId",
    "LastOwner": "lastOwner",
    "BytesToDownload": "bytesToDownload",
    "BytesDownloaded": "bytesDownloaded",
    "BytesToStage": "bytesToStage",
    "BytesStaged": "bytesStaged",
    "TargetBuildID": "targetBuildId",
    "AutoUpdateBehavior": "autoUpdateBehavior",
    "AllowOtherDownloadsWhileRunning": "allowOtherDownloadsWhileRunning",
    "ScheduledAutoUpdate": "scheduledAutoUpdate",
}


def coerce_int(value: Any) -> int | None:
    """Convert a decimal or ``0x`` hex token to int without passing through float.

    None and blank strings give None; anything else unparseable raises ValueError.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected a numeric string, got {type(value).__name__}")
    token = value.strip()
    if not token:
        return None
    if token.lower().startswith(("0x", "-0x", "+0x")):
        return int(token, 16)
    return int(token, 10)


def _field_int(section: Mapping[str, Any], key: str, context: str) -> int | None:
    raw = find_key(section, key)
    try:
        return coerce_int(raw)
    except ValueError:
        logger.warning(f"{context}: ignoring malformed {key}={raw!r}")
        return None


def _field_str(section: Mapping[str, Any], key: str) -> str | None:
    raw = find_key(section, key)
    if raw is None or isinstance(raw, dict):
        return None
    return str(raw)


def _field_timestamp(section: Mapping[str, Any], key: str, context: str) -> datetime | None:
    value = _field_int(section, key, context)
    if not value:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning(f"{context}: ignoring out-of-range {key}={value}")
        return None


def _field_flag(section: Mapping[str, Any], key: str, context: str) -> bool:
    return bool(_field_int(section, key, context) or 0)


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if not isinstance(v, dict)}


def join_library_path(base: str, *parts: str) -> str:
    """Join onto a library path keeping the separator style the path already uses."""
    sep = "\\" if "\\" in base and "/" not in base else "/"
    joined = base.rstrip("\\/")
    for part in parts:
        cleaned = (part or "").strip("\\/")
        if cleaned:
            joined = joined + sep + cleaned
    return joined


# ── libraryfolders.vdf ─────────────────────────────────────────────

def parse_library_folders(text: str) -> list[LibraryRoot]:
    """Parse the library index. Only purely decimal keys are library roots."""
    if not text.strip():
        return []
    data = parse_keyvalues(text)
    folders = find_key(data, "libraryfolders")
    if not isinstance(folders, dict):
        raise ParseError("Document has no libraryfolders section")

    roots: list[LibraryRoot] = []
    for key, value in folders.items():
        if not _DECIMAL_KEY.match(key):
            continue
        if isinstance(value, str):
            # Legacy layout: "1" "D:\\SteamLibrary"
            roots.append(LibraryRoot(index=key, path=value))
            continue

        context = f"library {key}"
        path = _field_str(value, "path")
        if not path:
            logger.warning(f"{context}: no path, skipping")
            continue

        apps: dict[int, int] = {}
        raw_apps = find_key(value, "apps")
        if isinstance(raw_apps, dict):
            for app_key, size in raw_apps.items():
                try:
                    app_id = coerce_int(app_key)
                    app_size = coerce_int(size)
                except ValueError:
                    logger.warning(f"{context}: ignoring malformed app size {app_key}={size!r}")
                    continue
                if app_id is not None and app_size is not None:
                    apps[app_id] = app_size

        roots.append(
            LibraryRoot(
                index=key,
                path=path,
                label=_field_str(value, "label") or "",
                contentId=_field_int(value, "contentid", context),
                totalSize=_field_int(value, "totalsize", context),
                updateCleanBytesTally=_field_int(value, "update_clean_bytes_tally", context),
                lastVerified=_field_timestamp(value, "time_last_update_verified", context),
                apps=apps,
            )
        )
    return roots


# ── appmanifest_<id>.acf ───────────────────────────────────────────

def _parse_depots(raw: Any, context: str) -> dict[int, DepotRecord]:
    depots: dict[int, DepotRecord] = {}
    if not isinstance(raw, dict):
        return depots
    for depot_key, depot in raw.items():
        if not isinstance(depot, dict):
            continue
        if find_key(depot, "manifest") is None and find_key(depot, "size") is None:
            continue
        try:
            depot_id = coerce_int(depot_key)
        except ValueError:
            logger.warning(f"{context}: ignoring depot with malformed id {depot_key!r}")
            continue
        if depot_id is None:
            continue
        depots[depot_id] = DepotRecord(
            manifest=_field_int(depot, "manifest", f"{context} depot {depot_id}"),
            size=_field_int(depot, "size", f"{context} depot {depot_id}"),
        )
    return depots


def _parse_int_map(raw: Any, context: str) -> dict[int, int]:
    result: dict[int, int] = {}
    if not isinstance(raw, dict):
        return result
    for key, value in raw.items():
        try:
            parsed_key = coerce_int(key)
            parsed_value = coerce_int(value)
        except ValueError:
            logger.warning(f"{context}: ignoring malformed entry {key}={value!r}")
            continue
        if parsed_key is not None and parsed_value is not None:
            result[parsed_key] = parsed_value
    return result


def parse_app_manifest(text: str, library_path: str | None = None) -> InstalledApp:
    """Parse one app manifest. Fields missing from the document stay None."""
    data = parse_keyvalues(text)
    state = find_key(data, "AppState")
    if not isinstance(state, dict):
        raise ParseError("Document has no AppState section")

    try:
        app_id = coerce_int(find_key(state, "appid"))
    except ValueError:
        app_id = None
    if app_id is None:
        raise ParseError("Manifest has no usable appid")

    context = f"AppID {app_id}"
    fields: dict[str, Any] = {"appId": app_id}
    for key, attr in _MANIFEST_STR_FIELDS.items():
        value = _field_str(state, key)
        if value is not None:
            fields[attr] = value
    for key, attr in _MANIFEST_INT_FIELDS.items():
        value = _field_int(state, key, context)
        if value is not None:
            fields[attr] = value

    fields["installedDepots"] = _parse_depots(find_key(state, "InstalledDepots"), context)
    fields["sharedDepots"] = _parse_int_map(find_key(state, "SharedDepots"), f"{context} shared depots")
    fields["userConfig"] = _string_map(find_key(state, "UserConfig"))
    fields["mountedConfig"] = _string_map(find_key(state, "MountedConfig"))

    if library_path:
        fields["libraryPath"] = library_path
        if fields.get("installDir"):
            fields["installPath"] = join_library_path(library_path, "steamapps", "common", fields["installDir"])

    return InstalledApp(**fields)


def parse_root_manifests(library_path: str, documents: Iterable[tuple[str, str]]) -> dict[int, InstalledApp]:
    """Parse every ``(name, text)`` manifest of one root; bad documents are skipped."""
    apps: dict[int, InstalledApp] = {}
    for name, text in documents:
        try:
            app = parse_app_manifest(text, library_path)
        except ParseError as exc:
            logger.warning(f"Skipping manifest {name}: {exc}")
            record_parser_failure("app_manifest")
            continue
        apps[app.appId] = app
    return apps


def merge_installed_apps(per_root: Iterable[Mapping[int, InstalledApp]]) -> dict[int, InstalledApp]:
    """Merge per-root results; a later root wins for the same app id."""
    merged: dict[int, InstalledApp] = {}
    for apps in per_root:
        merged.update(apps)
    return merged


# ── loginusers.vdf ─────────────────────────────────────────────────

def parse_login_users(text: str) -> list[LoginUser]:
    """Parse login records, most recently used first."""
    if not text.strip():
        return []
    data = parse_keyvalues(text)
    users = find_key(data, "users")
    if not isinstance(users, dict):
        raise ParseError("Document has no users section")

    result: list[LoginUser] = []
    for raw_id, info in users.items():
        if not isinstance(info, dict):
            continue
        try:
            steam_id = coerce_int(raw_id)
        except ValueError:
            steam_id = None
        if not steam_id:
            logger.warning(f"Skipping login record with id {raw_id!r}")
            continue
        context = f"user {steam_id}"
        result.append(
            LoginUser(
                steamId=steam_id,
                accountName=_field_str(info, "AccountName") or "Unknown",
                personaName=_field_str(info, "PersonaName") or "Unknown",
                rememberPassword=_field_flag(info, "RememberPassword", context),
                wantsOfflineMode=_field_flag(info, "WantsOfflineMode", context),
                skipOfflineModeWarning=_field_flag(info, "SkipOfflineModeWarning", context),
                allowAutoLogin=_field_flag(info, "AllowAutoLogin", context),
                mostRecent=_field_flag(info, "MostRecent", context),
                timestamp=_field_int(info, "Timestamp", context) or 0,
            )
        )
    result.sort(key=lambda user: user.timestamp, reverse=True)
    return result


def current_login_user(users: list[LoginUser]) -> LoginUser | None:
    return next((user for user in users if user.mostRecent), users[0] if users else None)

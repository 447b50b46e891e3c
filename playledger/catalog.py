"""Merge the binary catalog with manifest and library-index data per app id."""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Mapping, Optional

from playledger.models import AggregatedApp, InstalledApp, LibraryRoot
from playledger.parsers.binary_catalog import CatalogEntry, describe_entry
from playledger.parsers.metadata import join_library_path

logger = logging.getLogger("playledger.catalog")

ExecutableLookup = Callable[[str], Iterable[str]]


def aggregate(
    entries: Iterable[CatalogEntry],
    roots: Iterable[LibraryRoot],
    installed: Mapping[int, InstalledApp],
    executables: Optional[ExecutableLookup] = None,
) -> dict[int, AggregatedApp]:
    """Build one AggregatedApp per app id seen in any input.

    An id known to only one source still yields a record; fields the other
    sources would have provided stay None.
    """
    entries_by_id = {entry.app_id: entry for entry in entries}
    root_by_app: dict[int, LibraryRoot] = {}
    for root in roots:
        for app_id in root.apps:
            root_by_app[app_id] = root

    app_ids = set(entries_by_id) | set(installed) | set(root_by_app)
    catalog: dict[int, AggregatedApp] = {}
    for app_id in sorted(app_ids):
        fields: dict = {"appId": app_id}

        entry = entries_by_id.get(app_id)
        if entry is not None:
            fields.update({k: v for k, v in describe_entry(entry).items() if v})
            fields["changeNumber"] = entry.change_number
            fields["lastUpdated"] = entry.last_updated

        root = root_by_app.get(app_id)
        if root is not None:
            fields["rootSize"] = root.apps.get(app_id)
            fields["libraryPath"] = root.path

        manifest = installed.get(app_id)
        if manifest is not None:
            fields["installed"] = True
            if not fields.get("name") and manifest.name:
                fields["name"] = manifest.name
            fields["installDir"] = manifest.installDir
            fields["sizeOnDisk"] = manifest.sizeOnDisk
            if manifest.libraryPath:
                fields["libraryPath"] = manifest.libraryPath
            install_path = manifest.installPath
            if not install_path and manifest.installDir and fields.get("libraryPath"):
                install_path = join_library_path(fields["libraryPath"], "steamapps", "common", manifest.installDir)
            fields["installPath"] = install_path

        if executables is not None and fields.get("installPath"):
            fields["executables"] = list(executables(fields["installPath"]))

        catalog[app_id] = AggregatedApp(**fields)

    installed_count = sum(1 for app in catalog.values() if app.installed)
    logger.info(f"Aggregated {len(catalog)} apps ({installed_count} installed)")
    return catalog

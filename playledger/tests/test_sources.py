import tempfile
import types
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from playledger import sources
from playledger.db.file_watcher import FileWatcher, is_catalog_document
from playledger.sources import LocalCatalogSource, PsutilProcessSnapshotProvider


class LocalCatalogSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        (self.root / "steamapps" / "common" / "Game" / "bin" / "deep").mkdir(parents=True)
        (self.root / "config").mkdir()
        self.source = LocalCatalogSource(self.root, executable_suffixes=(".exe",), scan_depth=2)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_documents_read_as_empty(self) -> None:
        self.assertEqual(self.source.read_catalog_bytes(), b"")
        self.assertEqual(self.source.read_library_index(), "")
        self.assertEqual(self.source.read_login_users(), "")
        self.assertEqual(self.source.read_manifests(str(self.root / "nowhere")), [])
        self.assertEqual(LocalCatalogSource(None).read_catalog_bytes(), b"")

    def test_library_index_falls_back_to_steamapps(self) -> None:
        (self.root / "steamapps" / "libraryfolders.vdf").write_text('"libraryfolders" { }')
        self.assertIn("libraryfolders", self.source.read_library_index())

    def test_read_manifests_only_picks_app_manifests(self) -> None:
        apps = self.root / "steamapps"
        (apps / "appmanifest_440.acf").write_text('"AppState" { "appid" "440" }')
        (apps / "appmanifest_730.acf").write_text('"AppState" { "appid" "730" }')
        (apps / "libraryfolders.vdf").write_text("x")

        documents = self.source.read_manifests(str(self.root))
        self.assertEqual([name for name, _ in documents], ["appmanifest_440.acf", "appmanifest_730.acf"])

    def test_find_executables_respects_depth(self) -> None:
        game = self.root / "steamapps" / "common" / "Game"
        for path in (game / "game.EXE", game / "bin" / "tool.exe", game / "bin" / "deep" / "hidden.exe", game / "readme.txt"):
            path.write_text("")

        found = [Path(p).name for p in self.source.find_executables(str(game))]
        self.assertEqual(sorted(found), ["game.EXE", "tool.exe"])
        self.assertEqual(self.source.find_executables(str(game / "missing")), [])

    def test_watch_paths_only_lists_existing_directories(self) -> None:
        paths = self.source.watch_paths([str(self.root), "/does/not/exist"])
        self.assertEqual(paths, [self.root / "config", self.root / "steamapps"])

    def test_discover_platform_path_prefers_configured_path(self) -> None:
        with patch.object(sources.config, "STEAM_PATH", str(self.root)):
            self.assertEqual(sources.discover_platform_path(), self.root)


class ProcessSnapshotTests(unittest.TestCase):
    def test_snapshot_keeps_processes_without_path(self) -> None:
        procs = [
            types.SimpleNamespace(info={"pid": 1, "name": "hl2.exe", "exe": "C:\\Games\\hl2.exe"}),
            types.SimpleNamespace(info={"pid": 2, "name": "System", "exe": None}),
        ]
        with patch("playledger.sources.psutil.process_iter", return_value=procs):
            snapshot = PsutilProcessSnapshotProvider().snapshot()

        self.assertEqual([(p.pid, p.path) for p in snapshot], [(1, "C:\\Games\\hl2.exe"), (2, "")])


class CatalogWatcherTests(unittest.TestCase):
    def test_only_catalog_documents_trigger_a_refresh(self) -> None:
        changes = {
            (Change.modified, "/steam/appcache/appinfo.vdf"),
            (Change.added, "/lib/steamapps/appmanifest_440.acf"),
            (Change.deleted, "/lib/steamapps/appmanifest_730.acf"),
            (Change.modified, "/steam/config/config.vdf"),
        }
        changed = FileWatcher()._changed_documents(changes)

        self.assertEqual(
            changed,
            [
                Path("/lib/steamapps/appmanifest_440.acf"),
                Path("/lib/steamapps/appmanifest_730.acf"),
                Path("/steam/appcache/appinfo.vdf"),
            ],
        )
        self.assertEqual(FileWatcher()._changed_documents({(Change.modified, "/steam/config/config.vdf")}), [])
        self.assertTrue(is_catalog_document(Path("LibraryFolders.vdf")))


if __name__ == "__main__":
    unittest.main()

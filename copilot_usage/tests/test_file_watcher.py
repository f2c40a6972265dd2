import asyncio
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from watchfiles import Change

from copilot_usage.watch.file_watcher import ChangeNotifier, compile_glob, path_scheme


class GlobCompilationTests(unittest.TestCase):
    def test_base_directory_is_the_static_prefix(self) -> None:
        base, _ = compile_glob("/logs/**/exthost/**/GitHub.copilot-chat/*.log")

        self.assertEqual(base, Path("/logs"))

    def test_double_star_matches_any_depth_including_none(self) -> None:
        _, regex = compile_glob("/logs/**/exthost/**/GitHub.copilot-chat/*.log")

        self.assertTrue(regex.fullmatch("/logs/20250810T151527/window1/exthost/GitHub.copilot-chat/Chat.log"))
        self.assertTrue(regex.fullmatch("/logs/exthost/GitHub.copilot-chat/Chat.log"))
        self.assertFalse(regex.fullmatch("/logs/20250810T151527/window1/exthost/other/Chat.log"))
        self.assertFalse(regex.fullmatch("/logs/exthost/GitHub.copilot-chat/Chat.txt"))

    def test_single_star_does_not_cross_directories(self) -> None:
        base, regex = compile_glob("/storage/*/chatSessions/*.json")

        self.assertEqual(base, Path("/storage"))
        self.assertTrue(regex.fullmatch("/storage/ws1/chatSessions/abc.json"))
        self.assertFalse(regex.fullmatch("/storage/ws1/nested/chatSessions/abc.json"))

    def test_scheme_detection(self) -> None:
        self.assertEqual(path_scheme("/home/dev/file.json"), "file")
        self.assertEqual(path_scheme("C:\\Users\\dev\\file.json"), "file")
        self.assertEqual(path_scheme("file:///home/dev/file.json"), "file")
        self.assertEqual(path_scheme("vscode-userdata:/User/settings.json"), "vscode-userdata")


class ChangeNotifierTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = Path(tmp.name)
        self.file = self.dir / "session.json"
        self.file.write_text("{}", encoding="utf-8")
        self.logger = logging.getLogger("test.watcher")

    def _notifier(self, **kwargs) -> ChangeNotifier:
        notifier = ChangeNotifier(self.dir / "*.json", logger=self.logger, **kwargs)
        self.addAsyncCleanup(notifier.dispose)
        return notifier

    async def test_burst_of_changes_fires_once_after_debounce(self) -> None:
        notifier = self._notifier(debounce=0.05)
        changed = []
        notifier.on_change(changed.append)

        for _ in range(3):
            await notifier.handle_change(Change.modified, str(self.file))
        self.assertEqual(notifier.get_status()["pendingDebounces"], 1)
        await asyncio.sleep(0.2)

        self.assertEqual(changed, [self.file])
        self.assertEqual(notifier.get_status()["pendingDebounces"], 0)

    async def test_create_upgrades_pending_change(self) -> None:
        notifier = self._notifier(debounce=0.05)
        created, changed = [], []
        notifier.on_create(created.append)
        notifier.on_change(changed.append)

        await notifier.handle_change(Change.modified, str(self.file))
        await notifier.handle_change(Change.added, str(self.file))
        await asyncio.sleep(0.2)

        self.assertEqual(created, [self.file])
        self.assertEqual(changed, [])

    async def test_without_debounce_every_event_fires(self) -> None:
        notifier = self._notifier()
        changed = []
        notifier.on_change(changed.append)

        for _ in range(3):
            await notifier.handle_change(Change.modified, str(self.file))

        self.assertEqual(len(changed), 3)

    async def test_async_callbacks_and_unsubscribe(self) -> None:
        notifier = self._notifier()
        seen = []

        async def record(path: Path) -> None:
            seen.append(path)

        unsubscribe = notifier.on_change(record)
        await notifier.handle_change(Change.modified, str(self.file))
        unsubscribe()
        await notifier.handle_change(Change.modified, str(self.file))

        self.assertEqual(seen, [self.file])

    async def test_delete_of_existing_file_is_ignored(self) -> None:
        notifier = self._notifier(debounce=0.05)
        deleted = []
        notifier.on_delete(deleted.append)

        await notifier.handle_change(Change.deleted, str(self.file))
        self.assertEqual(deleted, [])

        self.file.unlink()
        await notifier.handle_change(Change.deleted, str(self.file))

        # confirmed deletes are delivered immediately
        self.assertEqual(deleted, [self.file])

    async def test_confirmed_delete_cancels_pending_change(self) -> None:
        notifier = self._notifier(debounce=0.05)
        changed = []
        notifier.on_change(changed.append)

        await notifier.handle_change(Change.modified, str(self.file))
        self.file.unlink()
        await notifier.handle_change(Change.deleted, str(self.file))
        await asyncio.sleep(0.2)

        self.assertEqual(changed, [])

    async def test_disallowed_schemes_and_foreign_paths_are_filtered(self) -> None:
        notifier = self._notifier()
        changed = []
        notifier.on_change(changed.append)

        await notifier.handle_change(Change.modified, f"vscode-userdata:{self.file.as_posix()}")
        await notifier.handle_change(Change.modified, str(self.dir / "notes.txt"))

        self.assertFalse(notifier.matches(f"vscode-userdata:{self.file.as_posix()}"))
        self.assertEqual(changed, [])

    async def test_ignored_kinds_do_not_fire(self) -> None:
        notifier = self._notifier(ignore_change=True)
        changed = []
        notifier.on_change(changed.append)

        await notifier.handle_change(Change.modified, str(self.file))

        self.assertEqual(changed, [])

    async def test_callback_errors_are_logged(self) -> None:
        notifier = self._notifier()
        seen = []

        def broken(_path: Path) -> None:
            raise RuntimeError("boom")

        notifier.on_change(broken)
        notifier.on_change(seen.append)

        with self.assertLogs("test.watcher", level="ERROR"):
            await notifier.handle_change(Change.modified, str(self.file))

        self.assertEqual(seen, [self.file])

    async def test_dispose_cancels_pending_debounce(self) -> None:
        notifier = self._notifier(debounce=0.05)
        changed = []
        notifier.on_change(changed.append)

        await notifier.handle_change(Change.modified, str(self.file))
        await notifier.dispose()
        await asyncio.sleep(0.2)

        self.assertEqual(changed, [])

    async def test_start_fails_quietly_for_missing_base_directory(self) -> None:
        notifier = ChangeNotifier(self.dir / "missing" / "*.json", logger=self.logger)

        self.assertFalse(await notifier.start())
        self.assertFalse(notifier.is_running)

    async def test_start_and_stop_report_status(self) -> None:
        notifier = self._notifier(force_flush_interval=0.05, debounce=0.05)

        self.assertTrue(await notifier.start())
        status = notifier.get_status()
        self.assertTrue(status["isWatching"])
        self.assertEqual(status["allowedSchemes"], ["file"])
        await asyncio.sleep(0.12)

        await notifier.stop()

        self.assertFalse(notifier.get_status()["isWatching"])

    async def test_forced_flush_only_stats_unchanged_files(self) -> None:
        notifier = self._notifier(force_flush_interval=0.02)
        fired = []
        notifier.on_create(fired.append)
        notifier.on_change(fired.append)

        with mock.patch.object(notifier, "_stat_all", wraps=notifier._stat_all) as stat_all:
            self.assertTrue(await notifier.start())
            await asyncio.sleep(0.15)
            await notifier.stop()

        self.assertGreaterEqual(stat_all.call_count, 2)
        self.assertEqual(fired, [])
        self.assertEqual(notifier.get_status()["pendingDebounces"], 0)


if __name__ == "__main__":
    unittest.main()

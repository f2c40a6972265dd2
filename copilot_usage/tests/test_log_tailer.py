import asyncio
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from copilot_usage.scanning.log_tailer import LogTailer, extract_path_metadata


def _record(ts: str, request_id: str) -> str:
    return (
        f"{ts} [info] message 0 returned. finish reason: [stop]\n"
        f"{ts} [info] request done: requestId: [{request_id}] model deployment ID: [dep]\n"
        f"{ts} [info] ccreq:{request_id}.copilotmd | success | gpt-4o | 900ms | [panel/editAgent]\n"
    )


class LogPathMetadataTests(unittest.TestCase):
    def test_session_and_window_are_read_from_segments(self) -> None:
        path = "/home/dev/.config/Code/logs/20250810T151527/window3/exthost/GitHub.copilot-chat/Chat.log"

        self.assertEqual(extract_path_metadata(path), ("20250810T151527", "window3"))

    def test_missing_segments_are_unknown(self) -> None:
        self.assertEqual(extract_path_metadata("/var/log/chat.log"), ("unknown", "unknown"))


class LogTailerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.home = Path(tmp.name)
        self.log_root = self.home / ".config" / "Code" / "logs"
        self.log_dir = self.log_root / "20250810T151527" / "window2" / "exthost" / "GitHub.copilot-chat"
        self.log_dir.mkdir(parents=True)
        self.log_file = self.log_dir / "GitHub Copilot Chat.log"
        self.log_file.write_text("", encoding="utf-8")
        self.tailer = LogTailer(
            log_roots=[self.log_root],
            retry_delay=0.01,
            window_flush_interval=0,
            window_debounce=0.01,
            logger=logging.getLogger("test.logs"),
        )
        self.addAsyncCleanup(self.tailer.dispose)

    def _append(self, text: str, path: Path | None = None) -> None:
        with open(path or self.log_file, "a", encoding="utf-8") as handle:
            handle.write(text)

    async def test_tail_without_new_bytes_is_idempotent(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))

        first = await self.tailer.tail(self.log_file)
        offset = self.tailer.get_file_state(self.log_file).last_position
        second = await self.tailer.tail(self.log_file)

        self.assertEqual([e.requestId for e in first.logEntries], ["req-a"])
        self.assertEqual(second.logEntries, [])
        self.assertEqual(self.tailer.get_file_state(self.log_file).last_position, offset)
        self.assertEqual(offset, self.log_file.stat().st_size)

    async def test_tail_reads_only_appended_records(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))
        await self.tailer.tail(self.log_file)

        self._append(_record("2025-08-10 15:15:30.100", "req-b"))
        result = await self.tailer.tail(self.log_file)

        self.assertEqual([e.requestId for e in result.logEntries], ["req-b"])

    async def test_truncation_resets_offset_and_reads_new_content(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a") * 3)
        await self.tailer.tail(self.log_file)

        self.log_file.write_text(_record("2025-08-11 09:00:00.000", "req-new"), encoding="utf-8")
        result = await self.tailer.tail(self.log_file)

        self.assertEqual([e.requestId for e in result.logEntries], ["req-new"])
        self.assertEqual(self.tailer.get_file_state(self.log_file).last_position, self.log_file.stat().st_size)

    async def test_read_new_content_returns_exact_byte_range(self) -> None:
        self._append("first line\n")
        self.assertEqual(await self.tailer.read_new_content(self.log_file), "first line\n")

        self._append("second line\n")
        self.assertEqual(await self.tailer.read_new_content(self.log_file), "second line\n")
        self.assertEqual(await self.tailer.read_new_content(self.log_file), "")

    async def test_character_split_across_writes_is_read_whole(self) -> None:
        encoded = "modèle\n".encode("utf-8")
        split = encoded.index(b"\xc3") + 1
        with open(self.log_file, "ab") as handle:
            handle.write(encoded[:split])

        self.assertEqual(await self.tailer.read_new_content(self.log_file), "mod")
        self.assertEqual(self.tailer.get_file_state(self.log_file).last_position, split - 1)

        with open(self.log_file, "ab") as handle:
            handle.write(encoded[split:])

        self.assertEqual(await self.tailer.read_new_content(self.log_file), "èle\n")

    async def test_create_event_for_tracked_file_keeps_its_offset(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))
        await self.tailer.backfill(self.log_file)
        notified = []
        self.tailer.on_log_activity(notified.append)

        await self.tailer._on_global_create("VS Code Stable", self.log_file)
        self.assertEqual(notified, [])

        self._append(_record("2025-08-10 15:15:30.100", "req-b"))
        await self.tailer._on_global_create("VS Code Stable", self.log_file)

        self.assertEqual([[e.requestId for e in r.logEntries] for r in notified], [["req-b"]])

    async def test_create_event_for_new_file_reads_from_start(self) -> None:
        fresh = self.log_dir / "GitHub Copilot Chat 2.log"
        fresh.write_text(_record("2025-08-10 15:15:20.100", "req-a"), encoding="utf-8")
        notified = []
        self.tailer.on_log_activity(notified.append)

        await self.tailer._on_global_create("VS Code Stable", fresh)

        self.assertEqual([e.requestId for e in notified[0].logEntries], ["req-a"])

    async def test_backfill_sets_offset_to_bytes_read_and_tags_provenance(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))

        result = await self.tailer.backfill(self.log_file)

        self.assertTrue(result.metadata.isBackfill)
        self.assertEqual(result.metadata.filePosition, self.log_file.stat().st_size)
        self.assertEqual(result.metadata.sessionId, "20250810T151527")
        self.assertEqual(result.metadata.windowId, "window2")
        self.assertTrue(result.logEntries[0].rawLine.startswith("[VS Code Stable][20250810T151527][window2] "))

    async def test_tail_of_missing_file_returns_none(self) -> None:
        with self.assertLogs("test.logs", level="ERROR"):
            self.assertIsNone(await self.tailer.tail(self.log_dir / "gone.log"))

    async def test_overlapping_pass_is_deferred_and_retried(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))
        notified = []
        self.tailer.on_log_activity(notified.append)
        gate = asyncio.Event()
        original = self.tailer.read_new_content

        async def slow_read(path):
            await gate.wait()
            return await original(path)

        with mock.patch.object(self.tailer, "read_new_content", side_effect=slow_read) as read:
            first = asyncio.create_task(self.tailer.tail(self.log_file))
            await asyncio.sleep(0)
            deferred = await self.tailer.tail(self.log_file)
            gate.set()
            result = await first
            await asyncio.sleep(0.1)

        self.assertIsNone(deferred)
        self.assertEqual([e.requestId for e in result.logEntries], ["req-a"])
        self.assertEqual(read.call_count, 2)
        self.assertEqual(len(notified), 1)

    async def test_callbacks_receive_results_and_errors_are_logged(self) -> None:
        received = []

        def broken(_result) -> None:
            raise RuntimeError("subscriber failed")

        self.tailer.on_log_activity(broken)
        self.tailer.on_log_activity(received.append)
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))

        with self.assertLogs("test.logs", level="ERROR"):
            await self.tailer.tail(self.log_file)

        self.assertEqual(len(received), 1)
        self.tailer.remove_log_callback(received.append)
        self._append(_record("2025-08-10 15:15:21.100", "req-b"))
        with self.assertLogs("test.logs", level="ERROR"):
            await self.tailer.tail(self.log_file)
        self.assertEqual(len(received), 1)

    async def test_historical_scan_merges_logs_chronologically(self) -> None:
        self._append(_record("2025-08-10 15:20:00.000", "req-late"))
        other_dir = self.log_root / "20250809T080000" / "window1" / "exthost" / "GitHub.copilot-chat"
        other_dir.mkdir(parents=True)
        other_log = other_dir / "GitHub Copilot Chat.log"
        self._append(_record("2025-08-09 08:05:00.000", "req-early"), other_log)

        result = await self.tailer.scan_all_historical_logs()

        self.assertEqual(result.scope, "global")
        self.assertEqual(result.metadata.totalInstancesScanned, 2)
        self.assertEqual([e.requestId for e in result.logEntries], ["req-early", "req-late"])
        self.assertTrue(result.logEntries[0].rawLine.startswith("[VS Code Stable][20250809T080000][window1] "))
        # historical offsets make the next pass incremental
        self.assertEqual((await self.tailer.tail(other_log)).logEntries, [])

    async def test_window_mode_backfills_then_tails_current_log(self) -> None:
        self._append(_record("2025-08-10 15:15:20.100", "req-a"))
        own_dir = self.log_dir.parent / "publisher.usage-extension"
        own_dir.mkdir()
        notified = []
        self.tailer.on_log_activity(notified.append)

        started = await self.tailer.start_window_watching(own_dir)

        self.assertTrue(started)
        self.assertEqual(len(notified), 1)
        self.assertEqual(notified[0].scope, "window")
        self.assertTrue(notified[0].metadata.isBackfill)

        self._append(_record("2025-08-10 15:16:00.000", "req-b"))
        result = await self.tailer.manual_window_scan()

        self.assertEqual([e.requestId for e in result.logEntries], ["req-b"])
        self.assertTrue(self.tailer.get_status()["isWatchingWindow"])

    async def test_manual_window_scan_without_window_log(self) -> None:
        self.assertIsNone(await self.tailer.manual_window_scan())

    async def test_global_watching_registers_one_watcher_per_existing_root(self) -> None:
        tailer = LogTailer(log_roots=[self.log_root, self.home / "missing"], global_flush_interval=0)
        self.addAsyncCleanup(tailer.dispose)

        self.assertEqual(await tailer.start_global_watching(), 1)
        self.assertEqual(await tailer.start_global_watching(), 1)
        self.assertTrue(tailer.get_status()["isWatchingGlobally"])

        await tailer.stop_global_watching()

        self.assertFalse(tailer.get_status()["isWatchingGlobally"])


if __name__ == "__main__":
    unittest.main()

"""Incremental reading of assistant log files.

Each tracked log file has a byte offset. A tail pass reads only the bytes
appended since the previous pass, parses that chunk into LogEntry records and
publishes them. The tailer runs in two modes that share the same offsets:

- global: every assistant log under every editor log root, historical
  backfill plus watchers on each root;
- window: only the log belonging to the current editor window.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, Optional, Union

from copilot_usage import config
from copilot_usage.date_utils import utc_now_iso
from copilot_usage.models import FileTailState, LogEntry, LogScanMetadata, LogScanResult
from copilot_usage.parsers.logs import parse_multiline_requests
from copilot_usage.storage_paths import (
    EXTHOST_DIR,
    LOG_SESSION_DIR_PATTERN,
    WINDOW_DIR_PREFIX,
    discover_log_roots,
    find_all_historical_log_paths,
    find_current_window_log_path,
    variant_display_name,
)
from copilot_usage.watch.file_watcher import ChangeNotifier

LogCallback = Callable[[LogScanResult], Union[Awaitable[Any], Any]]
Scope = Literal["global", "window"]

ASSISTANT_LOG_DIR = "GitHub.copilot-chat"


def _path_key(path: Union[str, Path]) -> str:
    return os.path.normpath(str(path))


def _read_range(path: str, start: int, end: int) -> bytes:
    with open(path, "rb") as handle:
        handle.seek(start)
        return handle.read(end - start)


def _complete_utf8_length(data: bytes) -> int:
    """Length of ``data`` without a trailing, partially written UTF-8 sequence."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte >= 0xF0:
            needed = 4
        elif byte >= 0xE0:
            needed = 3
        elif byte >= 0xC0:
            needed = 2
        else:
            needed = 1
        return len(data) - back if needed > back else len(data)
    return len(data)


def extract_path_metadata(path: Union[str, Path]) -> tuple[str, str]:
    """(session id, window id) encoded in a log path, ``unknown`` when absent."""
    session_id = "unknown"
    window_id = "unknown"
    for part in Path(path).parts:
        if session_id == "unknown" and LOG_SESSION_DIR_PATTERN.match(part):
            session_id = part
        elif window_id == "unknown" and part.startswith(WINDOW_DIR_PREFIX):
            window_id = part
    return session_id, window_id


def tag_provenance(entries: list[LogEntry], variant: str, session_id: str, window_id: str) -> list[LogEntry]:
    prefix = f"[{variant}][{session_id}][{window_id}] "
    return [entry.model_copy(update={"rawLine": prefix + entry.rawLine}) for entry in entries]


class LogTailer:
    def __init__(
        self,
        *,
        log_roots: Optional[list[Path]] = None,
        retry_delay: Optional[float] = None,
        global_flush_interval: Optional[float] = None,
        global_debounce: Optional[float] = None,
        window_flush_interval: Optional[float] = None,
        window_debounce: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._log_roots = log_roots
        self.retry_delay = (
            retry_delay if retry_delay is not None else config.TAIL_RETRY_DELAY_MS / 1000.0
        )
        self.global_flush_interval = (
            global_flush_interval if global_flush_interval is not None
            else config.GLOBAL_LOG_FLUSH_MS / 1000.0
        )
        self.global_debounce = (
            global_debounce if global_debounce is not None
            else config.GLOBAL_LOG_DEBOUNCE_MS / 1000.0
        )
        self.window_flush_interval = (
            window_flush_interval if window_flush_interval is not None
            else config.WINDOW_LOG_FLUSH_MS / 1000.0
        )
        self.window_debounce = (
            window_debounce if window_debounce is not None
            else config.WINDOW_LOG_DEBOUNCE_MS / 1000.0
        )
        self._logger = logger or logging.getLogger("copilot_usage.logs")

        self._file_states: dict[str, FileTailState] = {}
        self._in_flight: set[str] = set()
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._callbacks: list[LogCallback] = []
        self._global_watchers: list[ChangeNotifier] = []
        self._window_watcher: Optional[ChangeNotifier] = None
        self._current_window_log: Optional[Path] = None

    def _resolve_log_roots(self) -> list[Path]:
        if self._log_roots is not None:
            return list(self._log_roots)
        return discover_log_roots()

    def get_file_state(self, path: Union[str, Path]) -> Optional[FileTailState]:
        return self._file_states.get(_path_key(path))

    def forget_file(self, path: Union[str, Path]) -> None:
        key = _path_key(path)
        self._file_states.pop(key, None)
        self._in_flight.discard(key)

    # ── Reading ─────────────────────────────────────────────────────

    async def read_new_content(self, path: Union[str, Path]) -> str:
        """Text appended since the last read; resets to 0 when the file shrank.

        Raises OSError when the file cannot be stat'ed or read.
        """
        key = _path_key(path)
        size = (await asyncio.to_thread(os.stat, key)).st_size
        state = self._file_states.setdefault(key, FileTailState())

        if size < state.last_position:
            self._logger.info(f"Log file truncated or rotated, reading from start: {key}")
            state.last_position = 0
        if size == state.last_position:
            return ""

        start = state.last_position
        data = await asyncio.to_thread(_read_range, key, start, size)
        # A character split by the writer is left for the next pass.
        data = data[:_complete_utf8_length(data)]
        state.last_position = start + len(data)
        return data.decode("utf-8", errors="replace")

    def _build_result(
        self,
        key: str,
        content: str,
        variant: str,
        scope: Scope,
        is_backfill: bool,
        started_at: str,
    ) -> LogScanResult:
        session_id, window_id = extract_path_metadata(key)
        entries = parse_multiline_requests(content) if content.strip() else []
        state = self._file_states.get(key)
        return LogScanResult(
            logEntries=tag_provenance(entries, variant, session_id, window_id),
            scope=scope,
            metadata=LogScanMetadata(
                vscodeVersion=variant,
                sessionId=session_id,
                windowId=window_id,
                logFilePath=key,
                isBackfill=is_backfill,
                filePosition=state.last_position if state else 0,
                totalInstancesScanned=1,
                scanStartTime=started_at,
                scanEndTime=utc_now_iso(),
            ),
        )

    async def backfill(
        self,
        path: Union[str, Path],
        variant: Optional[str] = None,
        scope: Scope = "global",
    ) -> LogScanResult:
        """Parse the whole file and leave its offset at the end of what was read."""
        key = _path_key(path)
        started_at = utc_now_iso()
        self._file_states[key] = FileTailState()
        content = await self.read_new_content(key)
        result = self._build_result(
            key, content, variant or variant_display_name(key), scope, True, started_at
        )
        self._logger.debug(f"Backfilled {len(result.logEntries)} entries from {key}")
        return result

    async def tail(
        self,
        path: Union[str, Path],
        variant: Optional[str] = None,
        scope: Scope = "global",
    ) -> Optional[LogScanResult]:
        """Run one incremental pass over ``path``.

        Returns None when a pass for the same file is already running (a
        follow-up pass is scheduled instead) or when the file cannot be read.
        """
        key = _path_key(path)
        if key in self._in_flight:
            self._schedule_retry(key, variant, scope)
            return None

        self._in_flight.add(key)
        try:
            started_at = utc_now_iso()
            content = await self.read_new_content(key)
            result = self._build_result(
                key, content, variant or variant_display_name(key), scope, False, started_at
            )
        except OSError as e:
            self._logger.error(f"Error reading log file {key}: {e}")
            return None
        finally:
            self._in_flight.discard(key)

        if result.logEntries:
            self._logger.info(
                f"Processing {len(result.logEntries)} incremental entries from "
                f"{result.metadata.vscodeVersion} {result.metadata.sessionId}/{result.metadata.windowId}"
            )
            await self._notify(result)
        return result

    def _schedule_retry(self, key: str, variant: Optional[str], scope: Scope) -> None:
        if key in self._retry_tasks:
            return
        self._retry_tasks[key] = asyncio.create_task(self._retry_tail(key, variant, scope))

    async def _retry_tail(self, key: str, variant: Optional[str], scope: Scope) -> None:
        try:
            await asyncio.sleep(self.retry_delay)
        finally:
            self._retry_tasks.pop(key, None)
        await self.tail(key, variant, scope)

    # ── Callbacks ───────────────────────────────────────────────────

    def on_log_activity(self, callback: LogCallback) -> None:
        self._callbacks.append(callback)

    def remove_log_callback(self, callback: LogCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def _notify(self, result: LogScanResult) -> None:
        for callback in list(self._callbacks):
            try:
                outcome = callback(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self._logger.error(f"Error in log activity callback: {e}")

    # ── Global mode ─────────────────────────────────────────────────

    async def scan_all_historical_logs(self) -> LogScanResult:
        """Backfill every assistant log across all editor sessions and windows."""
        started_at = utc_now_iso()
        self._logger.info("Starting historical scan across all editor log roots...")
        locations = await find_all_historical_log_paths(self._resolve_log_roots())

        entries: list[LogEntry] = []
        instances = 0
        for location in locations:
            try:
                result = await self.backfill(location.logPath, location.variant, "global")
            except OSError as e:
                self._logger.error(f"Error processing {location.logPath}: {e}")
                continue
            if result.metadata.filePosition > 0:
                instances += 1
            entries.extend(result.logEntries)

        entries.sort(key=lambda entry: entry.timestamp)
        self._logger.info(
            f"Historical scan complete: {len(entries)} entries across {instances} log file(s)"
        )
        return LogScanResult(
            logEntries=entries,
            scope="global",
            metadata=LogScanMetadata(
                vscodeVersion="mixed",
                sessionId="all-sessions",
                windowId="all-windows",
                isBackfill=True,
                totalInstancesScanned=instances,
                scanStartTime=started_at,
                scanEndTime=utc_now_iso(),
            ),
        )

    async def _on_global_create(self, variant: str, path: Path) -> None:
        self._logger.info(f"New log file created in {variant}: {path}")
        # Untracked files start at offset 0; a replaced file was forgotten on delete.
        await self.tail(path, variant, "global")

    async def _on_global_change(self, variant: str, path: Path) -> None:
        await self.tail(path, variant, "global")

    def _on_global_delete(self, variant: str, path: Path) -> None:
        self._logger.info(f"Log file deleted in {variant}: {path}")
        self.forget_file(path)

    async def start_global_watching(self) -> int:
        """Watch every log root; returns the number of active root watchers."""
        if self._global_watchers:
            self._logger.debug("Already watching log roots globally")
            return len(self._global_watchers)

        for log_root in self._resolve_log_roots():
            variant = variant_display_name(log_root)
            notifier = ChangeNotifier(
                Path(log_root) / "**" / EXTHOST_DIR / "**" / ASSISTANT_LOG_DIR / "*.log",
                force_flush_interval=self.global_flush_interval,
                debounce=self.global_debounce,
                logger=self._logger,
            )
            notifier.on_create(functools.partial(self._on_global_create, variant))
            notifier.on_change(functools.partial(self._on_global_change, variant))
            notifier.on_delete(functools.partial(self._on_global_delete, variant))
            if not await notifier.start():
                self._logger.warning(f"Could not watch log root {log_root}; continuing with others")
                await notifier.dispose()
                continue
            self._global_watchers.append(notifier)

        self._logger.info(f"Watching {len(self._global_watchers)} log root(s) for assistant activity")
        return len(self._global_watchers)

    async def stop_global_watching(self) -> None:
        watchers = list(self._global_watchers)
        self._global_watchers.clear()
        for notifier in watchers:
            await notifier.dispose()

    # ── Window mode ─────────────────────────────────────────────────

    async def start_window_watching(self, extension_log_dir: Union[str, Path]) -> bool:
        """Backfill and watch the assistant log of the current editor window."""
        if self._window_watcher is not None:
            return True

        log_path = await find_current_window_log_path(Path(extension_log_dir))
        if log_path is None:
            self._logger.warning(f"No assistant log found next to {extension_log_dir}")
            return False
        self._current_window_log = log_path

        try:
            result = await self.backfill(log_path, scope="window")
        except OSError as e:
            self._logger.error(f"Error backfilling window log {log_path}: {e}")
        else:
            if result.logEntries:
                await self._notify(result)

        notifier = ChangeNotifier(
            log_path.parent / "*.log",
            force_flush_interval=self.window_flush_interval,
            debounce=self.window_debounce,
            logger=self._logger,
        )
        notifier.on_create(self._on_window_event)
        notifier.on_change(self._on_window_event)
        notifier.on_delete(self._on_window_delete)
        if not await notifier.start():
            await notifier.dispose()
            return False
        self._window_watcher = notifier
        return True

    async def _on_window_event(self, path: Path) -> None:
        await self.tail(path, scope="window")

    def _on_window_delete(self, path: Path) -> None:
        self.forget_file(path)
        if self._current_window_log is not None and _path_key(path) == _path_key(self._current_window_log):
            self._logger.debug("Current window log file was deleted, resetting position")

    async def manual_window_scan(self) -> Optional[LogScanResult]:
        if self._current_window_log is None:
            self._logger.debug("Manual window scan requested but no window log is known")
            return None
        return await self.tail(self._current_window_log, scope="window")

    async def stop_window_watching(self) -> None:
        if self._window_watcher is not None:
            await self._window_watcher.dispose()
            self._window_watcher = None

    # ── Lifecycle ───────────────────────────────────────────────────

    async def stop(self) -> None:
        await self.stop_global_watching()
        await self.stop_window_watching()

    async def dispose(self) -> None:
        await self.stop()
        retries = list(self._retry_tasks.values())
        self._retry_tasks.clear()
        for task in retries:
            task.cancel()
        self._file_states.clear()
        self._in_flight.clear()
        self._callbacks.clear()
        self._current_window_log = None

    def get_status(self) -> dict[str, Any]:
        return {
            "isWatchingGlobally": bool(self._global_watchers),
            "isWatchingWindow": self._window_watcher is not None,
            "globalWatcherCount": len(self._global_watchers),
            "callbackCount": len(self._callbacks),
            "trackedFiles": len(self._file_states),
            "inFlight": len(self._in_flight),
            "currentWindowLog": str(self._current_window_log) if self._current_window_log else None,
        }

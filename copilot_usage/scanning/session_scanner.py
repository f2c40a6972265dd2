"""Discover, parse and watch persisted chat session files."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from copilot_usage import config
from copilot_usage.date_utils import epoch_ms_to_iso, file_modified_datetime
from copilot_usage.models import SessionScanResult, SessionScanStats
from copilot_usage.parsers.sessions import (
    SESSION_FILE_PATTERN,
    SESSIONS_DIR,
    harvest_path_metadata,
    parse_session_text,
)
from copilot_usage.watch.file_watcher import ChangeNotifier

SessionCallback = Callable[[SessionScanResult], Union[Awaitable[Any], Any]]


def _path_key(path: Union[str, Path]) -> str:
    return os.path.normpath(str(path))


class SessionFileScanner:
    """Full scans plus incremental watching of ``chatSessions/*.json`` files.

    The scanner remembers the size of every file it parsed successfully;
    watch events for a file whose size has not changed are dropped without
    re-reading it.
    """

    def __init__(
        self,
        *,
        batch_size: Optional[int] = None,
        max_file_size_mb: Optional[int] = None,
        watch_debounce: Optional[float] = None,
        home: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.batch_size = max(1, batch_size or config.SCAN_BATCH_SIZE)
        self.max_file_size_bytes = (max_file_size_mb or config.MAX_SESSION_FILE_MB) * 1024 * 1024
        self.watch_debounce = (
            watch_debounce if watch_debounce is not None
            else config.SESSION_WATCH_DEBOUNCE_MS / 1000.0
        )
        self._home = home
        self._logger = logger or logging.getLogger("copilot_usage.sessions")

        self._known_sizes: dict[str, int] = {}
        self._known_mtimes: dict[str, datetime] = {}
        self._watchers: dict[str, ChangeNotifier] = {}
        self._callbacks: list[SessionCallback] = []

    # ── Discovery ───────────────────────────────────────────────────

    def _list_session_files(self, root: Path) -> list[Path]:
        found: list[Path] = []
        # Failure to list the root itself propagates to the caller.
        workspace_names = sorted(os.listdir(root))
        for workspace_name in workspace_names:
            sessions_dir = root / workspace_name / SESSIONS_DIR
            try:
                names = sorted(os.listdir(sessions_dir))
            except (FileNotFoundError, NotADirectoryError):
                continue
            except OSError as e:
                self._logger.warning(f"Cannot read sessions directory {sessions_dir}: {e}")
                continue

            for name in names:
                if not SESSION_FILE_PATTERN.match(name):
                    continue
                file_path = sessions_dir / name
                try:
                    size = file_path.stat().st_size
                except OSError as e:
                    self._logger.debug(f"Cannot stat session file {file_path}: {e}")
                    continue
                if size > self.max_file_size_bytes:
                    self._logger.debug(
                        f"Skipping large session file: {file_path} ({round(size / 1024 / 1024)}MB)"
                    )
                    continue
                found.append(file_path)
        return found

    async def find_all_session_files(self, roots: Iterable[Path]) -> list[Path]:
        files: list[Path] = []
        for root in roots:
            root_path = Path(root)
            try:
                root_files = await asyncio.to_thread(self._list_session_files, root_path)
            except OSError as e:
                self._logger.warning(f"Cannot enumerate storage root {root_path}: {e}")
                continue
            self._logger.debug(f"Found {len(root_files)} session files under {root_path}")
            files.extend(root_files)
        self._logger.info(f"Found {len(files)} session files across storage roots")
        return files

    # ── Parsing ─────────────────────────────────────────────────────

    async def parse_session_file(self, path: Union[str, Path]) -> Optional[SessionScanResult]:
        """Read and validate one session file; None when it cannot be used."""
        file_path = Path(path)
        try:
            stats = await asyncio.to_thread(file_path.stat)
            text = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            self._logger.warning(f"Failed to read session file {file_path}: {e}")
            return None

        try:
            session = parse_session_text(text, self._logger)
        except json.JSONDecodeError as e:
            self._logger.warning(f"Malformed JSON in session file {file_path}: {e}")
            return None
        if session is None:
            self._logger.warning(f"Invalid session structure in {file_path}")
            return None

        return SessionScanResult(
            sessionFilePath=str(file_path),
            session=session,
            lastModified=file_modified_datetime(stats),
            fileSize=stats.st_size,
            harvestedMetadata=harvest_path_metadata(file_path, self._home),
        )

    async def scan_all(
        self, roots: Iterable[Path]
    ) -> tuple[list[SessionScanResult], SessionScanStats]:
        started = time.monotonic()
        self._logger.info("Starting full session scan...")

        all_files = await self.find_all_session_files(roots)
        results: list[SessionScanResult] = []
        error_files = 0
        total_requests = 0
        oldest: Optional[int] = None
        newest: Optional[int] = None

        for offset in range(0, len(all_files), self.batch_size):
            batch = all_files[offset:offset + self.batch_size]
            batch_results = await asyncio.gather(*(self.parse_session_file(p) for p in batch))
            for result in batch_results:
                if result is None:
                    error_files += 1
                    continue
                results.append(result)
                self._remember_size(result)
                total_requests += len(result.session.turns)
                created = result.session.creationDate
                if oldest is None or created < oldest:
                    oldest = created
                if newest is None or created > newest:
                    newest = created
            if len(all_files) > 100:
                self._logger.debug(
                    f"Processed {min(offset + self.batch_size, len(all_files))}/{len(all_files)} files..."
                )

        stats = SessionScanStats(
            totalSessions=len(results),
            totalRequests=total_requests,
            scannedFiles=len(all_files),
            errorFiles=error_files,
            scanDuration=int((time.monotonic() - started) * 1000),
            oldestSession=epoch_ms_to_iso(oldest) if oldest is not None else None,
            newestSession=epoch_ms_to_iso(newest) if newest is not None else None,
        )
        self._logger.info(
            f"Scan complete: {stats.totalSessions} sessions, {stats.totalRequests} requests "
            f"in {stats.scanDuration}ms ({stats.errorFiles} errors)"
        )
        return results, stats

    def _remember_size(self, result: SessionScanResult) -> None:
        # A result read before a newer recorded one (a slow full scan) is not remembered.
        key = _path_key(result.sessionFilePath)
        recorded = self._known_mtimes.get(key)
        if recorded is not None and recorded > result.lastModified:
            return
        self._known_sizes[key] = result.fileSize
        self._known_mtimes[key] = result.lastModified

    # ── Watching ────────────────────────────────────────────────────

    @property
    def is_watching(self) -> bool:
        return bool(self._watchers)

    async def start_watching(self, roots: Iterable[Path], callback: SessionCallback) -> int:
        """Watch every root for session file changes; returns the active watcher count."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

        for root in roots:
            key = _path_key(root)
            if key in self._watchers:
                continue
            notifier = ChangeNotifier(
                Path(root) / "*" / SESSIONS_DIR / "*.json",
                force_flush_interval=0,
                debounce=self.watch_debounce,
                logger=self._logger,
            )
            notifier.on_create(self.handle_session_file_change)
            notifier.on_change(self.handle_session_file_change)
            notifier.on_delete(self.handle_session_file_delete)
            if not await notifier.start():
                self._logger.warning(f"Could not watch storage root {root}; continuing with others")
                await notifier.dispose()
                continue
            self._watchers[key] = notifier

        self._logger.info(f"Watching {len(self._watchers)} storage root(s) for session changes")
        return len(self._watchers)

    async def handle_session_file_change(self, path: Union[str, Path]) -> None:
        file_path = Path(path)
        if not SESSION_FILE_PATTERN.match(file_path.name):
            return
        key = _path_key(file_path)
        try:
            size = (await asyncio.to_thread(file_path.stat)).st_size
        except OSError as e:
            self._logger.debug(f"Session file vanished before it could be read: {file_path} ({e})")
            return
        if self._known_sizes.get(key) == size:
            self._logger.debug(f"Session file size unchanged, skipping: {file_path}")
            return

        result = await self.parse_session_file(file_path)
        if result is None:
            return
        self._remember_size(result)

        for callback in list(self._callbacks):
            try:
                outcome = callback(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self._logger.error(f"Error handling session file change {file_path}: {e}")

    async def handle_session_file_delete(self, path: Union[str, Path]) -> None:
        key = _path_key(path)
        self._known_sizes.pop(key, None)
        self._known_mtimes.pop(key, None)
        self._logger.debug(f"Session file deleted: {path}")

    async def stop_watching(self) -> None:
        if not self._watchers and not self._callbacks:
            return
        watchers = list(self._watchers.values())
        self._watchers.clear()
        self._callbacks.clear()
        for notifier in watchers:
            await notifier.dispose()
        self._logger.info("Stopped watching for session file changes")

    async def dispose(self) -> None:
        await self.stop_watching()
        self._known_sizes.clear()
        self._known_mtimes.clear()

    def get_watcher_status(self) -> dict[str, Any]:
        return {
            "isWatching": self.is_watching,
            "watcherCount": len(self._watchers),
            "callbackCount": len(self._callbacks),
            "trackedFiles": len(self._known_sizes),
            "watchers": [notifier.get_status() for notifier in self._watchers.values()],
        }

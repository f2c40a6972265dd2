"""Debounced file change notifications using watchfiles.

A ChangeNotifier watches the files matching one glob pattern and turns raw
filesystem events into create/change/delete callbacks. Bursts of events for
the same file are coalesced, deletes are verified against the filesystem,
and an optional forced-flush loop keeps stat'ing matching files so that
writers that buffer metadata still surface their changes.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from watchfiles import Change, awatch

CREATE = "create"
CHANGE = "change"
DELETE = "delete"

_CHANGE_KINDS = {
    Change.added: CREATE,
    Change.modified: CHANGE,
    Change.deleted: DELETE,
}

_GLOB_CHARS = re.compile(r"[*?\[]")
_SCHEME_PREFIX = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*):")

ChangeCallback = Callable[[Path], Union[Awaitable[Any], Any]]


def _segment_regex(segment: str) -> str:
    out = []
    for ch in segment:
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
    return "".join(out)


def compile_glob(pattern: Union[str, Path]) -> tuple[Path, re.Pattern[str]]:
    """Split a glob into its static base directory and a full-path regex.

    ``*`` and ``?`` never cross a ``/``; a ``**`` segment matches any number
    of directories, including none.
    """
    posix = Path(pattern).as_posix()
    segments = posix.split("/")

    base_segments: list[str] = []
    for segment in segments[:-1]:
        if _GLOB_CHARS.search(segment):
            break
        base_segments.append(segment)
    base = Path("/".join(base_segments) or "/")

    parts: list[str] = []
    last = len(segments) - 1
    for index, segment in enumerate(segments):
        if segment == "**":
            parts.append(".*" if index == last else "(?:[^/]*/)*")
        else:
            parts.append(_segment_regex(segment) + ("" if index == last else "/"))
    return base, re.compile("".join(parts))


def path_scheme(path: Union[str, Path]) -> str:
    """URI scheme a path originates from; plain filesystem paths are ``file``."""
    text = str(path)
    match = _SCHEME_PREFIX.match(text)
    # A single letter followed by ':' is a Windows drive, not a scheme.
    if match and len(match.group(1)) > 1:
        return match.group(1).lower()
    return "file"


def _strip_file_scheme(path: Union[str, Path]) -> str:
    text = str(path)
    if text.startswith("file://"):
        return text[len("file://"):]
    return text


@dataclass
class _PendingEvent:
    kind: str
    task: Optional[asyncio.Task] = None


class ChangeNotifier:
    """Watch one glob pattern and publish debounced change callbacks.

    Callbacks may be plain functions or coroutine functions; they receive
    the affected path. Errors raised by callbacks are logged and swallowed.
    """

    def __init__(
        self,
        pattern: Union[str, Path],
        *,
        force_flush_interval: float = 0,
        debounce: float = 0,
        ignore_create: bool = False,
        ignore_change: bool = False,
        ignore_delete: bool = False,
        allowed_schemes: tuple[str, ...] = ("file",),
        logger: Optional[logging.Logger] = None,
    ):
        self.pattern = str(pattern)
        self.base_dir, self._regex = compile_glob(_strip_file_scheme(pattern))
        self.force_flush_interval = max(0.0, float(force_flush_interval))
        self.debounce = max(0.0, float(debounce))
        self._ignored = {
            CREATE: ignore_create,
            CHANGE: ignore_change,
            DELETE: ignore_delete,
        }
        self.allowed_schemes = tuple(scheme.lower() for scheme in allowed_schemes)
        self._logger = logger or logging.getLogger("copilot_usage.watcher")

        self._callbacks: dict[str, list[ChangeCallback]] = {CREATE: [], CHANGE: [], DELETE: []}
        self._pending: dict[str, _PendingEvent] = {}
        self._lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    # ── Subscriptions ───────────────────────────────────────────────

    def _subscribe(self, kind: str, callback: ChangeCallback) -> Callable[[], None]:
        self._callbacks[kind].append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks[kind].remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def on_create(self, callback: ChangeCallback) -> Callable[[], None]:
        return self._subscribe(CREATE, callback)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        return self._subscribe(CHANGE, callback)

    def on_delete(self, callback: ChangeCallback) -> Callable[[], None]:
        return self._subscribe(DELETE, callback)

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Start watching in background tasks. Returns whether watching began."""
        if self._running:
            self._logger.warning(f"Change notifier already running for {self.pattern}")
            return True

        if path_scheme(self.pattern) not in self.allowed_schemes:
            self._logger.warning(f"Refusing to watch {self.pattern}: scheme not allowed")
            return False

        try:
            exists = await asyncio.to_thread(self.base_dir.is_dir)
        except OSError as e:
            self._logger.error(f"Failed to set up watcher for {self.pattern}: {e}")
            return False
        if not exists:
            self._logger.warning(f"Watch base directory does not exist: {self.base_dir}")
            return False

        self._running = True
        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch_loop())
        if self.force_flush_interval > 0:
            self._flush_task = asyncio.create_task(self._force_flush_loop())
        self._logger.info(f"Watching {self.pattern}")
        return True

    async def stop(self) -> None:
        """Stop the watch loop and the forced-flush loop."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._watch_task, self._flush_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._flush_task = None
        self._stop_event = None

    async def dispose(self) -> None:
        """Stop watching, cancel pending debounces and drop every callback."""
        await self.stop()
        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for entry in pending:
            if entry.task is not None:
                entry.task.cancel()
        for callbacks in self._callbacks.values():
            callbacks.clear()
        self._logger.debug(f"Change notifier disposed for {self.pattern}")

    def get_status(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "isWatching": self._running,
            "forceFlushInterval": self.force_flush_interval,
            "debounce": self.debounce,
            "pendingDebounces": len(self._pending),
            "allowedSchemes": list(self.allowed_schemes),
        }

    # ── Event handling ──────────────────────────────────────────────

    def matches(self, path: Union[str, Path]) -> bool:
        if path_scheme(path) not in self.allowed_schemes:
            return False
        return self._regex.fullmatch(Path(_strip_file_scheme(path)).as_posix()) is not None

    def _watch_filter(self, change: Change, path: str) -> bool:
        return self.matches(path)

    async def handle_change(self, change: Union[Change, str], path: Union[str, Path]) -> None:
        """Route one raw filesystem event through filtering, verification and debounce."""
        kind = _CHANGE_KINDS.get(change) if isinstance(change, Change) else change
        if kind not in self._callbacks:
            self._logger.debug(f"Ignoring unknown change kind {change!r} for {path}")
            return
        if not self.matches(path):
            return
        if self._ignored[kind]:
            return

        key = os.path.normpath(_strip_file_scheme(path))
        if kind == DELETE:
            await self._handle_delete(key)
        elif self.debounce > 0:
            await self._schedule(kind, key)
        else:
            await self._dispatch(kind, Path(key))

    async def _handle_delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(os.stat, key)
        except OSError:
            pass
        else:
            self._logger.debug(f"Ignoring false delete event, file still exists: {key}")
            return

        async with self._lock:
            entry = self._pending.pop(key, None)
        if entry is not None and entry.task is not None:
            entry.task.cancel()
        await self._dispatch(DELETE, Path(key))

    async def _schedule(self, kind: str, key: str) -> None:
        async with self._lock:
            entry = self._pending.get(key)
            if entry is not None:
                if kind == CREATE:
                    entry.kind = CREATE
                return
            entry = _PendingEvent(kind=kind)
            self._pending[key] = entry
            entry.task = asyncio.create_task(self._fire_after_debounce(key))

    async def _fire_after_debounce(self, key: str) -> None:
        await asyncio.sleep(self.debounce)
        async with self._lock:
            entry = self._pending.pop(key, None)
        if entry is not None:
            await self._dispatch(entry.kind, Path(key))

    async def _dispatch(self, kind: str, path: Path) -> None:
        for callback in list(self._callbacks[kind]):
            try:
                result = callback(path)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(f"Error in {kind} callback for {path}: {e}")

    # ── Background loops ────────────────────────────────────────────

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.base_dir,
                watch_filter=self._watch_filter,
                stop_event=self._stop_event,
            ):
                if not self._running:
                    break
                for change, path in changes:
                    await self.handle_change(change, path)
        except asyncio.CancelledError:
            self._logger.debug(f"Watch task cancelled for {self.pattern}")
            raise
        except Exception as e:
            self._logger.error(f"File watcher error for {self.pattern}: {e}")
        finally:
            self._running = False

    def _matching_files(self) -> list[str]:
        found: list[str] = []
        for dirpath, _dirnames, filenames in os.walk(self.base_dir):
            for name in filenames:
                full = os.path.join(dirpath, name)
                if self._regex.fullmatch(Path(full).as_posix()):
                    found.append(full)
        return found

    def _stat_all(self) -> int:
        touched = 0
        for path in self._matching_files():
            try:
                os.stat(path)
                touched += 1
            except OSError:
                continue
        return touched

    async def _force_flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.force_flush_interval)
            try:
                await asyncio.to_thread(self._stat_all)
            except OSError as e:
                self._logger.debug(f"Forced flush failed for {self.pattern}: {e}")

"""Unified in-memory cache of session scan results and log entries.

The coordinator owns the only mutable caches. Full scans are single-flight:
concurrent callers share one scan task. Watch-mode deltas from the session
scanner and the log tailer are merged under the cache lock and published to
subscribers as increments. Everything handed out is a copy of the cache.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from copilot_usage import config
from copilot_usage.models import (
    CacheSnapshot,
    LogEntry,
    LogScanResult,
    ScanOutcome,
    SessionScanResult,
    SessionScanStats,
)
from copilot_usage.scanning.log_tailer import LogTailer
from copilot_usage.scanning.session_scanner import SessionFileScanner
from copilot_usage.storage_paths import discover_storage_roots

SessionResultsCallback = Callable[[list[SessionScanResult]], Union[Awaitable[Any], Any]]
LogEntriesCallback = Callable[[list[LogEntry]], Union[Awaitable[Any], Any]]

STATE_UNINITIALIZED = "uninitialized"
STATE_SCANNING = "scanning"
STATE_READY = "ready"


def _session_sort_key(result: SessionScanResult) -> int:
    return result.session.creationDate


def _copy_sessions(results: Iterable[SessionScanResult]) -> list[SessionScanResult]:
    return [result.model_copy(deep=True) for result in results]


def _dedup_entries(entries: Iterable[LogEntry], seen: set[tuple[str, datetime]]) -> list[LogEntry]:
    """Entries whose (requestId, timestamp) is not in ``seen``; ``seen`` is updated."""
    fresh: list[LogEntry] = []
    for entry in entries:
        key = entry.dedup_key
        if key in seen:
            continue
        seen.add(key)
        fresh.append(entry)
    return fresh


def _reconcile_sessions(
    scanned: Iterable[SessionScanResult],
    merged_during_scan: dict[str, SessionScanResult],
) -> list[SessionScanResult]:
    """Scan results overlaid with watch-mode merges that are at least as recent."""
    by_id = {result.session.sessionId: result for result in scanned}
    for session_id, merged in merged_during_scan.items():
        current = by_id.get(session_id)
        if current is None or merged.lastModified >= current.lastModified:
            by_id[session_id] = merged
    return sorted(by_id.values(), key=_session_sort_key)


class UnifiedDataCoordinator:
    """Single owner of the session and log caches.

    Publishes two streams: session result updates (only the changed result)
    and new log entries (only entries not seen before).
    """

    def __init__(
        self,
        session_scanner: SessionFileScanner,
        log_tailer: Optional[LogTailer] = None,
        *,
        storage_roots: Optional[list[Path]] = None,
        enable_real_time_updates: Optional[bool] = None,
        load_historical_logs: Optional[bool] = None,
        max_operation_history: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_scanner = session_scanner
        self.log_tailer = log_tailer
        self._storage_roots = storage_roots
        self.enable_real_time_updates = (
            config.ENABLE_REAL_TIME_UPDATES if enable_real_time_updates is None else enable_real_time_updates
        )
        self.load_historical_logs = (
            config.LOAD_HISTORICAL_LOGS if load_historical_logs is None else load_historical_logs
        )
        self._logger = logger or logging.getLogger("copilot_usage.sync")

        self._init_lock = asyncio.Lock()
        self._scan_lock = asyncio.Lock()
        self._cache_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()

        self._initialized = False
        self._watching = False
        self._scan_task: Optional[asyncio.Task] = None

        self._sessions: list[SessionScanResult] = []
        self._log_entries: list[LogEntry] = []
        self._log_keys: set[tuple[str, datetime]] = set()
        self._last_scan_stats: Optional[SessionScanStats] = None
        # Session merges that land while a full scan is collecting results.
        self._merged_during_scan: Optional[dict[str, SessionScanResult]] = None

        self._session_callbacks: list[SessionResultsCallback] = []
        self._log_callbacks: list[LogEntriesCallback] = []

        self._operations: dict[str, dict[str, Any]] = {}
        self._recent_operation_ids: list[str] = []
        self._running_operation_ids: set[str] = set()
        self._operation_clocks: dict[str, float] = {}
        self._max_operation_history = max_operation_history or config.MAX_OPERATION_HISTORY

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        if self.is_scanning():
            return STATE_SCANNING
        return STATE_READY if self._initialized else STATE_UNINITIALIZED

    @property
    def last_scan_stats(self) -> Optional[SessionScanStats]:
        return self._last_scan_stats

    def is_scanning(self) -> bool:
        return self._scan_task is not None and not self._scan_task.done()

    def _resolve_storage_roots(self) -> list[Path]:
        if self._storage_roots is not None:
            return list(self._storage_roots)
        return discover_storage_roots()

    # ── Scanning ────────────────────────────────────────────────────

    async def initialize(self) -> ScanOutcome:
        """Run the first full scan and start watching; later calls return the cache."""
        async with self._init_lock:
            if self._initialized:
                self._logger.debug("Already initialized, returning cached data")
                return await self._cached_outcome()

            self._logger.debug("Initializing unified data coordinator...")
            outcome = await self._scan_all_data("initialize")
            if self.enable_real_time_updates:
                await self.start_real_time_updates()
            self._initialized = True
            self._logger.info(
                f"Initialized with {len(outcome.results)} sessions, "
                f"{len(outcome.logEntries)} log entries"
            )
            return outcome

    async def refresh(self) -> ScanOutcome:
        """Force a full rescan, sharing any scan already in flight."""
        return await self._scan_all_data("refresh")

    async def get_session_results(self) -> list[SessionScanResult]:
        async with self._cache_lock:
            if self._sessions:
                return _copy_sessions(self._sessions)
        outcome = await self._scan_all_data("get_session_results")
        return outcome.results

    async def _scan_all_data(self, trigger: str) -> ScanOutcome:
        task = self._scan_task
        if task is None:
            task = asyncio.create_task(self._run_full_scan(trigger))
            task.add_done_callback(self._clear_scan_task)
            self._scan_task = task
        else:
            self._logger.debug(f"Full scan already in flight; {trigger} joins it")
        outcome = await asyncio.shield(task)
        return outcome.model_copy(deep=True)

    def _clear_scan_task(self, task: asyncio.Task) -> None:
        if self._scan_task is task:
            self._scan_task = None

    async def _run_full_scan(self, trigger: str) -> ScanOutcome:
        include_logs = bool(self.load_historical_logs and self.log_tailer)
        operation_id = await self._open_operation("full_scan", trigger, {"loadHistoricalLogs": include_logs})
        async with self._scan_lock:
            async with self._cache_lock:
                self._merged_during_scan = {}
            try:
                phase_started = await self._enter_phase(operation_id, "sessions")
                results, stats = await self.session_scanner.scan_all(self._resolve_storage_roots())
                empty_sessions = sum(1 for result in results if not result.session.turns)
                self._logger.info(f"Empty request sessions: {empty_sessions}")
                await self._complete_phase(
                    operation_id,
                    "sessions",
                    phase_started,
                    files=stats.scannedFiles,
                    sessions=stats.totalSessions,
                    requests=stats.totalRequests,
                    errorFiles=stats.errorFiles,
                )

                historical: list[LogEntry] = []
                if include_logs:
                    phase_started = await self._enter_phase(operation_id, "logs")
                    log_result = await self.log_tailer.scan_all_historical_logs()
                    historical = log_result.logEntries
                    await self._complete_phase(
                        operation_id,
                        "logs",
                        phase_started,
                        logFiles=log_result.metadata.totalInstancesScanned,
                        entries=len(historical),
                    )

                async with self._cache_lock:
                    self._sessions = _reconcile_sessions(results, self._merged_during_scan or {})
                    # The log cache only grows: tail offsets never rewind for entries already read.
                    added = _dedup_entries(historical, self._log_keys)
                    if added:
                        self._log_entries = sorted(self._log_entries + added, key=lambda entry: entry.timestamp)
                    self._last_scan_stats = stats
                    outcome = ScanOutcome(
                        results=_copy_sessions(self._sessions),
                        logEntries=list(self._log_entries),
                        stats=stats,
                    )
            except Exception as e:
                self._logger.error(f"Scan failed: {e}")
                await self._close_operation(operation_id, "failed", error=str(e))
                raise
            finally:
                async with self._cache_lock:
                    self._merged_during_scan = None

        await self._close_operation(
            operation_id,
            "completed",
            totals={"sessions": len(outcome.results), "logEntries": len(outcome.logEntries)},
        )
        self._logger.info(
            f"Scanned {len(outcome.results)} sessions; cached {len(outcome.logEntries)} log entries"
        )
        return outcome

    async def _cached_outcome(self) -> ScanOutcome:
        async with self._cache_lock:
            return ScanOutcome(
                results=_copy_sessions(self._sessions),
                logEntries=list(self._log_entries),
                stats=(self._last_scan_stats or SessionScanStats()).model_copy(),
            )

    async def get_snapshot(self) -> CacheSnapshot:
        async with self._cache_lock:
            return CacheSnapshot(sessions=_copy_sessions(self._sessions), logEntries=list(self._log_entries))

    # ── Merging watch-mode deltas ───────────────────────────────────

    async def merge_session_result(self, result: SessionScanResult) -> None:
        """Replace the cached result with the same session id and publish it."""
        session_id = result.session.sessionId
        stored = result.model_copy(deep=True)
        async with self._cache_lock:
            before = len(self._sessions)
            merged = [cached for cached in self._sessions if cached.session.sessionId != session_id]
            merged.append(stored)
            merged.sort(key=_session_sort_key)
            self._sessions = merged
            if self._merged_during_scan is not None:
                self._merged_during_scan[session_id] = stored
            self._logger.debug(f"Session cache updated from {before} to {len(merged)} sessions")

        await self._publish(self._session_callbacks, [stored], "session results", clone=_copy_sessions)
        self._logger.info(f"Session update complete for session {session_id}")

    async def merge_log_entries(self, entries: Iterable[LogEntry]) -> list[LogEntry]:
        """Add entries not already cached; returns and publishes only those."""
        async with self._cache_lock:
            fresh = _dedup_entries(entries, self._log_keys)
            if fresh:
                merged = self._log_entries + fresh
                merged.sort(key=lambda entry: entry.timestamp)
                self._log_entries = merged

        if fresh:
            self._logger.debug(f"Log cache grew by {len(fresh)} entries")
            await self._publish(self._log_callbacks, fresh, "log entries")
        return list(fresh)

    async def _on_session_file_result(self, result: SessionScanResult) -> None:
        await self.merge_session_result(result)

    async def _on_log_activity(self, result: LogScanResult) -> None:
        if result.logEntries:
            await self.merge_log_entries(result.logEntries)

    async def _publish(
        self,
        callbacks: list,
        payload: list,
        label: str,
        clone: Callable[[list], list] = list,
    ) -> None:
        # Every subscriber gets its own copy; LogEntry is frozen so a list copy is enough.
        for callback in list(callbacks):
            try:
                outcome = callback(clone(payload))
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self._logger.error(f"Error in {label} callback: {e}")

    # ── Subscriptions ───────────────────────────────────────────────

    def on_session_results_changed(self, callback: SessionResultsCallback) -> None:
        self._session_callbacks.append(callback)

    def remove_session_results_callback(self, callback: SessionResultsCallback) -> None:
        if callback in self._session_callbacks:
            self._session_callbacks.remove(callback)

    def on_log_entries_changed(self, callback: LogEntriesCallback) -> None:
        self._log_callbacks.append(callback)

    def remove_log_entries_callback(self, callback: LogEntriesCallback) -> None:
        if callback in self._log_callbacks:
            self._log_callbacks.remove(callback)

    # ── Watch mode ──────────────────────────────────────────────────

    async def start_real_time_updates(self) -> None:
        if self._watching:
            return
        self._logger.info(
            f"Starting session file watching with {len(self._session_callbacks)} session callbacks"
        )
        await self.session_scanner.start_watching(self._resolve_storage_roots(), self._on_session_file_result)
        if self.log_tailer is not None:
            self.log_tailer.on_log_activity(self._on_log_activity)
            await self.log_tailer.start_global_watching()
        self._watching = True
        self._logger.info("Real-time updates enabled")

    async def stop_real_time_updates(self) -> None:
        if not self._watching:
            return
        await self.session_scanner.stop_watching()
        if self.log_tailer is not None:
            self.log_tailer.remove_log_callback(self._on_log_activity)
            await self.log_tailer.stop_global_watching()
        self._watching = False
        self._logger.info("Real-time updates disabled")

    async def reset_initialization(self) -> None:
        async with self._init_lock:
            self._initialized = False
            await self.stop_real_time_updates()
            self._logger.debug("Initialization state reset")

    async def dispose(self) -> None:
        await self.stop_real_time_updates()
        self._session_callbacks.clear()
        self._log_callbacks.clear()
        await self.session_scanner.dispose()
        if self.log_tailer is not None:
            await self.log_tailer.dispose()
        self._initialized = False
        self._logger.debug("Coordinator disposed")

    def get_watcher_status(self) -> dict[str, Any]:
        return {
            "isWatching": self._watching,
            "logCallbackCount": len(self._log_callbacks),
            "sessionCallbackCount": len(self._session_callbacks),
            "sessionScanner": self.session_scanner.get_watcher_status(),
            "logTailer": self.log_tailer.get_status() if self.log_tailer is not None else None,
        }

    # ── Operation history ───────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent full scans first, each with its per-phase counts."""
        async with self._ops_lock:
            return [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._recent_operation_ids[: max(1, limit)]
                if op_id in self._operations
            ]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            return copy.deepcopy(operation) if operation else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            running = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._recent_operation_ids
                if op_id in self._running_operation_ids
            ]
            recent = [copy.deepcopy(self._operations[op_id]) for op_id in self._recent_operation_ids[:5]]
            tracked = len(self._operations)
        async with self._cache_lock:
            cached_sessions = len(self._sessions)
            cached_log_entries = len(self._log_entries)
        return {
            "state": self.state,
            "isWatching": self._watching,
            "cachedSessions": cached_sessions,
            "cachedLogEntries": cached_log_entries,
            "lastScanStats": self._last_scan_stats.model_dump() if self._last_scan_stats else None,
            "activeOperationCount": len(running),
            "activeOperations": running,
            "recentOperations": recent,
            "trackedOperationCount": tracked,
        }

    async def _open_operation(self, kind: str, trigger: str, options: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        record = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "currentPhase": "",
            "phases": [],
            "options": options,
            "totals": {},
            "startedAt": datetime.now(timezone.utc).isoformat(),
            "finishedAt": "",
            "durationMs": 0,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = record
            self._recent_operation_ids.insert(0, op_id)
            self._running_operation_ids.add(op_id)
            self._operation_clocks[op_id] = time.monotonic()
            for stale_id in self._recent_operation_ids[self._max_operation_history:]:
                self._operations.pop(stale_id, None)
                self._running_operation_ids.discard(stale_id)
                self._operation_clocks.pop(stale_id, None)
            del self._recent_operation_ids[self._max_operation_history:]
        self._logger.info(f"Scan operation {op_id} started (trigger={trigger})")
        return op_id

    async def _enter_phase(self, operation_id: str, phase: str) -> float:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if operation:
                operation["currentPhase"] = phase
        self._logger.debug(f"Scan operation {operation_id}: {phase} phase started")
        return time.monotonic()

    async def _complete_phase(self, operation_id: str, phase: str, started: float, **counts: int) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["phases"].append({"name": phase, "durationMs": elapsed_ms, "counts": counts})
        self._logger.debug(f"Scan operation {operation_id}: {phase} phase done in {elapsed_ms}ms {counts}")

    async def _close_operation(
        self,
        operation_id: str,
        status: str,
        *,
        totals: dict[str, int] | None = None,
        error: str = "",
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["currentPhase"] = ""
            operation["finishedAt"] = datetime.now(timezone.utc).isoformat()
            started = self._operation_clocks.pop(operation_id, time.monotonic())
            operation["durationMs"] = int((time.monotonic() - started) * 1000)
            operation["totals"] = dict(totals or {})
            operation["error"] = error
            self._running_operation_ids.discard(operation_id)

        if status == "failed":
            self._logger.error(f"Scan operation {operation_id} failed: {error}")
        else:
            self._logger.info(f"Scan operation {operation_id} {status}")

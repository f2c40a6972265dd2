"""Scan assistant chat sessions and logs from the command line.

Usage:
  python -m copilot_usage
  python -m copilot_usage --json
  python -m copilot_usage --watch --no-logs
  python -m copilot_usage --storage-root /path/to/workspaceStorage --log-root /path/to/logs
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from copilot_usage import config
from copilot_usage.coordinator import UnifiedDataCoordinator
from copilot_usage.models import LogEntry, SessionScanResult
from copilot_usage.scanning.log_tailer import LogTailer
from copilot_usage.scanning.session_scanner import SessionFileScanner
from copilot_usage.storage_paths import discover_log_roots, discover_storage_roots


def build_coordinator(
    storage_roots: list[Path] | None,
    log_roots: list[Path] | None,
    *,
    watch: bool,
    include_logs: bool,
) -> UnifiedDataCoordinator:
    scanner = SessionFileScanner()
    tailer = LogTailer(log_roots=discover_log_roots(overrides=log_roots)) if include_logs else None
    return UnifiedDataCoordinator(
        scanner,
        tailer,
        storage_roots=discover_storage_roots(overrides=storage_roots),
        enable_real_time_updates=watch,
        load_historical_logs=include_logs and config.LOAD_HISTORICAL_LOGS,
    )


def _print_session_update(results: list[SessionScanResult]) -> None:
    for result in results:
        print(
            f"session {result.session.sessionId}: {len(result.session.turns)} turns "
            f"({result.harvestedMetadata.vscodeVariant}, {result.sessionFilePath})"
        )


def _print_log_update(entries: list[LogEntry]) -> None:
    for entry in entries:
        print(f"request {entry.requestId}: {entry.modelName} {entry.status} {entry.responseTime}ms")


async def _run(args: argparse.Namespace) -> int:
    coordinator = build_coordinator(
        args.storage_root or None,
        args.log_root or None,
        watch=args.watch,
        include_logs=not args.no_logs,
    )
    try:
        outcome = await coordinator.initialize()
        if args.json:
            print(json.dumps({
                "stats": outcome.stats.model_dump(mode="json"),
                "logEntries": len(outcome.logEntries),
            }, indent=2))
        else:
            stats = outcome.stats
            print(
                f"sessions={stats.totalSessions} requests={stats.totalRequests} "
                f"files={stats.scannedFiles} errors={stats.errorFiles} "
                f"log_entries={len(outcome.logEntries)} duration_ms={stats.scanDuration}"
            )

        if not args.watch:
            return 0

        coordinator.on_session_results_changed(_print_session_update)
        coordinator.on_log_entries_changed(_print_log_update)
        print("Watching for changes (Ctrl+C to stop)...")
        await asyncio.Event().wait()
        return 0
    finally:
        await coordinator.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="copilot_usage")
    parser.add_argument("--watch", action="store_true", help="Keep running and print changes as they happen")
    parser.add_argument("--no-logs", action="store_true", help="Skip assistant log files")
    parser.add_argument("--storage-root", action="append", type=Path, default=[], help="workspaceStorage root (repeatable)")
    parser.add_argument("--log-root", action="append", type=Path, default=[], help="Editor logs root (repeatable)")
    parser.add_argument("--json", action="store_true", help="Print scan stats as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Editor storage and log directory discovery.

Resolves where each installed editor variant keeps its per-workspace storage
(chat session files) and its per-window logs. Everything here only probes the
filesystem; a missing or unreadable location is skipped, never fatal.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from pathlib import Path
from typing import Optional

from copilot_usage import config
from copilot_usage.models import LogFileLocation, StorageRoot

logger = logging.getLogger("copilot_usage.paths")

# variant key -> application directory name
EDITOR_VARIANTS: dict[str, str] = {
    "stable": "Code",
    "insiders": "Code - Insiders",
}
VARIANT_DISPLAY_NAMES = {
    "stable": "VS Code Stable",
    "insiders": "VS Code Insiders",
}

LOG_SESSION_DIR_PATTERN = re.compile(r"^\d{8}T\d{6}$")
WINDOW_DIR_PREFIX = "window"
EXTHOST_DIR = "exthost"


def _app_data_base(platform: str) -> Path:
    if platform == "win32":
        return Path("AppData") / "Roaming"
    if platform == "darwin":
        return Path("Library") / "Application Support"
    return Path(".config")


def get_storage_config(platform: Optional[str] = None) -> dict[str, Path]:
    """Relative (to the home directory) workspaceStorage path per variant.

    - Windows: AppData/Roaming/Code/User/workspaceStorage
    - macOS: Library/Application Support/Code/User/workspaceStorage
    - Linux and others: .config/Code/User/workspaceStorage
    """
    base = _app_data_base(platform or sys.platform)
    return {
        variant: base / app_dir / "User" / "workspaceStorage"
        for variant, app_dir in EDITOR_VARIANTS.items()
    }


def get_log_config(platform: Optional[str] = None) -> dict[str, Path]:
    """Relative (to the home directory) logs path per variant."""
    base = _app_data_base(platform or sys.platform)
    return {variant: base / app_dir / "logs" for variant, app_dir in EDITOR_VARIANTS.items()}


def get_storage_candidates(
    home: Optional[Path] = None,
    platform: Optional[str] = None,
) -> list[StorageRoot]:
    home_dir = home or Path.home()
    return [
        StorageRoot(variant=variant, path=home_dir / relative)
        for variant, relative in get_storage_config(platform).items()
    ]


def _existing_dirs(candidates: list[Path]) -> list[Path]:
    found: list[Path] = []
    for candidate in candidates:
        try:
            if candidate.is_dir():
                found.append(candidate)
            else:
                logger.debug("Storage location does not exist: %s", candidate)
        except OSError as exc:
            logger.debug("Cannot access storage location %s: %s", candidate, exc)
    return found


def discover_storage_roots(
    home: Optional[Path] = None,
    platform: Optional[str] = None,
    overrides: Optional[list[Path]] = None,
) -> list[Path]:
    """Absolute workspaceStorage roots that exist, stable before insiders."""
    configured = overrides if overrides is not None else config.STORAGE_ROOTS
    if configured:
        candidates = list(configured)
    else:
        candidates = [root.path for root in get_storage_candidates(home, platform)]
    roots = _existing_dirs(candidates)
    logger.info(f"Discovered {len(roots)} workspace storage root(s)")
    return roots


def discover_log_roots(
    home: Optional[Path] = None,
    platform: Optional[str] = None,
    overrides: Optional[list[Path]] = None,
) -> list[Path]:
    """Absolute editor log roots that exist, stable before insiders."""
    configured = overrides if overrides is not None else config.LOG_ROOTS
    if configured:
        candidates = list(configured)
    else:
        home_dir = home or Path.home()
        candidates = [home_dir / relative for relative in get_log_config(platform).values()]
    roots = _existing_dirs(candidates)
    logger.info(f"Discovered {len(roots)} editor log root(s)")
    return roots


def variant_for_path(path: Path | str) -> str:
    """Editor variant key derived from the path segments."""
    parts = Path(path).parts
    if any(part == EDITOR_VARIANTS["insiders"] or "insiders" in part.lower() for part in parts):
        return "insiders"
    if EDITOR_VARIANTS["stable"] in parts:
        return "stable"
    return "unknown"


def variant_display_name(path: Path | str) -> str:
    variant = variant_for_path(path)
    # Log roots outside a recognised layout are treated as the stable build.
    return VARIANT_DISPLAY_NAMES.get(variant, VARIANT_DISPLAY_NAMES["stable"])


def is_under_home(path: Path | str, home: Optional[Path] = None) -> bool:
    home_dir = (home or Path.home()).resolve()
    try:
        Path(path).resolve().relative_to(home_dir)
        return True
    except ValueError:
        return False


def _is_assistant_log_dir(name: str) -> bool:
    lowered = name.lower()
    return "github" in lowered and "copilot-chat" in lowered


def _find_log_in_directory_sync(log_dir: Path) -> Optional[Path]:
    try:
        names = sorted(os.listdir(log_dir))
    except OSError:
        return None
    for name in names:
        if name.endswith(".log"):
            return log_dir / name
    return None


async def find_log_in_directory(log_dir: Path) -> Optional[Path]:
    """First ``*.log`` file inside an assistant log directory, if any."""
    return await asyncio.to_thread(_find_log_in_directory_sync, log_dir)


def _list_dir(path: Path) -> list[str]:
    return sorted(os.listdir(path))


async def find_all_historical_log_paths(log_roots: list[Path]) -> list[LogFileLocation]:
    """Every assistant log file across all sessions, windows and variants.

    Layout: ``<root>/<YYYYMMDDTHHMMSS>/window<N>/exthost/<github.copilot-chat>/*.log``
    """
    locations: list[LogFileLocation] = []
    for log_root in log_roots:
        version_name = variant_display_name(log_root)
        try:
            session_names = await asyncio.to_thread(_list_dir, log_root)
        except OSError as exc:
            logger.warning("Could not read log root directory %s: %s", log_root, exc)
            continue

        for session_name in session_names:
            session_dir = log_root / session_name
            try:
                if not await asyncio.to_thread(session_dir.is_dir):
                    continue
                window_names = [
                    name for name in await asyncio.to_thread(_list_dir, session_dir)
                    if name.startswith(WINDOW_DIR_PREFIX)
                ]
            except OSError as exc:
                logger.debug("Could not read session directory %s: %s", session_dir, exc)
                continue

            for window_name in window_names:
                exthost_dir = session_dir / window_name / EXTHOST_DIR
                try:
                    exthost_names = await asyncio.to_thread(_list_dir, exthost_dir)
                except OSError:
                    continue
                for dir_name in exthost_names:
                    if not _is_assistant_log_dir(dir_name):
                        continue
                    log_path = await find_log_in_directory(exthost_dir / dir_name)
                    if log_path:
                        locations.append(
                            LogFileLocation(
                                logPath=str(log_path),
                                variant=version_name,
                                session=session_name,
                            )
                        )

    logger.info(f"Historical log discovery complete: found {len(locations)} assistant log file(s)")
    return locations


async def find_current_window_log_path(extension_log_dir: Path) -> Optional[Path]:
    """Locate the assistant log in the same window as a host extension.

    ``extension_log_dir`` is the host extension's own log directory, e.g.
    ``.../logs/20250813T110757/window1/exthost/publisher.extension``; the
    assistant log lives in a sibling directory of the same ``exthost``.
    """
    exthost_dir = Path(extension_log_dir).parent
    try:
        names = await asyncio.to_thread(_list_dir, exthost_dir)
    except OSError:
        return None
    candidates = [name for name in names if _is_assistant_log_dir(name)]
    if not candidates:
        return None
    return await find_log_in_directory(exthost_dir / candidates[0])

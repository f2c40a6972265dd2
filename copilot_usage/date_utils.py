"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

_LOG_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?$")


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def epoch_ms_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, timezone.utc)


def epoch_ms_to_iso(value: float) -> str:
    """Render a millisecond epoch the way session stats report it."""
    return _format_datetime_utc(epoch_ms_to_datetime(value))


def file_modified_datetime(stats: Any) -> datetime:
    return datetime.fromtimestamp(float(stats.st_mtime), timezone.utc)


def parse_log_timestamp(token: str) -> datetime:
    """Parse an editor log timestamp (``2025-08-10 15:15:27.396``) as UTC.

    Raises ValueError for anything that is not a log timestamp.
    """
    cleaned = token.strip()
    if not _LOG_TIMESTAMP_RE.match(cleaned):
        raise ValueError(f"Not a log timestamp: {token!r}")
    parsed = datetime.fromisoformat(cleaned.replace(" ", "T", 1))
    return parsed.replace(tzinfo=timezone.utc)

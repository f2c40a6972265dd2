"""Parse assistant log text into request-level LogEntry records."""
from __future__ import annotations

import logging
import re

from copilot_usage.date_utils import parse_log_timestamp
from copilot_usage.models import LogEntry

logger = logging.getLogger("copilot_usage.logs")

# A completed request is logged as three consecutive lines:
#   <ts> [info] message 0 returned. finish reason: [stop]
#   <ts> [info] request done: requestId: [<id>] model deployment ID: [<deployment>]
#   <ts> [info] ccreq:<id>.copilotmd | success | gpt-4o | 12862ms | [panel/editAgent]
_MULTILINE_REQUEST_PATTERN = re.compile(
    r"^([^\[\n]+?)[ \t]*\[info\] message \d+ returned\. finish reason: \[([^\]\n]+)\][ \t]*\r?\n"
    r"([^\[\n]+?)[ \t]*\[info\] request done: requestId: \[([^\]\n]+)\] model deployment ID: \[([^\]\n]*)\][ \t]*\r?\n"
    r"([^\[\n]+?)[ \t]*\[info\] ccreq:([^|.\s]+)(?:\.copilotmd)?\s*\|\s*([^|\n]+?)\s*\|\s*([^|\n]+?)\s*\|\s*([^|\n]+?)\s*\|\s*\[([^\]\n]+)\]",
    re.MULTILINE,
)
_DURATION_PATTERN = re.compile(r"(\d+)ms")


def parse_multiline_requests(content: str) -> list[LogEntry]:
    """Return one LogEntry per complete three-line request record in ``content``.

    Records cut off by the end of ``content`` are not returned.
    """
    entries: list[LogEntry] = []
    for match in _MULTILINE_REQUEST_PATTERN.finditer(content):
        (
            _ts_finish, finish_reason,
            _ts_done, request_id, _deployment_id,
            ts_ccreq, ccreq_id, status, model_name, duration, context,
        ) = match.groups()

        try:
            # The ccreq line is the last one written for the request.
            timestamp = parse_log_timestamp(ts_ccreq)
        except ValueError as exc:
            logger.debug(f"Skipping request record with unparseable timestamp: {exc}")
            continue

        timing = _DURATION_PATTERN.search(duration)
        entries.append(
            LogEntry(
                timestamp=timestamp,
                level="info",
                requestId=request_id.strip(),
                modelName=model_name.strip(),
                responseTime=int(timing.group(1)) if timing else 0,
                status="error" if status.strip() == "error" else "success",
                rawLine=match.group(0),
                finishReason=finish_reason.strip(),
                context=context.strip(),
                ccreqId=ccreq_id.strip(),
            )
        )
    return entries

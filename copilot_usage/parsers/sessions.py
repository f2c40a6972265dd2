"""Parse and validate chat session JSON documents."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from copilot_usage.models import ChatSession, HarvestedMetadata
from copilot_usage.storage_paths import is_under_home, variant_for_path

logger = logging.getLogger("copilot_usage.sessions")

SESSIONS_DIR = "chatSessions"
SESSION_FILE_PATTERN = re.compile(r"^[a-f0-9-]+\.json$")
# Older editor builds wrote the turn list under this key.
LEGACY_TURNS_KEY = "requests"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def map_legacy_fields(document: dict[str, Any]) -> dict[str, Any]:
    """Rename the legacy turn list key to ``turns`` in place."""
    if LEGACY_TURNS_KEY in document:
        legacy = document.pop(LEGACY_TURNS_KEY)
        if "turns" not in document:
            document["turns"] = legacy
    return document


def _invalid(reason: str, log: logging.Logger) -> bool:
    log.debug(f"Invalid session structure: {reason}")
    return False


def _is_valid_tool_call_round(round_: Any, where: str, log: logging.Logger) -> bool:
    if not isinstance(round_, dict):
        return _invalid(f"{where} is not an object", log)
    if not _is_str(round_.get("id")):
        return _invalid(f"{where} invalid id: {type(round_.get('id')).__name__}", log)
    if not _is_str(round_.get("response")):
        return _invalid(f"{where} invalid response: {type(round_.get('response')).__name__}", log)
    tool_calls = round_.get("toolCalls")
    if not isinstance(tool_calls, list):
        return _invalid(f"{where} invalid toolCalls: {type(tool_calls).__name__}", log)
    for call_index, call in enumerate(tool_calls):
        if not isinstance(call, dict):
            return _invalid(f"{where} tool call {call_index} is not an object", log)
        for key in ("id", "name"):
            if not _is_str(call.get(key)) or not call[key]:
                return _invalid(f"{where} tool call {call_index} invalid {key}", log)
        if not _is_str(call.get("arguments")):
            return _invalid(f"{where} tool call {call_index} invalid arguments", log)
    if not _is_number(round_.get("toolInputRetry")):
        return _invalid(f"{where} invalid toolInputRetry: {type(round_.get('toolInputRetry')).__name__}", log)
    return True


def _is_valid_turn(turn: Any, index: int, log: logging.Logger) -> bool:
    if not isinstance(turn, dict) or not turn:
        return _invalid(f"turn {index} is empty", log)
    if not _is_str(turn.get("requestId")):
        return _invalid(f"turn {index} invalid requestId: {type(turn.get('requestId')).__name__}", log)
    if not _is_number(turn.get("timestamp")):
        return _invalid(f"turn {index} invalid timestamp: {type(turn.get('timestamp')).__name__}", log)
    # modelId is optional; many turns legitimately don't have it
    if "modelId" in turn and turn["modelId"] is not None and not _is_str(turn["modelId"]):
        return _invalid(f"turn {index} invalid modelId: {type(turn['modelId']).__name__}", log)
    message = turn.get("message")
    if not isinstance(message, dict) or not _is_str(message.get("text")):
        return _invalid(f"turn {index} invalid message", log)
    # agent is optional; slash commands like /clear don't have one
    agent = turn.get("agent")
    if agent is not None and (not isinstance(agent, dict) or not _is_str(agent.get("id"))):
        return _invalid(f"turn {index} invalid agent.id", log)

    result = turn.get("result")
    metadata = result.get("metadata") if isinstance(result, dict) else None
    if isinstance(metadata, dict) and "toolCallRounds" in metadata:
        rounds = metadata["toolCallRounds"]
        if not isinstance(rounds, list):
            return _invalid(f"turn {index} invalid toolCallRounds: {type(rounds).__name__}", log)
        for round_index, round_ in enumerate(rounds):
            if not _is_valid_tool_call_round(round_, f"turn {index} round {round_index}", log):
                return False
    return True


def is_valid_session(document: Any, log: Optional[logging.Logger] = None) -> bool:
    """All-or-nothing structural check of a (legacy-mapped) session document.

    A single malformed turn or tool-call round rejects the whole document.
    """
    log = log or logger
    if not isinstance(document, dict) or not document:
        return _invalid("document is not an object", log)
    if not _is_str(document.get("sessionId")):
        return _invalid(f"invalid sessionId: {type(document.get('sessionId')).__name__}", log)
    if not _is_number(document.get("creationDate")):
        return _invalid(f"invalid creationDate: {type(document.get('creationDate')).__name__}", log)
    if "lastMessageDate" in document and not _is_number(document["lastMessageDate"]):
        return _invalid(f"invalid lastMessageDate: {type(document['lastMessageDate']).__name__}", log)
    if not _is_number(document.get("version")):
        return _invalid(f"invalid version: {type(document.get('version')).__name__}", log)
    turns = document.get("turns")
    if not isinstance(turns, list):
        return _invalid(f"invalid turns: {type(turns).__name__}", log)
    for index, turn in enumerate(turns):
        if not _is_valid_turn(turn, index, log):
            return False
    return True


def parse_session_text(text: str, log: Optional[logging.Logger] = None) -> ChatSession | None:
    """Decode, legacy-map, validate and model one session document.

    Raises ``json.JSONDecodeError`` for malformed JSON; returns None when the
    document fails validation.
    """
    log = log or logger
    document = json.loads(text)
    if isinstance(document, dict):
        map_legacy_fields(document)
    if not is_valid_session(document, log):
        return None
    try:
        return ChatSession.model_validate(document)
    except ValidationError as exc:
        log.debug(f"Session document rejected by model validation: {exc}")
        return None


def harvest_path_metadata(path: Path, home: Optional[Path] = None) -> HarvestedMetadata:
    """Metadata encoded in ``<root>/<workspace-hash>/chatSessions/<id>.json``."""
    workspace_id = "unknown"
    if path.parent.name == SESSIONS_DIR and path.parent.parent.name:
        workspace_id = path.parent.parent.name
    return HarvestedMetadata(
        workspaceId=workspace_id,
        vscodeVariant=variant_for_path(path),
        sessionFileName=path.name,
        isFromLocalUser=is_under_home(path, home),
    )

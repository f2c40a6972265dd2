"""Pydantic models for chat session documents, log entries and scan results.

Session document models keep the on-disk camelCase field names so a parsed
document can be dumped back to the shape the editor wrote.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Document(BaseModel):
    """Base for models parsed from editor-written JSON; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")


# ── Session document models ─────────────────────────────────────────

class ToolCall(_Document):
    id: str
    name: str
    arguments: str  # JSON-encoded argument payload


class ToolCallRound(_Document):
    """One backend model invocation inside a turn."""

    id: str
    response: str
    toolCalls: list[ToolCall] = Field(default_factory=list)
    toolInputRetry: float = 0


class TurnTimings(_Document):
    totalElapsed: Optional[float] = None
    firstProgress: Optional[float] = None


class TurnResultMetadata(_Document):
    toolCallRounds: list[ToolCallRound] = Field(default_factory=list)
    responseId: Optional[str] = None
    sessionId: Optional[str] = None
    agentId: Optional[str] = None


class TurnResult(_Document):
    timings: Optional[TurnTimings] = None
    metadata: Optional[TurnResultMetadata] = None


class AgentDescriptor(_Document):
    id: str
    name: Optional[str] = None
    extensionId: Optional[str] = None


class TurnMessage(_Document):
    text: str
    parts: list[Any] = Field(default_factory=list)


class ContentReference(_Document):
    kind: Optional[str] = None
    reference: Any = None


class ChatTurn(_Document):
    """One user/assistant exchange within a session."""

    requestId: str
    responseId: Optional[str] = None
    timestamp: float
    modelId: Optional[str] = None
    isCanceled: Optional[bool] = None
    message: TurnMessage
    agent: Optional[AgentDescriptor] = None
    response: list[Any] = Field(default_factory=list)
    result: Optional[TurnResult] = None
    contentReferences: list[ContentReference] = Field(default_factory=list)

    @property
    def tool_call_rounds(self) -> list[ToolCallRound]:
        if self.result and self.result.metadata:
            return self.result.metadata.toolCallRounds
        return []

    @property
    def timings(self) -> TurnTimings | None:
        return self.result.timings if self.result else None


class ChatSession(_Document):
    """One persisted conversation document."""

    version: int
    sessionId: str
    creationDate: int
    lastMessageDate: int = 0
    requesterUsername: Optional[str] = None
    responderUsername: Optional[str] = None
    initialLocation: Optional[str] = None
    isImported: Optional[bool] = None
    turns: list[ChatTurn] = Field(default_factory=list)


# ── Scan results ────────────────────────────────────────────────────

class HarvestedMetadata(BaseModel):
    workspaceId: str = "unknown"
    vscodeVariant: str = "unknown"  # "stable" | "insiders" | "unknown"
    sessionFileName: str = ""
    isFromLocalUser: bool = False


class SessionScanResult(BaseModel):
    sessionFilePath: str
    session: ChatSession
    lastModified: datetime
    fileSize: int
    harvestedMetadata: HarvestedMetadata = Field(default_factory=HarvestedMetadata)


class SessionScanStats(BaseModel):
    totalSessions: int = 0
    totalRequests: int = 0
    scannedFiles: int = 0
    errorFiles: int = 0
    scanDuration: int = 0  # ms
    oldestSession: Optional[str] = None
    newestSession: Optional[str] = None


# ── Log models ──────────────────────────────────────────────────────

class LogEntry(BaseModel):
    """A parsed request record from an assistant log file. Immutable."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: str = "info"
    requestId: str
    modelName: str = ""
    responseTime: int = 0
    status: Literal["success", "error"] = "success"
    rawLine: str = ""
    finishReason: Optional[str] = None
    context: Optional[str] = None
    ccreqId: Optional[str] = None

    @property
    def dedup_key(self) -> tuple[str, datetime]:
        return (self.requestId, self.timestamp)


class LogScanMetadata(BaseModel):
    vscodeVersion: str = "unknown"
    sessionId: str = "unknown"
    windowId: str = "unknown"
    logFilePath: str = ""
    isBackfill: bool = False
    filePosition: int = 0
    totalInstancesScanned: int = 0
    scanStartTime: str = ""
    scanEndTime: str = ""


class LogScanResult(BaseModel):
    logEntries: list[LogEntry] = Field(default_factory=list)
    scope: Literal["global", "window"] = "global"
    metadata: LogScanMetadata = Field(default_factory=LogScanMetadata)


class LogFileLocation(BaseModel):
    logPath: str
    variant: str
    session: str


@dataclass
class FileTailState:
    """Byte offset bookkeeping for one tailed log file."""

    last_position: int = 0


# ── Discovery / coordinator payloads ────────────────────────────────

class StorageRoot(BaseModel):
    variant: str
    path: Path


class CacheSnapshot(BaseModel):
    sessions: list[SessionScanResult] = Field(default_factory=list)
    logEntries: list[LogEntry] = Field(default_factory=list)


class ScanOutcome(BaseModel):
    results: list[SessionScanResult] = Field(default_factory=list)
    logEntries: list[LogEntry] = Field(default_factory=list)
    stats: SessionScanStats = Field(default_factory=SessionScanStats)

"""Pydantic models for transcript records, push events and query results."""
from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _coerce_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        count = int(float(value))
    except (TypeError, ValueError):
        return 0
    return count if count > 0 else 0


# ── Transcript records ──────────────────────────────────────────────

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @field_validator(
        "input_tokens",
        "output_tokens",
        "cache_creation_input_tokens",
        "cache_read_input_tokens",
        mode="before",
    )
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        return _coerce_count(value)


class ContentBlock(BaseModel):
    """One block of a message body.

    Covers text, thinking, tool_use and tool_result blocks; any other block
    type is kept but ignored by the classifier.
    """

    type: str = ""
    text: Optional[str] = None
    thinking: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None
    tool_use_id: Optional[str] = None
    content: Optional[Any] = None
    is_error: bool = False

    @field_validator("is_error", mode="before")
    @classmethod
    def _truthy_error(cls, value: Any) -> bool:
        return value is True


class _EntryBase(BaseModel):
    uuid: Optional[str] = None
    parentUuid: Optional[str] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None
    cwd: Optional[str] = None
    version: Optional[str] = None
    gitBranch: Optional[str] = None
    isSidechain: bool = False


class UserMessage(BaseModel):
    role: str = "user"
    content: Union[str, list[ContentBlock]] = ""


class UserEntry(_EntryBase):
    type: Literal["user"] = "user"
    message: UserMessage = Field(default_factory=UserMessage)


class AssistantMessage(BaseModel):
    id: Optional[str] = None
    role: str = "assistant"
    model: str = ""
    content: list[ContentBlock] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @field_validator("usage", mode="before")
    @classmethod
    def _usage_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("model", mode="before")
    @classmethod
    def _model_or_empty(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class AssistantEntry(_EntryBase):
    type: Literal["assistant"] = "assistant"
    message: AssistantMessage = Field(default_factory=AssistantMessage)


class UnknownEntry(_EntryBase):
    """Any record whose ``type`` is not recognized. Valid, but inert."""

    type: str = ""


TranscriptEntry = Union[UserEntry, AssistantEntry, UnknownEntry]


# ── Push (hook) records ─────────────────────────────────────────────

class HookEvent(BaseModel):
    session_id: str
    hook_event_name: str
    transcript_path: Optional[str] = None
    tool_name: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_input: Optional[dict[str, Any]] = None
    tool_response: Optional[Any] = None
    prompt: Optional[str] = None
    timestamp: Optional[str] = None


# ── Tool statistics input ───────────────────────────────────────────

class ToolCall(BaseModel):
    """One external tool invocation or outcome.

    A ``tool_use`` block gives the name and id; a failing ``tool_result`` gives
    only the id, and the name is resolved from the recorded invocation.
    """

    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    failed: bool = False


# ── Query / broadcast results ───────────────────────────────────────

class EventItem(BaseModel):
    id: int
    sessionId: str
    eventType: str  # "hook" | "transcript"
    hookEventName: Optional[str] = None
    entryType: Optional[str] = None
    toolName: Optional[str] = None
    content: Optional[str] = None
    tokensInput: Optional[int] = None
    tokensOutput: Optional[int] = None
    cacheReadTokens: Optional[int] = None
    cacheWriteTokens: Optional[int] = None
    cost: Optional[float] = None
    model: Optional[str] = None
    timestamp: str


class SessionSummary(BaseModel):
    id: str
    projectPath: Optional[str] = None
    gitBranch: Optional[str] = None
    startedAt: str
    endedAt: Optional[str] = None
    totalInputTokens: int = 0
    totalOutputTokens: int = 0
    totalCacheReadTokens: int = 0
    totalCacheWriteTokens: int = 0
    totalCostUsd: float = 0.0
    version: Optional[str] = None
    eventCount: int = 0
    toolCallCount: int = 0


class SessionDetail(BaseModel):
    session: SessionSummary
    events: list[EventItem] = Field(default_factory=list)


class Stats(BaseModel):
    totalSessions: int = 0
    totalEvents: int = 0
    totalTokens: int = 0
    totalCost: float = 0.0
    mcpToolsUsed: int = 0


class ToolStat(BaseModel):
    toolName: str
    serverName: Optional[str] = None
    invocationCount: int = 0
    successRate: float = 0.0
    avgDurationMs: float = 0.0


class DailyCost(BaseModel):
    date: str
    inputTokens: int = 0
    outputTokens: int = 0
    cacheReadTokens: int = 0
    cacheWriteTokens: int = 0
    costUsd: float = 0.0
    costWithoutCache: float = 0.0
    cacheSavings: float = 0.0


class MinuteCost(BaseModel):
    timestamp: str
    cost: float = 0.0
    tokens: int = 0
    runningCost: float = 0.0
    runningTokens: int = 0


class CostBreakdown(BaseModel):
    """One row of a categorical cost breakdown (tool, model or entry type)."""

    key: str
    totalCost: float = 0.0
    count: int = 0
    avgCost: float = 0.0
    totalTokens: int = 0


class HourlyCost(BaseModel):
    hour: str
    totalCost: float = 0.0
    count: int = 0
    totalTokens: int = 0


class ExpensiveEvent(BaseModel):
    id: int
    sessionId: str
    toolName: Optional[str] = None
    content: Optional[str] = None
    cost: float = 0.0
    tokens: int = 0
    tokensInput: int = 0
    tokensOutput: int = 0
    model: Optional[str] = None
    entryType: Optional[str] = None
    timestamp: str


class TextPattern(BaseModel):
    category: str
    totalCost: float = 0.0
    count: int = 0
    avgCost: float = 0.0
    totalTokens: int = 0
    avgTokens: float = 0.0
    examples: list[str] = Field(default_factory=list)


class LengthBucketCost(BaseModel):
    lengthBucket: str
    totalCost: float = 0.0
    count: int = 0
    avgCost: float = 0.0


class ProjectStats(BaseModel):
    projectPath: str
    projectName: str
    gitBranches: list[str] = Field(default_factory=list)
    totalCost: float = 0.0
    totalSessions: int = 0
    totalEvents: int = 0
    totalInputTokens: int = 0
    totalOutputTokens: int = 0
    totalCacheReadTokens: int = 0
    totalCacheWriteTokens: int = 0
    firstSessionAt: Optional[str] = None
    lastSessionAt: Optional[str] = None


class ProjectDailyCost(BaseModel):
    date: str
    costUsd: float = 0.0
    sessions: int = 0


class WsMessage(BaseModel):
    type: Literal["event", "session_start", "session_end", "stats_update"]
    payload: Any = None

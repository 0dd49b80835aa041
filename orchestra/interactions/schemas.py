"""Pydantic DTOs for interaction state, usage accounting and responses.

These models define the data contract between the orchestration core
and its consumers (persistence adapters, notification sinks, callers of
handle_statement).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class InteractionType(StrEnum):
    CONVERSATION = "conversation"
    CHAT = "chat"


class ApiStatus(StrEnum):
    IDLE = "idle"
    API_BUSY = "api_busy"
    LLM_PROCESSING = "llm_processing"
    TOOL_HANDLING = "tool_handling"


class Termination(StrEnum):
    NATURAL = "natural"
    CANCELLED = "cancelled"
    MAX_TURNS = "max_turns"


class TokenUsage(BaseModel):
    """Provider-reported token counts for one turn, statement or interaction."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_provider(cls, usage: dict[str, Any] | None) -> TokenUsage:
        """Build from an Anthropic-style usage dict (missing keys count as 0)."""
        usage = usage or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=int(usage.get("total_tokens") or input_tokens + output_tokens),
            cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
            cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
        )

    @property
    def total_all_tokens(self) -> int:
        """Direct tokens plus both cache operations."""
        return self.total_tokens + self.cache_creation_input_tokens + self.cache_read_input_tokens

    @property
    def is_empty(self) -> bool:
        return (
            self.input_tokens == 0
            and self.output_tokens == 0
            and self.cache_creation_input_tokens == 0
            and self.cache_read_input_tokens == 0
        )

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens + other.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens + other.cache_read_input_tokens,
        )


class DifferentialUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class CacheImpact(BaseModel):
    potential_cost: int = 0
    actual_cost: int = 0
    savings: int = 0


class TokenUsageRecord(BaseModel):
    """Audit record written for every non-empty provider usage report."""

    message_id: str
    statement_count: int
    statement_turn_count: int
    timestamp: datetime = Field(default_factory=utcnow)
    model: str = ""
    role: str
    interaction_type: InteractionType = InteractionType.CONVERSATION
    raw_usage: TokenUsage
    differential_usage: DifferentialUsage
    cache_impact: CacheImpact


class ToolLastUse(BaseModel):
    success: bool
    timestamp: datetime = Field(default_factory=utcnow)


class ToolStats(BaseModel):
    count: int = 0
    success: int = 0
    failure: int = 0
    last_use: ToolLastUse | None = None


class Objectives(BaseModel):
    conversation: str | None = None
    statement: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def current(self) -> str | None:
        return self.statement[-1] if self.statement else None


class ResourceMetrics(BaseModel):
    accessed: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    # resource uri -> id of the message that introduced it
    active: dict[str, str] = Field(default_factory=dict)


class InteractionStats(BaseModel):
    statement_count: int = 0
    statement_turn_count: int = 0
    interaction_turn_count: int = 0


class StoredMessage(BaseModel):
    """Serialized form of a single history message."""

    id: str
    role: str
    content: list[dict[str, Any]]
    timestamp: datetime
    stats: InteractionStats = Field(default_factory=InteractionStats)
    provider_usage: TokenUsage | None = None


class InteractionSnapshot(BaseModel):
    """Everything needed to rebuild an Interaction after a reload."""

    id: str
    parent_id: str | None = None
    collaboration_id: str | None = None
    title: str | None = None
    interaction_type: InteractionType = InteractionType.CONVERSATION
    model: str = ""
    base_system: str = ""
    tool_names: list[str] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    stats: InteractionStats = Field(default_factory=InteractionStats)
    token_usage_turn: TokenUsage = Field(default_factory=TokenUsage)
    token_usage_statement: TokenUsage = Field(default_factory=TokenUsage)
    token_usage_interaction: TokenUsage = Field(default_factory=TokenUsage)
    tool_stats: dict[str, ToolStats] = Field(default_factory=dict)
    resources: ResourceMetrics = Field(default_factory=ResourceMetrics)
    objectives: Objectives = Field(default_factory=Objectives)
    messages: list[StoredMessage] = Field(default_factory=list)


class LogEntryType(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    ANSWER = "answer"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    AUXILIARY = "auxiliary"
    ERROR = "error"


class LogEntry(BaseModel):
    """One line of the append-only interaction log."""

    entry_type: LogEntryType
    content: Any = None
    message_id: str | None = None
    thinking: str | None = None
    tool_name: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    stats: InteractionStats = Field(default_factory=InteractionStats)
    token_usage_turn: TokenUsage | None = None
    token_usage_statement: TokenUsage | None = None
    token_usage_interaction: TokenUsage | None = None


class ResponseError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ConversationResponse(BaseModel):
    """Terminal result of one statement, successful or failed."""

    interaction_id: str
    collaboration_id: str | None = None
    title: str | None = None
    status: str = "completed"  # "completed" or "failed"
    answer: str = ""
    thinking: str = ""
    termination: Termination | None = None
    error: ResponseError | None = None
    stats: InteractionStats = Field(default_factory=InteractionStats)
    token_usage_turn: TokenUsage = Field(default_factory=TokenUsage)
    token_usage_statement: TokenUsage = Field(default_factory=TokenUsage)
    token_usage_interaction: TokenUsage = Field(default_factory=TokenUsage)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def failed(self) -> bool:
        return self.status == "failed"

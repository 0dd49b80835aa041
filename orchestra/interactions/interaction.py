"""Interaction state: message history, counters and token accounting.

An Interaction is one conversation thread with the model. It is mutated
only by the engine currently running its turn loop and never does I/O
itself: usage records and log entries are handed back to the caller to
persist.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from orchestra.interactions.schemas import (
    CacheImpact,
    DifferentialUsage,
    InteractionSnapshot,
    InteractionStats,
    InteractionType,
    Objectives,
    ResourceMetrics,
    StoredMessage,
    TokenUsage,
    TokenUsageRecord,
    ToolLastUse,
    ToolStats,
)

STATEMENT_METADATA_TAG = "__STATEMENT_METADATA__"


def new_id() -> str:
    return uuid.uuid4().hex


def text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def metadata_block(tag: str, metadata: dict[str, Any]) -> dict[str, Any]:
    """Render metadata as a tagged text block the model can read."""
    lines = [f"{key}: {value}" for key, value in metadata.items() if value not in (None, "")]
    return text_block(f"<{tag}>\n" + "\n".join(lines) + f"\n</{tag}>")


def extract_text(content: list[dict[str, Any]]) -> str:
    """Extract text from content blocks."""
    return "\n".join(
        block.get("text", "")
        for block in content
        if block.get("type") == "text" and block.get("text")
    )


def compute_differential(role: str, usage: TokenUsage, previous_assistant_input: int = 0) -> DifferentialUsage:
    """Per-message token delta.

    Assistant output is never diffed against history. User input is the
    growth over what the most recent assistant message reported.
    """
    if role == "assistant":
        return DifferentialUsage(
            input_tokens=0,
            output_tokens=usage.output_tokens,
            total_tokens=usage.output_tokens,
        )
    input_diff = max(0, usage.input_tokens - previous_assistant_input)
    return DifferentialUsage(input_tokens=input_diff, output_tokens=0, total_tokens=input_diff)


def compute_cache_impact(usage: TokenUsage) -> CacheImpact:
    potential = usage.input_tokens
    actual = usage.cache_read_input_tokens + usage.cache_creation_input_tokens
    return CacheImpact(potential_cost=potential, actual_cost=actual, savings=max(0, potential - actual))


@dataclass
class Message:
    """A single role-tagged message in an interaction."""

    role: str  # "user" or "assistant"
    content: list[dict[str, Any]]
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    stats: InteractionStats = field(default_factory=InteractionStats)
    provider_usage: TokenUsage | None = None

    @property
    def text(self) -> str:
        return extract_text(self.content)

    @property
    def tool_uses(self) -> list[dict[str, Any]]:
        return [b for b in self.content if b.get("type") == "tool_use"]

    @property
    def tool_result_ids(self) -> set[str]:
        return {b["tool_use_id"] for b in self.content if b.get("type") == "tool_result"}

    @property
    def is_tool_result(self) -> bool:
        """True for user messages that open with tool results (not plain user text)."""
        return (
            self.role == "user"
            and len(self.content) > 0
            and self.content[0].get("type") == "tool_result"
        )

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}

    def to_stored(self) -> StoredMessage:
        return StoredMessage(
            id=self.id,
            role=self.role,
            content=self.content,
            timestamp=self.timestamp,
            stats=self.stats,
            provider_usage=self.provider_usage,
        )

    @classmethod
    def from_stored(cls, stored: StoredMessage) -> Message:
        return cls(
            role=stored.role,
            content=[dict(b) for b in stored.content],
            id=stored.id,
            timestamp=stored.timestamp,
            stats=stored.stats.model_copy(),
            provider_usage=stored.provider_usage.model_copy() if stored.provider_usage else None,
        )


@dataclass
class Interaction:
    """One conversation thread plus its bookkeeping.

    Counters:
      statement_count        -- instructions submitted
      statement_turn_count   -- turns within the current statement (reset per statement)
      interaction_turn_count -- turns across the whole interaction (never decreases)
    """

    id: str = field(default_factory=new_id)
    parent_id: str | None = None
    collaboration_id: str | None = None
    title: str | None = None
    interaction_type: InteractionType = InteractionType.CONVERSATION
    model: str = ""
    base_system: str = ""
    # None means every registered tool is available
    tool_names: list[str] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    statement_count: int = 0
    statement_turn_count: int = 0
    interaction_turn_count: int = 0

    token_usage_turn: TokenUsage = field(default_factory=TokenUsage)
    token_usage_statement: TokenUsage = field(default_factory=TokenUsage)
    token_usage_interaction: TokenUsage = field(default_factory=TokenUsage)

    tool_stats: dict[str, ToolStats] = field(default_factory=dict)
    resources: ResourceMetrics = field(default_factory=ResourceMetrics)
    objectives: Objectives = field(default_factory=Objectives)
    messages: list[Message] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Counters and statements
    # ------------------------------------------------------------------

    @property
    def stats(self) -> InteractionStats:
        return InteractionStats(
            statement_count=self.statement_count,
            statement_turn_count=self.statement_turn_count,
            interaction_turn_count=self.interaction_turn_count,
        )

    def begin_statement(self) -> None:
        """Open a new statement: bump the count and reset per-statement state."""
        self.statement_count += 1
        self.statement_turn_count = 0
        self.token_usage_statement = TokenUsage()

    def update_totals(self, usage: TokenUsage, model: str | None = None) -> TokenUsageRecord | None:
        """Fold one provider usage report into the counters.

        Returns the audit record to persist, or None for an empty report.
        The interaction total only grows, the statement total accumulates
        since begin_statement(), and the turn total is replaced.
        """
        record = None
        if not usage.is_empty:
            record = self._usage_record(usage, model or self.model)

        if self.statement_turn_count == 0:
            self.token_usage_statement = TokenUsage()
        self.token_usage_interaction = self.token_usage_interaction + usage
        self.token_usage_statement = self.token_usage_statement + usage
        self.token_usage_turn = usage.model_copy()

        self.statement_turn_count += 1
        self.interaction_turn_count += 1
        self.updated_at = datetime.now(UTC)
        return record

    def _usage_record(self, usage: TokenUsage, model: str) -> TokenUsageRecord:
        last = self.last_message
        role = last.role if last else "assistant"
        return TokenUsageRecord(
            message_id=last.id if last else "",
            statement_count=self.statement_count,
            statement_turn_count=self.statement_turn_count,
            model=model,
            role=role,
            interaction_type=self.interaction_type,
            raw_usage=usage.model_copy(),
            differential_usage=self.differential_usage(usage),
            cache_impact=compute_cache_impact(usage),
        )

    def differential_usage(self, usage: TokenUsage) -> DifferentialUsage:
        last = self.last_message
        if last is not None and last.role == "assistant":
            return compute_differential("assistant", usage)
        previous = self.previous_assistant_message()
        previous_input = previous.provider_usage.input_tokens if previous and previous.provider_usage else 0
        return compute_differential("user", usage, previous_input)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    @property
    def last_message_id(self) -> str:
        if not self.messages:
            raise LookupError(f"Interaction {self.id} has no messages")
        return self.messages[-1].id

    def previous_assistant_message(self) -> Message | None:
        for msg in reversed(self.messages):
            if msg.role == "assistant":
                return msg
        return None

    def previous_user_message(self) -> Message | None:
        for msg in reversed(self.messages):
            if msg.role == "user" and not msg.is_tool_result:
                return msg
        return None

    def set_messages(self, messages: list[Message]) -> None:
        self.messages = list(messages)

    def get_message(self, message_id: str) -> Message:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        raise LookupError(f"Message {message_id} not found in interaction {self.id}")

    def add_message(
        self,
        role: str,
        content: list[dict[str, Any]],
        provider_usage: TokenUsage | None = None,
    ) -> Message:
        """Append content, merging into the last message when roles match."""
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {role}")
        last = self.last_message
        if last is not None and last.role == role:
            last.content.extend(content)
            if provider_usage is not None:
                last.provider_usage = provider_usage
            last.stats = self.stats
            return last
        msg = Message(role=role, content=list(content), stats=self.stats, provider_usage=provider_usage)
        self.messages.append(msg)
        return msg

    def add_user_message(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> Message:
        content: list[dict[str, Any]] = []
        if metadata:
            content.append(metadata_block(STATEMENT_METADATA_TAG, metadata))
        content.extend(attachments or [])
        content.append(text_block(text))
        return self.add_message("user", content)

    def add_assistant_message(
        self,
        content: list[dict[str, Any]],
        provider_usage: TokenUsage | None = None,
    ) -> Message:
        return self.add_message("assistant", content, provider_usage)

    def add_tool_result(
        self,
        tool_use_id: str,
        result: str | list[dict[str, Any]],
        is_error: bool = False,
    ) -> Message:
        """Add a tool_result block, merging results for the same tool use id."""
        blocks = [text_block(result)] if isinstance(result, str) else list(result)
        last = self.last_message
        if last is not None and last.role == "user":
            for block in last.content:
                if block.get("type") == "tool_result" and block.get("tool_use_id") == tool_use_id:
                    block["content"].extend(blocks)
                    block["is_error"] = block.get("is_error", False) or is_error
                    return last
        return self.add_message("user", [{
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": blocks,
            "is_error": is_error,
        }])

    def pending_tool_uses(self) -> list[dict[str, Any]]:
        """tool_use blocks of the last assistant message with no matching result."""
        last = self.last_message
        if last is None or last.role != "assistant":
            return []
        return last.tool_uses

    # ------------------------------------------------------------------
    # Tools, resources, objectives
    # ------------------------------------------------------------------

    def record_tool_outcome(self, tool_name: str, success: bool) -> ToolStats:
        stats = self.tool_stats.setdefault(tool_name, ToolStats())
        stats.count += 1
        if success:
            stats.success += 1
        else:
            stats.failure += 1
        stats.last_use = ToolLastUse(success=success)
        return stats

    def update_resource_access(self, uri: str, message_id: str, modified: bool = False) -> None:
        if uri not in self.resources.accessed:
            self.resources.accessed.append(uri)
        if modified and uri not in self.resources.modified:
            self.resources.modified.append(uri)
        self.resources.active[uri] = message_id

    def prune_active_resources(self, kept_message_ids: set[str]) -> list[str]:
        """Drop active resources whose introducing message is gone. Returns dropped uris."""
        dropped = [uri for uri, mid in self.resources.active.items() if mid not in kept_message_ids]
        for uri in dropped:
            del self.resources.active[uri]
        return dropped

    def set_objectives(self, conversation: str | None = None, statement: str | None = None) -> None:
        if conversation:
            self.objectives.conversation = conversation
        if statement:
            self.objectives.statement.append(statement)
        self.objectives.timestamp = datetime.now(UTC)

    def metrics(self) -> dict[str, Any]:
        return {
            "stats": self.stats.model_dump(),
            "objectives": self.objectives.model_dump(mode="json"),
            "tool_usage": {
                "total_tool_uses": sum(s.count for s in self.tool_stats.values()),
                "tool_stats": {k: v.model_dump(mode="json") for k, v in self.tool_stats.items()},
            },
            "resources": {
                "accessed": len(self.resources.accessed),
                "modified": len(self.resources.modified),
                "active": len(self.resources.active),
            },
        }

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> InteractionSnapshot:
        return InteractionSnapshot(
            id=self.id,
            parent_id=self.parent_id,
            collaboration_id=self.collaboration_id,
            title=self.title,
            interaction_type=self.interaction_type,
            model=self.model,
            base_system=self.base_system,
            tool_names=list(self.tool_names) if self.tool_names is not None else None,
            created_at=self.created_at,
            updated_at=self.updated_at,
            stats=self.stats,
            token_usage_turn=self.token_usage_turn.model_copy(),
            token_usage_statement=self.token_usage_statement.model_copy(),
            token_usage_interaction=self.token_usage_interaction.model_copy(),
            tool_stats={k: v.model_copy(deep=True) for k, v in self.tool_stats.items()},
            resources=self.resources.model_copy(deep=True),
            objectives=self.objectives.model_copy(deep=True),
            messages=[m.to_stored() for m in self.messages],
        )

    @classmethod
    def from_snapshot(cls, snap: InteractionSnapshot) -> Interaction:
        return cls(
            id=snap.id,
            parent_id=snap.parent_id,
            collaboration_id=snap.collaboration_id,
            title=snap.title,
            interaction_type=snap.interaction_type,
            model=snap.model,
            base_system=snap.base_system,
            tool_names=list(snap.tool_names) if snap.tool_names is not None else None,
            created_at=snap.created_at,
            updated_at=snap.updated_at,
            statement_count=snap.stats.statement_count,
            statement_turn_count=snap.stats.statement_turn_count,
            interaction_turn_count=snap.stats.interaction_turn_count,
            token_usage_turn=snap.token_usage_turn.model_copy(),
            token_usage_statement=snap.token_usage_statement.model_copy(),
            token_usage_interaction=snap.token_usage_interaction.model_copy(),
            tool_stats={k: v.model_copy(deep=True) for k, v in snap.tool_stats.items()},
            resources=snap.resources.model_copy(deep=True),
            objectives=snap.objectives.model_copy(deep=True),
            messages=[Message.from_stored(m) for m in snap.messages],
        )

"""Interaction state and usage accounting."""

from orchestra.interactions.interaction import Interaction, Message, new_id
from orchestra.interactions.schemas import (
    ConversationResponse,
    InteractionSnapshot,
    InteractionType,
    LogEntry,
    LogEntryType,
    TokenUsage,
    TokenUsageRecord,
)

__all__ = [
    "ConversationResponse",
    "Interaction",
    "InteractionSnapshot",
    "InteractionType",
    "LogEntry",
    "LogEntryType",
    "Message",
    "TokenUsage",
    "TokenUsageRecord",
    "new_id",
]

"""Persistence interface for interactions plus an in-memory implementation.

Interactions are stored as InteractionSnapshot JSON. Log entries, token
usage records and change records are append-only audit trails.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Protocol

from orchestra.interactions.interaction import Interaction
from orchestra.interactions.schemas import InteractionSnapshot, LogEntry, TokenUsageRecord

logger = logging.getLogger(__name__)


class InteractionStore(Protocol):
    """Storage collaborator used by the engines and the registry."""

    async def load_interaction(self, interaction_id: str) -> Interaction | None: ...

    async def save_interaction(self, interaction: Interaction) -> None: ...

    async def delete_interaction(self, interaction_id: str) -> None: ...

    async def append_log_entry(self, interaction_id: str, entry: LogEntry) -> None: ...

    async def write_token_usage(self, interaction_id: str, record: TokenUsageRecord) -> None: ...

    async def log_change(self, interaction_id: str, path: str, change: str) -> None: ...


class MemoryInteractionStore:
    """Process-local store. Snapshots are kept as JSON so loads never alias live objects."""

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[str, Any]] = {}
        self.log_entries: dict[str, list[LogEntry]] = defaultdict(list)
        self.token_usage: dict[str, list[TokenUsageRecord]] = defaultdict(list)
        self.changes: dict[str, list[tuple[str, str]]] = defaultdict(list)

    async def load_interaction(self, interaction_id: str) -> Interaction | None:
        data = self._snapshots.get(interaction_id)
        if data is None:
            return None
        return Interaction.from_snapshot(InteractionSnapshot.model_validate(data))

    async def save_interaction(self, interaction: Interaction) -> None:
        self._snapshots[interaction.id] = interaction.snapshot().model_dump(mode="json")
        logger.debug("Saved interaction %s (%d messages)", interaction.id, len(interaction.messages))

    async def delete_interaction(self, interaction_id: str) -> None:
        self._snapshots.pop(interaction_id, None)
        self.log_entries.pop(interaction_id, None)
        self.token_usage.pop(interaction_id, None)
        self.changes.pop(interaction_id, None)

    async def append_log_entry(self, interaction_id: str, entry: LogEntry) -> None:
        self.log_entries[interaction_id].append(entry)

    async def write_token_usage(self, interaction_id: str, record: TokenUsageRecord) -> None:
        self.token_usage[interaction_id].append(record)

    async def log_change(self, interaction_id: str, path: str, change: str) -> None:
        self.changes[interaction_id].append((path, change))

    def __contains__(self, interaction_id: str) -> bool:
        return interaction_id in self._snapshots

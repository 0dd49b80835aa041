"""A collaboration groups a root interaction and its agent descendants.

It owns the identity and order of its member interactions and keeps a
cache of loaded Interaction objects. Evicting from the cache is always
safe: interactions can be reloaded from the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from orchestra.collaborations.schemas import (
    CollaborationParams,
    CollaborationSummary,
    CollaborationType,
    CollaborationValues,
)
from orchestra.interactions.interaction import Interaction, new_id
from orchestra.interactions.schemas import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class Collaboration:
    id: str = field(default_factory=new_id)
    title: str = "New Collaboration"
    type: CollaborationType = CollaborationType.PROJECT
    params: CollaborationParams = field(default_factory=CollaborationParams)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    interaction_ids: list[str] = field(default_factory=list)
    last_interaction_id: str | None = None
    last_interaction_metadata: dict[str, Any] = field(default_factory=dict)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    _loaded: dict[str, Interaction] = field(default_factory=dict, repr=False)

    @property
    def total_interactions(self) -> int:
        return len(self.interaction_ids)

    @property
    def loaded_interactions(self) -> list[Interaction]:
        return list(self._loaded.values())

    def _touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def add_interaction_id(self, interaction_id: str, metadata: dict[str, Any] | None = None) -> None:
        if interaction_id not in self.interaction_ids:
            self.interaction_ids.append(interaction_id)
        self.last_interaction_id = interaction_id
        if metadata is not None:
            self.last_interaction_metadata = metadata
        self._touch()

    def add_interaction(self, interaction: Interaction) -> None:
        """Register an interaction and cache the loaded object."""
        interaction.collaboration_id = self.id
        self._loaded[interaction.id] = interaction
        self.add_interaction_id(interaction.id, {
            "title": interaction.title,
            "parent_id": interaction.parent_id,
            "interaction_type": str(interaction.interaction_type),
        })

    def get_interaction(self, interaction_id: str) -> Interaction | None:
        return self._loaded.get(interaction_id)

    def has_interaction(self, interaction_id: str) -> bool:
        return interaction_id in self.interaction_ids

    def remove_interaction(self, interaction_id: str) -> bool:
        """Remove a member id and evict it. Returns False if it was not a member."""
        self._loaded.pop(interaction_id, None)
        if interaction_id not in self.interaction_ids:
            return False
        self.interaction_ids.remove(interaction_id)
        if self.last_interaction_id == interaction_id:
            self.last_interaction_id = self.interaction_ids[-1] if self.interaction_ids else None
            self.last_interaction_metadata = {}
        self._touch()
        return True

    def evict(self, interaction_id: str | None = None) -> int:
        """Drop one (or every) loaded interaction from the cache. Returns the number evicted."""
        if interaction_id is None:
            count = len(self._loaded)
            self._loaded.clear()
            return count
        return 1 if self._loaded.pop(interaction_id, None) is not None else 0

    def record_usage(self, usage: TokenUsage) -> None:
        self.token_usage = self.token_usage + usage
        self._touch()

    def summary(self) -> CollaborationSummary:
        return CollaborationSummary(
            id=self.id,
            title=self.title,
            type=self.type,
            total_interactions=self.total_interactions,
            loaded_interactions=len(self._loaded),
            last_interaction_id=self.last_interaction_id,
            token_usage=self.token_usage.model_copy(),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_values(self) -> CollaborationValues:
        return CollaborationValues(
            id=self.id,
            title=self.title,
            type=self.type,
            params=self.params.model_copy(deep=True),
            created_at=self.created_at,
            updated_at=self.updated_at,
            interaction_ids=list(self.interaction_ids),
            total_interactions=self.total_interactions,
            last_interaction_id=self.last_interaction_id,
            last_interaction_metadata=dict(self.last_interaction_metadata),
            token_usage=self.token_usage.model_copy(),
        )

    @classmethod
    def from_values(cls, values: CollaborationValues) -> Collaboration:
        ids = list(dict.fromkeys(values.interaction_ids))
        if values.total_interactions != len(ids):
            logger.warning(
                "Collaboration %s: stored total_interactions=%d but %d ids, using ids",
                values.id, values.total_interactions, len(ids),
            )
        return cls(
            id=values.id,
            title=values.title,
            type=values.type,
            params=values.params.model_copy(deep=True),
            created_at=values.created_at,
            updated_at=values.updated_at,
            interaction_ids=ids,
            last_interaction_id=values.last_interaction_id,
            last_interaction_metadata=dict(values.last_interaction_metadata),
            token_usage=values.token_usage.model_copy(),
        )

"""Orchestrator: the request/response surface of the core.

Resolves interactions through the registry (loading from the store or
creating them on first use) and hands them to the turn and delegation
engines. Collaborations are created on demand.
"""

from __future__ import annotations

import logging

from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.collaborations.schemas import CollaborationType
from orchestra.engine.delegation import AgentDelegationEngine
from orchestra.engine.failures import ErrorHandlingConfig
from orchestra.engine.tasks import CompletedTask, ExecutionMode, Task
from orchestra.engine.turns import StatementOptions, TurnEngine
from orchestra.errors import NotFoundError
from orchestra.events import Notifier
from orchestra.interactions.interaction import Interaction, new_id
from orchestra.interactions.schemas import ConversationResponse
from orchestra.storage.persistence import InteractionStore

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        registry: CollaborationRegistry,
        store: InteractionStore,
        turns: TurnEngine,
        delegation: AgentDelegationEngine,
        notifier: Notifier | None = None,
    ) -> None:
        self.registry = registry
        self._store = store
        self.turns = turns
        self.delegation = delegation
        self._notifier = notifier or Notifier()

    def _ensure_collaboration(self, collaboration_id: str | None, title: str | None = None) -> str:
        if collaboration_id and self.registry.has_collaboration(collaboration_id):
            return collaboration_id
        collaboration = self.registry.create_collaboration(
            title=title, type=CollaborationType.PROJECT, collaboration_id=collaboration_id,
        )
        return collaboration.id

    async def create_interaction(
        self,
        collaboration_id: str | None = None,
        interaction_id: str | None = None,
        title: str | None = None,
        model: str = "",
    ) -> Interaction:
        """Load-or-create an interaction inside a (possibly new) collaboration."""
        collaboration_id = self._ensure_collaboration(collaboration_id, title)

        async def _create(new_interaction_id: str) -> Interaction:
            return Interaction(id=new_interaction_id, collaboration_id=collaboration_id, title=title, model=model)

        return await self.registry.get_or_create_interaction(
            collaboration_id, interaction_id or new_id(), _create,
        )

    async def load_interaction(self, interaction_id: str, collaboration_id: str | None = None) -> Interaction | None:
        """Return a loaded interaction, reading from the store when it is not cached."""
        return await self.registry.load_interaction(interaction_id, collaboration_id)

    async def load_interaction_strict(self, interaction_id: str) -> Interaction:
        interaction = await self.load_interaction(interaction_id)
        if interaction is None:
            raise NotFoundError("interaction", interaction_id)
        return interaction

    async def delete_interaction(self, interaction_id: str) -> None:
        interaction = self.registry.find_interaction(interaction_id)
        collaboration_id = interaction.collaboration_id if interaction else None
        if collaboration_id is None:
            for collaboration in self.registry.all_collaborations():
                if collaboration.has_interaction(interaction_id):
                    collaboration_id = collaboration.id
                    break
        if collaboration_id is not None:
            self.registry.remove_interaction(collaboration_id, interaction_id)
        await self._store.delete_interaction(interaction_id)
        await self._notifier.collaboration_deleted(collaboration_id, interaction_id)
        logger.info("Deleted interaction %s", interaction_id)

    async def handle_statement(
        self,
        text: str,
        interaction_id: str,
        options: StatementOptions | None = None,
        collaboration_id: str | None = None,
    ) -> ConversationResponse:
        """Run a statement on an interaction, creating it if it does not exist yet."""
        interaction = self.registry.find_interaction(interaction_id)
        if interaction is None:
            interaction = await self.load_interaction(interaction_id, collaboration_id)
        if interaction is None:
            interaction = await self.create_interaction(collaboration_id, interaction_id)
        return await self.turns.handle_statement(interaction, text, options)

    async def execute_tasks(
        self,
        interaction_id: str,
        tasks: list[Task],
        mode: ExecutionMode = ExecutionMode.SYNC,
        error_config: ErrorHandlingConfig | None = None,
    ) -> list[CompletedTask]:
        parent = await self.load_interaction_strict(interaction_id)
        return await self.delegation.execute_tasks(parent, tasks, mode, error_config)

    def cancel(self, interaction_id: str) -> None:
        self.turns.cancel(interaction_id)

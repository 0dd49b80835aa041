"""Registry of collaborations and their loaded interactions.

Lookups return None for unknown ids; the ``*_strict`` variants raise
NotFoundError for call sites that require a hit.

load_interaction() and get_or_create_interaction() collapse concurrent
requests for the same unseen interaction id: the first caller loads (or
creates) it while the others await the same in-flight future from the
pending table.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

from orchestra.collaborations.collaboration import Collaboration
from orchestra.collaborations.schemas import (
    CollaborationParams,
    CollaborationSummary,
    CollaborationType,
    RegistryStats,
)
from orchestra.errors import NotFoundError
from orchestra.interactions.interaction import Interaction
from orchestra.interactions.schemas import TokenUsage
from orchestra.storage.persistence import InteractionStore

logger = logging.getLogger(__name__)

InteractionFactory = Callable[[str], Awaitable[Interaction]]


class CollaborationRegistry:
    def __init__(self, store: InteractionStore | None = None) -> None:
        self._store = store
        self._collaborations: dict[str, Collaboration] = {}
        self._results: dict[str, Any] = {}
        self._pending: dict[str, asyncio.Future[Interaction | None]] = {}

    # ------------------------------------------------------------------
    # Collaborations
    # ------------------------------------------------------------------

    def create_collaboration(
        self,
        title: str | None = None,
        type: CollaborationType = CollaborationType.PROJECT,
        params: CollaborationParams | None = None,
        collaboration_id: str | None = None,
    ) -> Collaboration:
        kwargs: dict[str, Any] = {"type": type}
        if title:
            kwargs["title"] = title
        if params is not None:
            kwargs["params"] = params
        if collaboration_id:
            kwargs["id"] = collaboration_id
        collaboration = Collaboration(**kwargs)
        self.add_collaboration(collaboration)
        logger.info("Created collaboration %s (%s)", collaboration.id, collaboration.type)
        return collaboration

    def add_collaboration(self, collaboration: Collaboration) -> None:
        self._collaborations[collaboration.id] = collaboration

    def get_collaboration(self, collaboration_id: str) -> Collaboration | None:
        return self._collaborations.get(collaboration_id)

    def get_collaboration_strict(self, collaboration_id: str) -> Collaboration:
        collaboration = self._collaborations.get(collaboration_id)
        if collaboration is None:
            raise NotFoundError("collaboration", collaboration_id)
        return collaboration

    def has_collaboration(self, collaboration_id: str) -> bool:
        return collaboration_id in self._collaborations

    def remove_collaboration(self, collaboration_id: str) -> bool:
        self._results.pop(collaboration_id, None)
        return self._collaborations.pop(collaboration_id, None) is not None

    def all_collaborations(self) -> list[Collaboration]:
        return list(self._collaborations.values())

    @property
    def collaboration_count(self) -> int:
        return len(self._collaborations)

    def find_by_title(self, text: str) -> list[Collaboration]:
        needle = text.lower()
        return [c for c in self._collaborations.values() if needle in c.title.lower()]

    def find_by_type(self, type: CollaborationType) -> list[Collaboration]:
        return [c for c in self._collaborations.values() if c.type == type]

    def set_result(self, collaboration_id: str, result: Any) -> None:
        self.get_collaboration_strict(collaboration_id)
        self._results[collaboration_id] = result

    def get_result(self, collaboration_id: str) -> Any | None:
        return self._results.get(collaboration_id)

    def clear(self) -> None:
        self._collaborations.clear()
        self._results.clear()

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    def add_interaction(self, collaboration_id: str, interaction: Interaction) -> None:
        self.get_collaboration_strict(collaboration_id).add_interaction(interaction)

    def get_interaction(self, collaboration_id: str, interaction_id: str) -> Interaction | None:
        collaboration = self._collaborations.get(collaboration_id)
        return collaboration.get_interaction(interaction_id) if collaboration else None

    def get_interaction_strict(self, collaboration_id: str, interaction_id: str) -> Interaction:
        interaction = self.get_collaboration_strict(collaboration_id).get_interaction(interaction_id)
        if interaction is None:
            raise NotFoundError("interaction", interaction_id)
        return interaction

    def find_interaction(self, interaction_id: str) -> Interaction | None:
        """Search every collaboration's loaded cache."""
        for collaboration in self._collaborations.values():
            interaction = collaboration.get_interaction(interaction_id)
            if interaction is not None:
                return interaction
        return None

    def find_interaction_strict(self, interaction_id: str) -> Interaction:
        interaction = self.find_interaction(interaction_id)
        if interaction is None:
            raise NotFoundError("interaction", interaction_id)
        return interaction

    def remove_interaction(self, collaboration_id: str, interaction_id: str) -> bool:
        collaboration = self._collaborations.get(collaboration_id)
        if collaboration is None:
            return False
        return collaboration.remove_interaction(interaction_id)

    def descendants(self, interaction_id: str) -> list[Interaction]:
        """Loaded interactions below ``interaction_id``, breadth first."""
        root = self.find_interaction(interaction_id)
        if root is None or root.collaboration_id is None:
            return []
        loaded = self.get_collaboration_strict(root.collaboration_id).loaded_interactions
        found: list[Interaction] = []
        frontier = [interaction_id]
        while frontier:
            parent = frontier.pop(0)
            children = [i for i in loaded if i.parent_id == parent]
            found.extend(children)
            frontier.extend(c.id for c in children)
        return found

    async def _resolve_once(
        self,
        interaction_id: str,
        resolve: Callable[[], Awaitable[Interaction | None]],
    ) -> Interaction | None:
        future: asyncio.Future[Interaction | None] = asyncio.get_running_loop().create_future()
        self._pending[interaction_id] = future
        try:
            interaction = await resolve()
            future.set_result(interaction)
            return interaction
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a resolver with no waiters does not log a stray traceback
            future.exception()
            raise
        finally:
            self._pending.pop(interaction_id, None)

    async def load_interaction(
        self,
        interaction_id: str,
        collaboration_id: str | None = None,
    ) -> Interaction | None:
        """Return the loaded interaction, reading it from the store at most once.

        The interaction joins ``collaboration_id`` when given, otherwise the
        collaboration it was saved with; a missing collaboration is created.
        """
        while True:
            cached = self.find_interaction(interaction_id)
            if cached is not None:
                return cached
            pending = self._pending.get(interaction_id)
            if pending is None:
                break
            result = await pending
            if result is not None:
                return result
        if self._store is None:
            return None

        async def _load() -> Interaction | None:
            interaction = await self._store.load_interaction(interaction_id)
            if interaction is None:
                return None
            target = collaboration_id or interaction.collaboration_id
            if not target or not self.has_collaboration(target):
                target = self.create_collaboration(title=interaction.title, collaboration_id=target).id
            self.add_interaction(target, interaction)
            logger.info("Loaded interaction %s into collaboration %s", interaction_id, target)
            return interaction

        return await self._resolve_once(interaction_id, _load)

    async def get_or_create_interaction(
        self,
        collaboration_id: str,
        interaction_id: str,
        create: InteractionFactory,
    ) -> Interaction:
        """Return the loaded interaction, loading from the store or creating it once."""
        collaboration = self.get_collaboration_strict(collaboration_id)
        while True:
            cached = collaboration.get_interaction(interaction_id)
            if cached is not None:
                return cached
            pending = self._pending.get(interaction_id)
            if pending is None:
                break
            # A concurrent load that found nothing leaves creation to us
            result = await pending
            if result is not None:
                return result

        async def _load_or_create() -> Interaction:
            interaction = None
            if self._store is not None:
                interaction = await self._store.load_interaction(interaction_id)
            if interaction is None:
                interaction = await create(interaction_id)
                logger.info("Created interaction %s in collaboration %s", interaction_id, collaboration_id)
            else:
                logger.info("Loaded interaction %s into collaboration %s", interaction_id, collaboration_id)
            collaboration.add_interaction(interaction)
            return interaction

        return await self._resolve_once(interaction_id, _load_or_create)

    def evict_loaded_interactions(self, collaboration_id: str | None = None) -> int:
        if collaboration_id is not None:
            return self.get_collaboration_strict(collaboration_id).evict()
        return sum(c.evict() for c in self._collaborations.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def record_usage(self, collaboration_id: str, usage: TokenUsage) -> None:
        collaboration = self._collaborations.get(collaboration_id)
        if collaboration is not None:
            collaboration.record_usage(usage)

    def summaries(self) -> list[CollaborationSummary]:
        return [c.summary() for c in self._collaborations.values()]

    def stats(self) -> RegistryStats:
        by_type = Counter(str(c.type) for c in self._collaborations.values())
        return RegistryStats(
            total_collaborations=len(self._collaborations),
            total_interactions=sum(c.total_interactions for c in self._collaborations.values()),
            total_loaded_interactions=sum(len(c.loaded_interactions) for c in self._collaborations.values()),
            by_type={str(t): by_type.get(str(t), 0) for t in CollaborationType},
        )

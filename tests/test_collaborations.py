"""Tests for Collaboration membership and the CollaborationRegistry."""

from __future__ import annotations

import asyncio

import pytest

from orchestra.collaborations.collaboration import Collaboration
from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.collaborations.schemas import CollaborationType
from orchestra.errors import NotFoundError
from orchestra.interactions.interaction import Interaction
from orchestra.interactions.schemas import TokenUsage
from orchestra.storage.persistence import MemoryInteractionStore


class _SlowStore(MemoryInteractionStore):
    """Memory store whose loads suspend, so concurrent callers overlap."""

    def __init__(self) -> None:
        super().__init__()
        self.loads = 0

    async def load_interaction(self, interaction_id: str) -> Interaction | None:
        self.loads += 1
        await asyncio.sleep(0.01)
        return await super().load_interaction(interaction_id)


# ---------------------------------------------------------------------------
# Collaboration
# ---------------------------------------------------------------------------


class TestCollaboration:
    def test_add_interaction_sets_membership(self):
        collaboration = Collaboration(title="Project")
        interaction = Interaction(title="Main")
        collaboration.add_interaction(interaction)

        assert interaction.collaboration_id == collaboration.id
        assert collaboration.interaction_ids == [interaction.id]
        assert collaboration.last_interaction_id == interaction.id
        assert collaboration.last_interaction_metadata["title"] == "Main"
        assert collaboration.get_interaction(interaction.id) is interaction

    def test_ids_not_duplicated(self):
        collaboration = Collaboration()
        collaboration.add_interaction_id("a")
        collaboration.add_interaction_id("a")
        assert collaboration.total_interactions == 1

    def test_remove_repoints_last_interaction(self):
        collaboration = Collaboration()
        collaboration.add_interaction(Interaction(id="a"))
        collaboration.add_interaction(Interaction(id="b"))

        assert collaboration.remove_interaction("b")
        assert collaboration.last_interaction_id == "a"
        assert collaboration.get_interaction("b") is None
        assert not collaboration.remove_interaction("b")

    def test_evict_keeps_membership(self):
        collaboration = Collaboration()
        collaboration.add_interaction(Interaction(id="a"))
        collaboration.add_interaction(Interaction(id="b"))

        assert collaboration.evict("a") == 1
        assert collaboration.evict("a") == 0
        assert collaboration.has_interaction("a")
        assert collaboration.evict() == 1
        assert collaboration.loaded_interactions == []
        assert collaboration.total_interactions == 2

    def test_values_round_trip_dedupes_ids(self):
        collaboration = Collaboration(title="P", type=CollaborationType.RESEARCH)
        collaboration.add_interaction_id("a")
        collaboration.record_usage(TokenUsage(input_tokens=5, output_tokens=1, total_tokens=6))
        values = collaboration.to_values()
        values.interaction_ids.append("a")

        restored = Collaboration.from_values(values)
        assert restored.id == collaboration.id
        assert restored.type is CollaborationType.RESEARCH
        assert restored.interaction_ids == ["a"]
        assert restored.token_usage.total_tokens == 6


# ---------------------------------------------------------------------------
# Registry lookups
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_create_and_find(self):
        registry = CollaborationRegistry()
        project = registry.create_collaboration(title="Parser refactor")
        research = registry.create_collaboration(title="Lexer research", type=CollaborationType.RESEARCH)

        assert registry.collaboration_count == 2
        assert registry.get_collaboration(project.id) is project
        assert registry.find_by_title("parser") == [project]
        assert registry.find_by_type(CollaborationType.RESEARCH) == [research]

    def test_default_title(self):
        assert CollaborationRegistry().create_collaboration().title == "New Collaboration"

    def test_explicit_id(self):
        registry = CollaborationRegistry()
        collaboration = registry.create_collaboration(collaboration_id="fixed")
        assert collaboration.id == "fixed"
        assert registry.has_collaboration("fixed")

    def test_lenient_and_strict_lookups(self):
        registry = CollaborationRegistry()
        assert registry.get_collaboration("missing") is None
        assert registry.find_interaction("missing") is None
        with pytest.raises(NotFoundError):
            registry.get_collaboration_strict("missing")
        with pytest.raises(NotFoundError):
            registry.find_interaction_strict("missing")
        with pytest.raises(NotFoundError):
            registry.add_interaction("missing", Interaction())

    def test_get_interaction_strict(self):
        registry = CollaborationRegistry()
        collaboration = registry.create_collaboration()
        with pytest.raises(NotFoundError) as exc_info:
            registry.get_interaction_strict(collaboration.id, "nope")
        assert exc_info.value.kind == "interaction"

    def test_results(self):
        registry = CollaborationRegistry()
        collaboration = registry.create_collaboration()
        registry.set_result(collaboration.id, {"answer": 42})
        assert registry.get_result(collaboration.id) == {"answer": 42}
        with pytest.raises(NotFoundError):
            registry.set_result("missing", 1)
        registry.remove_collaboration(collaboration.id)
        assert registry.get_result(collaboration.id) is None

    def test_descendants_breadth_first(self):
        registry = CollaborationRegistry()
        collaboration = registry.create_collaboration()
        root = Interaction(id="root")
        child_a = Interaction(id="a", parent_id="root")
        child_b = Interaction(id="b", parent_id="root")
        grandchild = Interaction(id="a1", parent_id="a")
        for interaction in (root, child_a, grandchild, child_b):
            registry.add_interaction(collaboration.id, interaction)

        assert [i.id for i in registry.descendants("root")] == ["a", "b", "a1"]
        assert registry.descendants("missing") == []

    def test_stats_and_summaries(self):
        registry = CollaborationRegistry()
        project = registry.create_collaboration()
        registry.create_collaboration(type=CollaborationType.WORKFLOW)
        registry.add_interaction(project.id, Interaction())
        registry.add_interaction(project.id, Interaction())
        registry.record_usage(project.id, TokenUsage(input_tokens=10, output_tokens=2, total_tokens=12))
        registry.evict_loaded_interactions(project.id)

        stats = registry.stats()
        assert stats.total_collaborations == 2
        assert stats.total_interactions == 2
        assert stats.total_loaded_interactions == 0
        assert stats.by_type == {"project": 1, "workflow": 1, "research": 0}

        summary = next(s for s in registry.summaries() if s.id == project.id)
        assert summary.total_interactions == 2
        assert summary.token_usage.total_tokens == 12


# ---------------------------------------------------------------------------
# get_or_create_interaction
# ---------------------------------------------------------------------------


class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_concurrent_requests_create_once(self):
        registry = CollaborationRegistry(MemoryInteractionStore())
        collaboration = registry.create_collaboration()
        created: list[str] = []

        async def create(interaction_id: str) -> Interaction:
            created.append(interaction_id)
            await asyncio.sleep(0.01)
            return Interaction(id=interaction_id)

        results = await asyncio.gather(*(
            registry.get_or_create_interaction(collaboration.id, "shared", create) for _ in range(5)
        ))

        assert created == ["shared"]
        assert all(r is results[0] for r in results)
        assert collaboration.interaction_ids == ["shared"]
        assert registry.pending_count == 0

    @pytest.mark.asyncio
    async def test_loads_from_store_before_creating(self):
        store = MemoryInteractionStore()
        stored = Interaction(id="saved", title="From disk")
        await store.save_interaction(stored)
        registry = CollaborationRegistry(store)
        collaboration = registry.create_collaboration()

        async def create(interaction_id: str) -> Interaction:
            raise AssertionError("should not create")

        loaded = await registry.get_or_create_interaction(collaboration.id, "saved", create)
        assert loaded.title == "From disk"
        assert loaded is not stored
        assert registry.find_interaction("saved") is loaded

    @pytest.mark.asyncio
    async def test_failure_shared_with_waiters(self):
        registry = CollaborationRegistry()
        collaboration = registry.create_collaboration()

        async def create(interaction_id: str) -> Interaction:
            await asyncio.sleep(0.01)
            raise RuntimeError("cannot create")

        results = await asyncio.gather(
            *(registry.get_or_create_interaction(collaboration.id, "x", create) for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(r, RuntimeError) for r in results)
        assert registry.pending_count == 0
        assert not collaboration.has_interaction("x")

    @pytest.mark.asyncio
    async def test_concurrent_loads_read_store_once(self):
        store = _SlowStore()
        await store.save_interaction(Interaction(id="saved", collaboration_id="collab-1", title="From disk"))
        registry = CollaborationRegistry(store)

        results = await asyncio.gather(*(registry.load_interaction("saved") for _ in range(3)))

        assert store.loads == 1
        assert all(r is results[0] for r in results)
        assert registry.get_collaboration("collab-1").get_interaction("saved") is results[0]
        assert registry.pending_count == 0

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self):
        registry = CollaborationRegistry(_SlowStore())
        assert await registry.load_interaction("missing") is None
        assert registry.collaboration_count == 0
        assert registry.pending_count == 0

    @pytest.mark.asyncio
    async def test_create_waits_for_load_that_finds_nothing(self):
        registry = CollaborationRegistry(_SlowStore())
        collaboration = registry.create_collaboration()
        created: list[str] = []

        async def create(interaction_id: str) -> Interaction:
            created.append(interaction_id)
            return Interaction(id=interaction_id)

        loaded, made = await asyncio.gather(
            registry.load_interaction("fresh"),
            registry.get_or_create_interaction(collaboration.id, "fresh", create),
        )

        assert loaded is None
        assert created == ["fresh"]
        assert collaboration.get_interaction("fresh") is made

    @pytest.mark.asyncio
    async def test_unknown_collaboration(self):
        registry = CollaborationRegistry()

        async def create(interaction_id: str) -> Interaction:
            return Interaction(id=interaction_id)

        with pytest.raises(NotFoundError):
            await registry.get_or_create_interaction("missing", "x", create)

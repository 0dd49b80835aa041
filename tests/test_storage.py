"""Tests for interaction persistence: in-memory store and SQLAlchemy store on SQLite."""

from __future__ import annotations

import pytest
import pytest_asyncio

from orchestra.config import Settings
from orchestra.interactions.interaction import Interaction, text_block
from orchestra.interactions.schemas import (
    CacheImpact,
    DifferentialUsage,
    LogEntry,
    LogEntryType,
    TokenUsage,
    TokenUsageRecord,
)
from orchestra.storage.database import Database
from orchestra.storage.persistence import MemoryInteractionStore
from orchestra.storage.sql_store import DatabaseInteractionStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _interaction() -> Interaction:
    interaction = Interaction(title="Stored", model="claude-test", collaboration_id="collab-1")
    interaction.begin_statement()
    interaction.add_user_message("read a.py")
    interaction.add_assistant_message(
        [{"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"}}],
        provider_usage=TokenUsage(input_tokens=50, output_tokens=5, total_tokens=55),
    )
    interaction.update_totals(TokenUsage(input_tokens=50, output_tokens=5, total_tokens=55))
    interaction.add_tool_result("t1", "print('hi')")
    interaction.update_resource_access("file:///a.py", interaction.last_message_id)
    interaction.set_objectives(conversation="Inspect a.py")
    return interaction


def _record(message_id: str = "m1") -> TokenUsageRecord:
    usage = TokenUsage(input_tokens=10, output_tokens=2, total_tokens=12)
    return TokenUsageRecord(
        message_id=message_id,
        statement_count=1,
        statement_turn_count=0,
        model="claude-test",
        role="assistant",
        raw_usage=usage,
        differential_usage=DifferentialUsage(output_tokens=2, total_tokens=2),
        cache_impact=CacheImpact(potential_cost=10),
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'orchestra.db'}")
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def sql_store(database):
    return DatabaseInteractionStore(database)


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = MemoryInteractionStore()
        interaction = _interaction()
        await store.save_interaction(interaction)

        loaded = await store.load_interaction(interaction.id)
        assert loaded is not interaction
        assert loaded.snapshot() == interaction.snapshot()

    @pytest.mark.asyncio
    async def test_saved_copy_is_isolated(self):
        store = MemoryInteractionStore()
        interaction = _interaction()
        await store.save_interaction(interaction)
        interaction.add_message("assistant", [text_block("later")])

        loaded = await store.load_interaction(interaction.id)
        assert len(loaded.messages) == 3

    @pytest.mark.asyncio
    async def test_missing_returns_none(self):
        assert await MemoryInteractionStore().load_interaction("missing") is None

    @pytest.mark.asyncio
    async def test_delete_clears_audit_trails(self):
        store = MemoryInteractionStore()
        interaction = _interaction()
        await store.save_interaction(interaction)
        await store.append_log_entry(interaction.id, LogEntry(entry_type=LogEntryType.USER, content="hi"))
        await store.write_token_usage(interaction.id, _record())
        await store.log_change(interaction.id, "file:///a.py", "modified")

        await store.delete_interaction(interaction.id)

        assert interaction.id not in store
        assert interaction.id not in store.log_entries
        assert interaction.id not in store.token_usage
        assert interaction.id not in store.changes


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------


class TestDatabaseStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, sql_store):
        interaction = _interaction()
        await sql_store.save_interaction(interaction)

        loaded = await sql_store.load_interaction(interaction.id)
        assert loaded.id == interaction.id
        assert loaded.title == "Stored"
        assert loaded.collaboration_id == "collab-1"
        assert [m.id for m in loaded.messages] == [m.id for m in interaction.messages]
        assert loaded.messages[1].tool_uses[0]["name"] == "read_file"
        assert loaded.token_usage_interaction.total_tokens == 55
        assert loaded.resources.active == interaction.resources.active
        assert loaded.objectives.conversation == "Inspect a.py"

    @pytest.mark.asyncio
    async def test_save_updates_existing_row(self, sql_store):
        interaction = _interaction()
        await sql_store.save_interaction(interaction)
        interaction.title = "Renamed"
        interaction.add_message("assistant", [text_block("done")])
        await sql_store.save_interaction(interaction)

        loaded = await sql_store.load_interaction(interaction.id)
        assert loaded.title == "Renamed"
        assert len(loaded.messages) == 4

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, sql_store):
        assert await sql_store.load_interaction("missing") is None

    @pytest.mark.asyncio
    async def test_log_entries_in_order(self, sql_store):
        await sql_store.append_log_entry("i1", LogEntry(entry_type=LogEntryType.USER, content="first"))
        await sql_store.append_log_entry("i1", LogEntry(
            entry_type=LogEntryType.TOOL_USE, content={"path": "a.py"}, tool_name="read_file",
        ))
        await sql_store.append_log_entry("i2", LogEntry(entry_type=LogEntryType.USER, content="other"))

        entries = await sql_store.list_log_entries("i1")
        assert [e.entry_type for e in entries] == [LogEntryType.USER, LogEntryType.TOOL_USE]
        assert entries[1].content == {"path": "a.py"}
        assert entries[1].tool_name == "read_file"

    @pytest.mark.asyncio
    async def test_token_usage_records(self, sql_store):
        await sql_store.write_token_usage("i1", _record("m1"))
        await sql_store.write_token_usage("i1", _record("m2"))

        records = await sql_store.list_token_usage("i1")
        assert [r.message_id for r in records] == ["m1", "m2"]
        assert records[0].raw_usage.total_tokens == 12

    @pytest.mark.asyncio
    async def test_delete_removes_rows(self, sql_store):
        interaction = _interaction()
        await sql_store.save_interaction(interaction)
        await sql_store.append_log_entry(interaction.id, LogEntry(entry_type=LogEntryType.USER, content="hi"))
        await sql_store.write_token_usage(interaction.id, _record())
        await sql_store.log_change(interaction.id, "file:///a.py", "modified")

        await sql_store.delete_interaction(interaction.id)

        assert await sql_store.load_interaction(interaction.id) is None
        assert await sql_store.list_log_entries(interaction.id) == []
        assert await sql_store.list_token_usage(interaction.id) == []


class TestDatabaseSettings:
    def test_default_url_is_postgres(self):
        settings = Settings()
        assert settings.db_url.startswith("postgresql+asyncpg://")

    def test_url_override(self):
        settings = Settings(database_url="sqlite+aiosqlite:///x.db")
        assert settings.db_url == "sqlite+aiosqlite:///x.db"

    def test_agent_turns_bounded_by_max_turns(self):
        with pytest.raises(ValueError, match="agent_max_turns"):
            Settings(max_turns=2, agent_max_turns=5)

"""Tests for Interaction state: messages, counters, token accounting, snapshots."""

from __future__ import annotations

import pytest

from orchestra.interactions.interaction import (
    STATEMENT_METADATA_TAG,
    Interaction,
    compute_cache_impact,
    compute_differential,
    extract_text,
    text_block,
)
from orchestra.interactions.schemas import TokenUsage


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _usage(input_tokens: int = 100, output_tokens: int = 20, **cache) -> TokenUsage:
    return TokenUsage.from_provider({"input_tokens": input_tokens, "output_tokens": output_tokens, **cache})


def _tool_use(tool_id: str = "toolu_1", name: str = "echo") -> dict:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": {"message": "hi"}}


# ---------------------------------------------------------------------------
# TokenUsage
# ---------------------------------------------------------------------------


class TestTokenUsage:
    def test_from_provider_defaults_total(self):
        usage = TokenUsage.from_provider({"input_tokens": 10, "output_tokens": 5})
        assert usage.total_tokens == 15
        assert usage.cache_read_input_tokens == 0

    def test_from_provider_none(self):
        assert TokenUsage.from_provider(None).is_empty

    def test_total_all_tokens_includes_cache(self):
        usage = _usage(100, 20, cache_creation_input_tokens=30, cache_read_input_tokens=50)
        assert usage.total_all_tokens == 200

    def test_addition(self):
        total = _usage(10, 5) + _usage(1, 2, cache_read_input_tokens=3)
        assert total.input_tokens == 11
        assert total.output_tokens == 7
        assert total.total_tokens == 18
        assert total.cache_read_input_tokens == 3


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_same_role_merges(self):
        interaction = Interaction()
        first = interaction.add_message("user", [text_block("a")])
        second = interaction.add_message("user", [text_block("b")])
        assert first is second
        assert len(interaction.messages) == 1
        assert first.text == "a\nb"

    def test_roles_alternate(self):
        interaction = Interaction()
        interaction.add_message("user", [text_block("q")])
        interaction.add_message("assistant", [text_block("a")])
        assert [m.role for m in interaction.messages] == ["user", "assistant"]

    def test_invalid_role_rejected(self):
        with pytest.raises(ValueError, match="Invalid message role"):
            Interaction().add_message("system", [text_block("x")])

    def test_user_message_layout(self):
        interaction = Interaction()
        image = {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAA"}}
        msg = interaction.add_user_message("do it", {"statement": 1, "empty": None}, [image])
        assert msg.content[0]["text"].startswith(f"<{STATEMENT_METADATA_TAG}>")
        assert "statement: 1" in msg.content[0]["text"]
        assert "empty" not in msg.content[0]["text"]
        assert msg.content[1] is image
        assert msg.content[2] == text_block("do it")

    def test_last_message_id_empty_raises(self):
        with pytest.raises(LookupError):
            Interaction().last_message_id

    def test_get_message_unknown_raises(self):
        with pytest.raises(LookupError):
            Interaction().get_message("missing")

    def test_previous_user_message_skips_tool_results(self):
        interaction = Interaction()
        interaction.add_user_message("real question")
        interaction.add_assistant_message([_tool_use()])
        interaction.add_tool_result("toolu_1", "ok")
        assert interaction.previous_user_message().text == "real question"

    def test_extract_text_skips_non_text(self):
        assert extract_text([_tool_use(), text_block("hi"), text_block("")]) == "hi"


class TestToolResults:
    def test_tool_result_opens_user_message(self):
        interaction = Interaction()
        interaction.add_user_message("q")
        interaction.add_assistant_message([_tool_use("t1"), _tool_use("t2")])
        msg = interaction.add_tool_result("t1", "first")
        same = interaction.add_tool_result("t2", "second")
        assert msg is same
        assert msg.is_tool_result
        assert msg.tool_result_ids == {"t1", "t2"}

    def test_same_tool_use_id_merges_into_block(self):
        interaction = Interaction()
        interaction.add_assistant_message([_tool_use("t1")])
        interaction.add_tool_result("t1", "part one")
        msg = interaction.add_tool_result("t1", "part two", is_error=True)
        blocks = [b for b in msg.content if b["type"] == "tool_result"]
        assert len(blocks) == 1
        assert [b["text"] for b in blocks[0]["content"]] == ["part one", "part two"]
        assert blocks[0]["is_error"] is True

    def test_pending_tool_uses(self):
        interaction = Interaction()
        interaction.add_user_message("q")
        assert interaction.pending_tool_uses() == []
        interaction.add_assistant_message([_tool_use("t1")])
        assert [t["id"] for t in interaction.pending_tool_uses()] == ["t1"]
        interaction.add_tool_result("t1", "done")
        assert interaction.pending_tool_uses() == []


# ---------------------------------------------------------------------------
# Counters and token accounting
# ---------------------------------------------------------------------------


class TestCounters:
    def test_update_totals_counts_turns(self):
        interaction = Interaction()
        interaction.begin_statement()
        interaction.add_user_message("q")
        interaction.update_totals(_usage(100, 10))
        interaction.update_totals(_usage(200, 20))

        assert interaction.statement_count == 1
        assert interaction.statement_turn_count == 2
        assert interaction.interaction_turn_count == 2
        assert interaction.token_usage_turn.input_tokens == 200
        assert interaction.token_usage_statement.input_tokens == 300
        assert interaction.token_usage_interaction.input_tokens == 300

    def test_new_statement_resets_statement_totals_only(self):
        interaction = Interaction()
        interaction.begin_statement()
        interaction.update_totals(_usage(100, 10))
        interaction.begin_statement()
        interaction.update_totals(_usage(50, 5))

        assert interaction.statement_count == 2
        assert interaction.statement_turn_count == 1
        assert interaction.interaction_turn_count == 2
        assert interaction.token_usage_statement.input_tokens == 50
        assert interaction.token_usage_interaction.input_tokens == 150

    def test_empty_usage_returns_no_record(self):
        interaction = Interaction()
        interaction.begin_statement()
        assert interaction.update_totals(TokenUsage()) is None
        assert interaction.statement_turn_count == 1

    def test_usage_record_for_assistant_message(self):
        interaction = Interaction(model="claude-test")
        interaction.begin_statement()
        interaction.add_user_message("q")
        msg = interaction.add_assistant_message([text_block("a")], provider_usage=_usage(100, 40))
        record = interaction.update_totals(_usage(100, 40))

        assert record.message_id == msg.id
        assert record.role == "assistant"
        assert record.model == "claude-test"
        assert record.statement_count == 1
        assert record.statement_turn_count == 0
        assert record.differential_usage.input_tokens == 0
        assert record.differential_usage.output_tokens == 40


class TestDifferential:
    def test_assistant_is_output_only(self):
        diff = compute_differential("assistant", _usage(500, 30), previous_assistant_input=100)
        assert (diff.input_tokens, diff.output_tokens, diff.total_tokens) == (0, 30, 30)

    def test_user_is_input_growth(self):
        diff = compute_differential("user", _usage(500, 30), previous_assistant_input=400)
        assert (diff.input_tokens, diff.output_tokens, diff.total_tokens) == (100, 0, 100)

    def test_user_growth_never_negative(self):
        diff = compute_differential("user", _usage(100, 0), previous_assistant_input=400)
        assert diff.input_tokens == 0

    def test_cache_impact(self):
        impact = compute_cache_impact(_usage(1000, 0, cache_read_input_tokens=600, cache_creation_input_tokens=100))
        assert impact.potential_cost == 1000
        assert impact.actual_cost == 700
        assert impact.savings == 300


# ---------------------------------------------------------------------------
# Tools, resources, objectives
# ---------------------------------------------------------------------------


class TestBookkeeping:
    def test_record_tool_outcome(self):
        interaction = Interaction()
        interaction.record_tool_outcome("echo", True)
        stats = interaction.record_tool_outcome("echo", False)
        assert (stats.count, stats.success, stats.failure) == (2, 1, 1)
        assert stats.last_use.success is False

    def test_resource_access_and_pruning(self):
        interaction = Interaction()
        interaction.update_resource_access("file:///a.py", "m1")
        interaction.update_resource_access("file:///b.py", "m2", modified=True)
        interaction.update_resource_access("file:///a.py", "m3")

        assert interaction.resources.accessed == ["file:///a.py", "file:///b.py"]
        assert interaction.resources.modified == ["file:///b.py"]
        assert interaction.resources.active == {"file:///a.py": "m3", "file:///b.py": "m2"}

        dropped = interaction.prune_active_resources({"m3"})
        assert dropped == ["file:///b.py"]
        assert interaction.resources.active == {"file:///a.py": "m3"}

    def test_objectives_history(self):
        interaction = Interaction()
        interaction.set_objectives(conversation="Build the parser")
        assert interaction.objectives.current is None
        interaction.set_objectives(statement="Write tests")
        interaction.set_objectives(statement="Fix the bug")
        assert interaction.objectives.conversation == "Build the parser"
        assert interaction.objectives.current == "Fix the bug"
        assert interaction.objectives.statement == ["Write tests", "Fix the bug"]

    def test_metrics(self):
        interaction = Interaction()
        interaction.record_tool_outcome("echo", True)
        interaction.update_resource_access("file:///a.py", "m1", modified=True)
        metrics = interaction.metrics()
        assert metrics["tool_usage"]["total_tool_uses"] == 1
        assert metrics["resources"] == {"accessed": 1, "modified": 1, "active": 1}


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_snapshot_preserves_state(self):
        interaction = Interaction(title="T", model="m", tool_names=["echo"], parent_id="p")
        interaction.begin_statement()
        interaction.add_user_message("q")
        interaction.add_assistant_message([_tool_use("t1")], provider_usage=_usage(10, 2))
        interaction.update_totals(_usage(10, 2))
        interaction.add_tool_result("t1", "ok")
        interaction.record_tool_outcome("echo", True)
        interaction.update_resource_access("file:///a.py", interaction.last_message_id)
        interaction.set_objectives(conversation="goal", statement="step")

        restored = Interaction.from_snapshot(interaction.snapshot())

        assert restored.id == interaction.id
        assert restored.parent_id == "p"
        assert restored.tool_names == ["echo"]
        assert restored.stats == interaction.stats
        assert restored.token_usage_interaction == interaction.token_usage_interaction
        assert [m.id for m in restored.messages] == [m.id for m in interaction.messages]
        assert restored.messages[1].provider_usage.input_tokens == 10
        assert restored.tool_stats["echo"].count == 1
        assert restored.resources.active == interaction.resources.active
        assert restored.objectives.current == "step"

    def test_snapshot_does_not_alias_messages(self):
        interaction = Interaction()
        interaction.add_user_message("q")
        restored = Interaction.from_snapshot(interaction.snapshot())
        restored.messages[0].content.append(text_block("extra"))
        assert len(interaction.messages[0].content) == 1

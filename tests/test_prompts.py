"""Tests for prompt rendering and the auxiliary title/objective calls."""

from __future__ import annotations

import pytest

from orchestra.errors import LLMError
from orchestra.llm.objectives import (
    generate_conversation_objective,
    generate_statement_objective,
    generate_title,
)
from orchestra.llm.prompts import (
    FALLBACK_SYSTEM_PROMPT,
    JinjaPromptRenderer,
    render_system_prompt,
)

from tests.conftest import FakeTransport, make_response


class _ScriptedTransport(FakeTransport):
    """Answers every auxiliary request with the same scripted result."""

    def __init__(self, result) -> None:
        super().__init__()
        self.result = result

    async def send(self, request):
        self.requests.append(request)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------


class TestRenderer:
    def test_system_prompt_lists_tools(self):
        text = JinjaPromptRenderer().render("system", {
            "project_name": "parsekit",
            "project_info": "",
            "tool_names": ["echo", "read_file"],
        })
        assert "parsekit" in text
        assert "echo, read_file" in text
        assert "## Project" not in text

    def test_agent_prompt(self):
        text = JinjaPromptRenderer().render("agent_system", {
            "title": "Check tests",
            "background": "",
            "tool_names": [],
        })
        assert text.startswith("You are a sub-agent")
        assert "Check tests" in text
        assert "## Tools" not in text

    def test_custom_template_overrides_builtin(self):
        renderer = JinjaPromptRenderer({"system": "Custom for {{ project_name }}"})
        assert renderer.render("system", {"project_name": "x"}) == "Custom for x"

    def test_missing_variable_is_an_error(self):
        renderer = JinjaPromptRenderer({"system": "Hello {{ missing }}"})
        assert render_system_prompt(renderer, {}) == FALLBACK_SYSTEM_PROMPT

    def test_sandbox_blocks_unsafe_access(self):
        renderer = JinjaPromptRenderer({"system": "{{ project_name.__class__.__mro__ }}"})
        assert render_system_prompt(renderer, {"project_name": "x"}) == FALLBACK_SYSTEM_PROMPT

    def test_summary_template_carries_existing_summary(self):
        text = JinjaPromptRenderer().render("summary", {
            "target_words": "150-300",
            "existing_summary": "Earlier work on the lexer",
        })
        assert "TARGET LENGTH: 150-300 words" in text
        assert "Earlier work on the lexer" in text


# ---------------------------------------------------------------------------
# Auxiliary calls
# ---------------------------------------------------------------------------


class TestObjectives:
    @pytest.mark.asyncio
    async def test_title_first_line_unquoted(self):
        transport = _ScriptedTransport(make_response('"Parser Refactor"\nextra line'))
        title = await generate_title(transport, JinjaPromptRenderer(), "Refactor the parser")
        assert title == "Parser Refactor"
        assert transport.requests[0].purpose == "title"
        assert transport.requests[0].tools is None

    @pytest.mark.asyncio
    async def test_title_truncated(self):
        transport = _ScriptedTransport(make_response("word " * 40))
        title = await generate_title(transport, JinjaPromptRenderer(), "x")
        assert len(title) == 80

    @pytest.mark.asyncio
    async def test_conversation_objective(self):
        transport = _ScriptedTransport(make_response("  Make parsing robust.  "))
        objective = await generate_conversation_objective(transport, JinjaPromptRenderer(), "Fix parser crashes")
        assert objective == "Make parsing robust."
        assert "Fix parser crashes" in transport.requests[0].messages[0]["content"]

    @pytest.mark.asyncio
    async def test_statement_objective_prompt(self):
        transport = _ScriptedTransport(make_response("Add regression tests."))
        await generate_statement_objective(
            transport,
            JinjaPromptRenderer(),
            "Now add tests",
            "Make parsing robust.",
            previous_response="r" * 5000,
            previous_objective="Fix the crash",
        )
        prompt = transport.requests[0].messages[0]["content"]
        assert "Conversation goal: Make parsing robust." in prompt
        assert "Previous objective: Fix the crash" in prompt
        assert "r" * 2000 in prompt
        assert "r" * 2001 not in prompt

    @pytest.mark.asyncio
    async def test_empty_answer_raises(self):
        transport = _ScriptedTransport(make_response(""))
        with pytest.raises(LLMError) as exc_info:
            await generate_title(transport, JinjaPromptRenderer(), "x", interaction_id="i1")
        assert exc_info.value.reason == "empty_response"
        assert exc_info.value.interaction_id == "i1"

    @pytest.mark.asyncio
    async def test_unexpected_failure_wrapped(self):
        transport = _ScriptedTransport(ConnectionResetError("reset"))
        with pytest.raises(LLMError) as exc_info:
            await generate_conversation_objective(transport, JinjaPromptRenderer(), "x")
        assert exc_info.value.reason == "auxiliary_failed"
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_llm_error_passes_through(self):
        error = LLMError("rate limited", reason="rate_limit")
        transport = _ScriptedTransport(error)
        with pytest.raises(LLMError) as exc_info:
            await generate_title(transport, JinjaPromptRenderer(), "x", interaction_id="i1")
        assert exc_info.value is error
        assert error.details["interaction_id"] == "i1"

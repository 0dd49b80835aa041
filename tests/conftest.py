"""Shared fixtures: a scripted model transport, recording notifier, in-memory store."""

from __future__ import annotations

import inspect
import uuid
from typing import Any

import pytest

from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.config import Settings
from orchestra.engine.delegation import AgentDelegationEngine
from orchestra.engine.turns import TurnEngine
from orchestra.events import Event, Notifier
from orchestra.interactions.interaction import Interaction
from orchestra.interactions.schemas import TokenUsage
from orchestra.llm.prompts import JinjaPromptRenderer
from orchestra.llm.transport import ModelRequest, ModelResponse
from orchestra.storage.persistence import MemoryInteractionStore
from orchestra.tools.dispatch import ToolDispatcher, tool_response

VALID_SUMMARY = """\
## Goal
Refactor the request parser and keep the public API stable.

## Progress
### Done
- [x] Read parser.py and the existing tests
### In Progress
- [ ] Splitting tokenization from validation

## Key Decisions
- **Keep the old entry point**: callers depend on it

## Critical Context
- src/parser.py, tests/test_parser.py, ParseError raised on empty input
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_response(
    text: str = "",
    tool_uses: list[dict] | None = None,
    usage: dict[str, int] | None = None,
    model: str = "claude-test",
) -> ModelResponse:
    """Build a ModelResponse with text and/or tool_use blocks."""
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for tu in tool_uses or []:
        content.append({
            "type": "tool_use",
            "id": tu.get("id", f"toolu_{uuid.uuid4().hex[:12]}"),
            "name": tu["name"],
            "input": tu.get("input", {}),
        })
    return ModelResponse(
        answer_content=content,
        stop_reason="tool_use" if tool_uses else "end_turn",
        usage=TokenUsage.from_provider(usage or {"input_tokens": 100, "output_tokens": 20}),
        model=model,
    )


class FakeTransport:
    """Scripted ModelTransport.

    Auxiliary requests (title, objective, summary) are answered
    automatically. Statement requests pop from ``responses`` or go to
    ``responder``; an Exception in the script is raised instead.
    """

    def __init__(
        self,
        responses: list[ModelResponse | Exception] | None = None,
        responder=None,
        context_window: int = 200_000,
        model: str = "claude-test",
    ) -> None:
        self.model = model
        self.context_window = context_window
        self.responses = list(responses or [])
        self.responder = responder
        self.requests: list[ModelRequest] = []
        self.summary_text = VALID_SUMMARY

    @property
    def statement_requests(self) -> list[ModelRequest]:
        return [r for r in self.requests if r.purpose == "statement"]

    async def send(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if request.purpose == "title":
            return make_response("Parser Refactor")
        if request.purpose == "objective":
            return make_response("Refactor the parser safely")
        if request.purpose == "summary":
            return make_response(self.summary_text)

        if self.responder is not None:
            result = self.responder(request)
            if inspect.isawaitable(result):
                result = await result
        elif self.responses:
            result = self.responses.pop(0)
        else:
            result = make_response("Done.")
        if isinstance(result, Exception):
            raise result
        return result


class RecordingNotifier(Notifier):
    """Notifier that keeps every event in memory instead of using a bus."""

    def __init__(self) -> None:
        super().__init__(None)
        self.events: list[Event] = []

    async def _emit(self, event_type, collaboration_id, interaction_id, data) -> None:
        self.events.append(Event(
            type=event_type,
            collaboration_id=collaboration_id,
            interaction_id=interaction_id,
            data=data,
        ))

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with low turn limits for testing loop termination."""
    return Settings(
        ANTHROPIC_API_KEY="test-key",
        max_turns=5,
        agent_max_turns=3,
        event_bus_enabled=False,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryInteractionStore()


@pytest.fixture
def registry(store):
    return CollaborationRegistry(store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def renderer():
    return JinjaPromptRenderer()


@pytest.fixture
def dispatcher():
    """ToolDispatcher with echo and read_file tools registered."""
    dispatcher = ToolDispatcher()

    async def echo(interaction: Interaction, message: str = "default") -> dict:
        return tool_response(f"Echo: {message}")

    async def read_file(interaction: Interaction, path: str, size: int = 0) -> dict:
        return tool_response(
            "x" * size if size else f"contents of {path}",
            resources=[{"uri": f"file:///{path}", "modified": False}],
        )

    dispatcher.register("echo", echo, {
        "type": "object",
        "description": "Echo tool",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    })
    dispatcher.register("read_file", read_file, {
        "type": "object",
        "description": "Read a file",
        "properties": {"path": {"type": "string"}, "size": {"type": "integer"}},
        "required": ["path"],
    })
    return dispatcher


@pytest.fixture
def engine(settings, transport, dispatcher, store, registry, renderer, notifier):
    return TurnEngine(
        settings=settings,
        transport=transport,
        dispatcher=dispatcher,
        store=store,
        registry=registry,
        renderer=renderer,
        notifier=notifier,
    )


@pytest.fixture
def delegation(settings, engine, registry, dispatcher, renderer):
    return AgentDelegationEngine(settings, engine, registry, dispatcher, renderer)


@pytest.fixture
def collaboration(registry):
    return registry.create_collaboration(title="Test project")


@pytest.fixture
def interaction(collaboration):
    interaction = Interaction(model="claude-test")
    collaboration.add_interaction(interaction)
    return interaction

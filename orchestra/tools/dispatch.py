"""Tool dispatcher: registers tool handlers and executes tool_use blocks.

Each handler is an async callable ``handler(interaction, **input)`` that
returns an MCP-format response: {"content": [{"type": "text", "text": "..."}]}.
A response may also list the resources the tool touched:
{"content": [...], "resources": [{"uri": "file:///a.py", "modified": true}]}.

Handler exceptions never escape invoke(): they become error outcomes
whose text is relayed to the model as tool-result content.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from orchestra.errors import ToolError

if TYPE_CHECKING:
    from orchestra.interactions.interaction import Interaction

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    """Result of one tool invocation."""

    result_text: str
    structured_result: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    resources: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0


class ToolDispatchPort(Protocol):
    """What the turn engine needs from a tool catalog."""

    @property
    def tool_names(self) -> list[str]: ...

    def tool_definitions(self, names: list[str] | None = None) -> list[dict[str, Any]]: ...

    async def invoke(self, interaction: Interaction, tool_use: dict[str, Any]) -> ToolOutcome: ...


class ToolDispatcher:
    """Registry of async tool handlers in Anthropic tool format."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)
        self._schemas.pop(name, None)

    @property
    def tool_names(self) -> list[str]:
        return list(self._schemas)

    def tool_definitions(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format, optionally restricted to ``names``."""
        return [
            {
                "name": name,
                "description": schema.get("description", ""),
                "input_schema": {k: v for k, v in schema.items() if k != "description"},
            }
            for name, schema in self._schemas.items()
            if names is None or name in names
        ]

    async def invoke(self, interaction: Interaction, tool_use: dict[str, Any]) -> ToolOutcome:
        name = tool_use.get("name", "")
        args = tool_use.get("input") or {}
        handler = self._handlers.get(name)
        if handler is None:
            return ToolOutcome(result_text=f"Unknown tool: {name}", is_error=True)
        if interaction.tool_names is not None and name not in interaction.tool_names:
            return ToolOutcome(result_text=f"Tool not available in this interaction: {name}", is_error=True)

        start_time = time.monotonic()
        try:
            result = await handler(interaction, **args)
        except ToolError as e:
            logger.warning("Tool %s failed: %s", name, e.message)
            return ToolOutcome(
                result_text=e.message,
                structured_result=e.to_info(),
                is_error=True,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolOutcome(
                result_text=f"Tool error: {e}",
                is_error=True,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
        duration_ms = int((time.monotonic() - start_time) * 1000)

        if isinstance(result, str):
            return ToolOutcome(result_text=result, duration_ms=duration_ms)
        text = "\n".join(
            block.get("text", "")
            for block in result.get("content", [])
            if block.get("type") == "text"
        )
        return ToolOutcome(
            result_text=text,
            structured_result=result,
            is_error=bool(result.get("isError") or result.get("is_error")),
            resources=list(result.get("resources", [])),
            duration_ms=duration_ms,
        )


def tool_response(text: str, **extra: Any) -> dict[str, Any]:
    """Build an MCP-format tool response."""
    return {"content": [{"type": "text", "text": text}], **extra}

"""Tool dispatch and the built-in tools."""

from orchestra.tools.dispatch import ToolDispatcher, ToolDispatchPort, ToolOutcome, tool_response

__all__ = ["ToolDispatchPort", "ToolDispatcher", "ToolOutcome", "tool_response"]

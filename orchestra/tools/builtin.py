"""Built-in tools: delegate_tasks and collaboration_summary.

Each tool is a closure over the engine it drives and returns an
MCP-format response. Invalid input raises ToolError, which the
dispatcher turns into an error tool result.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from orchestra.engine.compaction import (
    MIN_TOKENS_TO_KEEP,
    SUMMARY_LENGTHS,
    ConversationCompactor,
    context_cutoff,
    summary_budget,
)
from orchestra.engine.failures import ErrorHandlingConfig
from orchestra.engine.tasks import CompletedTask, ExecutionMode, Task
from orchestra.errors import OrchestraError, ToolError
from orchestra.tools.dispatch import ToolDispatcher, tool_response

if TYPE_CHECKING:
    from orchestra.config import Settings
    from orchestra.engine.delegation import AgentDelegationEngine
    from orchestra.interactions.interaction import Interaction

logger = logging.getLogger(__name__)

DELEGATE_TASKS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Delegate self-contained tasks to sub-agents. Each task runs in its own "
        "conversation with your tools (except delegation) and returns its result. "
        "Use sync=true when tasks depend on each other's side effects."
    ),
    "properties": {
        "tasks": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Short task title"},
                    "background": {"type": "string", "description": "Context the agent needs"},
                    "instructions": {"type": "string", "description": "What the agent must do"},
                    "requirements": {
                        "description": "Expected output: prose description or a JSON schema",
                        "anyOf": [{"type": "string"}, {"type": "object"}],
                    },
                    "capabilities": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["title", "instructions"],
            },
        },
        "sync": {"type": "boolean", "description": "Run tasks one at a time in order", "default": False},
        "error_config": {
            "type": "object",
            "properties": {
                "strategy": {"type": "string", "enum": ["fail_fast", "continue_on_error", "retry"]},
                "max_retries": {"type": "integer", "minimum": 0},
                "continue_on_error_threshold": {"type": "integer", "minimum": 0},
            },
            "required": ["strategy"],
        },
    },
    "required": ["tasks"],
}

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Summarize and truncate the conversation history to free context. "
        "Older messages are replaced by a structured summary."
    ),
    "properties": {
        "max_tokens_to_keep": {
            "type": "integer",
            "minimum": MIN_TOKENS_TO_KEEP,
            "description": "Tokens of recent history to keep verbatim",
        },
        "summary_length": {"type": "string", "enum": list(SUMMARY_LENGTHS), "default": "long"},
    },
}


def format_completed_tasks(results: list[CompletedTask]) -> str:
    blocks = []
    for result in results:
        if result.failed:
            code = f" [{result.error_code}]" if result.error_code else ""
            blocks.append(f"⚠️ {result.title}\nError{code}: {result.error}")
        else:
            blocks.append(f"✅ {result.title}\nResult: {result.result}")
    return "\n\n".join(blocks)


def create_delegate_tool(delegation: AgentDelegationEngine):
    async def delegate_tasks(
        interaction: Interaction,
        tasks: list[dict[str, Any]] | None = None,
        sync: bool = False,
        error_config: dict[str, Any] | None = None,
    ) -> dict:
        if not tasks:
            raise ToolError("delegate_tasks requires at least one task", tool_name="delegate_tasks")
        try:
            parsed = [Task.model_validate(t) for t in tasks]
            config = ErrorHandlingConfig.model_validate(error_config) if error_config else None
        except ValidationError as e:
            raise ToolError(f"Invalid delegate_tasks input: {e}", tool_name="delegate_tasks") from e

        mode = ExecutionMode.SYNC if sync else ExecutionMode.ASYNC
        try:
            results = await delegation.execute_tasks(interaction, parsed, mode, config)
        except OrchestraError as e:
            raise ToolError(f"Failed to delegate tasks: {e.message}", tool_name="delegate_tasks") from e

        completed = sum(1 for r in results if not r.failed)
        logger.info("delegate_tasks: %d/%d tasks completed", completed, len(results))
        return tool_response(
            format_completed_tasks(results),
            completed_tasks=[r.model_dump() for r in results],
        )

    return delegate_tasks


def create_summary_tool(compactor: ConversationCompactor, settings: Settings, context_window: int):
    cutoff = context_cutoff(context_window, settings.context_cutoff_ratio)

    async def collaboration_summary(
        interaction: Interaction,
        max_tokens_to_keep: int | None = None,
        summary_length: str = "long",
    ) -> dict:
        if max_tokens_to_keep is None:
            max_tokens_to_keep = summary_budget(cutoff, settings.summary_keep_ratio, settings.summary_min_tokens)
        if not isinstance(max_tokens_to_keep, int) or not MIN_TOKENS_TO_KEEP <= max_tokens_to_keep <= context_window:
            raise ToolError(
                f"max_tokens_to_keep must be between {MIN_TOKENS_TO_KEEP} and {context_window}",
                tool_name="collaboration_summary",
            )
        if summary_length not in SUMMARY_LENGTHS:
            raise ToolError(
                f"summary_length must be one of {', '.join(SUMMARY_LENGTHS)}",
                tool_name="collaboration_summary",
            )
        result = await compactor.force_summarize(interaction, max_tokens_to_keep, summary_length)
        return tool_response(result.describe(), summarized=result.summarized, fallback=result.fallback)

    return collaboration_summary


def register_builtin_tools(
    dispatcher: ToolDispatcher,
    delegation: AgentDelegationEngine,
    compactor: ConversationCompactor,
    settings: Settings,
    context_window: int,
) -> None:
    dispatcher.register("delegate_tasks", create_delegate_tool(delegation), DELEGATE_TASKS_SCHEMA)
    dispatcher.register(
        "collaboration_summary",
        create_summary_tool(compactor, settings, context_window),
        SUMMARY_SCHEMA,
    )

"""Turn engine: runs one statement (user instruction) to completion.

A statement moves through: objective resolution -> first model call ->
tool loop -> finalize. The tool loop:

1. Dispatch every tool_use in the response; tool failures become inline
   "Error with <tool>" feedback, never exceptions.
2. If the turn's tokens (including cache operations) cross the context
   cutoff, force a summary of the interaction history.
3. Relay the tool feedback as the next turn, or stop when there is none.
4. An exception on an intermediate turn becomes a placeholder answer;
   on the last allowed turn it propagates.

Turns of one interaction are serialized by a per-interaction lock.
Cancellation is cooperative and checked once per loop iteration.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.config import Settings
from orchestra.engine.compaction import ConversationCompactor, context_cutoff, summary_budget
from orchestra.errors import EmptyPromptError, LLMError, ResponseHandlingError, error_info
from orchestra.events import Notifier
from orchestra.interactions.interaction import Interaction, text_block
from orchestra.interactions.schemas import (
    ApiStatus,
    ConversationResponse,
    LogEntry,
    LogEntryType,
    ResponseError,
    Termination,
)
from orchestra.llm.objectives import (
    generate_conversation_objective,
    generate_statement_objective,
    generate_title,
)
from orchestra.llm.prompts import PromptRenderer, render_system_prompt
from orchestra.llm.transport import ModelRequest, ModelResponse, ModelTransport
from orchestra.storage.persistence import InteractionStore
from orchestra.tools.dispatch import ToolDispatchPort, ToolOutcome

logger = logging.getLogger(__name__)

SUMMARY_TOOL_NAME = "collaboration_summary"

INTERRUPTED_TOOL_RESULT = (
    "Tool use was interrupted, results could not be generated. You may try again now."
)
SUMMARY_NOTE = (
    "\nNote: The conversation has been automatically summarized and truncated to stay "
    "within token limits. The summary has been added to the conversation history."
)

_THINKING_RE = re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL)
_MAX_FEEDBACK_CHARS = 2000


@dataclass
class EngineCapabilities:
    """Host hooks injected into the engine. Every hook is optional."""

    # attachment reference -> model content block (image or text)
    resolve_attachment: Callable[[str], Awaitable[dict[str, Any]]] | None = None
    # current project description for the system prompt
    project_info: Callable[[], Awaitable[str]] | None = None
    # observer for every interaction log entry
    on_log_entry: Callable[[str, LogEntry], Awaitable[None]] | None = None
    project_name: str | None = None


@dataclass
class StatementOptions:
    max_turns: int | None = None
    attachments: list[str] = field(default_factory=list)


class TurnEngine:
    def __init__(
        self,
        settings: Settings,
        transport: ModelTransport,
        dispatcher: ToolDispatchPort,
        store: InteractionStore,
        registry: CollaborationRegistry,
        renderer: PromptRenderer,
        notifier: Notifier | None = None,
        capabilities: EngineCapabilities | None = None,
        compactor: ConversationCompactor | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._dispatcher = dispatcher
        self._store = store
        self._registry = registry
        self._renderer = renderer
        self._notifier = notifier or Notifier()
        self._capabilities = capabilities or EngineCapabilities()
        self.compactor = compactor or ConversationCompactor(transport, renderer)
        self._locks: dict[str, asyncio.Lock] = {}
        # Statements running or waiting on each interaction lock
        self._lock_users: dict[str, int] = {}
        self._cancelled: set[str] = set()
        self._sequence: dict[str, int] = {}
        self._project_info = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle_statement(
        self,
        interaction: Interaction,
        text: str,
        options: StatementOptions | None = None,
    ) -> ConversationResponse:
        """Run a statement; terminal failures come back as a failed response."""
        try:
            return await self.run_statement(interaction, text, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            info = error_info(e)
            return self._response(
                interaction,
                status="failed",
                error=ResponseError(**info),
            )

    async def run_statement(
        self,
        interaction: Interaction,
        text: str,
        options: StatementOptions | None = None,
    ) -> ConversationResponse:
        """Run a statement, raising classified errors on terminal failure."""
        lock = self._locks.setdefault(interaction.id, asyncio.Lock())
        self._lock_users[interaction.id] = self._lock_users.get(interaction.id, 0) + 1
        try:
            async with lock:
                self._cancelled.discard(interaction.id)
                self._sequence[interaction.id] = 0
                try:
                    return await self._run(interaction, text, options or StatementOptions())
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    info = error_info(e)
                    logger.error(
                        "Statement failed for interaction %s [%s]: %s",
                        interaction.id, info["code"], info["message"],
                    )
                    await self._notifier.collaboration_error(
                        interaction.collaboration_id,
                        interaction.id,
                        info["code"],
                        info["message"],
                        stats=interaction.stats.model_dump(),
                        details=info["details"],
                    )
                    await self._log(interaction, LogEntryType.ERROR, info)
                    raise
                finally:
                    await self._status(interaction, ApiStatus.IDLE)
        finally:
            self._release(interaction.id)

    def _release(self, interaction_id: str) -> None:
        remaining = self._lock_users.get(interaction_id, 1) - 1
        if remaining > 0:
            self._lock_users[interaction_id] = remaining
            return
        self._lock_users.pop(interaction_id, None)
        self._locks.pop(interaction_id, None)
        self._sequence.pop(interaction_id, None)
        self._cancelled.discard(interaction_id)

    def cancel(self, interaction_id: str) -> None:
        """Stop the statement running on ``interaction_id`` after the current turn.

        Agent interactions delegated from it (at any depth) stop too.
        """
        logger.info("Cancellation requested for interaction %s", interaction_id)
        self._cancelled.add(interaction_id)

    def is_cancelled(self, interaction_id: str) -> bool:
        """True when the interaction or any interaction it was delegated from is cancelled."""
        seen: set[str] = set()
        current: str | None = interaction_id
        while current is not None and current not in seen:
            if current in self._cancelled:
                return True
            seen.add(current)
            interaction = self._registry.find_interaction(current)
            current = interaction.parent_id if interaction is not None else None
        return False

    # ------------------------------------------------------------------
    # Statement flow
    # ------------------------------------------------------------------

    async def _run(self, interaction: Interaction, text: str, options: StatementOptions) -> ConversationResponse:
        if not text or not text.strip():
            raise EmptyPromptError("Missing statement", interaction_id=interaction.id)

        max_turns = options.max_turns or self._settings.max_turns

        if not interaction.title:
            interaction.title = await generate_title(self._transport, self._renderer, text, interaction.id)
            await self._notifier.collaboration_new(interaction.collaboration_id, interaction.id, interaction.title)

        await self._resolve_objectives(interaction, text)
        attachments = await self._resolve_attachments(options.attachments)
        await self._refresh_project_info()

        logger.info("Interaction %s: converse with statement %r", interaction.id, text[:50])
        await self._status(interaction, ApiStatus.LLM_PROCESSING)
        response = await self.converse(interaction, text, attachments)
        await self._status(interaction, ApiStatus.API_BUSY)

        # Durability checkpoint before any tool side effects
        await self._store.save_interaction(interaction)

        response, termination = await self._tool_loop(interaction, response, max_turns)
        return await self._finalize(interaction, response, termination)

    async def _resolve_objectives(self, interaction: Interaction, text: str) -> None:
        if not interaction.objectives.conversation:
            objective = await generate_conversation_objective(
                self._transport, self._renderer, text, interaction.id,
            )
            interaction.set_objectives(conversation=objective)
            logger.debug("Set conversation objective: %s", objective)
            return

        previous = interaction.previous_assistant_message()
        objective = await generate_statement_objective(
            self._transport,
            self._renderer,
            text,
            interaction.objectives.conversation,
            previous_response=previous.text if previous else None,
            previous_objective=interaction.objectives.current,
            interaction_id=interaction.id,
        )
        interaction.set_objectives(statement=objective)
        logger.debug("Set statement objective: %s", objective)

    async def _resolve_attachments(self, references: list[str]) -> list[dict[str, Any]]:
        limit = self._settings.max_attachments_per_statement
        if len(references) > limit:
            logger.warning("Too many attachments (%d), using the first %d", len(references), limit)
        resolver = self._capabilities.resolve_attachment
        if not references or resolver is None:
            return []
        blocks: list[dict[str, Any]] = []
        for ref in references[:limit]:
            try:
                blocks.append(await resolver(ref))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Skipping attachment %s: %s", ref, e)
        return blocks

    async def converse(
        self,
        interaction: Interaction,
        text: str,
        attachments: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Open a new statement with ``text`` and get the first model response."""
        for tool_use in interaction.pending_tool_uses():
            logger.warning("Interaction %s: repairing interrupted tool use %s", interaction.id, tool_use.get("name"))
            interaction.add_tool_result(tool_use["id"], INTERRUPTED_TOOL_RESULT, is_error=True)

        interaction.begin_statement()
        message = interaction.add_user_message(text, self._statement_metadata(interaction), attachments)
        await self._log(interaction, LogEntryType.USER, text, message_id=message.id)
        return await self._send(interaction)

    async def relay_tool_result(self, interaction: Interaction, text: str) -> ModelResponse:
        """Send tool feedback as the next turn of the current statement."""
        interaction.add_message("user", [text_block(text)])
        return await self._send(interaction)

    def _statement_metadata(self, interaction: Interaction) -> dict[str, Any]:
        return {
            "statement": interaction.statement_count,
            "interaction_turn": interaction.interaction_turn_count,
            "conversation_goal": interaction.objectives.conversation,
            "current_objective": interaction.objectives.current,
            "timestamp": interaction.objectives.timestamp.isoformat(),
        }

    async def _send(self, interaction: Interaction) -> ModelResponse:
        messages = [m.to_api() for m in interaction.messages]
        request = ModelRequest(
            system=self._system_prompt(interaction),
            messages=messages,
            tools=self._dispatcher.tool_definitions(interaction.tool_names) or None,
            model=interaction.model or None,
        )
        try:
            response = await self._transport.send(request)
        except LLMError as e:
            e.interaction_id = e.interaction_id or interaction.id
            e.details.setdefault("interaction_id", interaction.id)
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise LLMError(
                f"Model call failed: {e}",
                reason="transport_failed",
                model=interaction.model or self._transport.model,
                interaction_id=interaction.id,
            ) from e

        interaction.add_assistant_message(
            response.answer_content or [text_block("")],
            provider_usage=response.usage,
        )
        record = interaction.update_totals(response.usage, response.model or interaction.model)
        if record is not None:
            await self._audit(self._store.write_token_usage(interaction.id, record), "token usage")
        if interaction.collaboration_id:
            self._registry.record_usage(interaction.collaboration_id, response.usage)
        input_chars = sum(len(str(m["content"])) for m in messages)
        self.compactor.estimator.calibrate(input_chars, response.usage.input_tokens)
        return response

    def _system_prompt(self, interaction: Interaction) -> str:
        if interaction.base_system:
            return interaction.base_system
        return render_system_prompt(self._renderer, {
            "project_name": self._capabilities.project_name or "",
            "project_info": self._project_info,
            "tool_names": [d["name"] for d in self._dispatcher.tool_definitions(interaction.tool_names)],
        })

    async def _refresh_project_info(self) -> None:
        if self._capabilities.project_info is None:
            return
        try:
            self._project_info = await self._capabilities.project_info()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to refresh project info: %s", e)

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------

    async def _tool_loop(
        self,
        interaction: Interaction,
        response: ModelResponse,
        max_turns: int,
    ) -> tuple[ModelResponse, Termination]:
        cutoff = context_cutoff(self._transport.context_window, self._settings.context_cutoff_ratio)
        termination = Termination.MAX_TURNS
        turn = 0

        while turn < max_turns:
            if self.is_cancelled(interaction.id):
                logger.warning("Interaction %s: statement cancelled at turn %d", interaction.id, turn)
                termination = Termination.CANCELLED
                break
            is_last_turn = turn == max_turns - 1
            turn += 1
            try:
                tool_responses: list[str] = []
                if response.tools_used:
                    if response.answer:
                        await self._log(interaction, LogEntryType.ASSISTANT, response.answer,
                                        message_id=interaction.last_message_id)
                    for tool_use in response.tools_used:
                        name = tool_use.get("name", "")
                        try:
                            await self._status(interaction, ApiStatus.TOOL_HANDLING, tool_name=name)
                            await self._notifier.tool_handling(interaction.collaboration_id, interaction.id, name)
                            tool_responses.append(await self._handle_tool_use(interaction, tool_use))
                        except asyncio.CancelledError:
                            raise
                        except Exception as e:
                            logger.warning("Error handling tool %s: %s", name, e)
                            tool_responses.append(f"Error with {name}: {e}")

                logger.debug("Interaction %s: turn %d/%d handled all tools", interaction.id, turn, max_turns)

                turn_tokens = interaction.token_usage_turn.total_all_tokens
                if turn_tokens > cutoff:
                    await self.force_summary(interaction, cutoff, turn_tokens)
                    # Only reopen the loop if there was already feedback to relay
                    if tool_responses:
                        tool_responses.append(SUMMARY_NOTE)

                if not tool_responses:
                    termination = Termination.NATURAL
                    break

                await self._refresh_project_info()
                statement = (
                    "Tool results feedback:\n"
                    f"{self.format_objectives_and_stats(interaction, turn, max_turns)}\n"
                    + "\n".join(tool_responses)
                )
                await self._status(interaction, ApiStatus.LLM_PROCESSING)
                response = await self.relay_tool_result(interaction, statement)
                await self._status(interaction, ApiStatus.API_BUSY)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Interaction %s: error in turn %d: %s", interaction.id, turn, e)
                if is_last_turn:
                    raise
                message = f"Error occurred: {e}. Continuing conversation."
                handling = ResponseHandlingError(str(e), turn=turn, cause=error_info(e)["code"])
                await self._notifier.collaboration_error(
                    interaction.collaboration_id,
                    interaction.id,
                    str(handling.code),
                    handling.message,
                    stats=interaction.stats.model_dump(),
                    details=handling.details,
                )
                last = interaction.last_message
                if last is not None and last.role == "user":
                    interaction.add_assistant_message([text_block(message)])
                response = ModelResponse(answer_content=[text_block(message)])

        if termination is Termination.MAX_TURNS:
            logger.warning("Interaction %s: reached maximum number of turns (%d)", interaction.id, max_turns)
        return response, termination

    async def _handle_tool_use(self, interaction: Interaction, tool_use: dict[str, Any]) -> str:
        name = tool_use.get("name", "")
        await self._log(interaction, LogEntryType.TOOL_USE, tool_use.get("input", {}),
                        tool_name=name, message_id=interaction.last_message_id)
        try:
            outcome = await self._dispatcher.invoke(interaction, tool_use)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Tool %s raised: %s", name, e)
            outcome = ToolOutcome(result_text=str(e), is_error=True)

        message = interaction.add_tool_result(tool_use["id"], outcome.result_text, outcome.is_error)
        for resource in outcome.resources:
            uri = resource.get("uri")
            if not uri:
                continue
            modified = bool(resource.get("modified"))
            interaction.update_resource_access(uri, message.id, modified=modified)
            if modified:
                await self._audit(
                    self._store.log_change(interaction.id, uri, resource.get("change", "modified")),
                    "change log",
                )
        interaction.record_tool_outcome(name, not outcome.is_error)
        await self._log(interaction, LogEntryType.TOOL_RESULT, outcome.result_text,
                        tool_name=name, message_id=message.id)

        feedback = outcome.result_text
        if len(feedback) > _MAX_FEEDBACK_CHARS:
            feedback = feedback[:_MAX_FEEDBACK_CHARS] + "... (truncated, see tool result)"
        if outcome.is_error:
            return f"Error with {name}: {feedback}"
        return f"Tool {name} result: {feedback}"

    async def force_summary(self, interaction: Interaction, cutoff: int, turn_tokens: int) -> None:
        """Summarize the interaction history because a turn crossed ``cutoff`` tokens."""
        usage = interaction.token_usage_turn
        logger.warning(
            "Interaction %s: turn token limit (%d) exceeded. Current usage: %d "
            "(direct: %d, cache creation: %d, cache read: %d). Forcing conversation summary.",
            interaction.id, cutoff, turn_tokens, usage.total_tokens,
            usage.cache_creation_input_tokens, usage.cache_read_input_tokens,
        )
        await self._log(interaction, LogEntryType.AUXILIARY, {
            "message": (
                f"Automatically summarized the conversation due to turn token limit "
                f"({turn_tokens} tokens including cache operations > {cutoff})"
            ),
            "purpose": "Token Limit Enforcement",
        })
        budget = summary_budget(cutoff, self._settings.summary_keep_ratio, self._settings.summary_min_tokens)
        await self._status(interaction, ApiStatus.TOOL_HANDLING, tool_name=SUMMARY_TOOL_NAME)
        await self._notifier.tool_handling(interaction.collaboration_id, interaction.id, SUMMARY_TOOL_NAME)
        try:
            result = await self.compactor.force_summarize(interaction, budget, "long")
        except Exception:
            interaction.record_tool_outcome(SUMMARY_TOOL_NAME, False)
            raise
        interaction.record_tool_outcome(SUMMARY_TOOL_NAME, True)
        await self._log(interaction, LogEntryType.TOOL_RESULT, result.describe(), tool_name=SUMMARY_TOOL_NAME)

    @staticmethod
    def format_objectives_and_stats(interaction: Interaction, turn: int, max_turns: int) -> str:
        parts = [f"Turn {turn}/{max_turns}"]
        if interaction.objectives.conversation:
            parts.append(f"Conversation Goal: {interaction.objectives.conversation}")
        if interaction.objectives.current:
            parts.append(f"Current Objective: {interaction.objectives.current}")
        if interaction.tool_stats:
            usage = ", ".join(
                f"{name}({stats.count}: {stats.success}✓ {stats.failure}✗)"
                for name, stats in interaction.tool_stats.items()
            )
            parts.append(f"Tools Used: {usage}")
        if interaction.resources.accessed:
            parts.append(
                f"Resources: {len(interaction.resources.accessed)} accessed, "
                f"{len(interaction.resources.modified)} modified"
            )
        return "\n".join(parts)

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        interaction: Interaction,
        response: ModelResponse,
        termination: Termination,
    ) -> ConversationResponse:
        await self._store.save_interaction(interaction)
        logger.info(
            "Interaction %s: final save [%d][%d] (%s)",
            interaction.id, interaction.statement_count, interaction.statement_turn_count, termination,
        )

        answer = response.answer
        thinking = "\n".join(m.strip() for m in _THINKING_RE.findall(answer)).strip()
        result = self._response(interaction, answer=answer, thinking=thinking, termination=termination)
        await self._log(interaction, LogEntryType.ANSWER, answer, thinking=thinking or None,
                        message_id=interaction.last_message_id if interaction.messages else None)
        await self._notifier.collaboration_answer(
            interaction.collaboration_id, interaction.id, result.model_dump(mode="json"),
        )
        return result

    def _response(self, interaction: Interaction, **fields: Any) -> ConversationResponse:
        return ConversationResponse(
            interaction_id=interaction.id,
            collaboration_id=interaction.collaboration_id,
            title=interaction.title,
            stats=interaction.stats,
            token_usage_turn=interaction.token_usage_turn.model_copy(),
            token_usage_statement=interaction.token_usage_statement.model_copy(),
            token_usage_interaction=interaction.token_usage_interaction.model_copy(),
            **fields,
        )

    # ------------------------------------------------------------------
    # Status, logging
    # ------------------------------------------------------------------

    async def _status(self, interaction: Interaction, status: ApiStatus, **data: Any) -> None:
        sequence = self._sequence.get(interaction.id, 0) + 1
        self._sequence[interaction.id] = sequence
        await self._notifier.progress_status(
            interaction.collaboration_id, interaction.id, str(status), sequence, **data,
        )

    async def _log(self, interaction: Interaction, entry_type: LogEntryType, content: Any, **extra: Any) -> None:
        entry = LogEntry(
            entry_type=entry_type,
            content=content,
            stats=interaction.stats,
            token_usage_turn=interaction.token_usage_turn.model_copy(),
            token_usage_statement=interaction.token_usage_statement.model_copy(),
            token_usage_interaction=interaction.token_usage_interaction.model_copy(),
            **extra,
        )
        await self._audit(self._store.append_log_entry(interaction.id, entry), "log entry")
        if self._capabilities.on_log_entry is not None:
            await self._audit(self._capabilities.on_log_entry(interaction.id, entry), "log entry handler")
        if entry_type in (LogEntryType.ASSISTANT, LogEntryType.TOOL_USE, LogEntryType.TOOL_RESULT, LogEntryType.AUXILIARY):
            await self._notifier.collaboration_continue(
                interaction.collaboration_id, interaction.id, entry.model_dump(mode="json"),
            )

    @staticmethod
    async def _audit(write: Awaitable[None], what: str) -> None:
        """Await an audit write; failures are logged, never raised."""
        try:
            await write
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Failed to write %s", what, exc_info=True)

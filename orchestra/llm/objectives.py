"""Auxiliary model calls: conversation titles and objectives.

Each call is a single chat-style request without tools. Any failure is
raised as LLMError so the statement that needed it aborts cleanly.
"""

from __future__ import annotations

import logging

from orchestra.errors import LLMError
from orchestra.llm.prompts import PromptRenderer
from orchestra.llm.transport import ModelRequest, ModelTransport

logger = logging.getLogger(__name__)

_MAX_TITLE_CHARS = 80
_MAX_PREVIOUS_RESPONSE_CHARS = 2000


async def _ask(
    transport: ModelTransport,
    renderer: PromptRenderer,
    template: str,
    purpose: str,
    variables: dict,
    interaction_id: str | None,
) -> str:
    try:
        prompt = renderer.render(template, variables)
        response = await transport.send(ModelRequest(
            system="You are a concise assistant. Follow the instructions exactly.",
            messages=[{"role": "user", "content": prompt}],
            purpose=purpose,
        ))
    except LLMError as e:
        e.interaction_id = e.interaction_id or interaction_id
        e.details.setdefault("interaction_id", interaction_id)
        raise
    except Exception as e:
        raise LLMError(
            f"Failed to generate {purpose}: {e}",
            reason="auxiliary_failed",
            model=transport.model,
            interaction_id=interaction_id,
        ) from e
    text = response.answer.strip()
    if not text:
        raise LLMError(
            f"Model returned an empty {purpose}",
            reason="empty_response",
            model=response.model or transport.model,
            interaction_id=interaction_id,
        )
    return text


async def generate_title(
    transport: ModelTransport,
    renderer: PromptRenderer,
    statement: str,
    interaction_id: str | None = None,
) -> str:
    title = await _ask(transport, renderer, "title", "title", {"statement": statement}, interaction_id)
    title = title.splitlines()[0].strip().strip("\"'")
    return title[:_MAX_TITLE_CHARS]


async def generate_conversation_objective(
    transport: ModelTransport,
    renderer: PromptRenderer,
    statement: str,
    interaction_id: str | None = None,
) -> str:
    return await _ask(
        transport, renderer, "conversation_objective", "objective",
        {"statement": statement}, interaction_id,
    )


async def generate_statement_objective(
    transport: ModelTransport,
    renderer: PromptRenderer,
    statement: str,
    conversation_objective: str,
    previous_response: str | None = None,
    previous_objective: str | None = None,
    interaction_id: str | None = None,
) -> str:
    variables = {
        "statement": statement,
        "conversation_objective": conversation_objective,
        "previous_response": (previous_response or "")[:_MAX_PREVIOUS_RESPONSE_CHARS],
        "previous_objective": previous_objective or "",
    }
    return await _ask(transport, renderer, "statement_objective", "objective", variables, interaction_id)

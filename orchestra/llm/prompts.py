"""Prompt templates and the sandboxed jinja2 renderer.

Templates are co-located here so the engines only ever ask for a
template by name. Rendering uses a sandboxed environment with strict
undefined variables: a missing variable is a render failure, not an
empty string.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from jinja2 import DictLoader, StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

FALLBACK_SYSTEM_PROMPT = (
    "You are an AI assistant helping with a software project. "
    "Use the available tools when they help, and answer concisely."
)

SYSTEM_TEMPLATE = """\
You are an AI assistant helping with {{ project_name or "a software project" }}.
{% if project_info %}
## Project
{{ project_info }}
{% endif %}
{% if tool_names %}
## Tools
You can use these tools: {{ tool_names | join(", ") }}.
Use tools when they help; results are relayed back to you as "Tool results feedback".
{% endif %}
Think through non-trivial steps inside <thinking></thinking> tags before answering.
"""

AGENT_SYSTEM_TEMPLATE = """\
You are a sub-agent working on a delegated task. Your manager is another AI
orchestrator, not a human: be precise and report results in the requested shape.

## Task
{{ title }}
{% if background %}
## Background
{{ background }}
{% endif %}
{% if tool_names %}
## Tools
You can use these tools: {{ tool_names | join(", ") }}.
{% endif %}
When the task is complete, answer with the result only.
"""

TITLE_TEMPLATE = """\
Create a very short title (max 5 words) for a conversation that starts with
the following request. Reply with the title only.

{{ statement }}
"""

CONVERSATION_OBJECTIVE_TEMPLATE = """\
State the overall goal of a conversation that starts with the request below
in one or two sentences. Reply with the goal only.

{{ statement }}
"""

STATEMENT_OBJECTIVE_TEMPLATE = """\
Conversation goal: {{ conversation_objective }}
{% if previous_objective %}Previous objective: {{ previous_objective }}
{% endif %}{% if previous_response %}Assistant's last response: {{ previous_response }}
{% endif %}
New request: {{ statement }}

State the objective of the new request in one sentence. Reply with the objective only.
"""

SUMMARY_TEMPLATE = """\
You are a conversation summarizer. Output ONLY a structured summary.
TARGET LENGTH: {{ target_words }} words. Prioritize precision over completeness.

## Format

## Goal
[1-2 sentences]

## Progress
### Done
- [x] [Completed items]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Critical Context
- [File paths, error messages, API endpoints, variable names]
{% if existing_summary %}
PRESERVE the information of this existing summary unless superseded:

{{ existing_summary }}
{% endif %}"""

BUILTIN_TEMPLATES: dict[str, str] = {
    "system": SYSTEM_TEMPLATE,
    "agent_system": AGENT_SYSTEM_TEMPLATE,
    "title": TITLE_TEMPLATE,
    "conversation_objective": CONVERSATION_OBJECTIVE_TEMPLATE,
    "statement_objective": STATEMENT_OBJECTIVE_TEMPLATE,
    "summary": SUMMARY_TEMPLATE,
}

SUMMARY_TARGET_WORDS = {"short": "150-300", "medium": "400-700", "long": "800-1200"}


class PromptRenderer(Protocol):
    def render(self, name: str, variables: dict[str, Any]) -> str: ...


class JinjaPromptRenderer:
    """Renders named templates in a jinja2 sandbox.

    Extra templates override the built-in ones by name.
    """

    def __init__(self, templates: dict[str, str] | None = None) -> None:
        self._env = SandboxedEnvironment(
            loader=DictLoader({**BUILTIN_TEMPLATES, **(templates or {})}),
            undefined=StrictUndefined,
            trim_blocks=True,
        )

    def render(self, name: str, variables: dict[str, Any]) -> str:
        return self._env.get_template(name).render(**variables).strip()


def render_system_prompt(renderer: PromptRenderer, variables: dict[str, Any]) -> str:
    """Render the top-level system prompt, falling back to a fixed instruction."""
    try:
        return renderer.render("system", variables)
    except (TemplateError, LookupError, TypeError, ValueError) as e:
        logger.error("System prompt render failed, using fallback: %s", e)
        return FALLBACK_SYSTEM_PROMPT

"""Forced conversation summary: keep a recent tail, summarize the rest.

The turn engine calls force_summarize() directly when a turn crosses the
context-window cutoff; the collaboration_summary tool calls the same
operation for user-requested summaries. Both derive their token budget
from summary_budget().

Summaries are validated for structure. Any summarization failure falls
back to plain truncation so the history always shrinks.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any

from orchestra.interactions.interaction import Interaction, Message, text_block
from orchestra.llm.prompts import SUMMARY_TARGET_WORDS, PromptRenderer
from orchestra.llm.transport import ModelRequest, ModelTransport

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"
TRUNCATION_NOTICE = "[Earlier conversation was truncated to stay within the context window]"
SUMMARY_ACK = "I have the context. Let's continue."

SUMMARY_LENGTHS = tuple(SUMMARY_TARGET_WORDS)
MIN_TOKENS_TO_KEEP = 1000

# Section patterns for validation (case-insensitive, flexible)
_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]
_MIN_SUMMARY_CHARS = 200
_MAX_SUMMARY_CHARS = 8000


def context_cutoff(context_window: int, ratio: float = 0.95) -> int:
    """Turn-token ceiling that triggers a forced summary."""
    return math.floor(context_window * ratio)


def summary_budget(cutoff: int, keep_ratio: float = 0.75, minimum: int = MIN_TOKENS_TO_KEEP) -> int:
    """Tokens of recent history to keep when summarizing under ``cutoff``."""
    target = math.floor(cutoff * keep_ratio)
    if target < minimum:
        logger.warning(
            "Token cutoff %d is very low, keeping the minimum of %d tokens",
            cutoff, minimum,
        )
    return max(minimum, target)


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with chars/4 heuristic. Improves via calibrate() after each
    API response using actual input_tokens from usage data.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char (chars/4 default)
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Message) -> int:
        return self.estimate(message_text(message)) + 4

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


def message_text(message: Message) -> str:
    """Readable text of every block in a message, tool traffic included."""
    parts: list[str] = []
    for block in message.content:
        kind = block.get("type")
        if kind == "text":
            parts.append(block.get("text", ""))
        elif kind == "tool_use":
            parts.append(f"[tool_use {block.get('name')}: {json.dumps(block.get('input', {}), default=str)}]")
        elif kind == "tool_result":
            inner = block.get("content", [])
            text = inner if isinstance(inner, str) else "\n".join(
                b.get("text", "") for b in inner if isinstance(b, dict)
            )
            parts.append(f"[tool_result: {text}]")
        elif kind == "image":
            parts.append("[image]")
    return "\n".join(parts)


@dataclass
class SummaryResult:
    summarized: bool
    fallback: bool = False
    summary: str = ""
    summary_length: str = "long"
    max_tokens_to_keep: int = 0
    messages_before: int = 0
    messages_after: int = 0
    kept_tokens: int = 0
    dropped_resources: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def describe(self) -> str:
        if not self.summarized:
            return (
                f"Conversation already fits in {self.max_tokens_to_keep} tokens; "
                "nothing was summarized."
            )
        how = "truncated" if self.fallback else "summarized"
        return (
            f"Conversation {how}: {self.messages_before} messages -> {self.messages_after} "
            f"(kept ~{self.kept_tokens} tokens, {len(self.dropped_resources)} resources released)."
        )


class ConversationCompactor:
    """Summarizes and truncates interaction history.

    Owns a TokenEstimator instance. The turn engine calibrates it via
    compactor.estimator after API responses.
    """

    def __init__(self, transport: ModelTransport, renderer: PromptRenderer) -> None:
        self._transport = transport
        self._renderer = renderer
        self.estimator = TokenEstimator()

    def find_cut_point(self, messages: list[Message], max_tokens_to_keep: int) -> int:
        """Index of the first kept message, 0 if everything fits.

        The kept tail never starts with a tool-result message and always
        includes the latest assistant message, so pending tool results
        keep their tool_use.
        """
        accumulated = 0
        cut = 0
        for i in range(len(messages) - 1, -1, -1):
            accumulated += self.estimator.estimate_message(messages[i])
            if accumulated > max_tokens_to_keep:
                cut = i + 1
                break
        if cut == 0:
            return 0

        last_assistant = max(
            (i for i, m in enumerate(messages) if m.role == "assistant"),
            default=len(messages) - 1,
        )
        cut = min(cut, last_assistant)
        while cut < last_assistant and messages[cut].is_tool_result:
            cut += 1
        return cut

    async def force_summarize(
        self,
        interaction: Interaction,
        max_tokens_to_keep: int,
        summary_length: str = "long",
    ) -> SummaryResult:
        """Replace old history with a summary, keeping ~max_tokens_to_keep of recent messages."""
        if summary_length not in SUMMARY_LENGTHS:
            raise ValueError(f"summary_length must be one of {SUMMARY_LENGTHS}, got {summary_length!r}")
        if max_tokens_to_keep < MIN_TOKENS_TO_KEEP:
            raise ValueError(f"max_tokens_to_keep must be >= {MIN_TOKENS_TO_KEEP}")

        messages = interaction.messages
        result = SummaryResult(
            summarized=False,
            summary_length=summary_length,
            max_tokens_to_keep=max_tokens_to_keep,
            messages_before=len(messages),
            messages_after=len(messages),
        )
        cut = self.find_cut_point(messages, max_tokens_to_keep)
        if cut <= 0:
            logger.info("Interaction %s fits in %d tokens, no summary needed", interaction.id, max_tokens_to_keep)
            return result

        start_time = time.monotonic()
        dropped = messages[:cut]
        tail = messages[cut:]

        existing_summary = None
        if dropped and dropped[0].text.startswith(SUMMARY_PREFIX):
            existing_summary = dropped[0].text[len(SUMMARY_PREFIX):].strip()
            dropped = dropped[2:] if len(dropped) > 1 and dropped[1].role == "assistant" else dropped[1:]

        try:
            summary = await self._summarize(dropped, existing_summary, summary_length)
            if not self._validate_summary(summary):
                raise ValueError("Summary failed validation")
            prefix_text = f"{SUMMARY_PREFIX}\n\n{summary}"
        except Exception as e:
            logger.error("Summary failed for interaction %s: %s - falling back to truncation", interaction.id, e)
            summary = ""
            result.fallback = True
            prefix_text = TRUNCATION_NOTICE

        prefix = [Message(role="user", content=[text_block(prefix_text)], stats=interaction.stats)]
        if tail and tail[0].role == "user":
            prefix.append(Message(role="assistant", content=[text_block(SUMMARY_ACK)], stats=interaction.stats))

        interaction.set_messages(prefix + tail)
        result.dropped_resources = interaction.prune_active_resources({m.id for m in interaction.messages})
        result.summarized = True
        result.summary = summary
        result.messages_after = len(interaction.messages)
        result.kept_tokens = sum(self.estimator.estimate_message(m) for m in tail)
        result.duration_ms = int((time.monotonic() - start_time) * 1000)

        logger.info(
            "Summarized interaction %s: %d messages -> %d (%s, %d resources released, %d ms)",
            interaction.id,
            result.messages_before,
            result.messages_after,
            "truncation" if result.fallback else f"{len(summary)} chars",
            len(result.dropped_resources),
            result.duration_ms,
        )
        return result

    async def _summarize(self, dropped: list[Message], existing_summary: str | None, summary_length: str) -> str:
        system = self._renderer.render("summary", {
            "target_words": SUMMARY_TARGET_WORDS[summary_length],
            "existing_summary": existing_summary or "",
        })
        response = await self._transport.send(ModelRequest(
            system=system,
            messages=[{"role": "user", "content": self._serialize_for_summary(dropped)}],
            purpose="summary",
        ))
        return response.answer.strip()

    def _validate_summary(self, summary: str) -> bool:
        """Basic format + length check. Wrong summaries are discarded, never repaired."""
        if len(summary) < _MIN_SUMMARY_CHARS:
            logger.warning("Summary too short (%d chars)", len(summary))
            return False
        if len(summary) > _MAX_SUMMARY_CHARS:
            logger.warning("Summary exceeds %d chars (%d) - accepting with warning", _MAX_SUMMARY_CHARS, len(summary))
        found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
        if found < 2:
            logger.warning("Summary missing sections (%d/3)", found)
            return False
        return True

    @staticmethod
    def _serialize_for_summary(messages: list[Message]) -> str:
        lines = []
        for msg in messages:
            role = "User" if msg.role == "user" else "Assistant"
            lines.append(f"**{role}:** {message_text(msg)}")
        return "\n\n".join(lines)

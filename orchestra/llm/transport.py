"""Model transport: the narrow interface the engines call the LLM through.

AnthropicTransport speaks the Anthropic Messages API over httpx with a
single retry for 429/500/529 and timeouts. Failures surface as LLMError
with a machine-readable ``reason``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from dateutil import parser as dateutil_parser
import httpx

from orchestra.config import Settings
from orchestra.errors import LLMError
from orchestra.interactions.interaction import extract_text
from orchestra.interactions.schemas import TokenUsage

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

DEFAULT_CONTEXT_WINDOW = 200_000

# Context window per model family, matched by prefix
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "claude-opus-4": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-haiku-4": 200_000,
    "claude-3-7-sonnet": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-5-haiku": 200_000,
    "claude-3-haiku": 200_000,
}

_RETRY_STATUSES = (429, 500, 529)


def retry_delay(header: str | None, default: float = 1.0, cap: float = 30.0) -> float:
    """Seconds to wait from a retry-after header (delta-seconds or HTTP-date)."""
    if not header:
        return default
    try:
        delay = float(header)
    except ValueError:
        try:
            when = dateutil_parser.parse(header)
        except (OverflowError, ValueError):
            return default
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        delay = (when - datetime.now(UTC)).total_seconds()
    return min(max(delay, 0.0), cap)


def context_window_for(model: str, override: int = 0) -> int:
    if override > 0:
        return override
    for prefix, window in MODEL_CONTEXT_WINDOWS.items():
        if model.startswith(prefix):
            return window
    return DEFAULT_CONTEXT_WINDOW


@dataclass
class ModelRequest:
    """One call to the model."""

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    # "statement", "title", "objective", "summary"
    purpose: str = "statement"
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class ModelResponse:
    """Parsed model answer."""

    answer_content: list[dict[str, Any]]
    stop_reason: str = "end_turn"  # end_turn, max_tokens, tool_use, stop_sequence
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""

    @property
    def answer(self) -> str:
        return extract_text(self.answer_content)

    @property
    def tools_used(self) -> list[dict[str, Any]]:
        return [b for b in self.answer_content if b.get("type") == "tool_use"]


class ModelTransport(Protocol):
    """Anything that can answer a ModelRequest."""

    model: str
    context_window: int

    async def send(self, request: ModelRequest) -> ModelResponse: ...


class AnthropicTransport:
    """Direct httpx client for the Anthropic Messages API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self.model = settings.model
        self.context_window = context_window_for(settings.model, settings.context_window)
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=self._auth_headers(settings),
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        auth_type = "Bearer token" if settings.anthropic_auth_token else "API key"
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    @staticmethod
    def _auth_headers(settings: Settings) -> dict[str, str]:
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )
        return headers

    def _build_payload(self, request: ModelRequest) -> dict[str, Any]:
        auxiliary = request.purpose != "statement"
        payload: dict[str, Any] = {
            "model": request.model or (self._settings.auxiliary_model if auxiliary else self.model),
            "max_tokens": request.max_tokens
            or (self._settings.auxiliary_max_tokens if auxiliary else self._settings.max_tokens),
            "system": request.system,
            "messages": request.messages,
            "temperature": request.temperature if request.temperature is not None else self._settings.temperature,
        }
        if request.tools:
            payload["tools"] = request.tools
        return payload

    async def send(self, request: ModelRequest) -> ModelResponse:
        """Call the Messages API, retrying once for 429/500/529 and timeouts."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(request)
        model = payload["model"]
        last_error: LLMError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    data = response.json()
                    return ModelResponse(
                        answer_content=data.get("content", []),
                        stop_reason=data.get("stop_reason") or "end_turn",
                        usage=TokenUsage.from_provider(data.get("usage")),
                        model=data.get("model", model),
                    )

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = retry_delay(response.headers.get("retry-after"))
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = LLMError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                    reason=_classify(response.status_code, error_type),
                    retries=attempt,
                    model=model,
                )
                break

            except httpx.TimeoutException as e:
                last_error = LLMError(f"API request timed out: {e}", reason="timeout", retries=attempt, model=model)
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = LLMError(f"HTTP error: {e}", reason="http_error", retries=attempt, model=model)
                break  # Don't retry connection errors

        raise last_error or LLMError("API call failed with unknown error", model=model)


def _classify(status_code: int, error_type: str) -> str:
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server_error"
    if error_type == "invalid_request_error":
        return "invalid_request"
    return "api_error"

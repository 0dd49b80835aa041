"""Error taxonomy for the orchestration core.

Every error carries a machine-readable code so terminal failures can be
reported as structured answers (``to_info()``) instead of bare faults.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    EMPTY_PROMPT = "EMPTY_PROMPT"
    LLM_ERROR = "LLM_ERROR"
    TOOL_ERROR = "TOOL_ERROR"
    RESPONSE_HANDLING = "RESPONSE_HANDLING"
    NOT_FOUND = "NOT_FOUND"
    THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"


class OrchestraError(Exception):
    """Base class for all classified orchestration errors."""

    code: ErrorCode = ErrorCode.RESPONSE_HANDLING

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_info(self) -> dict[str, Any]:
        return {"code": str(self.code), "message": self.message, "details": dict(self.details)}


class EmptyPromptError(OrchestraError):
    code = ErrorCode.EMPTY_PROMPT


class LLMError(OrchestraError):
    """Provider or transport failure, classified by ``reason``."""

    code = ErrorCode.LLM_ERROR

    def __init__(
        self,
        message: str,
        *,
        reason: str = "api_error",
        retries: int | None = None,
        model: str | None = None,
        interaction_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            reason=reason,
            retries=retries,
            model=model,
            interaction_id=interaction_id,
        )
        self.reason = reason
        self.retries = retries
        self.model = model
        self.interaction_id = interaction_id


class ToolError(OrchestraError):
    code = ErrorCode.TOOL_ERROR

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message, tool_name=tool_name)
        self.tool_name = tool_name


class ResponseHandlingError(OrchestraError):
    code = ErrorCode.RESPONSE_HANDLING


class NotFoundError(OrchestraError, LookupError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}", kind=kind, id=identifier)
        self.kind = kind
        self.identifier = identifier


class ThresholdExceededError(OrchestraError):
    code = ErrorCode.THRESHOLD_EXCEEDED


class MaxRetriesExceededError(OrchestraError):
    code = ErrorCode.MAX_RETRIES_EXCEEDED


def error_info(error: BaseException) -> dict[str, Any]:
    """Structured description of any exception, classified or not."""
    if isinstance(error, OrchestraError):
        return error.to_info()
    return {
        "code": str(ErrorCode.RESPONSE_HANDLING),
        "message": str(error) or type(error).__name__,
        "details": {"type": type(error).__name__},
    }

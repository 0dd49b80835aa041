"""Pydantic DTOs for delegated tasks and their outcomes."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionMode(StrEnum):
    SYNC = "sync"
    ASYNC = "async"


class Task(BaseModel):
    """A unit of delegated work."""

    title: str
    background: str | None = None
    instructions: str | None = None
    # Expected output shape: prose or a JSON schema
    requirements: str | dict[str, Any] | None = None
    capabilities: list[str] = Field(default_factory=list)

    def statement(self) -> str:
        """Statement text sent to the agent interaction."""
        parts = [(self.instructions or "").strip()]
        if self.requirements:
            if isinstance(self.requirements, dict):
                shape = json.dumps(self.requirements, indent=2)
                parts.append(f"Requirements (respond with JSON matching this schema):\n{shape}")
            else:
                parts.append(f"Requirements:\n{self.requirements}")
        return "\n\n".join(parts)


class CompletedTask(BaseModel):
    title: str
    status: str  # "completed" or "failed"
    result: str | None = None
    error: str | None = None
    error_code: str | None = None
    interaction_id: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

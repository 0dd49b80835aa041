"""Pydantic DTOs for collaborations and registry statistics."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from orchestra.interactions.schemas import TokenUsage, utcnow


class CollaborationType(StrEnum):
    PROJECT = "project"
    WORKFLOW = "workflow"
    RESEARCH = "research"


class RoleModelConfig(BaseModel):
    """Model settings for one interaction role."""

    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


class CollaborationParams(BaseModel):
    orchestrator: RoleModelConfig = Field(default_factory=RoleModelConfig)
    agent: RoleModelConfig = Field(default_factory=RoleModelConfig)
    chat: RoleModelConfig = Field(default_factory=RoleModelConfig)


class CollaborationValues(BaseModel):
    """Serialized collaboration (no loaded interactions)."""

    id: str
    title: str = "New Collaboration"
    type: CollaborationType = CollaborationType.PROJECT
    params: CollaborationParams = Field(default_factory=CollaborationParams)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    interaction_ids: list[str] = Field(default_factory=list)
    total_interactions: int = 0
    last_interaction_id: str | None = None
    last_interaction_metadata: dict[str, Any] = Field(default_factory=dict)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class CollaborationSummary(BaseModel):
    id: str
    title: str
    type: CollaborationType
    total_interactions: int
    loaded_interactions: int
    last_interaction_id: str | None = None
    token_usage: TokenUsage
    created_at: datetime
    updated_at: datetime


class RegistryStats(BaseModel):
    total_collaborations: int = 0
    total_interactions: int = 0
    total_loaded_interactions: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)

"""Interaction persistence."""

from orchestra.storage.database import Database
from orchestra.storage.persistence import InteractionStore, MemoryInteractionStore
from orchestra.storage.sql_store import DatabaseInteractionStore

__all__ = ["Database", "DatabaseInteractionStore", "InteractionStore", "MemoryInteractionStore"]

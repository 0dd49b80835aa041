"""InteractionStore backed by the async SQLAlchemy Database."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import delete, select

from orchestra.interactions.interaction import Interaction
from orchestra.interactions.schemas import InteractionSnapshot, LogEntry, TokenUsageRecord
from orchestra.storage.database import Database
from orchestra.storage.models import ChangeLogRow, InteractionLogRecord, InteractionRecord, TokenUsageRow

logger = logging.getLogger(__name__)


class DatabaseInteractionStore:
    """Stores snapshots in ``interactions`` and audit rows in the log tables."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def load_interaction(self, interaction_id: str) -> Interaction | None:
        async with self._db.session() as session:
            row = await session.get(InteractionRecord, interaction_id)
            if row is None:
                return None
            return Interaction.from_snapshot(InteractionSnapshot.model_validate(row.snapshot))

    async def save_interaction(self, interaction: Interaction) -> None:
        snapshot = interaction.snapshot().model_dump(mode="json")
        async with self._db.session() as session:
            row = await session.get(InteractionRecord, interaction.id)
            if row is None:
                row = InteractionRecord(id=interaction.id, created_at=interaction.created_at)
                session.add(row)
            row.parent_id = interaction.parent_id
            row.collaboration_id = interaction.collaboration_id
            row.title = interaction.title
            row.interaction_type = str(interaction.interaction_type)
            row.snapshot = snapshot
            row.updated_at = datetime.now(UTC)
            await session.commit()
        logger.debug("Saved interaction %s (%d messages)", interaction.id, len(interaction.messages))

    async def delete_interaction(self, interaction_id: str) -> None:
        async with self._db.session() as session:
            for model in (InteractionLogRecord, TokenUsageRow, ChangeLogRow):
                await session.execute(delete(model).where(model.interaction_id == interaction_id))
            await session.execute(delete(InteractionRecord).where(InteractionRecord.id == interaction_id))
            await session.commit()

    async def append_log_entry(self, interaction_id: str, entry: LogEntry) -> None:
        async with self._db.session() as session:
            session.add(InteractionLogRecord(
                interaction_id=interaction_id,
                entry_type=str(entry.entry_type),
                entry=entry.model_dump(mode="json"),
            ))
            await session.commit()

    async def write_token_usage(self, interaction_id: str, record: TokenUsageRecord) -> None:
        async with self._db.session() as session:
            session.add(TokenUsageRow(
                interaction_id=interaction_id,
                message_id=record.message_id,
                role=record.role,
                model=record.model,
                statement_count=record.statement_count,
                statement_turn_count=record.statement_turn_count,
                record=record.model_dump(mode="json"),
            ))
            await session.commit()

    async def log_change(self, interaction_id: str, path: str, change: str) -> None:
        async with self._db.session() as session:
            session.add(ChangeLogRow(interaction_id=interaction_id, path=path, change=change))
            await session.commit()

    async def list_log_entries(self, interaction_id: str) -> list[LogEntry]:
        async with self._db.session() as session:
            result = await session.execute(
                select(InteractionLogRecord.entry)
                .where(InteractionLogRecord.interaction_id == interaction_id)
                .order_by(InteractionLogRecord.id)
            )
            return [LogEntry.model_validate(entry) for entry in result.scalars()]

    async def list_token_usage(self, interaction_id: str) -> list[TokenUsageRecord]:
        async with self._db.session() as session:
            result = await session.execute(
                select(TokenUsageRow.record)
                .where(TokenUsageRow.interaction_id == interaction_id)
                .order_by(TokenUsageRow.id)
            )
            return [TokenUsageRecord.model_validate(r) for r in result.scalars()]

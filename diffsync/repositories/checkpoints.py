from __future__ import annotations

import asyncio
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diffsync.models import MigrationCheckpoint

log = structlog.get_logger(__name__)


class CheckpointStore:
    """Durable cursor per (session, entity).

    Callers commit only after a batch is fully applied, so a crashed run
    restarts from the last whole batch and re-applies the partial one.
    Writers for the same key are serialized through a per-key lock.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock(self, session_id: str, entity_type: str) -> asyncio.Lock:
        return self._locks.setdefault((session_id, entity_type), asyncio.Lock())

    async def get_checkpoint(self, session_id: str, entity_type: str) -> Optional[MigrationCheckpoint]:
        async with self.sessionmaker() as db:
            return (
                await db.execute(
                    select(MigrationCheckpoint).where(
                        MigrationCheckpoint.session_id == session_id,
                        MigrationCheckpoint.entity_type == entity_type,
                    )
                )
            ).scalar_one_or_none()

    async def get(self, session_id: str, entity_type: str) -> Optional[str]:
        row = await self.get_checkpoint(session_id, entity_type)
        return row.last_processed_cursor if row else None

    async def commit(
        self,
        session_id: str,
        entity_type: str,
        cursor: str,
        status: str = "in_progress",
    ) -> None:
        async with self._lock(session_id, entity_type):
            async with self.sessionmaker() as db:
                row = (
                    await db.execute(
                        select(MigrationCheckpoint).where(
                            MigrationCheckpoint.session_id == session_id,
                            MigrationCheckpoint.entity_type == entity_type,
                        )
                    )
                ).scalar_one_or_none()
                if row is None:
                    db.add(
                        MigrationCheckpoint(
                            session_id=session_id,
                            entity_type=entity_type,
                            last_processed_cursor=cursor,
                            status=status,
                        )
                    )
                else:
                    row.last_processed_cursor = cursor
                    row.status = status
                await db.commit()
        log.info("checkpoint.committed", session_id=session_id, entity=entity_type, status=status)

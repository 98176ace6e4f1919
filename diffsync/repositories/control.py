from __future__ import annotations
from datetime import datetime
from typing import Any, List
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from diffsync.models import MigrationControl


class ControlRepository:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.sessionmaker = sessionmaker

    async def record_batch(
        self,
        session_id: str,
        entity_type: str,
        batch_number: int,
        status: str,
        started_at: datetime,
        completed_at: datetime,
        records_processed: int = 0,
        records_failed: int = 0,
        error_message: str | None = None,
        error_details: Any = None,
    ) -> None:
        async with self.sessionmaker() as db:
            db.add(
                MigrationControl(
                    session_id=session_id,
                    entity_type=entity_type,
                    batch_number=batch_number,
                    status=status,
                    records_processed=records_processed,
                    records_failed=records_failed,
                    error_message=error_message,
                    error_details=error_details,
                    started_at=started_at,
                    completed_at=completed_at,
                )
            )
            await db.commit()

    async def batches(self, session_id: str, entity_type: str | None = None) -> List[MigrationControl]:
        query = select(MigrationControl).where(MigrationControl.session_id == session_id)
        if entity_type:
            query = query.where(MigrationControl.entity_type == entity_type)
        async with self.sessionmaker() as db:
            rows = await db.execute(query.order_by(MigrationControl.batch_number))
            return list(rows.scalars().all())

    async def last_batch_number(self, session_id: str, entity_type: str) -> int:
        query = select(func.max(MigrationControl.batch_number)).where(
            MigrationControl.session_id == session_id,
            MigrationControl.entity_type == entity_type,
        )
        async with self.sessionmaker() as db:
            return (await db.execute(query)).scalar() or 0

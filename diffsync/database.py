from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
import structlog
from diffsync.config import Settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


@dataclass
class Databases:
    """Engines for both sides of the migration.

    Built once per process in the app lifespan and handed to whatever needs
    them; nothing in the package opens a connection at import time.
    The destination engine also hosts the control, log and checkpoint tables.
    """
    source: AsyncEngine
    destination: AsyncEngine
    sessionmaker: async_sessionmaker[AsyncSession]

    async def dispose(self) -> None:
        await self.source.dispose()
        if self.destination is not self.source:
            await self.destination.dispose()
        log.info("database.closed")


def _engine(url: str, settings: Settings) -> AsyncEngine:
    kwargs = {"pool_pre_ping": True, "echo": False}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=3600,
        )
    return create_async_engine(url, **kwargs)


def open_databases(settings: Settings) -> Databases:
    source = _engine(settings.SOURCE_DATABASE_URL, settings)
    destination = (
        source
        if settings.DESTINATION_DATABASE_URL == settings.SOURCE_DATABASE_URL
        else _engine(settings.DESTINATION_DATABASE_URL, settings)
    )
    return Databases(
        source=source,
        destination=destination,
        sessionmaker=async_sessionmaker(
            bind=destination,
            class_=AsyncSession,
            expire_on_commit=False,
        ),
    )


async def init_db(databases: Databases) -> None:
    # Importing registers the tables on Base.metadata.
    import diffsync.models  # noqa: F401

    async with databases.destination.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.initialized")


def get_databases(request: Request) -> Databases:
    return request.app.state.databases

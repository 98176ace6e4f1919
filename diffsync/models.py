from sqlalchemy import (
    Column, Integer, String, JSON,
    DateTime, Index, UniqueConstraint, func, Text,
)
from diffsync.database import Base


class MigrationControl(Base):
    """One row per processed batch of a synchronization run."""
    __tablename__ = "migration_control"

    id                = Column(Integer, primary_key=True)
    session_id        = Column(String(36), nullable=False)
    entity_type       = Column(String(100), nullable=False)
    batch_number      = Column(Integer, nullable=False, default=0)
    status            = Column(String(20), nullable=False)     # running | completed | failed
    records_processed = Column(Integer, default=0)
    records_failed    = Column(Integer, default=0)
    error_message     = Column(Text, nullable=True)
    error_details     = Column(JSON, nullable=True)
    started_at        = Column(DateTime(timezone=True), nullable=True)
    completed_at      = Column(DateTime(timezone=True), nullable=True)
    created_at        = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_control_session", "session_id"),
        Index("ix_control_created", "created_at"),
    )


class MigrationExecutionLog(Base):
    __tablename__ = "migration_execution_logs"

    id          = Column(String(36), primary_key=True)
    session_id  = Column(String(36), nullable=False)
    timestamp   = Column(DateTime(timezone=True), nullable=False)
    level       = Column(String(10), nullable=False, default="info")
    entity_type = Column(String(100), nullable=True)
    batch_number = Column(Integer, nullable=True)
    message     = Column(Text, nullable=False)
    details     = Column(JSON, nullable=True)
    performance = Column(JSON, nullable=True)
    context     = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_exec_log_session", "session_id"),
        Index("ix_exec_log_timestamp", "timestamp"),
    )


class MigrationCheckpoint(Base):
    __tablename__ = "migration_checkpoints"

    id           = Column(Integer, primary_key=True)
    session_id   = Column(String(36), nullable=False)
    entity_type  = Column(String(100), nullable=False)
    last_processed_cursor = Column(Text, nullable=True)
    status       = Column(String(20), nullable=False, default="in_progress")
    updated_at   = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("session_id", "entity_type", name="uq_checkpoint_session_entity"),
    )

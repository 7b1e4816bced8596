"""Sync run model for tracking full sync executions."""

from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func

from fieldsync.database import Base


class SyncRun(Base):
    """Full sync execution history and status tracking."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)

    # Execution details
    trigger_type = Column(String(50), nullable=False, default='manual')  # 'scheduled', 'manual', 'push', 'fast_push', 'online'
    correlation_id = Column(String(64), nullable=True, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(50), nullable=False)  # 'running', 'completed', 'partial', 'failed'

    # Statistics
    entities_synced = Column(Integer, default=0, nullable=False)
    entities_failed = Column(Integer, default=0, nullable=False)
    items_pulled = Column(Integer, default=0, nullable=False)
    mutations_pushed = Column(Integer, default=0, nullable=False)
    mutations_failed = Column(Integer, default=0, nullable=False)

    # Error information
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<SyncRun(id={self.id}, trigger='{self.trigger_type}', status='{self.status}', pulled={self.items_pulled})>"

"""Per-entity sync bookkeeping (delta cursor and last successful pull)."""

from sqlalchemy import Column, DateTime, String

from fieldsync.database import Base


class SyncMeta(Base):
    __tablename__ = "sync_meta"

    entity = Column(String(100), primary_key=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_cursor = Column(String(255), nullable=True)
    sync_status = Column(String(50), nullable=False, default="idle")  # 'idle', 'syncing', 'error'

    def __repr__(self):
        return f"<SyncMeta(entity='{self.entity}', last_sync_at={self.last_sync_at}, status='{self.sync_status}')>"

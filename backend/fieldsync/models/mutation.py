"""Mutation queue model: the durable log of local writes awaiting upload."""

import enum

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.sql import func

from fieldsync.database import Base
from fieldsync.utils.timers import utcnow


class MutationOperation(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MutationState(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# States whose local edit has not been acknowledged by the server yet
UNSYNCED_STATES = (MutationState.PENDING, MutationState.PROCESSING, MutationState.FAILED)


class Mutation(Base):
    """A single local create/update/delete waiting to be pushed."""

    __tablename__ = "mutations_queue"
    __table_args__ = (
        Index("ix_mutations_queue_status_entity", "status", "entity"),
    )

    # Autoincrement id doubles as insertion order
    id = Column(Integer, primary_key=True, autoincrement=True)

    entity = Column(String(100), nullable=False, index=True)
    entity_id = Column(String(255), nullable=False, index=True)
    operation = Column(Enum(MutationOperation), nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(MutationState), nullable=False, default=MutationState.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<Mutation(id={self.id}, {self.entity}:{self.entity_id}, "
            f"op='{self.operation}', status='{self.status}', attempts={self.attempts})>"
        )

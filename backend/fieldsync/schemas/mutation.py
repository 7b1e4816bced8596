from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.models.mutation import MutationOperation, MutationState


class MutationEventType(str, Enum):
    MUTATION_ADDED = "mutation_added"
    MUTATION_COMPLETED = "mutation_completed"
    MUTATION_FAILED = "mutation_failed"
    MUTATION_REMOVED = "mutation_removed"
    MUTATIONS_RESET = "mutations_reset"
    MUTATIONS_CLEANUP = "mutations_cleanup"


class MutationEvent(BaseModel):
    type: MutationEventType
    pending_count: int
    mutation_id: Optional[int] = None
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    count: int = 0


class MutationCreate(BaseModel):
    entity: str = Field(..., min_length=1, max_length=100)
    entity_id: str = Field(..., min_length=1, max_length=255)
    operation: MutationOperation
    payload: Optional[Dict[str, Any]] = None


class MutationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity: str
    entity_id: str
    operation: MutationOperation
    payload: Optional[Dict[str, Any]] = None
    status: MutationState
    attempts: int
    created_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
